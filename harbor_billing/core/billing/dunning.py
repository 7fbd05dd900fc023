# ===================================================================
# HarborList Billing - Dunning Engine
# Reason-matched communication campaigns and suspension escalation
# ===================================================================
"""
Dunning campaigns.

A payment failure is matched to the first active campaign whose
``failure_reasons`` contain the failure's reason. Steps with a zero-day
delay run as soon as the campaign starts; later steps are persisted in
``dunning_step_schedules`` and executed by the dunning job once due.

Features:
- Standard and fraud campaigns registered by default
- Step conditions (failure count bounds, customer tier)
- Durable, at-most-once delayed step execution
- Suspension escalation shared with the retry scheduler
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..logging import BillingAuditLogger, audit_logger as default_audit_logger, logging_context
from .models import (
    BillingAccount,
    DunningAction,
    DunningCampaign,
    DunningRunSummary,
    DunningStep,
    DunningStepSchedule,
    PaymentFailure,
    PaymentFailureReason,
    ResolutionMethod,
    new_id,
    utcnow,
)
from .notifications import NotificationService
from .processor import PaymentProcessor
from .state_machine import BillingStateMachine

logger = logging.getLogger("harbor_billing.dunning")


# ===================================================================
# Campaign registry
# ===================================================================

STANDARD_DUNNING_CAMPAIGN = DunningCampaign(
    id="standard_dunning",
    name="Standard Payment Failure Recovery",
    failure_reasons=[
        PaymentFailureReason.INSUFFICIENT_FUNDS,
        PaymentFailureReason.CARD_DECLINED,
        PaymentFailureReason.EXPIRED_CARD,
    ],
    subscription_types=["premium_individual", "premium_dealer"],
    steps=[
        DunningStep("immediate_email", 0, DunningAction.EMAIL, "payment_failed_immediate"),
        DunningStep("retry_payment_1", 1, DunningAction.RETRY_PAYMENT),
        DunningStep("reminder_email_1", 2, DunningAction.EMAIL, "payment_failed_reminder_1"),
        DunningStep("retry_payment_2", 3, DunningAction.RETRY_PAYMENT),
        DunningStep("final_notice", 5, DunningAction.EMAIL, "payment_failed_final_notice"),
        DunningStep("retry_payment_3", 6, DunningAction.RETRY_PAYMENT),
        DunningStep("suspend_service", 7, DunningAction.SUSPEND_SERVICE),
    ],
)

FRAUD_DUNNING_CAMPAIGN = DunningCampaign(
    id="fraud_dunning",
    name="Fraud Detection Response",
    failure_reasons=[PaymentFailureReason.FRAUD_SUSPECTED],
    subscription_types=["premium_individual", "premium_dealer"],
    steps=[
        DunningStep("fraud_alert_email", 0, DunningAction.EMAIL, "fraud_alert"),
        DunningStep("suspend_immediate", 0, DunningAction.SUSPEND_SERVICE),
    ],
)

DEFAULT_CAMPAIGNS = (STANDARD_DUNNING_CAMPAIGN, FRAUD_DUNNING_CAMPAIGN)


class DunningEngine:
    """
    Runs dunning campaigns for payment failures.

    Example:
        engine = DunningEngine(failures, schedules, accounts, state_machine, processor, notifier)
        await engine.start_dunning_campaign(failure)
        summary = await engine.process_due_dunning_steps()
    """

    def __init__(
        self,
        failures,
        schedules,
        accounts,
        state_machine: BillingStateMachine,
        processor: PaymentProcessor,
        notifier: NotificationService,
        campaigns: Iterable[DunningCampaign] = DEFAULT_CAMPAIGNS,
        batch_limit: int = 100,
        clock: Callable[[], datetime] = utcnow,
        audit: Optional[BillingAuditLogger] = None,
    ):
        self.failures = failures
        self.schedules = schedules
        self.accounts = accounts
        self.state_machine = state_machine
        self.processor = processor
        self.notifier = notifier
        self.campaigns: List[DunningCampaign] = list(campaigns)
        self.batch_limit = batch_limit
        self.clock = clock
        self.audit = audit or default_audit_logger

    # ===================================================================
    # Campaign selection
    # ===================================================================

    def select_campaign(self, reason: PaymentFailureReason) -> Optional[DunningCampaign]:
        """First active campaign, in registration order, covering ``reason``."""
        for campaign in self.campaigns:
            if campaign.active and reason in campaign.failure_reasons:
                return campaign
        return None

    def get_campaign(self, campaign_id: str) -> Optional[DunningCampaign]:
        for campaign in self.campaigns:
            if campaign.id == campaign_id:
                return campaign
        return None

    async def start_dunning_campaign(self, failure: PaymentFailure) -> Optional[DunningCampaign]:
        """
        Start the matching campaign for a newly opened failure.

        Delayed steps are scheduled first so they survive a crash while
        the immediate steps run.

        Returns:
            The campaign started, or None if no campaign matches
        """
        campaign = self.select_campaign(failure.reason)
        if campaign is None:
            logger.info(f"No dunning campaign for failure reason {failure.reason.value}")
            return None

        started_at = failure.created_at or self.clock()
        immediate: List[DunningStep] = []

        for step in campaign.ordered_steps():
            if step.delay_days <= 0:
                immediate.append(step)
                continue
            await self.schedules.schedule(DunningStepSchedule(
                id=new_id(),
                failure_id=failure.id,
                campaign_id=campaign.id,
                step_id=step.step_id,
                execute_at=started_at + timedelta(days=step.delay_days),
            ))

        logger.info(
            f"Started dunning campaign {campaign.id} for failure {failure.id} "
            f"({len(immediate)} immediate, {len(campaign.steps) - len(immediate)} scheduled)"
        )

        for step in immediate:
            try:
                await self.execute_dunning_step(failure, step)
            except Exception as e:
                logger.exception(f"Immediate dunning step {step.step_id} failed for failure {failure.id}: {e}")

        return campaign

    # ===================================================================
    # Step execution
    # ===================================================================

    def _conditions_met(
        self,
        failure: PaymentFailure,
        step: DunningStep,
        account: Optional[BillingAccount],
    ) -> bool:
        conditions = step.conditions or {}

        min_count = conditions.get("min_failure_count")
        if min_count is not None and failure.attempt_number < min_count:
            return False

        max_count = conditions.get("max_failure_count")
        if max_count is not None and failure.attempt_number > max_count:
            return False

        tiers = conditions.get("customer_tier")
        if tiers:
            if account is None or account.plan not in tiers:
                return False

        return True

    async def execute_dunning_step(self, failure: PaymentFailure, step: DunningStep) -> str:
        """
        Execute one campaign step.

        Returns:
            Outcome label stored on the schedule row
        """
        account = await self.accounts.get_by_id(failure.billing_account_id)

        if not self._conditions_met(failure, step, account):
            logger.info(f"Dunning step {step.step_id} conditions not met for failure {failure.id}")
            return "conditions_not_met"

        if step.action in (DunningAction.EMAIL, DunningAction.SMS):
            sent = await self.notify(failure, step.action.value, step.template_id)
            return "notified" if sent else "notification_failed"

        if step.action == DunningAction.RETRY_PAYMENT:
            # retry timing belongs to the retry scheduler
            logger.debug(f"Dunning step {step.step_id} defers to the retry scheduler")
            return "deferred"

        if step.action == DunningAction.SUSPEND_SERVICE:
            escalated = await self.escalate_to_suspension(failure, trigger=f"dunning:{step.step_id}")
            return "suspended" if escalated else "already_closed"

        if step.action == DunningAction.CANCEL_SUBSCRIPTION:
            await self.cancel_for_failure(failure, account, trigger=f"dunning:{step.step_id}")
            return "canceled"

        logger.warning(f"Unknown dunning action {step.action} on step {step.step_id}")
        return "unknown_action"

    async def notify(
        self,
        failure: PaymentFailure,
        channel: str,
        template_id: Optional[str],
        extra: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Best-effort notification about a failure; never raises."""
        data = {
            "failure_id": failure.id,
            "amount": str(failure.amount),
            "currency": failure.currency,
            "reason": failure.reason.value,
            "attempt_number": failure.attempt_number,
            "next_retry_at": failure.next_retry_at.isoformat() if failure.next_retry_at else None,
            "grace_period_ends": failure.grace_period_ends.isoformat() if failure.grace_period_ends else None,
            **(extra or {}),
        }
        try:
            return await self.notifier.send(channel, template_id, failure.user_id, data)
        except Exception as e:
            logger.error(f"Notification {template_id} for failure {failure.id} failed: {e}")
            return False

    # ===================================================================
    # Escalation
    # ===================================================================

    async def escalate_to_suspension(self, failure: PaymentFailure, trigger: str) -> bool:
        """
        Close an open failure as exhausted and suspend its account.

        Returns:
            False if the failure was already resolved or exhausted
        """
        exhausted = await self.failures.mark_exhausted(failure.id, self.clock())
        if exhausted is None:
            logger.info(f"Failure {failure.id} already closed; skipping suspension ({trigger})")
            return False

        with logging_context(billing_account_id=failure.billing_account_id, failure_id=failure.id):
            logger.warning(f"Payment failure {failure.id} exhausted ({trigger}); suspending account")
            await self.state_machine.suspend(failure.billing_account_id, trigger)
            await self.notify(exhausted, "email", "account_suspended")

        return True

    async def cancel_for_failure(
        self,
        failure: PaymentFailure,
        account: Optional[BillingAccount],
        trigger: str,
    ) -> None:
        """Cancel the processor subscription and the account, closing the failure."""
        if account is not None and account.subscription_id:
            await self.processor.cancel_subscription(account.subscription_id)

        await self.state_machine.cancel(failure.billing_account_id, trigger)

        resolved = await self.failures.resolve(failure.id, ResolutionMethod.CANCELLATION, self.clock())
        if resolved is not None:
            self.audit.log_failure_resolution(
                failure.id, failure.billing_account_id, ResolutionMethod.CANCELLATION.value
            )
        await self.notify(failure, "email", "subscription_canceled")

    # ===================================================================
    # Due-step job
    # ===================================================================

    async def process_due_dunning_steps(self) -> DunningRunSummary:
        """
        Execute every persisted step whose time has come.

        A row is claimed before it runs, so concurrent job runs execute
        each step at most once. Steps for failures that have since closed
        are recorded as skipped.
        """
        summary = DunningRunSummary()
        due = await self.schedules.list_due(self.clock(), self.batch_limit)

        for entry in due:
            try:
                claimed = await self.schedules.claim(entry.id, self.clock())
                if claimed is None:
                    summary.skipped += 1
                    continue

                outcome = await self._run_scheduled(entry)
                await self.schedules.set_outcome(entry.id, outcome)

                if outcome in ("failure_closed", "unknown_step"):
                    summary.skipped += 1
                else:
                    summary.executed += 1
            except Exception as e:
                summary.errors += 1
                logger.exception(f"Dunning step {entry.step_id} for failure {entry.failure_id} failed: {e}")

        logger.info(
            f"Dunning run: {summary.executed} executed, {summary.skipped} skipped, {summary.errors} errors"
        )
        return summary

    async def _run_scheduled(self, entry: DunningStepSchedule) -> str:
        failure = await self.failures.get_by_id(entry.failure_id)
        if failure is None or not failure.is_open:
            return "failure_closed"

        campaign = self.get_campaign(entry.campaign_id)
        step = campaign.get_step(entry.step_id) if campaign else None
        if step is None:
            logger.warning(f"Unknown dunning step {entry.campaign_id}/{entry.step_id}")
            return "unknown_step"

        with logging_context(billing_account_id=failure.billing_account_id, failure_id=failure.id):
            return await self.execute_dunning_step(failure, step)
