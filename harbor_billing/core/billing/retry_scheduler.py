# ===================================================================
# HarborList Billing - Payment Retry Scheduler
# Exponential-backoff retries for failed recurring payments
# ===================================================================
"""
Retry scheduler.

Opens a payment failure record when a recurring charge fails, then
re-attempts the charge on an exponential backoff until it succeeds or
the attempt budget is spent, at which point the account is escalated
to suspension through the dunning engine.

Every step that could race with an overlapping job run or a webhook is
a conditional write on the failure row:

- at most one open failure per billing account (partial unique index)
- a due failure is leased before it is charged, keyed on its attempt
- resolve / exhaust only succeed while the failure is still open
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from ..exceptions import (
    BillingAccountNotFoundError,
    PaymentFailureNotFoundError,
    ProcessorDeclinedError,
)
from ..logging import BillingAuditLogger, audit_logger as default_audit_logger, logging_context
from .dunning import DunningEngine
from .models import (
    BillingAccount,
    BillingAccountStatus,
    PaymentFailure,
    PaymentFailureReason,
    PaymentResult,
    ResolutionMethod,
    RetryRunSummary,
    Transaction,
    TransactionStatus,
    TransactionType,
    calculate_processing_fees,
    new_id,
    utcnow,
)
from .processor import PaymentProcessor
from .state_machine import BillingStateMachine

logger = logging.getLogger("harbor_billing.retry")


@dataclass
class RetryPolicy:
    """Backoff and batching parameters."""
    max_attempts: int = 3
    base_delay: timedelta = timedelta(hours=24)
    backoff_multiplier: float = 2.0
    max_delay: timedelta = timedelta(days=7)
    grace_period: timedelta = timedelta(days=7)
    lease: timedelta = timedelta(minutes=10)
    batch_limit: int = 100

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            backoff_multiplier=settings.retry_backoff_multiplier,
            max_delay=settings.retry_max_delay,
            grace_period=settings.grace_period,
            lease=timedelta(seconds=settings.retry_lease_seconds),
            batch_limit=settings.retry_batch_limit,
        )


def compute_retry_delay(next_attempt: int, policy: Optional[RetryPolicy] = None) -> Optional[timedelta]:
    """
    Delay before ``next_attempt``.

    ``min(base * multiplier ** (next_attempt - 1), max_delay)``, or None
    once ``next_attempt`` is past the attempt budget.
    """
    policy = policy or RetryPolicy()
    if next_attempt > policy.max_attempts:
        return None
    delay = policy.base_delay * (policy.backoff_multiplier ** (next_attempt - 1))
    return min(delay, policy.max_delay)


class RetryScheduler:
    """
    Opens, retries and resolves payment failures.

    Example:
        scheduler = RetryScheduler(failures, accounts, transactions, machine, dunning, processor)
        failure = await scheduler.handle_payment_failure(txn_id, account_id, PaymentFailureReason.CARD_DECLINED)
        summary = await scheduler.process_retry_attempts()
    """

    def __init__(
        self,
        failures,
        accounts,
        transactions,
        state_machine: BillingStateMachine,
        dunning: DunningEngine,
        processor: PaymentProcessor,
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
        audit: Optional[BillingAuditLogger] = None,
    ):
        self.failures = failures
        self.accounts = accounts
        self.transactions = transactions
        self.state_machine = state_machine
        self.dunning = dunning
        self.processor = processor
        self.policy = policy or RetryPolicy()
        self.clock = clock
        self.audit = audit or default_audit_logger

    def compute_retry_delay(self, next_attempt: int) -> Optional[timedelta]:
        return compute_retry_delay(next_attempt, self.policy)

    # ===================================================================
    # Opening failures
    # ===================================================================

    async def handle_payment_failure(
        self,
        transaction_id: str,
        billing_account_id: str,
        reason: Union[PaymentFailureReason, str],
        reason_details: Optional[str] = None,
        subscription_id: Optional[str] = None,
        amount=None,
        currency: Optional[str] = None,
    ) -> Optional[PaymentFailure]:
        """
        Open a failure for a failed charge and start recovery.

        Args:
            transaction_id: Local or processor transaction id of the failed charge
            billing_account_id: Account the charge belongs to
            reason: Classified failure reason
            reason_details: Free-form detail from the processor
            subscription_id: Overrides the account's subscription id
            amount: Overrides the account's recurring amount
            currency: Overrides the account's currency

        Returns:
            The new failure, or the account's already-open failure (in
            which case nothing else is done). None for a canceled
            account, which never enters recovery

        Raises:
            BillingAccountNotFoundError: Unknown account
        """
        account = await self.accounts.get_by_id(billing_account_id)
        if account is None:
            raise BillingAccountNotFoundError(billing_account_id)

        if account.status == BillingAccountStatus.CANCELED:
            logger.info(
                f"Billing account {billing_account_id} is canceled; "
                f"not opening a failure for transaction {transaction_id}"
            )
            return None

        now = self.clock()
        failure = PaymentFailure(
            id=new_id(),
            transaction_id=transaction_id,
            billing_account_id=billing_account_id,
            user_id=account.user_id,
            amount=amount if amount is not None else account.amount,
            currency=currency or account.currency,
            reason=PaymentFailureReason(reason),
            subscription_id=subscription_id or account.subscription_id,
            reason_details=reason_details,
            attempt_number=1,
            max_attempts=self.policy.max_attempts,
            next_retry_at=now + self.compute_retry_delay(1),
            grace_period_ends=now + self.policy.grace_period,
            created_at=now,
            updated_at=now,
        )

        failure, created = await self.failures.create_if_no_open(failure)
        if not created:
            logger.info(
                f"Billing account {billing_account_id} already has open failure {failure.id}; "
                f"ignoring failure of transaction {transaction_id}"
            )
            return failure

        with logging_context(billing_account_id=billing_account_id, failure_id=failure.id):
            logger.warning(
                f"Payment failure {failure.id} opened for transaction {transaction_id} "
                f"({failure.reason.value}); first retry at {failure.next_retry_at.isoformat()}"
            )
            await self.state_machine.mark_past_due(billing_account_id, trigger="payment_failure")
            await self.dunning.start_dunning_campaign(failure)

        return failure

    # ===================================================================
    # Retry job
    # ===================================================================

    async def process_retry_attempts(self) -> RetryRunSummary:
        """
        Retry every due open failure.

        Each failure is processed independently; an error on one is
        logged and counted, and the run moves on.
        """
        summary = RetryRunSummary()
        due = await self.failures.list_due(self.clock(), self.policy.batch_limit)
        logger.info(f"Processing {len(due)} due payment retries")

        for failure in due:
            summary.processed += 1
            try:
                with logging_context(billing_account_id=failure.billing_account_id, failure_id=failure.id):
                    outcome = await self._process_failure(failure)
            except Exception as e:
                summary.errors += 1
                logger.exception(f"Retry of payment failure {failure.id} failed: {e}")
                continue

            if outcome == "recovered":
                summary.recovered += 1
            elif outcome == "rescheduled":
                summary.rescheduled += 1
            elif outcome == "exhausted":
                summary.exhausted += 1
            elif outcome == "reconciled":
                summary.reconciled += 1
            else:
                summary.skipped += 1

        logger.info(f"Retry run complete: {summary.to_dict()}")
        return summary

    async def _process_failure(self, failure: PaymentFailure) -> str:
        now = self.clock()
        claimed = await self.failures.claim_retry(
            failure.id, failure.attempt_number, now, now + self.policy.lease
        )
        if claimed is None:
            logger.info(f"Payment failure {failure.id} attempt {failure.attempt_number} claimed elsewhere")
            return "skipped"

        account = await self.accounts.get_by_id(claimed.billing_account_id)
        if account is None:
            raise BillingAccountNotFoundError(claimed.billing_account_id)

        reconciled = await self._reconcile(claimed, account)
        if reconciled is not None:
            return reconciled

        attempt = claimed.attempt_number
        metadata = {
            "retry_attempt": str(attempt),
            "original_failure_id": claimed.id,
            "subscription_id": claimed.subscription_id or "",
            "billing_account_id": claimed.billing_account_id,
        }

        try:
            result = await self.processor.process_payment(
                amount=claimed.amount,
                currency=claimed.currency,
                customer_id=account.customer_id,
                payment_method_id=account.payment_method_id,
                metadata=metadata,
                idempotency_key=f"retry-{claimed.id}-{attempt}",
            )
        except Exception as e:
            # declines, transient errors and timeouts share one path
            return await self._handle_retry_failure(claimed, e)

        return await self._handle_retry_success(claimed, result)

    async def _reconcile(self, failure: PaymentFailure, account: BillingAccount) -> Optional[str]:
        """Close the failure without charging if the account has moved on."""
        if account.status == BillingAccountStatus.ACTIVE:
            method = ResolutionMethod.MANUAL_PAYMENT
        elif account.status == BillingAccountStatus.CANCELED:
            method = ResolutionMethod.CANCELLATION
        elif account.status == BillingAccountStatus.SUSPENDED:
            await self.failures.mark_exhausted(failure.id, self.clock())
            logger.info(f"Billing account {account.id} already suspended; closing failure {failure.id}")
            return "reconciled"
        else:
            return None

        resolved = await self.failures.resolve(failure.id, method, self.clock())
        if resolved is not None:
            self.audit.log_failure_resolution(
                failure.id, failure.billing_account_id, method.value,
                details={"account_status": account.status.value},
            )
        return "reconciled"

    async def _handle_retry_success(self, failure: PaymentFailure, result: PaymentResult) -> str:
        now = self.clock()
        fees = calculate_processing_fees(failure.amount)

        await self.transactions.create(Transaction(
            id=new_id(),
            type=TransactionType.PAYMENT,
            amount=failure.amount,
            currency=failure.currency,
            status=TransactionStatus.COMPLETED,
            user_id=failure.user_id,
            billing_account_id=failure.billing_account_id,
            processor_transaction_id=result.processor_transaction_id,
            description=f"Payment retry {failure.attempt_number} for failure {failure.id}",
            fees=fees,
            net_amount=failure.amount - fees,
            metadata={
                "original_failure_id": failure.id,
                "retry_attempt": failure.attempt_number,
            },
            created_at=now,
            completed_at=now,
        ))

        resolved = await self.failures.resolve(failure.id, ResolutionMethod.RETRY_SUCCESS, now)
        if resolved is None:
            logger.warning(f"Payment failure {failure.id} closed while its retry was charging")
            return "skipped"

        self.audit.log_failure_resolution(
            failure.id, failure.billing_account_id, ResolutionMethod.RETRY_SUCCESS.value,
            details={"attempt_number": failure.attempt_number,
                     "processor_transaction_id": result.processor_transaction_id},
        )
        await self.state_machine.mark_recovered(failure.billing_account_id, trigger="retry_success")
        await self.dunning.notify(resolved, "email", "payment_recovered")
        return "recovered"

    async def _handle_retry_failure(self, failure: PaymentFailure, error: Exception) -> str:
        if isinstance(error, ProcessorDeclinedError):
            cause = error.reason
        else:
            cause = f"{type(error).__name__}: {error}"
        logger.warning(f"Retry attempt {failure.attempt_number} for failure {failure.id} failed: {cause}")

        next_attempt = failure.attempt_number + 1
        delay = self.compute_retry_delay(next_attempt)

        if delay is None:
            escalated = await self.dunning.escalate_to_suspension(failure, trigger="retries_exhausted")
            return "exhausted" if escalated else "skipped"

        updated = await self.failures.schedule_next_attempt(
            failure.id, failure.attempt_number, next_attempt, self.clock() + delay
        )
        if updated is None:
            logger.info(f"Payment failure {failure.id} changed before attempt {next_attempt} was scheduled")
            return "skipped"

        logger.info(f"Attempt {next_attempt} for failure {failure.id} scheduled at {updated.next_retry_at.isoformat()}")
        return "rescheduled"

    # ===================================================================
    # Manual resolution
    # ===================================================================

    async def resolve_payment_failure(
        self,
        failure_id: str,
        method: Union[ResolutionMethod, str],
    ) -> PaymentFailure:
        """
        Close an open failure.

        Every method except ``cancellation`` also recovers the account
        (``past_due -> active``). Resolving an already-closed failure
        returns it unchanged.

        Raises:
            PaymentFailureNotFoundError: Unknown failure
        """
        method = ResolutionMethod(method)
        failure = await self.failures.get_by_id(failure_id)
        if failure is None:
            raise PaymentFailureNotFoundError(failure_id)

        resolved = await self.failures.resolve(failure_id, method, self.clock())
        if resolved is None:
            logger.info(f"Payment failure {failure_id} already closed")
            return await self.failures.get_by_id(failure_id) or failure

        self.audit.log_failure_resolution(failure_id, failure.billing_account_id, method.value)

        if method != ResolutionMethod.CANCELLATION:
            await self.state_machine.mark_recovered(failure.billing_account_id, trigger=method.value)

        return resolved

    async def record_manual_payment(self, billing_account_id: str) -> Optional[PaymentFailure]:
        """
        Record an out-of-band payment for an account.

        Returns:
            The resolved failure, or None if the account had none open
        """
        account = await self.accounts.get_by_id(billing_account_id)
        if account is None:
            raise BillingAccountNotFoundError(billing_account_id)

        open_failure = await self.failures.get_open_for_account(billing_account_id)
        if open_failure is not None:
            return await self.resolve_payment_failure(open_failure.id, ResolutionMethod.MANUAL_PAYMENT)

        await self.state_machine.mark_recovered(billing_account_id, trigger="manual_payment")
        return None
