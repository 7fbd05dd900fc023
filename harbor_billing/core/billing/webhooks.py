# ===================================================================
# HarborList Billing - Webhook Ingestion Pipeline
# Verify, deduplicate, dispatch and record processor events
# ===================================================================
"""
Webhook pipeline.

    received -> signature-verified -> deduplicated -> dispatched -> recorded

Deduplication is two-level: an in-process LRU of finished events, then
the ``processed_webhook_events`` ledger. The ledger row is claimed with a
unique insert before dispatch, so concurrent deliveries of the same
event dispatch it once. A failed dispatch leaves the row unprocessed
with its error text and answers 500 so the processor redelivers; each
redelivery reclaims the row and counts a retry until ``max_retries``,
after which the event is acknowledged and left for inspection.
"""

import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from ..exceptions import UnsupportedProcessorError, ValidationException
from ..logging import BillingAuditLogger, audit_logger as default_audit_logger, logging_context
from .disputes import DisputeManager
from .models import (
    BillingAccountStatus,
    EvidenceType,
    DisputeType,
    PaymentFailureReason,
    ResolutionMethod,
    WebhookAction,
    WebhookEvent,
    WebhookHandlingResult,
    WebhookResponse,
    utcnow,
)
from .processor import PaymentProcessor
from .retry_scheduler import RetryScheduler
from .state_machine import BillingStateMachine

logger = logging.getLogger("harbor_billing.webhooks")

DEFAULT_DISPUTE_EVIDENCE = [EvidenceType.RECEIPT, EvidenceType.COMMUNICATION, EvidenceType.SHIPPING]
DEFAULT_DISPUTE_RESPONSE_WINDOW = timedelta(days=7)

Handler = Callable[[Dict[str, Any]], Awaitable[None]]


class WebhookPipeline:
    """
    Processes inbound processor webhooks exactly once per event.

    Example:
        pipeline = WebhookPipeline({"stripe": processor}, ledger, accounts, failures,
                                   transactions, users, machine, scheduler, disputes)
        status_code, response = await pipeline.handle_webhook("stripe", body, signature)
    """

    def __init__(
        self,
        processors: Dict[str, PaymentProcessor],
        ledger,
        accounts,
        failures,
        transactions,
        users,
        state_machine: BillingStateMachine,
        retry_scheduler: RetryScheduler,
        dispute_manager: DisputeManager,
        max_retries: int = 3,
        cache_size: int = 10000,
        claim_timeout: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utcnow,
        audit: Optional[BillingAuditLogger] = None,
    ):
        self.processors = processors
        self.ledger = ledger
        self.accounts = accounts
        self.failures = failures
        self.transactions = transactions
        self.users = users
        self.state_machine = state_machine
        self.retry_scheduler = retry_scheduler
        self.dispute_manager = dispute_manager
        self.max_retries = max_retries
        self.cache_size = cache_size
        self.claim_timeout = claim_timeout
        self.clock = clock
        self.audit = audit or default_audit_logger

        self._finished: "OrderedDict[Tuple[str, str], bool]" = OrderedDict()
        self._handlers: Dict[WebhookAction, Handler] = {
            WebhookAction.PAYMENT_SUCCEEDED: self._on_payment_succeeded,
            WebhookAction.PAYMENT_FAILED: self._on_payment_failed,
            WebhookAction.INVOICE_PAYMENT_SUCCEEDED: self._on_invoice_payment_succeeded,
            WebhookAction.INVOICE_PAYMENT_FAILED: self._on_invoice_payment_failed,
            WebhookAction.SUBSCRIPTION_CREATED: self._on_subscription_created,
            WebhookAction.SUBSCRIPTION_UPDATED: self._on_subscription_updated,
            WebhookAction.SUBSCRIPTION_DELETED: self._on_subscription_deleted,
            WebhookAction.DISPUTE_CREATED: self._on_dispute_created,
        }

    # ===================================================================
    # Dedup cache
    # ===================================================================

    def _is_finished(self, key: Tuple[str, str]) -> bool:
        if key in self._finished:
            self._finished.move_to_end(key)
            return True
        return False

    def _remember(self, key: Tuple[str, str]) -> None:
        self._finished[key] = True
        self._finished.move_to_end(key)
        while len(self._finished) > self.cache_size:
            self._finished.popitem(last=False)

    # ===================================================================
    # Entry point
    # ===================================================================

    async def handle_webhook(
        self,
        processor_type: str,
        payload: Optional[bytes],
        signature: Optional[str],
    ) -> Tuple[int, WebhookResponse]:
        """
        Handle one webhook delivery.

        Returns:
            (HTTP status, response body). 500 means the sender should
            redeliver.

        Raises:
            UnsupportedProcessorError: No adapter for ``processor_type``
            ValidationException: Missing body or signature
            InvalidSignatureError: Signature verification failed
        """
        processor = self.processors.get(processor_type)
        if processor is None:
            raise UnsupportedProcessorError(processor_type, sorted(self.processors))

        if not payload or not signature:
            raise ValidationException(
                "Webhook payload and signature are required",
                field="signature" if payload else "payload",
            )

        event = processor.construct_webhook_event(payload, signature)

        with logging_context(webhook_event_id=event.id):
            return await self._process_event(processor_type, processor, event)

    async def _process_event(
        self,
        processor_type: str,
        processor: PaymentProcessor,
        event: WebhookEvent,
    ) -> Tuple[int, WebhookResponse]:
        key = (processor_type, event.id)

        if self._is_finished(key):
            logger.info(f"Duplicate webhook {processor_type}/{event.id} (cached)")
            return 200, WebhookResponse(processed=False, duplicate=True, event_id=event.id)

        now = self.clock()
        claimed = await self.ledger.claim(processor_type, event.id, event.type, self.max_retries, now)

        if claimed is None:
            existing = await self.ledger.get(processor_type, event.id)
            if existing is not None and existing.processed:
                self._remember(key)
                logger.info(f"Duplicate webhook {processor_type}/{event.id}")
                return 200, WebhookResponse(processed=False, duplicate=True, event_id=event.id)

            reclaimed = await self.ledger.reclaim(processor_type, event.id, now, now - self.claim_timeout)
            if reclaimed is None:
                existing = await self.ledger.get(processor_type, event.id)
                if existing is not None and not existing.in_progress and existing.retries_exhausted:
                    self._remember(key)
                    self.audit.log_webhook_outcome(
                        processor_type, event.id, event.type, "retries_exhausted",
                        details={"retry_count": existing.retry_count, "error": existing.error},
                    )
                    return 200, WebhookResponse(processed=False, event_id=event.id)

                logger.info(f"Webhook {processor_type}/{event.id} is being processed by another delivery")
                return 200, WebhookResponse(processed=False, duplicate=True, event_id=event.id)

            logger.info(f"Reprocessing webhook {processor_type}/{event.id} (retry {reclaimed.retry_count})")

        try:
            result = processor.handle_webhook_event(event)
            handled = await self.dispatch(result)
        except Exception as e:
            logger.exception(f"Webhook {processor_type}/{event.id} ({event.type}) failed: {e}")
            await self.ledger.mark_failed(processor_type, event.id, f"{type(e).__name__}: {e}")
            self.audit.log_webhook_outcome(processor_type, event.id, event.type, "failed", details={"error": str(e)})
            return 500, WebhookResponse(processed=False, event_id=event.id, error="Webhook processing failed")

        await self.ledger.mark_processed(processor_type, event.id, self.clock())
        self._remember(key)
        self.audit.log_webhook_outcome(
            processor_type, event.id, event.type, "processed" if handled else "ignored"
        )
        return 200, WebhookResponse(processed=handled, event_id=event.id)

    async def dispatch(self, result: WebhookHandlingResult) -> bool:
        """
        Route a normalized event to its handler.

        Returns:
            False for events with no local handler
        """
        if not result.handled:
            logger.info(f"Unhandled webhook event type: {result.data.get('event_type')}")
            return False

        handler = self._handlers.get(result.action)
        if handler is None:
            logger.warning(f"No handler for webhook action {result.action.value}")
            return False

        await handler(result.data)
        return True

    # ===================================================================
    # Payment handlers
    # ===================================================================

    async def _on_payment_succeeded(self, data: Dict[str, Any]) -> None:
        payment_intent_id = data.get("payment_intent_id")
        metadata = data.get("metadata") or {}

        transaction = await self.transactions.get_by_processor_transaction_id(payment_intent_id)
        if transaction is not None:
            await self.transactions.mark_completed(transaction.id, self.clock())

        original_failure_id = metadata.get("original_failure_id")
        if original_failure_id:
            failure = await self.failures.get_by_id(original_failure_id)
            if failure is not None:
                await self.retry_scheduler.resolve_payment_failure(failure.id, ResolutionMethod.RETRY_SUCCESS)
        elif transaction is not None:
            failure = await self.failures.get_open_by_transaction_id(transaction.id)
            if failure is not None:
                await self.retry_scheduler.resolve_payment_failure(failure.id, ResolutionMethod.MANUAL_PAYMENT)

        customer_id = data.get("customer_id")
        account = await self.accounts.get_by_customer_id(customer_id) if customer_id else None
        if account is not None:
            # closes any failure still open for the account along with the status
            await self.retry_scheduler.record_manual_payment(account.id)

        logger.info(f"Payment {payment_intent_id} succeeded")

    async def _on_payment_failed(self, data: Dict[str, Any]) -> None:
        payment_intent_id = data.get("payment_intent_id")
        metadata = data.get("metadata") or {}

        if metadata.get("original_failure_id"):
            # outcome already handled synchronously by the retry job
            logger.info(f"Payment {payment_intent_id} is retry of failure {metadata['original_failure_id']}; skipping")
            return

        reason = PaymentFailureReason.from_processor_code(data.get("failure_code"))

        transaction = await self.transactions.get_by_processor_transaction_id(payment_intent_id)
        if transaction is not None:
            await self.transactions.mark_failed(transaction.id)
            account_id = transaction.billing_account_id
            transaction_id = transaction.id
        else:
            customer_id = data.get("customer_id")
            account = await self.accounts.get_by_customer_id(customer_id) if customer_id else None
            account_id = account.id if account else None
            transaction_id = payment_intent_id

        if not account_id:
            logger.warning(f"Payment {payment_intent_id} failed with no billing account to attach it to")
            return

        await self.retry_scheduler.handle_payment_failure(
            transaction_id=transaction_id,
            billing_account_id=account_id,
            reason=reason,
            reason_details=data.get("failure_message"),
            amount=data.get("amount"),
            currency=data.get("currency"),
        )

    async def _on_invoice_payment_succeeded(self, data: Dict[str, Any]) -> None:
        subscription_id = data.get("subscription_id")
        account = await self.accounts.get_by_subscription_id(subscription_id) if subscription_id else None
        if account is None:
            logger.info(f"Invoice {data.get('invoice_id')} paid for untracked subscription {subscription_id}")
            return

        open_failure = await self.failures.get_open_for_account(account.id)
        if open_failure is not None:
            await self.retry_scheduler.resolve_payment_failure(open_failure.id, ResolutionMethod.MANUAL_PAYMENT)

        activated = await self.state_machine.activate(account.id, trigger="invoice_payment_succeeded")
        if activated is None or activated.status != BillingAccountStatus.ACTIVE:
            # suspended and canceled accounts only come back through manual reactivation
            logger.warning(
                f"Invoice {data.get('invoice_id')} paid for billing account {account.id} "
                f"in state {account.status.value}; entitlements left unchanged"
            )
            return

        period_end = data.get("period_end")
        if period_end is not None:
            await self.accounts.update_fields(account.id, {"next_billing_date": period_end})
            await self.users.extend_premium(account.user_id, account.plan, period_end)

        logger.info(f"Invoice {data.get('invoice_id')} paid for billing account {account.id}")

    async def _on_invoice_payment_failed(self, data: Dict[str, Any]) -> None:
        subscription_id = data.get("subscription_id")
        account = await self.accounts.get_by_subscription_id(subscription_id) if subscription_id else None
        if account is None:
            logger.info(f"Invoice {data.get('invoice_id')} failed for untracked subscription {subscription_id}")
            return

        await self.retry_scheduler.handle_payment_failure(
            transaction_id=f"invoice_{data.get('invoice_id')}",
            billing_account_id=account.id,
            reason=PaymentFailureReason.INSUFFICIENT_FUNDS,
            reason_details="Invoice payment failed",
            subscription_id=subscription_id,
            amount=data.get("amount"),
            currency=data.get("currency"),
        )

    # ===================================================================
    # Subscription handlers
    # ===================================================================

    async def _on_subscription_created(self, data: Dict[str, Any]) -> None:
        customer_id = data.get("customer_id")
        account = await self.accounts.get_by_customer_id(customer_id) if customer_id else None
        if account is None:
            logger.info(f"Subscription {data.get('subscription_id')} created for untracked customer {customer_id}")
            return

        await self.accounts.update_fields(account.id, {
            "subscription_id": data.get("subscription_id"),
            "next_billing_date": data.get("current_period_end"),
            "cancel_at_period_end": data.get("cancel_at_period_end", False),
        })

        if data.get("status") in ("active", "trialing"):
            await self.state_machine.apply_processor_status(
                account.id, data.get("status"), trigger="subscription_created_webhook"
            )

    async def _on_subscription_updated(self, data: Dict[str, Any]) -> None:
        subscription_id = data.get("subscription_id")
        account = await self.accounts.get_by_subscription_id(subscription_id) if subscription_id else None
        if account is None:
            logger.info(f"Update for untracked subscription {subscription_id}")
            return

        updates: Dict[str, Any] = {"cancel_at_period_end": data.get("cancel_at_period_end", False)}
        if data.get("current_period_end") is not None:
            updates["next_billing_date"] = data["current_period_end"]
        await self.accounts.update_fields(account.id, updates)

        await self.state_machine.apply_processor_status(
            account.id, data.get("status"), trigger="subscription_updated_webhook"
        )

    async def _on_subscription_deleted(self, data: Dict[str, Any]) -> None:
        subscription_id = data.get("subscription_id")
        account = await self.accounts.get_by_subscription_id(subscription_id) if subscription_id else None
        if account is None:
            logger.info(f"Deletion of untracked subscription {subscription_id}")
            return

        open_failure = await self.failures.get_open_for_account(account.id)
        if open_failure is not None:
            await self.retry_scheduler.resolve_payment_failure(open_failure.id, ResolutionMethod.CANCELLATION)

        await self.state_machine.cancel(
            account.id,
            trigger="subscription_deleted_webhook",
            canceled_at=data.get("canceled_at") or self.clock(),
        )

    # ===================================================================
    # Dispute handler
    # ===================================================================

    async def _on_dispute_created(self, data: Dict[str, Any]) -> None:
        transaction_ref = data.get("payment_intent_id") or data.get("charge_id")
        if data.get("payment_intent_id") and data.get("charge_id"):
            if await self.transactions.find(data["payment_intent_id"]) is None:
                transaction_ref = data["charge_id"]

        respond_by = data.get("evidence_due_by") or (self.clock() + DEFAULT_DISPUTE_RESPONSE_WINDOW)

        await self.dispute_manager.create_dispute_case(
            transaction_id=transaction_ref,
            dispute_type=DisputeType.from_processor_reason(data.get("reason")),
            dispute_amount=data.get("amount"),
            evidence_required=DEFAULT_DISPUTE_EVIDENCE,
            respond_by_date=respond_by,
            processor_dispute_id=data.get("dispute_id"),
            dispute_reason=data.get("reason"),
            currency=data.get("currency"),
        )
