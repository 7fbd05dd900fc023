# ===================================================================
# HarborList Billing - Payment Processor Adapter
# Stripe integration behind a narrow processor contract
# ===================================================================
"""
Payment processor adapters.

The engine only talks to ``PaymentProcessor``. The Stripe adapter wraps
the synchronous ``stripe`` SDK: every API call runs in a worker thread
and is bounded by ``timeout_seconds``. Processor errors are normalized
into the billing exception hierarchy:

- card declines            -> ProcessorDeclinedError (classified reason)
- network / 5xx / timeouts -> ProcessorTransientError
- bad signatures           -> InvalidSignatureError
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

import stripe

from ..exceptions import (
    ConfigurationError,
    InvalidSignatureError,
    ProcessorDeclinedError,
    ProcessorException,
    ProcessorTransientError,
)
from .models import (
    PaymentFailureReason,
    PaymentResult,
    WebhookAction,
    WebhookEvent,
    WebhookHandlingResult,
    to_decimal,
)

logger = logging.getLogger("harbor_billing.processor")


class PaymentProcessor(ABC):
    """Contract between the billing engine and a payment processor."""

    processor_type: str = ""

    @abstractmethod
    async def create_customer(
        self,
        email: str,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """Create a processor customer and return its id."""

    @abstractmethod
    async def create_payment_method(self, customer_id: str, payment_method_token: str) -> str:
        """Attach a tokenized payment method to a customer; return its id."""

    @abstractmethod
    async def process_payment(
        self,
        amount: Decimal,
        currency: str,
        customer_id: str,
        payment_method_id: Optional[str],
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentResult:
        """
        Charge a stored payment method.

        Raises:
            ProcessorDeclinedError: The charge was declined
            ProcessorTransientError: Network error, timeout or 5xx
        """

    @abstractmethod
    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        trial_days: Optional[int] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Create a subscription."""

    @abstractmethod
    async def cancel_subscription(self, subscription_id: str) -> None:
        """Cancel a subscription immediately."""

    @abstractmethod
    async def update_subscription(self, subscription_id: str, **updates: Any) -> Dict[str, Any]:
        """Modify a subscription."""

    @abstractmethod
    async def process_refund(
        self,
        processor_transaction_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Refund all or part of a charge."""

    @abstractmethod
    def construct_webhook_event(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse a webhook delivery.

        Raises:
            InvalidSignatureError: Signature or payload verification failed
        """

    @abstractmethod
    def handle_webhook_event(self, event: WebhookEvent) -> WebhookHandlingResult:
        """Classify a verified event into an action and normalized data."""


# ===================================================================
# Stripe event normalization
# ===================================================================

def _from_cents(value: Optional[int]) -> Optional[Decimal]:
    if value is None:
        return None
    return to_decimal(Decimal(value) / 100)


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _invoice_period(invoice: Dict[str, Any]) -> Dict[str, Optional[datetime]]:
    """Subscription period of the first line item, falling back to the invoice period."""
    lines = (invoice.get("lines") or {}).get("data") or []
    period = lines[0].get("period") if lines else None
    if period:
        return {
            "period_start": _from_timestamp(period.get("start")),
            "period_end": _from_timestamp(period.get("end")),
        }
    return {
        "period_start": _from_timestamp(invoice.get("period_start")),
        "period_end": _from_timestamp(invoice.get("period_end")),
    }


def normalize_stripe_event(event: WebhookEvent) -> WebhookHandlingResult:
    """
    Map a Stripe event onto a WebhookAction with normalized data.

    Amounts are converted from cents; timestamps become aware datetimes.
    Event types not listed here come back with ``handled=False``.
    """
    obj = event.data
    event_type = event.type

    if event_type in ("payment_intent.succeeded", "payment_intent.payment_failed"):
        data = {
            "payment_intent_id": obj.get("id"),
            "amount": _from_cents(obj.get("amount")),
            "currency": obj.get("currency"),
            "customer_id": obj.get("customer"),
            "metadata": obj.get("metadata") or {},
        }
        if event_type == "payment_intent.succeeded":
            return WebhookHandlingResult(True, WebhookAction.PAYMENT_SUCCEEDED, data)
        error = obj.get("last_payment_error") or {}
        data["failure_code"] = error.get("decline_code") or error.get("code")
        data["failure_message"] = error.get("message")
        return WebhookHandlingResult(True, WebhookAction.PAYMENT_FAILED, data)

    if event_type in ("invoice.payment_succeeded", "invoice.paid", "invoice.payment_failed"):
        data = {
            "invoice_id": obj.get("id"),
            "subscription_id": obj.get("subscription"),
            "customer_id": obj.get("customer"),
            "payment_intent_id": obj.get("payment_intent"),
            "currency": obj.get("currency"),
            **_invoice_period(obj),
        }
        if event_type == "invoice.payment_failed":
            data["amount"] = _from_cents(obj.get("amount_due"))
            data["attempt_count"] = obj.get("attempt_count")
            data["next_payment_attempt"] = _from_timestamp(obj.get("next_payment_attempt"))
            return WebhookHandlingResult(True, WebhookAction.INVOICE_PAYMENT_FAILED, data)
        data["amount"] = _from_cents(obj.get("amount_paid"))
        return WebhookHandlingResult(True, WebhookAction.INVOICE_PAYMENT_SUCCEEDED, data)

    if event_type.startswith("customer.subscription."):
        data = {
            "subscription_id": obj.get("id"),
            "customer_id": obj.get("customer"),
            "status": obj.get("status"),
            "current_period_start": _from_timestamp(obj.get("current_period_start")),
            "current_period_end": _from_timestamp(obj.get("current_period_end")),
            "cancel_at_period_end": bool(obj.get("cancel_at_period_end")),
            "canceled_at": _from_timestamp(obj.get("canceled_at")),
            "metadata": obj.get("metadata") or {},
        }
        actions = {
            "customer.subscription.created": WebhookAction.SUBSCRIPTION_CREATED,
            "customer.subscription.updated": WebhookAction.SUBSCRIPTION_UPDATED,
            "customer.subscription.deleted": WebhookAction.SUBSCRIPTION_DELETED,
        }
        action = actions.get(event_type)
        if action:
            return WebhookHandlingResult(True, action, data)

    if event_type == "charge.dispute.created":
        evidence_details = obj.get("evidence_details") or {}
        data = {
            "dispute_id": obj.get("id"),
            "charge_id": obj.get("charge"),
            "payment_intent_id": obj.get("payment_intent"),
            "amount": _from_cents(obj.get("amount")),
            "currency": obj.get("currency"),
            "reason": obj.get("reason"),
            "status": obj.get("status"),
            "evidence_due_by": _from_timestamp(evidence_details.get("due_by")),
            "created": _from_timestamp(obj.get("created")),
        }
        return WebhookHandlingResult(True, WebhookAction.DISPUTE_CREATED, data)

    return WebhookHandlingResult(False, WebhookAction.UNKNOWN, {"event_type": event_type})


# ===================================================================
# Stripe adapter
# ===================================================================

class StripePaymentProcessor(PaymentProcessor):
    """
    Stripe implementation of the processor contract.

    Example:
        processor = StripePaymentProcessor(
            secret_key="sk_test_...",
            webhook_secret="whsec_...",
        )
        result = await processor.process_payment(
            Decimal("29.99"), "usd", "cus_123", "pm_123",
            idempotency_key="retry-<failure id>-2",
        )
    """

    processor_type = "stripe"

    def __init__(
        self,
        secret_key: Optional[str],
        webhook_secret: Optional[str],
        timeout_seconds: float = 15.0,
    ):
        self.webhook_secret = webhook_secret
        self.timeout_seconds = timeout_seconds

        if secret_key:
            stripe.api_key = secret_key
        else:
            logger.warning("Stripe secret key not configured; API calls will fail")

        logger.info("Stripe payment processor configured")

    async def _call(self, operation: str, func: Callable[..., Any], *args, **kwargs) -> Any:
        """Run a blocking Stripe SDK call with a timeout and error mapping."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs),
                timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            logger.warning(f"Stripe {operation} timed out after {self.timeout_seconds}s")
            raise ProcessorTransientError(
                message=f"Stripe {operation} timed out",
                processor_type=self.processor_type,
                original_error=e
            ) from e
        except stripe.CardError as e:
            error = getattr(e, "error", None)
            code = getattr(error, "decline_code", None) or e.code
            reason = PaymentFailureReason.from_processor_code(code)
            logger.info(f"Stripe {operation} declined: {reason.value}")
            raise ProcessorDeclinedError(
                reason=reason.value,
                processor_type=self.processor_type,
                original_error=e
            ) from e
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
            logger.warning(f"Stripe {operation} transient failure: {e}")
            raise ProcessorTransientError(
                processor_type=self.processor_type,
                details={"operation": operation},
                original_error=e
            ) from e
        except stripe.StripeError as e:
            logger.error(f"Stripe {operation} failed: {e}")
            raise ProcessorException(
                message=f"Stripe {operation} failed",
                processor_type=self.processor_type,
                details={"operation": operation},
                original_error=e
            ) from e

    # ===================================================================
    # Customers & payment methods
    # ===================================================================

    async def create_customer(
        self,
        email: str,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        customer = await self._call(
            "create_customer",
            stripe.Customer.create,
            email=email,
            name=name,
            metadata=metadata or {},
        )
        logger.info(f"Created Stripe customer {customer['id']}")
        return customer["id"]

    async def create_payment_method(self, customer_id: str, payment_method_token: str) -> str:
        method = await self._call(
            "attach_payment_method",
            stripe.PaymentMethod.attach,
            payment_method_token,
            customer=customer_id,
        )
        await self._call(
            "set_default_payment_method",
            stripe.Customer.modify,
            customer_id,
            invoice_settings={"default_payment_method": method["id"]},
        )
        return method["id"]

    # ===================================================================
    # Payments
    # ===================================================================

    async def process_payment(
        self,
        amount: Decimal,
        currency: str,
        customer_id: str,
        payment_method_id: Optional[str],
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentResult:
        params: Dict[str, Any] = {
            "amount": int(to_decimal(amount) * 100),
            "currency": currency,
            "customer": customer_id,
            "confirm": True,
            "off_session": True,
            "metadata": {key: str(value) for key, value in (metadata or {}).items()},
        }
        if payment_method_id:
            params["payment_method"] = payment_method_id
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        intent = await self._call("process_payment", stripe.PaymentIntent.create, **params)

        status = intent["status"]
        if status != "succeeded":
            reason = (
                PaymentFailureReason.AUTHENTICATION_REQUIRED
                if status == "requires_action"
                else PaymentFailureReason.PROCESSING_ERROR
            )
            raise ProcessorDeclinedError(
                reason=reason.value,
                message=f"Payment not completed (status: {status})",
                processor_type=self.processor_type,
                details={"processor_status": status},
            )

        return PaymentResult(
            processor_transaction_id=intent["id"],
            status="succeeded",
            amount=to_decimal(amount),
            currency=currency,
            raw_status=status,
        )

    async def process_refund(
        self,
        processor_transaction_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"payment_intent": processor_transaction_id}
        if amount is not None:
            params["amount"] = int(to_decimal(amount) * 100)
        if reason:
            params["reason"] = reason
        refund = await self._call("process_refund", stripe.Refund.create, **params)
        return {
            "refund_id": refund["id"],
            "status": refund["status"],
            "amount": _from_cents(refund["amount"]),
        }

    # ===================================================================
    # Subscriptions
    # ===================================================================

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        trial_days: Optional[int] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "metadata": metadata or {},
        }
        if trial_days:
            params["trial_period_days"] = trial_days
        subscription = await self._call("create_subscription", stripe.Subscription.create, **params)
        return {
            "subscription_id": subscription["id"],
            "status": subscription["status"],
            "current_period_end": _from_timestamp(subscription.get("current_period_end")),
        }

    async def cancel_subscription(self, subscription_id: str) -> None:
        await self._call("cancel_subscription", stripe.Subscription.cancel, subscription_id)
        logger.info(f"Canceled Stripe subscription {subscription_id}")

    async def update_subscription(self, subscription_id: str, **updates: Any) -> Dict[str, Any]:
        subscription = await self._call(
            "update_subscription",
            stripe.Subscription.modify,
            subscription_id,
            **updates
        )
        return {
            "subscription_id": subscription["id"],
            "status": subscription["status"],
            "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
        }

    # ===================================================================
    # Webhooks
    # ===================================================================

    def construct_webhook_event(self, payload: bytes, signature: str) -> WebhookEvent:
        if not self.webhook_secret:
            raise ConfigurationError("stripe_webhook_secret")

        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise InvalidSignatureError(processor_type=self.processor_type, original_error=e) from e
        except ValueError as e:
            logger.warning(f"Webhook payload could not be parsed: {e}")
            raise InvalidSignatureError(
                message="Invalid webhook payload",
                processor_type=self.processor_type,
                original_error=e
            ) from e

        raw = json.loads(payload)
        return WebhookEvent(
            id=raw["id"],
            type=raw["type"],
            data=(raw.get("data") or {}).get("object") or {},
            created=_from_timestamp(raw.get("created")),
        )

    def handle_webhook_event(self, event: WebhookEvent) -> WebhookHandlingResult:
        return normalize_stripe_event(event)
