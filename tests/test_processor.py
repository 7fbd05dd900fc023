# ═══════════════════════════════════════════════════════════════
# HarborList Billing - Processor Adapter Tests
# Stripe event normalization, signature checks and error mapping
# ═══════════════════════════════════════════════════════════════

import time
from datetime import datetime, timezone
from decimal import Decimal

import pytest
import stripe

from harbor_billing.core.billing.models import PaymentFailureReason, WebhookAction, WebhookEvent
from harbor_billing.core.billing.processor import StripePaymentProcessor, normalize_stripe_event
from harbor_billing.core.exceptions import (
    ConfigurationError,
    InvalidSignatureError,
    ProcessorDeclinedError,
    ProcessorTransientError,
)

from fakes import stripe_event, stripe_signature_header

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def stripe_processor(monkeypatch):
    monkeypatch.setattr(stripe, "api_key", None)
    return StripePaymentProcessor(secret_key="sk_test_123", webhook_secret=WEBHOOK_SECRET, timeout_seconds=1.0)


def event(event_type, obj):
    return WebhookEvent(id="evt_1", type=event_type, data=obj)


# ═══════════════════════════════════════════════════════════════
# Event normalization
# ═══════════════════════════════════════════════════════════════

class TestNormalizeStripeEvent:

    def test_payment_failed_prefers_decline_code(self):
        result = normalize_stripe_event(event("payment_intent.payment_failed", {
            "id": "pi_1",
            "amount": 2999,
            "customer": "cus_1",
            "last_payment_error": {"code": "card_declined", "decline_code": "insufficient_funds", "message": "No"},
        }))

        assert result.handled is True
        assert result.action == WebhookAction.PAYMENT_FAILED
        assert result.data["amount"] == Decimal("29.99")
        assert result.data["failure_code"] == "insufficient_funds"
        assert result.data["failure_message"] == "No"

    def test_payment_failed_falls_back_to_code(self):
        result = normalize_stripe_event(event("payment_intent.payment_failed", {
            "id": "pi_1", "last_payment_error": {"code": "expired_card"},
        }))
        assert result.data["failure_code"] == "expired_card"

    def test_invoice_period_from_line_item(self):
        start, end = 1740830400, 1743508800
        result = normalize_stripe_event(event("invoice.payment_succeeded", {
            "id": "in_1",
            "subscription": "sub_1",
            "amount_paid": 1000,
            "period_end": 1,
            "lines": {"data": [{"period": {"start": start, "end": end}}]},
        }))

        assert result.action == WebhookAction.INVOICE_PAYMENT_SUCCEEDED
        assert result.data["amount"] == Decimal("10.00")
        assert result.data["period_end"] == datetime.fromtimestamp(end, tz=timezone.utc)

    def test_invoice_failed(self):
        result = normalize_stripe_event(event("invoice.payment_failed", {
            "id": "in_1", "subscription": "sub_1", "amount_due": 2999, "attempt_count": 2,
        }))

        assert result.action == WebhookAction.INVOICE_PAYMENT_FAILED
        assert result.data["amount"] == Decimal("29.99")
        assert result.data["attempt_count"] == 2

    @pytest.mark.parametrize("event_type,action", [
        ("customer.subscription.created", WebhookAction.SUBSCRIPTION_CREATED),
        ("customer.subscription.updated", WebhookAction.SUBSCRIPTION_UPDATED),
        ("customer.subscription.deleted", WebhookAction.SUBSCRIPTION_DELETED),
    ])
    def test_subscription_events(self, event_type, action):
        result = normalize_stripe_event(event(event_type, {"id": "sub_1", "status": "active"}))

        assert result.action == action
        assert result.data["subscription_id"] == "sub_1"
        assert result.data["cancel_at_period_end"] is False

    def test_dispute_created(self):
        result = normalize_stripe_event(event("charge.dispute.created", {
            "id": "dp_1", "charge": "ch_1", "amount": 5000, "reason": "fraudulent",
            "evidence_details": {"due_by": 1741000000},
        }))

        assert result.action == WebhookAction.DISPUTE_CREATED
        assert result.data["dispute_id"] == "dp_1"
        assert result.data["evidence_due_by"] == datetime.fromtimestamp(1741000000, tz=timezone.utc)

    @pytest.mark.parametrize("event_type", ["customer.created", "customer.subscription.trial_will_end"])
    def test_unhandled(self, event_type):
        result = normalize_stripe_event(event(event_type, {}))

        assert result.handled is False
        assert result.action == WebhookAction.UNKNOWN
        assert result.data == {"event_type": event_type}


class TestFailureReasonMapping:

    @pytest.mark.parametrize("code,reason", [
        ("insufficient_funds", PaymentFailureReason.INSUFFICIENT_FUNDS),
        ("generic_decline", PaymentFailureReason.CARD_DECLINED),
        ("EXPIRED_CARD", PaymentFailureReason.EXPIRED_CARD),
        ("fraudulent", PaymentFailureReason.FRAUD_SUSPECTED),
        ("do_not_honor", PaymentFailureReason.UNKNOWN),
        (None, PaymentFailureReason.UNKNOWN),
    ])
    def test_from_processor_code(self, code, reason):
        assert PaymentFailureReason.from_processor_code(code) == reason


# ═══════════════════════════════════════════════════════════════
# Webhook signatures
# ═══════════════════════════════════════════════════════════════

class TestStripeSignature:

    def test_valid_signature(self, stripe_processor):
        payload = stripe_event("evt_1", "invoice.paid", {"id": "in_1"})
        header = stripe_signature_header(payload, WEBHOOK_SECRET, int(time.time()))

        verified = stripe_processor.construct_webhook_event(payload, header)

        assert verified.id == "evt_1"
        assert verified.type == "invoice.paid"
        assert verified.data == {"id": "in_1"}

    def test_wrong_secret(self, stripe_processor):
        payload = stripe_event("evt_1", "invoice.paid", {})
        header = stripe_signature_header(payload, "whsec_other", int(time.time()))

        with pytest.raises(InvalidSignatureError):
            stripe_processor.construct_webhook_event(payload, header)

    def test_tampered_payload(self, stripe_processor):
        payload = stripe_event("evt_1", "invoice.paid", {"amount_paid": 100})
        header = stripe_signature_header(payload, WEBHOOK_SECRET, int(time.time()))

        with pytest.raises(InvalidSignatureError):
            stripe_processor.construct_webhook_event(payload.replace(b"100", b"1"), header)

    def test_missing_webhook_secret(self, monkeypatch):
        monkeypatch.setattr(stripe, "api_key", None)
        processor = StripePaymentProcessor(secret_key=None, webhook_secret=None)

        with pytest.raises(ConfigurationError):
            processor.construct_webhook_event(b"{}", "t=1,v1=abc")


# ═══════════════════════════════════════════════════════════════
# Charges
# ═══════════════════════════════════════════════════════════════

class TestProcessPayment:

    @pytest.mark.asyncio
    async def test_success(self, stripe_processor, monkeypatch):
        calls = []

        def create(**kwargs):
            calls.append(kwargs)
            return {"id": "pi_1", "status": "succeeded"}

        monkeypatch.setattr(stripe.PaymentIntent, "create", create)

        result = await stripe_processor.process_payment(
            Decimal("29.99"), "usd", "cus_1", "pm_1",
            metadata={"retry_attempt": 2}, idempotency_key="retry-fail_1-2",
        )

        assert result.processor_transaction_id == "pi_1"
        assert calls[0]["amount"] == 2999
        assert calls[0]["payment_method"] == "pm_1"
        assert calls[0]["metadata"] == {"retry_attempt": "2"}
        assert calls[0]["idempotency_key"] == "retry-fail_1-2"
        assert calls[0]["off_session"] is True

    @pytest.mark.asyncio
    async def test_requires_action_is_decline(self, stripe_processor, monkeypatch):
        monkeypatch.setattr(stripe.PaymentIntent, "create", lambda **kwargs: {"id": "pi_1", "status": "requires_action"})

        with pytest.raises(ProcessorDeclinedError) as exc_info:
            await stripe_processor.process_payment(Decimal("10"), "usd", "cus_1", "pm_1")

        assert exc_info.value.reason == "authentication_required"

    @pytest.mark.asyncio
    async def test_card_error_classified(self, stripe_processor, monkeypatch):
        def create(**kwargs):
            raise stripe.CardError("Your card has expired.", None, "expired_card")

        monkeypatch.setattr(stripe.PaymentIntent, "create", create)

        with pytest.raises(ProcessorDeclinedError) as exc_info:
            await stripe_processor.process_payment(Decimal("10"), "usd", "cus_1", "pm_1")

        assert exc_info.value.reason == "expired_card"

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, stripe_processor, monkeypatch):
        def create(**kwargs):
            raise stripe.APIConnectionError("connection reset")

        monkeypatch.setattr(stripe.PaymentIntent, "create", create)

        with pytest.raises(ProcessorTransientError):
            await stripe_processor.process_payment(Decimal("10"), "usd", "cus_1", "pm_1")

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, monkeypatch):
        monkeypatch.setattr(stripe, "api_key", None)
        processor = StripePaymentProcessor(secret_key="sk_test_123", webhook_secret=WEBHOOK_SECRET, timeout_seconds=0.01)
        monkeypatch.setattr(stripe.PaymentIntent, "create", lambda **kwargs: time.sleep(0.2))

        with pytest.raises(ProcessorTransientError):
            await processor.process_payment(Decimal("10"), "usd", "cus_1", "pm_1")
