# ═══════════════════════════════════════════════════════════════
# HarborList Billing - Repository SQL Tests
# Conditional-write statements built by the asyncpg repositories
# ═══════════════════════════════════════════════════════════════

from datetime import timedelta
from decimal import Decimal
from typing import Any, List, Optional

import asyncpg
import pytest

from harbor_billing.core.billing.models import (
    BillingAccountStatus,
    DisputeCase,
    DisputeEvidence,
    DisputeType,
    DisputeWorkflow,
    EvidenceType,
    PaymentFailure,
    PaymentFailureReason,
    ResolutionMethod,
)
from harbor_billing.core.database import (
    BillingAccountRepository,
    DisputeRepository,
    PaymentFailureRepository,
    WebhookEventRepository,
)
from harbor_billing.core.exceptions import PersistenceConflictError

from fakes import T0


def squash(query: str) -> str:
    return " ".join(query.split())


class RecordingPool:
    """Records every statement and answers with scripted rows."""

    def __init__(self, rows: Optional[List[Any]] = None, error: Optional[Exception] = None):
        self.calls: List[tuple] = []
        self.rows = list(rows or [])
        self.error = error

    async def fetchrow(self, query: str, *args):
        self.calls.append((squash(query), list(args)))
        if self.error is not None:
            raise self.error
        return self.rows.pop(0) if self.rows else None

    async def fetch(self, query: str, *args):
        self.calls.append((squash(query), list(args)))
        return self.rows


def account_row(status="past_due"):
    return {
        "id": "acct_1",
        "user_id": "user_1",
        "customer_id": "cus_1",
        "payment_method_id": "pm_1",
        "subscription_id": "sub_1",
        "plan": "premium_individual",
        "amount": Decimal("29.99"),
        "currency": "usd",
        "status": status,
        "next_billing_date": None,
        "canceled_at": None,
        "cancel_at_period_end": False,
        "created_at": T0,
        "updated_at": T0,
    }


def failure_row(**overrides):
    row = {
        "id": "fail_1",
        "transaction_id": "txn_1",
        "subscription_id": "sub_1",
        "billing_account_id": "acct_1",
        "user_id": "user_1",
        "amount": Decimal("29.99"),
        "currency": "usd",
        "reason": "card_declined",
        "reason_details": None,
        "attempt_number": 1,
        "max_attempts": 3,
        "next_retry_at": T0,
        "grace_period_ends": T0 + timedelta(days=7),
        "resolved": False,
        "resolved_at": None,
        "resolution_method": None,
        "exhausted": False,
        "exhausted_at": None,
        "created_at": T0,
        "updated_at": T0,
    }
    row.update(overrides)
    return row


def new_failure():
    return PaymentFailure(
        id="fail_2",
        transaction_id="txn_2",
        billing_account_id="acct_1",
        user_id="user_1",
        amount=Decimal("29.99"),
        currency="usd",
        reason=PaymentFailureReason.CARD_DECLINED,
        created_at=T0,
    )


class TestBillingAccountRepository:

    @pytest.mark.asyncio
    async def test_transition_is_conditional_on_source_states(self):
        pool = RecordingPool([account_row("past_due")])
        repo = BillingAccountRepository(pool)

        account = await repo.transition_status(
            "acct_1",
            BillingAccountStatus.PAST_DUE,
            [BillingAccountStatus.ACTIVE, BillingAccountStatus.TRIALING],
        )

        query, args = pool.calls[0]
        assert "SET status = $1, updated_at = $2" in query
        assert "WHERE id = $3 AND (status = ANY($4::text[]))" in query
        assert args[0] == "past_due"
        assert args[2:] == ["acct_1", ["active", "trialing"]]
        assert account.status == BillingAccountStatus.PAST_DUE

    @pytest.mark.asyncio
    async def test_lost_race_returns_none(self):
        repo = BillingAccountRepository(RecordingPool())

        assert await repo.transition_status("acct_1", BillingAccountStatus.SUSPENDED, [BillingAccountStatus.PAST_DUE]) is None

    @pytest.mark.asyncio
    async def test_update_fields_skips_canceled(self):
        pool = RecordingPool([account_row("active")])
        repo = BillingAccountRepository(pool)

        await repo.update_fields("acct_1", {"next_billing_date": T0, "cancel_at_period_end": True})

        query, args = pool.calls[0]
        assert "WHERE id = $4 AND (status <> $5)" in query
        assert args[3:] == ["acct_1", "canceled"]

    @pytest.mark.asyncio
    async def test_update_fields_rejects_status(self):
        repo = BillingAccountRepository(RecordingPool())
        with pytest.raises(ValueError):
            await repo.update_fields("acct_1", {"status": BillingAccountStatus.ACTIVE})


class TestPaymentFailureRepository:

    @pytest.mark.asyncio
    async def test_create_if_no_open_uses_partial_unique_index(self):
        pool = RecordingPool([failure_row(id="fail_2")])
        repo = PaymentFailureRepository(pool)

        failure, created = await repo.create_if_no_open(new_failure())

        assert created is True
        assert failure.id == "fail_2"
        query, _ = pool.calls[0]
        assert "ON CONFLICT (billing_account_id) WHERE resolved = FALSE AND exhausted = FALSE DO NOTHING" in query

    @pytest.mark.asyncio
    async def test_create_if_no_open_returns_existing(self):
        pool = RecordingPool([None, failure_row()])
        repo = PaymentFailureRepository(pool)

        failure, created = await repo.create_if_no_open(new_failure())

        assert created is False
        assert failure.id == "fail_1"
        assert len(pool.calls) == 2

    @pytest.mark.asyncio
    async def test_claim_retry_condition(self):
        pool = RecordingPool([failure_row()])
        repo = PaymentFailureRepository(pool)
        lease = T0 + timedelta(minutes=10)

        await repo.claim_retry("fail_1", 2, T0, lease)

        query, args = pool.calls[0]
        assert "SET next_retry_at = $1, updated_at = $2" in query
        assert "resolved = FALSE AND exhausted = FALSE AND attempt_number = $4 AND next_retry_at <= $5" in query
        assert args[0] == lease
        assert args[2:] == ["fail_1", 2, T0]

    @pytest.mark.asyncio
    async def test_resolve_writes_enum_value(self):
        pool = RecordingPool([failure_row(resolved=True, resolution_method="manual_payment")])
        repo = PaymentFailureRepository(pool)

        failure = await repo.resolve("fail_1", ResolutionMethod.MANUAL_PAYMENT, T0)

        _, args = pool.calls[0]
        assert "manual_payment" in args
        assert failure.resolution_method == ResolutionMethod.MANUAL_PAYMENT

    @pytest.mark.asyncio
    async def test_list_due(self):
        pool = RecordingPool([failure_row()])
        repo = PaymentFailureRepository(pool)

        due = await repo.list_due(T0, limit=10)

        query, args = pool.calls[0]
        assert "next_retry_at <= $1" in query
        assert "ORDER BY next_retry_at ASC LIMIT $2" in query
        assert args == [T0, 10]
        assert [failure.id for failure in due] == ["fail_1"]


class TestWebhookEventRepository:

    @pytest.mark.asyncio
    async def test_claim_inserts_once(self):
        pool = RecordingPool()
        repo = WebhookEventRepository(pool)

        assert await repo.claim("stripe", "evt_1", "invoice.paid", 3, T0) is None

        query, _ = pool.calls[0]
        assert "ON CONFLICT (processor_type, event_id) DO NOTHING" in query
        assert "updated_at" not in query

    @pytest.mark.asyncio
    async def test_reclaim_guards(self):
        pool = RecordingPool()
        repo = WebhookEventRepository(pool)

        await repo.reclaim("stripe", "evt_1", T0, T0 - timedelta(minutes=5))

        query, args = pool.calls[0]
        assert "retry_count = retry_count + 1" in query
        assert "processed = FALSE AND retry_count < max_retries" in query
        assert "(in_progress = FALSE OR claimed_at < $4)" in query
        assert args == ["stripe", "evt_1", T0, T0 - timedelta(minutes=5)]

    @pytest.mark.asyncio
    async def test_mark_failed_truncates_error(self):
        pool = RecordingPool()
        repo = WebhookEventRepository(pool)

        await repo.mark_failed("stripe", "evt_1", "x" * 5000)

        _, args = pool.calls[0]
        assert len(args[2]) == 2000


class TestDisputeRepository:

    @pytest.mark.asyncio
    async def test_workflow_update_checks_version(self):
        pool = RecordingPool()
        repo = DisputeRepository(pool)

        workflow = DisputeWorkflow.for_deadline("d1", T0)
        assert await repo.update_workflow("d1", workflow, 4) is None

        query, args = pool.calls[0]
        assert "(workflow->>'version')::int = $4" in query
        assert args[-1] == 4

    @pytest.mark.asyncio
    async def test_append_evidence_is_atomic(self):
        pool = RecordingPool()
        repo = DisputeRepository(pool)
        evidence = DisputeEvidence(id="e1", type=EvidenceType.RECEIPT, description="Invoice", submitted_at=T0)

        await repo.append_evidence("d1", evidence)

        query, args = pool.calls[0]
        assert "evidence_submitted = evidence_submitted || $2::jsonb" in query
        assert args == ["d1", [evidence.to_dict()]]

    @pytest.mark.asyncio
    async def test_unique_violation_maps_to_conflict(self):
        error = asyncpg.UniqueViolationError("duplicate key")
        error.constraint_name = "dispute_cases_processor_dispute_id_key"
        repo = DisputeRepository(RecordingPool(error=error))
        case = DisputeCase(
            id="d1",
            case_number="DISP-1-AAAAAA",
            transaction_id="txn_1",
            dispute_type=DisputeType.FRAUD,
            dispute_amount=Decimal("10.00"),
            respond_by_date=T0,
            workflow=DisputeWorkflow.for_deadline("d1", T0),
        )

        with pytest.raises(PersistenceConflictError) as exc_info:
            await repo.create(case)
        assert exc_info.value.condition == "processor_dispute_id unique"
