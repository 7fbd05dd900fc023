# ═══════════════════════════════════════════════════════════════
# HarborList Billing - Retry Scheduler Tests
# Failure intake, backoff, retry outcomes and overlapping runs
# ═══════════════════════════════════════════════════════════════

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from harbor_billing.core.billing.models import (
    BillingAccountStatus,
    PaymentFailureReason,
    ResolutionMethod,
    TransactionStatus,
)
from harbor_billing.core.billing.retry_scheduler import RetryPolicy, compute_retry_delay
from harbor_billing.core.exceptions import (
    BillingAccountNotFoundError,
    PaymentFailureNotFoundError,
    ProcessorDeclinedError,
    ProcessorTransientError,
)

from fakes import T0, make_account


def declined(reason="card_declined"):
    return ProcessorDeclinedError(reason, processor_type="stripe")


# ═══════════════════════════════════════════════════════════════
# Backoff
# ═══════════════════════════════════════════════════════════════

class TestComputeRetryDelay:

    def test_default_policy(self):
        assert compute_retry_delay(1) == timedelta(hours=24)
        assert compute_retry_delay(2) == timedelta(hours=48)
        assert compute_retry_delay(3) == timedelta(hours=96)

    def test_past_budget_escalates(self):
        assert compute_retry_delay(4) is None

    def test_capped_at_max_delay(self):
        policy = RetryPolicy(max_attempts=6)
        assert compute_retry_delay(4, policy) == timedelta(days=7)
        assert compute_retry_delay(6, policy) == timedelta(days=7)

    def test_policy_from_settings(self, settings):
        policy = RetryPolicy.from_settings(settings)
        assert policy.max_attempts == 3
        assert policy.base_delay == timedelta(hours=24)
        assert policy.lease == timedelta(seconds=600)


# ═══════════════════════════════════════════════════════════════
# Failure intake
# ═══════════════════════════════════════════════════════════════

class TestHandlePaymentFailure:

    @pytest.mark.asyncio
    async def test_opens_failure_and_marks_past_due(self, engine, repos, account, notifier):
        failure = await engine.retry_scheduler.handle_payment_failure(
            "txn_1", account.id, PaymentFailureReason.CARD_DECLINED
        )

        assert failure.attempt_number == 1
        assert failure.max_attempts == 3
        assert failure.next_retry_at == T0 + timedelta(hours=24)
        assert failure.grace_period_ends == T0 + timedelta(days=7)
        assert failure.amount == Decimal("29.99")
        assert failure.subscription_id == "sub_1"
        assert failure.created_at == T0

        stored = await repos.accounts.get_by_id(account.id)
        assert stored.status == BillingAccountStatus.PAST_DUE
        assert notifier.templates() == ["payment_failed_immediate"]

    @pytest.mark.asyncio
    async def test_second_failure_returns_open_one(self, engine, repos, account, notifier):
        first = await engine.retry_scheduler.handle_payment_failure("txn_1", account.id, "card_declined")
        second = await engine.retry_scheduler.handle_payment_failure("txn_2", account.id, "insufficient_funds")

        assert second.id == first.id
        assert len(repos.failures.rows) == 1
        assert len(notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_concurrent_failures_open_one_record(self, engine, repos, account):
        results = await asyncio.gather(*[
            engine.retry_scheduler.handle_payment_failure(f"txn_{i}", account.id, "card_declined")
            for i in range(5)
        ])

        assert len({failure.id for failure in results}) == 1
        assert len(repos.failures.rows) == 1

    @pytest.mark.asyncio
    async def test_unknown_account(self, engine):
        with pytest.raises(BillingAccountNotFoundError):
            await engine.retry_scheduler.handle_payment_failure("txn_1", "missing", "card_declined")

    @pytest.mark.asyncio
    async def test_canceled_account_not_entered_into_recovery(self, engine, repos, notifier):
        account = make_account(repos, status=BillingAccountStatus.CANCELED)

        failure = await engine.retry_scheduler.handle_payment_failure("txn_x", account.id, "insufficient_funds")

        assert failure is None
        assert repos.failures.rows == {}
        assert repos.dunning_schedules.rows == {}
        assert notifier.sent == []
        assert (await repos.accounts.get_by_id(account.id)).status == BillingAccountStatus.CANCELED

    @pytest.mark.asyncio
    async def test_fraud_suspends_immediately(self, engine, repos, account, notifier):
        failure = await engine.retry_scheduler.handle_payment_failure(
            "txn_1", account.id, PaymentFailureReason.FRAUD_SUSPECTED
        )

        stored_failure = await repos.failures.get_by_id(failure.id)
        assert stored_failure.exhausted is True
        assert (await repos.accounts.get_by_id(account.id)).status == BillingAccountStatus.SUSPENDED
        assert (await repos.users.get_entitlements(account.user_id)).premium_active is False
        assert notifier.templates() == ["fraud_alert", "account_suspended"]


# ═══════════════════════════════════════════════════════════════
# Retry job
# ═══════════════════════════════════════════════════════════════

class TestProcessRetryAttempts:

    @pytest.mark.asyncio
    async def test_nothing_due(self, engine, account, processor):
        await engine.retry_scheduler.handle_payment_failure("txn_1", account.id, "card_declined")

        summary = await engine.retry_scheduler.process_retry_attempts()

        assert summary.processed == 0
        assert processor.charges == []

    @pytest.mark.asyncio
    async def test_successful_retry_recovers_account(self, engine, repos, account, processor, clock):
        failure = await engine.retry_scheduler.handle_payment_failure("txn_1", account.id, "card_declined")
        clock.advance(hours=24)

        summary = await engine.retry_scheduler.process_retry_attempts()

        assert summary.recovered == 1
        charge = processor.charges[0]
        assert charge["amount"] == Decimal("29.99")
        assert charge["payment_method_id"] == "pm_1"
        assert charge["idempotency_key"] == f"retry-{failure.id}-1"
        assert charge["metadata"]["original_failure_id"] == failure.id
        assert charge["metadata"]["retry_attempt"] == "1"
        assert charge["metadata"]["subscription_id"] == "sub_1"

        stored = await repos.failures.get_by_id(failure.id)
        assert stored.resolved is True
        assert stored.resolution_method == ResolutionMethod.RETRY_SUCCESS
        assert (await repos.accounts.get_by_id(account.id)).status == BillingAccountStatus.ACTIVE

        [transaction] = repos.transactions.rows.values()
        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.fees == Decimal("1.17")
        assert transaction.net_amount == Decimal("28.82")
        assert transaction.metadata["original_failure_id"] == failure.id

    @pytest.mark.asyncio
    async def test_decline_reschedules_with_backoff(self, engine, repos, account, processor, clock):
        failure = await engine.retry_scheduler.handle_payment_failure("txn_1", account.id, "card_declined")
        processor.charge_outcomes = [declined()]
        clock.advance(hours=24)

        summary = await engine.retry_scheduler.process_retry_attempts()

        assert summary.rescheduled == 1
        stored = await repos.failures.get_by_id(failure.id)
        assert stored.attempt_number == 2
        assert stored.next_retry_at == clock.now + timedelta(hours=48)
        assert stored.is_open

    @pytest.mark.asyncio
    async def test_transient_error_treated_as_decline(self, engine, repos, account, processor, clock):
        failure = await engine.retry_scheduler.handle_payment_failure("txn_1", account.id, "card_declined")
        processor.charge_outcomes = [ProcessorTransientError(processor_type="stripe")]
        clock.advance(hours=24)

        summary = await engine.retry_scheduler.process_retry_attempts()

        assert summary.rescheduled == 1
        assert (await repos.failures.get_by_id(failure.id)).attempt_number == 2

    @pytest.mark.asyncio
    async def test_all_attempts_fail_suspends_account(self, engine, repos, account, processor, clock):
        failure = await engine.retry_scheduler.handle_payment_failure("txn_1", account.id, "card_declined")
        processor.charge_outcomes = [declined(), declined(), declined()]

        for hours in (24, 48, 96):
            clock.advance(hours=hours)
            await engine.retry_scheduler.process_retry_attempts()

        assert len(processor.charges) == 3
        stored = await repos.failures.get_by_id(failure.id)
        assert stored.exhausted is True
        assert stored.attempt_number == 3
        assert (await repos.accounts.get_by_id(account.id)).status == BillingAccountStatus.SUSPENDED
        assert (await repos.users.get_entitlements(account.user_id)).premium_active is False

        clock.advance(days=30)
        summary = await engine.retry_scheduler.process_retry_attempts()
        assert summary.processed == 0
        assert len(processor.charges) == 3

    @pytest.mark.asyncio
    async def test_overlapping_runs_charge_once(self, engine, account, processor, clock):
        await engine.retry_scheduler.handle_payment_failure("txn_1", account.id, "card_declined")
        processor.charge_delay = 0.01
        clock.advance(hours=24)

        first, second = await asyncio.gather(
            engine.retry_scheduler.process_retry_attempts(),
            engine.retry_scheduler.process_retry_attempts(),
        )

        assert len(processor.charges) == 1
        assert first.recovered + second.recovered == 1
        assert first.skipped + second.skipped == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,method", [
        (BillingAccountStatus.ACTIVE, ResolutionMethod.MANUAL_PAYMENT),
        (BillingAccountStatus.CANCELED, ResolutionMethod.CANCELLATION),
    ])
    async def test_reconciles_without_charging(self, engine, repos, account, processor, clock, status, method):
        failure = await engine.retry_scheduler.handle_payment_failure("txn_1", account.id, "card_declined")
        repos.accounts.rows[account.id].status = status
        clock.advance(hours=24)

        summary = await engine.retry_scheduler.process_retry_attempts()

        assert summary.reconciled == 1
        assert processor.charges == []
        stored = await repos.failures.get_by_id(failure.id)
        assert stored.resolved is True
        assert stored.resolution_method == method

    @pytest.mark.asyncio
    async def test_one_bad_failure_does_not_stop_the_run(self, engine, repos, processor, clock):
        good = make_account(repos, suffix="good")
        bad = make_account(repos, suffix="bad")
        await engine.retry_scheduler.handle_payment_failure("txn_good", good.id, "card_declined")
        await engine.retry_scheduler.handle_payment_failure("txn_bad", bad.id, "card_declined")
        del repos.accounts.rows[bad.id]
        clock.advance(hours=24)

        summary = await engine.retry_scheduler.process_retry_attempts()

        assert summary.processed == 2
        assert summary.errors == 1
        assert summary.recovered == 1
        assert (await repos.accounts.get_by_id(good.id)).status == BillingAccountStatus.ACTIVE


# ═══════════════════════════════════════════════════════════════
# Manual resolution
# ═══════════════════════════════════════════════════════════════

class TestManualResolution:

    @pytest.mark.asyncio
    async def test_resolve_recovers_account(self, engine, repos, account):
        failure = await engine.retry_scheduler.handle_payment_failure("txn_1", account.id, "card_declined")

        resolved = await engine.retry_scheduler.resolve_payment_failure(failure.id, "manual_payment")

        assert resolved.resolved is True
        assert resolved.next_retry_at is None
        assert (await repos.accounts.get_by_id(account.id)).status == BillingAccountStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_cancellation_does_not_recover(self, engine, repos, account):
        failure = await engine.retry_scheduler.handle_payment_failure("txn_1", account.id, "card_declined")

        await engine.retry_scheduler.resolve_payment_failure(failure.id, ResolutionMethod.CANCELLATION)

        assert (await repos.accounts.get_by_id(account.id)).status == BillingAccountStatus.PAST_DUE

    @pytest.mark.asyncio
    async def test_resolving_twice_is_harmless(self, engine, account):
        failure = await engine.retry_scheduler.handle_payment_failure("txn_1", account.id, "card_declined")
        await engine.retry_scheduler.resolve_payment_failure(failure.id, "manual_payment")

        again = await engine.retry_scheduler.resolve_payment_failure(failure.id, "plan_change")

        assert again.resolution_method == ResolutionMethod.MANUAL_PAYMENT

    @pytest.mark.asyncio
    async def test_unknown_failure(self, engine):
        with pytest.raises(PaymentFailureNotFoundError):
            await engine.retry_scheduler.resolve_payment_failure("missing", "manual_payment")

    @pytest.mark.asyncio
    async def test_record_manual_payment(self, engine, repos, account):
        failure = await engine.retry_scheduler.handle_payment_failure("txn_1", account.id, "card_declined")

        resolved = await engine.retry_scheduler.record_manual_payment(account.id)

        assert resolved.id == failure.id
        assert resolved.resolution_method == ResolutionMethod.MANUAL_PAYMENT
        assert await repos.failures.get_open_for_account(account.id) is None
        assert (await repos.accounts.get_by_id(account.id)).status == BillingAccountStatus.ACTIVE
