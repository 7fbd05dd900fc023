# ═══════════════════════════════════════════════════════════════
# HarborList Billing - Pytest Configuration
# Shared fixtures and configuration for tests
# ═══════════════════════════════════════════════════════════════

import pytest

from harbor_billing.core.billing.engine import BillingRepositories, build_engine
from harbor_billing.core.config import Settings

from fakes import (
    FakeBillingAccountRepository,
    FakeClock,
    FakeDisputeRepository,
    FakeDunningScheduleRepository,
    FakeNotifier,
    FakePaymentFailureRepository,
    FakeProcessor,
    FakeTransactionRepository,
    FakeUserRepository,
    FakeWebhookEventRepository,
    JOB_TOKEN,
    make_account,
)


def pytest_configure(config):
    """Configure pytest."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        payment_processor="stripe",
        retry_job_token=JOB_TOKEN,
        notification_webhook_url=None,
        database_apply_schema=False,
    )


@pytest.fixture
def repos():
    return BillingRepositories(
        accounts=FakeBillingAccountRepository(),
        failures=FakePaymentFailureRepository(),
        transactions=FakeTransactionRepository(),
        users=FakeUserRepository(),
        disputes=FakeDisputeRepository(),
        webhook_events=FakeWebhookEventRepository(),
        dunning_schedules=FakeDunningScheduleRepository(),
    )


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def engine(settings, repos, processor, notifier, clock):
    return build_engine(
        settings,
        repositories=repos,
        processors={"stripe": processor},
        notifier=notifier,
        clock=clock,
    )


@pytest.fixture
def account(repos):
    return make_account(repos)
