# ===================================================================
# HarborList Billing - Engine Wiring
# Builds the billing components from settings and a database pool
# ===================================================================
"""
Billing engine composition.

Components receive their collaborators explicitly; ``build_engine`` is
the single place they are wired together, once at start-up.

Usage:
    pool = await init_db_pool(settings.database_url)
    engine = build_engine(settings, pool=pool)
    summary = await engine.retry_scheduler.process_retry_attempts()
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from ..config import Settings
from ..database import (
    BillingAccountRepository,
    DatabasePool,
    DisputeRepository,
    DunningScheduleRepository,
    PaymentFailureRepository,
    TransactionRepository,
    UserRepository,
    WebhookEventRepository,
)
from ..exceptions import ConfigurationError
from .disputes import DisputeManager
from .dunning import DunningEngine
from .models import utcnow
from .notifications import NotificationService
from .processor import PaymentProcessor, StripePaymentProcessor
from .retry_scheduler import RetryPolicy, RetryScheduler
from .state_machine import BillingStateMachine
from .webhooks import WebhookPipeline

logger = logging.getLogger("harbor_billing.engine")


@dataclass
class BillingRepositories:
    """Persistence ports used by the engine."""
    accounts: object
    failures: object
    transactions: object
    users: object
    disputes: object
    webhook_events: object
    dunning_schedules: object

    @classmethod
    def from_pool(cls, pool: DatabasePool) -> "BillingRepositories":
        return cls(
            accounts=BillingAccountRepository(pool),
            failures=PaymentFailureRepository(pool),
            transactions=TransactionRepository(pool),
            users=UserRepository(pool),
            disputes=DisputeRepository(pool),
            webhook_events=WebhookEventRepository(pool),
            dunning_schedules=DunningScheduleRepository(pool),
        )


@dataclass
class BillingEngine:
    """Wired billing components."""
    settings: Settings
    repositories: BillingRepositories
    processors: Dict[str, PaymentProcessor]
    notifier: NotificationService
    state_machine: BillingStateMachine
    dunning: DunningEngine
    retry_scheduler: RetryScheduler
    disputes: DisputeManager
    webhooks: WebhookPipeline

    async def close(self) -> None:
        await self.notifier.close()


def build_processors(settings: Settings) -> Dict[str, PaymentProcessor]:
    """Processor adapters keyed by processor type."""
    processors: Dict[str, PaymentProcessor] = {}
    if settings.stripe_secret_key:
        processors["stripe"] = StripePaymentProcessor(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            timeout_seconds=settings.processor_timeout_seconds,
        )
    else:
        logger.warning("STRIPE_SECRET_KEY not set; Stripe processor disabled")
    return processors


def build_engine(
    settings: Settings,
    pool: Optional[DatabasePool] = None,
    repositories: Optional[BillingRepositories] = None,
    processors: Optional[Dict[str, PaymentProcessor]] = None,
    notifier: Optional[NotificationService] = None,
    clock: Callable[[], datetime] = utcnow,
) -> BillingEngine:
    """
    Wire the billing components.

    Args:
        settings: Application settings
        pool: Database pool (used when ``repositories`` is not given)
        repositories: Pre-built repositories
        processors: Processor adapters keyed by type (default: from settings)
        notifier: Notification service (default: from settings)
        clock: Source of the current time

    Raises:
        ConfigurationError: No repositories or no adapter for the
            configured payment processor
    """
    if repositories is None:
        if pool is None:
            raise ConfigurationError("database_url", "A database pool or repositories are required")
        repositories = BillingRepositories.from_pool(pool)

    if processors is None:
        processors = build_processors(settings)

    processor = processors.get(settings.payment_processor)
    if processor is None:
        raise ConfigurationError(
            "payment_processor",
            f"No adapter configured for payment processor '{settings.payment_processor}'"
        )

    if notifier is None:
        notifier = NotificationService(
            gateway_url=settings.notification_webhook_url,
            timeout_seconds=settings.notification_timeout_seconds,
        )

    state_machine = BillingStateMachine(repositories.accounts, repositories.users, clock=clock)

    dunning = DunningEngine(
        failures=repositories.failures,
        schedules=repositories.dunning_schedules,
        accounts=repositories.accounts,
        state_machine=state_machine,
        processor=processor,
        notifier=notifier,
        batch_limit=settings.retry_batch_limit,
        clock=clock,
    )

    retry_scheduler = RetryScheduler(
        failures=repositories.failures,
        accounts=repositories.accounts,
        transactions=repositories.transactions,
        state_machine=state_machine,
        dunning=dunning,
        processor=processor,
        policy=RetryPolicy.from_settings(settings),
        clock=clock,
    )

    disputes = DisputeManager(repositories.disputes, repositories.transactions, clock=clock)

    webhooks = WebhookPipeline(
        processors=processors,
        ledger=repositories.webhook_events,
        accounts=repositories.accounts,
        failures=repositories.failures,
        transactions=repositories.transactions,
        users=repositories.users,
        state_machine=state_machine,
        retry_scheduler=retry_scheduler,
        dispute_manager=disputes,
        max_retries=settings.webhook_max_retries,
        cache_size=settings.webhook_dedup_cache_size,
        claim_timeout=timedelta(seconds=settings.webhook_claim_timeout_seconds),
        clock=clock,
    )

    logger.info(
        f"Billing engine ready (processor={settings.payment_processor}, "
        f"max_attempts={settings.retry_max_attempts})"
    )

    return BillingEngine(
        settings=settings,
        repositories=repositories,
        processors=processors,
        notifier=notifier,
        state_machine=state_machine,
        dunning=dunning,
        retry_scheduler=retry_scheduler,
        disputes=disputes,
        webhooks=webhooks,
    )
