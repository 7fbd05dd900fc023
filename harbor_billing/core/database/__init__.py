# ===================================================================
# HarborList Billing - Database Layer
# PostgreSQL + asyncpg implementation
# ===================================================================
"""
Database access layer for the billing engine.

Usage:
    from harbor_billing.core.database import init_db_pool, BillingAccountRepository

    pool = await init_db_pool(settings.database_url, apply_schema=True)
    accounts = BillingAccountRepository(pool)
    account = await accounts.get_by_id(account_id)
"""

from .connection import DatabasePool, init_db_pool
from .base_repository import BaseRepository
from .billing_account_repository import BillingAccountRepository
from .payment_failure_repository import PaymentFailureRepository
from .transaction_repository import TransactionRepository
from .user_repository import UserRepository
from .dispute_repository import DisputeRepository
from .webhook_event_repository import WebhookEventRepository
from .dunning_schedule_repository import DunningScheduleRepository

__all__ = [
    # Connection
    "DatabasePool",
    "init_db_pool",
    # Repositories
    "BaseRepository",
    "BillingAccountRepository",
    "PaymentFailureRepository",
    "TransactionRepository",
    "UserRepository",
    "DisputeRepository",
    "WebhookEventRepository",
    "DunningScheduleRepository",
]
