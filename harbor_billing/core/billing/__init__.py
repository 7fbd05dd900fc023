# ===================================================================
# HarborList Billing - Billing Components
# ===================================================================
"""
Billing components.

The engine wiring lives in ``harbor_billing.core.billing.engine`` and is
imported explicitly, since it depends on the database layer.

Usage:
    from harbor_billing.core.billing.engine import build_engine

    engine = build_engine(settings, pool=pool)
    await engine.retry_scheduler.process_retry_attempts()
"""

from .models import (
    BillingAccount,
    BillingAccountStatus,
    DisputeCase,
    DisputeType,
    DunningAction,
    DunningCampaign,
    DunningStep,
    EvidenceType,
    PaymentFailure,
    PaymentFailureReason,
    ResolutionMethod,
    Transaction,
    TransactionStatus,
    WebhookAction,
    WorkflowStepId,
)
from .processor import PaymentProcessor, StripePaymentProcessor, normalize_stripe_event
from .notifications import NotificationService
from .state_machine import BillingStateMachine, BillingTransition
from .dunning import DunningEngine, STANDARD_DUNNING_CAMPAIGN, FRAUD_DUNNING_CAMPAIGN
from .retry_scheduler import RetryPolicy, RetryScheduler, compute_retry_delay
from .disputes import DisputeManager
from .webhooks import WebhookPipeline

__all__ = [
    # Models
    "BillingAccount",
    "BillingAccountStatus",
    "DisputeCase",
    "DisputeType",
    "DunningAction",
    "DunningCampaign",
    "DunningStep",
    "EvidenceType",
    "PaymentFailure",
    "PaymentFailureReason",
    "ResolutionMethod",
    "Transaction",
    "TransactionStatus",
    "WebhookAction",
    "WorkflowStepId",
    # Processor & notifications
    "PaymentProcessor",
    "StripePaymentProcessor",
    "normalize_stripe_event",
    "NotificationService",
    # Components
    "BillingStateMachine",
    "BillingTransition",
    "DunningEngine",
    "STANDARD_DUNNING_CAMPAIGN",
    "FRAUD_DUNNING_CAMPAIGN",
    "RetryPolicy",
    "RetryScheduler",
    "compute_retry_delay",
    "DisputeManager",
    "WebhookPipeline",
]
