# ===================================================================
# HarborList Billing - Billing Models
# Data models for accounts, failures, dunning, disputes and webhooks
# ===================================================================
"""
Billing data models.

Entities are plain dataclasses; the repositories in
``harbor_billing.core.database`` map them to and from PostgreSQL rows.
Closed vocabularies are ``str`` enums so they serialize as their value.
"""

import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _money(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


CENTS = Decimal("0.01")


def to_decimal(value: Any) -> Decimal:
    """Coerce an amount (int, float, str or Decimal) to a 2-place Decimal."""
    if isinstance(value, Decimal):
        return value.quantize(CENTS, rounding=ROUND_HALF_UP)
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


# ===================================================================
# Enums
# ===================================================================

class BillingAccountStatus(str, Enum):
    """Billing account lifecycle states."""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    SUSPENDED = "suspended"
    CANCELED = "canceled"


class PaymentFailureReason(str, Enum):
    """Locally classified cause of a failed payment."""
    INSUFFICIENT_FUNDS = "insufficient_funds"
    CARD_DECLINED = "card_declined"
    EXPIRED_CARD = "expired_card"
    INVALID_CARD = "invalid_card"
    PROCESSING_ERROR = "processing_error"
    FRAUD_SUSPECTED = "fraud_suspected"
    AUTHENTICATION_REQUIRED = "authentication_required"
    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"

    @classmethod
    def from_processor_code(cls, code: Optional[str]) -> "PaymentFailureReason":
        """
        Classify a raw processor decline code.

        Unrecognized or missing codes map to UNKNOWN; raw codes are
        never exposed beyond this point.
        """
        if not code:
            return cls.UNKNOWN
        return PROCESSOR_CODE_REASONS.get(code.lower(), cls.UNKNOWN)


PROCESSOR_CODE_REASONS: Dict[str, PaymentFailureReason] = {
    "insufficient_funds": PaymentFailureReason.INSUFFICIENT_FUNDS,
    "insufficient_balance": PaymentFailureReason.INSUFFICIENT_FUNDS,
    "card_declined": PaymentFailureReason.CARD_DECLINED,
    "generic_decline": PaymentFailureReason.CARD_DECLINED,
    "expired_card": PaymentFailureReason.EXPIRED_CARD,
    "invalid_card": PaymentFailureReason.INVALID_CARD,
    "invalid_number": PaymentFailureReason.INVALID_CARD,
    "incorrect_number": PaymentFailureReason.INVALID_CARD,
    "fraudulent": PaymentFailureReason.FRAUD_SUSPECTED,
    "suspected_fraud": PaymentFailureReason.FRAUD_SUSPECTED,
    "authentication_required": PaymentFailureReason.AUTHENTICATION_REQUIRED,
    "processing_error": PaymentFailureReason.PROCESSING_ERROR,
}


class ResolutionMethod(str, Enum):
    """How a payment failure was closed."""
    RETRY_SUCCESS = "retry_success"
    MANUAL_PAYMENT = "manual_payment"
    PLAN_CHANGE = "plan_change"
    CANCELLATION = "cancellation"


class TransactionType(str, Enum):
    PAYMENT = "payment"
    REFUND = "refund"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    DISPUTED = "disputed"


class DunningAction(str, Enum):
    """Actions a dunning step may take."""
    EMAIL = "email"
    SMS = "sms"
    RETRY_PAYMENT = "retry_payment"
    SUSPEND_SERVICE = "suspend_service"
    CANCEL_SUBSCRIPTION = "cancel_subscription"


class DisputeType(str, Enum):
    CHARGEBACK = "chargeback"
    INQUIRY = "inquiry"
    FRAUD = "fraud"
    AUTHORIZATION = "authorization"
    PROCESSING_ERROR = "processing_error"

    @classmethod
    def from_processor_reason(cls, reason: Optional[str]) -> "DisputeType":
        """Map a processor dispute reason onto a local dispute type."""
        return DISPUTE_REASON_TYPES.get((reason or "").lower(), cls.INQUIRY)


DISPUTE_REASON_TYPES: Dict[str, DisputeType] = {
    "fraudulent": DisputeType.FRAUD,
    "subscription_canceled": DisputeType.CHARGEBACK,
    "product_unacceptable": DisputeType.CHARGEBACK,
    "product_not_received": DisputeType.CHARGEBACK,
    "duplicate": DisputeType.PROCESSING_ERROR,
    "credit_not_processed": DisputeType.PROCESSING_ERROR,
    "authorization": DisputeType.AUTHORIZATION,
}


class DisputePriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class DisputeStatus(str, Enum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


class EvidenceType(str, Enum):
    RECEIPT = "receipt"
    COMMUNICATION = "communication"
    SHIPPING = "shipping"
    REFUND = "refund"
    OTHER = "other"


class WorkflowStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    EVIDENCE_SUBMITTED = "evidence_submitted"
    RESOLVED = "resolved"
    LOST = "lost"


class WorkflowStepId(str, Enum):
    EVIDENCE_COLLECTION = "evidence_collection"
    EVIDENCE_REVIEW = "evidence_review"
    EVIDENCE_SUBMISSION = "evidence_submission"


class WebhookAction(str, Enum):
    """Normalized webhook actions produced by processor adapters."""
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice_payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    DISPUTE_CREATED = "dispute_created"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "WebhookAction":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


# ===================================================================
# Pure helpers
# ===================================================================

PROCESSING_FEE_RATE = Decimal("0.029")
PROCESSING_FEE_FIXED = Decimal("0.30")


def calculate_processing_fees(amount: Decimal) -> Decimal:
    """Standard card processing fee: 2.9% + 0.30."""
    return to_decimal(to_decimal(amount) * PROCESSING_FEE_RATE + PROCESSING_FEE_FIXED)


def dispute_priority_for_amount(amount: Any) -> DisputePriority:
    """Priority is a pure function of the disputed amount."""
    amount = to_decimal(amount)
    if amount > 1000:
        return DisputePriority.HIGH
    if amount > 500:
        return DisputePriority.MEDIUM
    return DisputePriority.LOW


_CASE_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def generate_case_number(now: Optional[datetime] = None, rng: Optional[random.Random] = None) -> str:
    """
    Human-readable dispute case number: ``DISP-<epoch ms>-<6 chars>``.

    Uniqueness is enforced by the store; callers retry on collision.
    """
    millis = int(now.timestamp() * 1000) if now else int(time.time() * 1000)
    chooser = rng or random.SystemRandom()
    suffix = "".join(chooser.choice(_CASE_SUFFIX_ALPHABET) for _ in range(6))
    return f"DISP-{millis}-{suffix}"


# ===================================================================
# Billing Account & Entitlements
# ===================================================================

@dataclass
class BillingAccount:
    """
    One billing account per subscribing user.

    Status changes go through BillingStateMachine only.
    """
    id: str
    user_id: str
    customer_id: str
    payment_method_id: Optional[str] = None
    subscription_id: Optional[str] = None
    plan: str = "premium_individual"
    amount: Decimal = Decimal("0.00")
    currency: str = "usd"
    status: BillingAccountStatus = BillingAccountStatus.ACTIVE
    next_billing_date: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "customer_id": self.customer_id,
            "subscription_id": self.subscription_id,
            "plan": self.plan,
            "amount": _money(self.amount),
            "currency": self.currency,
            "status": self.status.value,
            "next_billing_date": _iso(self.next_billing_date),
            "canceled_at": _iso(self.canceled_at),
            "cancel_at_period_end": self.cancel_at_period_end,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class UserEntitlements:
    """Premium flags stored on the user record."""
    user_id: str
    premium_active: bool = False
    premium_plan: Optional[str] = None
    premium_expires_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "premium_active": self.premium_active,
            "premium_plan": self.premium_plan,
            "premium_expires_at": _iso(self.premium_expires_at),
        }


# ===================================================================
# Payment Failure Ledger & Transactions
# ===================================================================

@dataclass
class PaymentFailure:
    """
    A failed payment attempt chain.

    At most one failure per billing account is open at a time, where
    open means neither resolved nor exhausted.
    """
    id: str
    transaction_id: str
    billing_account_id: str
    user_id: str
    amount: Decimal
    currency: str
    reason: PaymentFailureReason
    subscription_id: Optional[str] = None
    reason_details: Optional[str] = None
    attempt_number: int = 1
    max_attempts: int = 3
    next_retry_at: Optional[datetime] = None
    grace_period_ends: Optional[datetime] = None
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolution_method: Optional[ResolutionMethod] = None
    exhausted: bool = False
    exhausted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return not self.resolved and not self.exhausted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "subscription_id": self.subscription_id,
            "billing_account_id": self.billing_account_id,
            "user_id": self.user_id,
            "amount": _money(self.amount),
            "currency": self.currency,
            "reason": self.reason.value,
            "attempt_number": self.attempt_number,
            "max_attempts": self.max_attempts,
            "next_retry_at": _iso(self.next_retry_at),
            "grace_period_ends": _iso(self.grace_period_ends),
            "resolved": self.resolved,
            "resolved_at": _iso(self.resolved_at),
            "resolution_method": self.resolution_method.value if self.resolution_method else None,
            "exhausted": self.exhausted,
            "exhausted_at": _iso(self.exhausted_at),
            "created_at": _iso(self.created_at),
        }


@dataclass
class Transaction:
    """A payment or refund recorded against a billing account."""
    id: str
    type: TransactionType
    amount: Decimal
    currency: str
    status: TransactionStatus
    user_id: Optional[str] = None
    billing_account_id: Optional[str] = None
    processor_transaction_id: Optional[str] = None
    description: Optional[str] = None
    fees: Decimal = Decimal("0.00")
    net_amount: Decimal = Decimal("0.00")
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "amount": _money(self.amount),
            "currency": self.currency,
            "status": self.status.value,
            "user_id": self.user_id,
            "billing_account_id": self.billing_account_id,
            "processor_transaction_id": self.processor_transaction_id,
            "description": self.description,
            "fees": _money(self.fees),
            "net_amount": _money(self.net_amount),
            "metadata": self.metadata,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
        }


# ===================================================================
# Dunning
# ===================================================================

@dataclass(frozen=True)
class DunningStep:
    """
    One step of a dunning campaign.

    ``conditions`` may hold ``min_failure_count``, ``max_failure_count``
    and ``customer_tier`` (a list of plan identifiers).
    """
    step_id: str
    delay_days: int
    action: DunningAction
    template_id: Optional[str] = None
    conditions: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class DunningCampaign:
    id: str
    name: str
    failure_reasons: List[PaymentFailureReason]
    steps: List[DunningStep]
    subscription_types: List[str] = field(default_factory=list)
    active: bool = True

    def ordered_steps(self) -> List[DunningStep]:
        return sorted(self.steps, key=lambda step: step.delay_days)

    def get_step(self, step_id: str) -> Optional[DunningStep]:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None


@dataclass
class DunningStepSchedule:
    """Durable due-time record for a delayed dunning step."""
    id: str
    failure_id: str
    campaign_id: str
    step_id: str
    execute_at: datetime
    executed: bool = False
    executed_at: Optional[datetime] = None
    outcome: Optional[str] = None
    created_at: Optional[datetime] = None


# ===================================================================
# Disputes
# ===================================================================

@dataclass
class DisputeEvidence:
    id: str
    type: EvidenceType
    description: str
    submitted_at: datetime
    file_url: Optional[str] = None
    submitted_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "description": self.description,
            "file_url": self.file_url,
            "submitted_at": _iso(self.submitted_at),
            "submitted_by": self.submitted_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DisputeEvidence":
        return cls(
            id=data["id"],
            type=EvidenceType(data["type"]),
            description=data["description"],
            file_url=data.get("file_url"),
            submitted_at=datetime.fromisoformat(data["submitted_at"]),
            submitted_by=data.get("submitted_by"),
        )


@dataclass
class DisputeWorkflowStep:
    step_id: WorkflowStepId
    name: str
    due_date: datetime
    completed: bool = False
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id.value,
            "name": self.name,
            "due_date": _iso(self.due_date),
            "completed": self.completed,
            "completed_at": _iso(self.completed_at),
            "completed_by": self.completed_by,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DisputeWorkflowStep":
        completed_at = data.get("completed_at")
        return cls(
            step_id=WorkflowStepId(data["step_id"]),
            name=data["name"],
            due_date=datetime.fromisoformat(data["due_date"]),
            completed=data.get("completed", False),
            completed_at=datetime.fromisoformat(completed_at) if completed_at else None,
            completed_by=data.get("completed_by"),
            notes=data.get("notes"),
        )


# (step id, display name, offset before the response deadline)
WORKFLOW_STEP_TEMPLATE = [
    (WorkflowStepId.EVIDENCE_COLLECTION, "Collect Evidence", timedelta(hours=24)),
    (WorkflowStepId.EVIDENCE_REVIEW, "Review Evidence", timedelta(hours=12)),
    (WorkflowStepId.EVIDENCE_SUBMISSION, "Submit Evidence", timedelta(0)),
]


@dataclass
class DisputeWorkflow:
    """
    Evidence workflow attached to a dispute case.

    Steps complete strictly in order; ``version`` guards concurrent
    step completion.
    """
    id: str
    dispute_id: str
    steps: List[DisputeWorkflowStep]
    due_date: datetime
    current_step: Optional[WorkflowStepId] = WorkflowStepId.EVIDENCE_COLLECTION
    status: WorkflowStatus = WorkflowStatus.PENDING
    assigned_to: Optional[str] = None
    version: int = 0

    @classmethod
    def for_deadline(cls, dispute_id: str, respond_by_date: datetime) -> "DisputeWorkflow":
        steps = [
            DisputeWorkflowStep(step_id=step_id, name=name, due_date=respond_by_date - offset)
            for step_id, name, offset in WORKFLOW_STEP_TEMPLATE
        ]
        return cls(
            id=new_id(),
            dispute_id=dispute_id,
            steps=steps,
            due_date=respond_by_date,
            current_step=steps[0].step_id,
        )

    def first_incomplete_step(self) -> Optional[DisputeWorkflowStep]:
        for step in self.steps:
            if not step.completed:
                return step
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "dispute_id": self.dispute_id,
            "current_step": self.current_step.value if self.current_step else None,
            "status": self.status.value,
            "assigned_to": self.assigned_to,
            "due_date": _iso(self.due_date),
            "version": self.version,
            "steps": [step.to_dict() for step in self.steps],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DisputeWorkflow":
        current = data.get("current_step")
        return cls(
            id=data["id"],
            dispute_id=data["dispute_id"],
            steps=[DisputeWorkflowStep.from_dict(step) for step in data.get("steps", [])],
            due_date=datetime.fromisoformat(data["due_date"]),
            current_step=WorkflowStepId(current) if current else None,
            status=WorkflowStatus(data.get("status", WorkflowStatus.PENDING.value)),
            assigned_to=data.get("assigned_to"),
            version=int(data.get("version", 0)),
        )


@dataclass
class DisputeCase:
    id: str
    case_number: str
    transaction_id: str
    dispute_type: DisputeType
    dispute_amount: Decimal
    respond_by_date: datetime
    workflow: DisputeWorkflow
    priority: DisputePriority = DisputePriority.LOW
    currency: str = "usd"
    user_id: Optional[str] = None
    processor_dispute_id: Optional[str] = None
    dispute_reason: Optional[str] = None
    dispute_date: Optional[datetime] = None
    dispute_status: DisputeStatus = DisputeStatus.OPEN
    evidence_required: List[EvidenceType] = field(default_factory=list)
    evidence_submitted: List[DisputeEvidence] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "case_number": self.case_number,
            "transaction_id": self.transaction_id,
            "processor_dispute_id": self.processor_dispute_id,
            "user_id": self.user_id,
            "dispute_type": self.dispute_type.value,
            "dispute_reason": self.dispute_reason,
            "dispute_amount": _money(self.dispute_amount),
            "currency": self.currency,
            "dispute_date": _iso(self.dispute_date),
            "respond_by_date": _iso(self.respond_by_date),
            "priority": self.priority.value,
            "dispute_status": self.dispute_status.value,
            "evidence_required": [kind.value for kind in self.evidence_required],
            "evidence_submitted": [evidence.to_dict() for evidence in self.evidence_submitted],
            "workflow": self.workflow.to_dict(),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# ===================================================================
# Webhooks
# ===================================================================

@dataclass
class ProcessedWebhookEvent:
    """Ledger row for a webhook delivery, unique on (processor_type, event_id)."""
    event_id: str
    processor_type: str
    event_type: str
    processed: bool = False
    processed_at: Optional[datetime] = None
    in_progress: bool = True
    claimed_at: Optional[datetime] = None
    retry_count: int = 0
    max_retries: int = 3
    error: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def retries_exhausted(self) -> bool:
        return self.retry_count >= self.max_retries


@dataclass
class WebhookEvent:
    """A signature-verified processor event."""
    id: str
    type: str
    data: Dict[str, Any]
    created: Optional[datetime] = None


@dataclass
class WebhookHandlingResult:
    """Normalized classification of a processor event."""
    handled: bool
    action: WebhookAction = WebhookAction.UNKNOWN
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookResponse:
    received: bool = True
    processed: bool = False
    duplicate: Optional[bool] = None
    event_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"received": self.received, "processed": self.processed}
        if self.duplicate is not None:
            body["duplicate"] = self.duplicate
        if self.error:
            body["error"] = self.error
        return body


# ===================================================================
# Processor results & run summaries
# ===================================================================

@dataclass
class PaymentResult:
    """Successful charge returned by a processor adapter."""
    processor_transaction_id: str
    status: str = "succeeded"
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    raw_status: Optional[str] = None


@dataclass
class RetryRunSummary:
    processed: int = 0
    recovered: int = 0
    rescheduled: int = 0
    exhausted: int = 0
    reconciled: int = 0
    skipped: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "recovered": self.recovered,
            "rescheduled": self.rescheduled,
            "exhausted": self.exhausted,
            "reconciled": self.reconciled,
            "skipped": self.skipped,
            "errors": self.errors,
        }


@dataclass
class DunningRunSummary:
    executed: int = 0
    skipped: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"executed": self.executed, "skipped": self.skipped, "errors": self.errors}
