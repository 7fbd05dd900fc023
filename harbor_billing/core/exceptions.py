# ═══════════════════════════════════════════════════════════════
# HarborList Billing - Custom Exceptions
# Centralized exception handling for the billing engine
# ═══════════════════════════════════════════════════════════════

from typing import Any, Dict, List, Optional


class BillingException(Exception):
    """
    Base exception for all billing engine errors.

    All custom exceptions inherit from this class to enable
    unified error handling in services and API handlers.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Additional error details
        original_error: Original exception if wrapping another error
        status_code: HTTP status used when the error reaches the API layer
    """

    status_code: int = 500

    def __init__(
        self,
        message: str,
        error_code: str = "BILLING_ERROR",
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.original_error = original_error
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": True,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.error_code}, message='{self.message}')"


# ═══════════════════════════════════════════════════════════════
# Not Found Exceptions
# ═══════════════════════════════════════════════════════════════

class NotFoundError(BillingException):
    """Referenced entity does not exist."""

    status_code = 404

    def __init__(
        self,
        resource: str,
        resource_id: str,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=f"{resource} not found: {resource_id}",
            error_code="NOT_FOUND",
            details={
                "resource": resource,
                "resource_id": resource_id,
                **(details or {})
            }
        )
        self.resource = resource
        self.resource_id = resource_id


class BillingAccountNotFoundError(NotFoundError):
    """Billing account was not found."""

    def __init__(self, billing_account_id: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("Billing account", billing_account_id, details)
        self.error_code = "BILLING_ACCOUNT_NOT_FOUND"


class TransactionNotFoundError(NotFoundError):
    """Transaction was not found."""

    def __init__(self, transaction_id: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("Transaction", transaction_id, details)
        self.error_code = "TRANSACTION_NOT_FOUND"


class DisputeNotFoundError(NotFoundError):
    """Dispute case was not found."""

    def __init__(self, dispute_id: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("Dispute", dispute_id, details)
        self.error_code = "DISPUTE_NOT_FOUND"


class PaymentFailureNotFoundError(NotFoundError):
    """Payment failure record was not found."""

    def __init__(self, failure_id: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("Payment failure", failure_id, details)
        self.error_code = "PAYMENT_FAILURE_NOT_FOUND"


# ═══════════════════════════════════════════════════════════════
# Webhook Exceptions
# ═══════════════════════════════════════════════════════════════

class InvalidSignatureError(BillingException):
    """Webhook payload failed signature verification."""

    status_code = 401

    def __init__(
        self,
        message: str = "Invalid webhook signature",
        processor_type: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message=message,
            error_code="INVALID_SIGNATURE",
            details={"processor_type": processor_type},
            original_error=original_error
        )
        self.processor_type = processor_type


class UnsupportedProcessorError(BillingException):
    """No payment processor is configured for the requested type."""

    status_code = 400

    def __init__(self, processor_type: str, supported: List[str]):
        super().__init__(
            message=f"Unsupported payment processor: {processor_type}",
            error_code="UNSUPPORTED_PROCESSOR",
            details={"processor_type": processor_type, "supported": supported}
        )
        self.processor_type = processor_type


# ═══════════════════════════════════════════════════════════════
# Processor Exceptions
# ═══════════════════════════════════════════════════════════════

class ProcessorException(BillingException):
    """Base exception for payment processor call failures."""

    status_code = 502

    def __init__(
        self,
        message: str,
        processor_type: str = "unknown",
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        self.processor_type = processor_type
        super().__init__(
            message=message,
            error_code=f"PROCESSOR_ERROR_{processor_type.upper()}",
            details={"processor_type": processor_type, **(details or {})},
            original_error=original_error
        )


class ProcessorTransientError(ProcessorException):
    """Network error, timeout or 5xx from the processor. Always retryable."""

    def __init__(
        self,
        message: str = "Payment processor temporarily unavailable",
        processor_type: str = "unknown",
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message=message,
            processor_type=processor_type,
            details=details,
            original_error=original_error
        )
        self.error_code = "PROCESSOR_TRANSIENT"


class ProcessorDeclinedError(ProcessorException):
    """Card, funds or fraud decline from the processor."""

    status_code = 402

    def __init__(
        self,
        reason: str,
        message: str = "Payment declined",
        processor_type: str = "unknown",
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message=message,
            processor_type=processor_type,
            details={"reason": reason, **(details or {})},
            original_error=original_error
        )
        self.error_code = "PROCESSOR_DECLINED"
        self.reason = reason


# ═══════════════════════════════════════════════════════════════
# State & Persistence Exceptions
# ═══════════════════════════════════════════════════════════════

class PersistenceConflictError(BillingException):
    """A conditional write lost its race. Callers treat this as a no-op."""

    status_code = 409

    def __init__(
        self,
        entity: str,
        entity_id: str,
        condition: str,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=f"Conditional write on {entity} {entity_id} lost: {condition}",
            error_code="PERSISTENCE_CONFLICT",
            details={
                "entity": entity,
                "entity_id": entity_id,
                "condition": condition,
                **(details or {})
            }
        )
        self.entity = entity
        self.entity_id = entity_id
        self.condition = condition


class InvalidStateTransitionError(BillingException):
    """Billing account is in a state that does not allow the transition."""

    status_code = 409

    def __init__(
        self,
        billing_account_id: str,
        current_state: str,
        target_state: str,
        allowed_sources: List[str],
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=f"Cannot move billing account {billing_account_id} from "
                    f"'{current_state}' to '{target_state}', "
                    f"allowed sources: {allowed_sources}",
            error_code="INVALID_STATE_TRANSITION",
            details={
                "billing_account_id": billing_account_id,
                "current_state": current_state,
                "target_state": target_state,
                "allowed_sources": allowed_sources,
                **(details or {})
            }
        )
        self.current_state = current_state
        self.target_state = target_state
        self.allowed_sources = allowed_sources


class WorkflowStepOrderError(BillingException):
    """Dispute workflow steps must complete in order."""

    status_code = 409

    def __init__(self, dispute_id: str, step_id: str, current_step: Optional[str]):
        super().__init__(
            message=f"Step '{step_id}' cannot be completed for dispute {dispute_id}; "
                    f"current step is '{current_step}'",
            error_code="WORKFLOW_STEP_ORDER",
            details={
                "dispute_id": dispute_id,
                "step_id": step_id,
                "current_step": current_step,
            }
        )
        self.step_id = step_id
        self.current_step = current_step


# ═══════════════════════════════════════════════════════════════
# Validation & Security Exceptions
# ═══════════════════════════════════════════════════════════════

class ValidationException(BillingException):
    """Base exception for validation errors."""

    status_code = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Any = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.field = field
        self.value = value
        super().__init__(
            message=message,
            error_code="VALIDATION_ERROR",
            details={
                "field": field,
                "value": str(value) if value is not None else None,
                **(details or {})
            }
        )


class InvalidEvidenceTypeError(ValidationException):
    """Evidence type is not one of the supported evidence kinds."""

    def __init__(self, evidence_type: str, allowed: List[str]):
        super().__init__(
            message=f"Invalid evidence type: {evidence_type}",
            field="type",
            value=evidence_type,
            details={"allowed": allowed}
        )
        self.error_code = "INVALID_EVIDENCE_TYPE"


class AuthenticationError(BillingException):
    """Caller could not be authenticated."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message=message, error_code="AUTHENTICATION_ERROR")


class ConfigurationError(BillingException):
    """A required setting is missing."""

    status_code = 503

    def __init__(self, setting: str, message: Optional[str] = None):
        super().__init__(
            message=message or f"Billing engine is not configured: {setting}",
            error_code="CONFIGURATION_ERROR",
            details={"setting": setting}
        )
        self.setting = setting


# ═══════════════════════════════════════════════════════════════
# Utility Functions
# ═══════════════════════════════════════════════════════════════

def wrap_exception(
    original: Exception,
    message: Optional[str] = None
) -> BillingException:
    """
    Wrap a standard exception in a billing exception.

    Args:
        original: The original exception
        message: Optional custom message

    Returns:
        A BillingException wrapping the original
    """
    return BillingException(
        message=message or str(original),
        error_code="WRAPPED_ERROR",
        details={"original_type": type(original).__name__},
        original_error=original
    )
