# ═══════════════════════════════════════════════════════════════
# HarborList Billing - Billing Routes
# Webhook intake, scheduled jobs and dispute case endpoints
# ═══════════════════════════════════════════════════════════════
"""
Billing API endpoints.

Endpoints:
- POST /billing/webhooks/{processor_type} - Processor webhook intake
- POST /billing/webhook - Stripe webhook intake
- POST /billing/jobs/retry-payments - Run the payment retry job
- POST /billing/jobs/dunning-steps - Run due dunning steps
- GET /billing/disputes/{dispute_id} - Get a dispute case
- POST /billing/disputes/{dispute_id}/evidence - Submit dispute evidence
- POST /billing/disputes/{dispute_id}/workflow/steps/{step_id}/complete - Complete a workflow step
"""

import logging
import secrets
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..core.billing.engine import BillingEngine
from ..core.billing.models import utcnow
from ..core.exceptions import AuthenticationError, ConfigurationError
from ..core.logging import audit_logger

logger = logging.getLogger("harbor_billing.api.billing")
router = APIRouter(prefix="/billing", tags=["Billing"])


# ═══════════════════════════════════════════════════════════════
# Request Models
# ═══════════════════════════════════════════════════════════════

class EvidenceRequest(BaseModel):
    """Evidence submitted for a dispute."""
    type: str = Field(..., description="receipt, communication, shipping, refund or other")
    description: str = Field(..., min_length=1, description="What the evidence shows")
    file_url: Optional[str] = Field(None, description="Link to the uploaded file")


class CompleteStepRequest(BaseModel):
    """Completion of a dispute workflow step."""
    notes: Optional[str] = Field(None, description="Reviewer notes")


# ═══════════════════════════════════════════════════════════════
# Dependencies
# ═══════════════════════════════════════════════════════════════

def get_engine(request: Request) -> BillingEngine:
    """Get the BillingEngine from app state."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise ConfigurationError("engine", "Billing engine not initialized")
    return engine


def require_job_token(
    engine: BillingEngine = Depends(get_engine),
    authorization: Optional[str] = Header(None),
) -> None:
    """Bearer token check for the scheduled job endpoints."""
    expected = engine.settings.retry_job_token
    if not expected:
        raise ConfigurationError("retry_job_token")

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(token.encode(), expected.encode()):
        audit_logger.log_security_event("job_token_rejected", "Invalid or missing job token")
        raise AuthenticationError("Invalid or missing job token")


def require_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    """Caller identity set by the identity layer in front of this service."""
    if not x_user_id:
        raise AuthenticationError("Missing X-User-Id header")
    return x_user_id


# ═══════════════════════════════════════════════════════════════
# Webhook Endpoints
# ═══════════════════════════════════════════════════════════════

async def _handle_webhook(
    engine: BillingEngine,
    processor_type: str,
    request: Request,
    signature: Optional[str],
) -> JSONResponse:
    payload = await request.body()
    status_code, response = await engine.webhooks.handle_webhook(processor_type, payload, signature)
    return JSONResponse(status_code=status_code, content=response.to_dict())


@router.post("/webhooks/{processor_type}")
async def processor_webhook(
    processor_type: str,
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    engine: BillingEngine = Depends(get_engine),
):
    """
    Handle a processor webhook.

    Answers 500 when processing failed so the processor redelivers.
    """
    return await _handle_webhook(engine, processor_type, request, stripe_signature)


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    engine: BillingEngine = Depends(get_engine),
):
    """Handle Stripe webhook events."""
    return await _handle_webhook(engine, "stripe", request, stripe_signature)


# ═══════════════════════════════════════════════════════════════
# Scheduled Jobs
# ═══════════════════════════════════════════════════════════════

@router.post("/jobs/retry-payments", dependencies=[Depends(require_job_token)])
async def run_payment_retries(engine: BillingEngine = Depends(get_engine)) -> Dict[str, Any]:
    """Retry every due payment failure."""
    summary = await engine.retry_scheduler.process_retry_attempts()
    return {
        "message": "Payment retry processing completed",
        "processed_at": utcnow().isoformat(),
        "summary": summary.to_dict(),
    }


@router.post("/jobs/dunning-steps", dependencies=[Depends(require_job_token)])
async def run_dunning_steps(engine: BillingEngine = Depends(get_engine)) -> Dict[str, Any]:
    """Execute every due dunning step."""
    summary = await engine.dunning.process_due_dunning_steps()
    return {
        "message": "Dunning step processing completed",
        "processed_at": utcnow().isoformat(),
        "summary": summary.to_dict(),
    }


# ═══════════════════════════════════════════════════════════════
# Dispute Endpoints
# ═══════════════════════════════════════════════════════════════

@router.get("/disputes/{dispute_id}")
async def get_dispute(
    dispute_id: str,
    user_id: str = Depends(require_user_id),
    engine: BillingEngine = Depends(get_engine),
) -> Dict[str, Any]:
    case = await engine.disputes.get_dispute_case(dispute_id)
    return case.to_dict()


@router.post("/disputes/{dispute_id}/evidence", status_code=status.HTTP_201_CREATED)
async def submit_evidence(
    dispute_id: str,
    body: EvidenceRequest,
    user_id: str = Depends(require_user_id),
    engine: BillingEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """Attach evidence to a dispute; does not advance the workflow."""
    evidence = await engine.disputes.submit_dispute_evidence(
        dispute_id,
        {"type": body.type, "description": body.description, "file_url": body.file_url},
        submitted_by=user_id,
    )
    return evidence.to_dict()


@router.post("/disputes/{dispute_id}/workflow/steps/{step_id}/complete")
async def complete_workflow_step(
    dispute_id: str,
    step_id: str,
    body: Optional[CompleteStepRequest] = None,
    user_id: str = Depends(require_user_id),
    engine: BillingEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """Complete the current workflow step (steps complete in order)."""
    workflow = await engine.disputes.complete_workflow_step(
        dispute_id,
        step_id,
        completed_by=user_id,
        notes=body.notes if body else None,
    )
    return workflow.to_dict()
