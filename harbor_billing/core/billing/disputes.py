# ===================================================================
# HarborList Billing - Dispute Workflow Manager
# Chargeback cases, evidence trail and deadline-driven workflow
# ===================================================================
"""
Dispute workflow manager.

A dispute case is opened against a transaction with a three-step
evidence workflow (collection, review, submission) due 24h before, 12h
before and at the response deadline. Evidence is appended atomically
and never advances the workflow; steps are completed explicitly and in
order, guarded by the workflow version.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from ..exceptions import (
    DisputeNotFoundError,
    InvalidEvidenceTypeError,
    PersistenceConflictError,
    TransactionNotFoundError,
    ValidationException,
    WorkflowStepOrderError,
)
from .models import (
    DisputeCase,
    DisputeEvidence,
    DisputeStatus,
    DisputeType,
    DisputeWorkflow,
    EvidenceType,
    WorkflowStatus,
    WorkflowStepId,
    dispute_priority_for_amount,
    generate_case_number,
    new_id,
    to_decimal,
    utcnow,
)

logger = logging.getLogger("harbor_billing.disputes")

MAX_CASE_NUMBER_ATTEMPTS = 5


def _parse_evidence_type(value: Union[EvidenceType, str]) -> EvidenceType:
    try:
        return EvidenceType(value)
    except ValueError:
        raise InvalidEvidenceTypeError(str(value), [kind.value for kind in EvidenceType])


class DisputeManager:
    """
    Creates dispute cases and drives their evidence workflow.

    Example:
        manager = DisputeManager(disputes, transactions)
        case = await manager.create_dispute_case(txn_id, DisputeType.FRAUD, Decimal("49.99"),
                                                 [EvidenceType.RECEIPT], respond_by)
        await manager.submit_dispute_evidence(case.id, {"type": "receipt", "description": "..."}, user_id)
        await manager.complete_workflow_step(case.id, "evidence_collection", user_id)
    """

    def __init__(
        self,
        disputes,
        transactions,
        clock: Callable[[], datetime] = utcnow,
        max_case_number_attempts: int = MAX_CASE_NUMBER_ATTEMPTS,
    ):
        self.disputes = disputes
        self.transactions = transactions
        self.clock = clock
        self.max_case_number_attempts = max_case_number_attempts

    async def create_dispute_case(
        self,
        transaction_id: str,
        dispute_type: Union[DisputeType, str],
        dispute_amount: Any,
        evidence_required: Iterable[Union[EvidenceType, str]],
        respond_by_date: datetime,
        processor_dispute_id: Optional[str] = None,
        dispute_reason: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> DisputeCase:
        """
        Open a dispute case.

        Args:
            transaction_id: Local id or processor transaction id
            dispute_type: Local dispute classification
            dispute_amount: Disputed amount (drives priority); defaults
                to the transaction amount
            evidence_required: Evidence kinds the processor asks for
            respond_by_date: Response deadline
            processor_dispute_id: Processor's dispute id; a case already
                opened for it is returned as-is
            dispute_reason: Raw processor reason, kept for reference
            currency: Defaults to the transaction's currency

        Returns:
            The created (or already existing) case

        Raises:
            TransactionNotFoundError: Unknown transaction
            InvalidEvidenceTypeError: Unknown evidence kind
        """
        try:
            dispute_type = DisputeType(dispute_type)
        except ValueError:
            raise ValidationException(
                f"Unknown dispute type: {dispute_type}", field="dispute_type", value=dispute_type
            )
        required: List[EvidenceType] = [_parse_evidence_type(kind) for kind in evidence_required]

        transaction = await self.transactions.find(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)

        if processor_dispute_id:
            existing = await self.disputes.get_by_processor_dispute_id(processor_dispute_id)
            if existing is not None:
                logger.info(f"Dispute {processor_dispute_id} already tracked as case {existing.case_number}")
                return existing

        amount = to_decimal(dispute_amount if dispute_amount is not None else transaction.amount)
        created: Optional[DisputeCase] = None

        for attempt in range(1, self.max_case_number_attempts + 1):
            now = self.clock()
            dispute_id = new_id()
            case = DisputeCase(
                id=dispute_id,
                case_number=generate_case_number(now),
                transaction_id=transaction.id,
                dispute_type=dispute_type,
                dispute_amount=amount,
                respond_by_date=respond_by_date,
                workflow=DisputeWorkflow.for_deadline(dispute_id, respond_by_date),
                priority=dispute_priority_for_amount(amount),
                currency=currency or transaction.currency,
                user_id=transaction.user_id,
                processor_dispute_id=processor_dispute_id,
                dispute_reason=dispute_reason,
                dispute_date=now,
                evidence_required=required,
                created_at=now,
                updated_at=now,
            )
            try:
                created = await self.disputes.create(case)
                break
            except PersistenceConflictError as e:
                if e.condition.startswith("processor_dispute_id"):
                    existing = await self.disputes.get_by_processor_dispute_id(processor_dispute_id)
                    if existing is not None:
                        return existing
                    raise
                logger.warning(f"Case number {case.case_number} taken (attempt {attempt}); regenerating")

        if created is None:
            raise PersistenceConflictError(
                entity="dispute_case",
                entity_id=transaction.id,
                condition="case_number unique",
                details={"attempts": self.max_case_number_attempts},
            )

        await self.transactions.mark_disputed(transaction.id)

        logger.warning(
            f"Dispute case {created.case_number} opened for transaction {transaction.id} "
            f"({dispute_type.value}, {amount} {created.currency}, priority {created.priority.value})"
        )
        return created

    async def get_dispute_case(self, dispute_id: str) -> DisputeCase:
        case = await self.disputes.get_by_id(dispute_id)
        if case is None:
            raise DisputeNotFoundError(dispute_id)
        return case

    async def submit_dispute_evidence(
        self,
        dispute_id: str,
        evidence: Dict[str, Any],
        submitted_by: str,
    ) -> DisputeEvidence:
        """
        Append an evidence record to a case.

        Args:
            dispute_id: Dispute case id
            evidence: ``{"type", "description", "file_url"?}``
            submitted_by: User id of the submitter

        Returns:
            The stored evidence record
        """
        evidence_type = _parse_evidence_type(evidence.get("type"))
        description = (evidence.get("description") or "").strip()
        if not description:
            raise ValidationException("Evidence description is required", field="description")

        await self.get_dispute_case(dispute_id)

        record = DisputeEvidence(
            id=new_id(),
            type=evidence_type,
            description=description,
            submitted_at=self.clock(),
            file_url=evidence.get("file_url"),
            submitted_by=submitted_by,
        )

        updated = await self.disputes.append_evidence(dispute_id, record)
        if updated is None:
            raise DisputeNotFoundError(dispute_id)

        logger.info(f"Evidence {record.id} ({evidence_type.value}) added to dispute {dispute_id} by {submitted_by}")
        return record

    async def complete_workflow_step(
        self,
        dispute_id: str,
        step_id: Union[WorkflowStepId, str],
        completed_by: str,
        notes: Optional[str] = None,
    ) -> DisputeWorkflow:
        """
        Complete the current workflow step and advance to the next one.

        Raises:
            WorkflowStepOrderError: ``step_id`` is not the current step
            PersistenceConflictError: Another completion won the race
        """
        try:
            step_id = WorkflowStepId(step_id)
        except ValueError:
            raise ValidationException(f"Unknown workflow step: {step_id}", field="step_id", value=step_id)

        case = await self.get_dispute_case(dispute_id)
        workflow = case.workflow

        current = workflow.first_incomplete_step()
        if current is None or current.step_id != step_id:
            current_value = workflow.current_step.value if workflow.current_step else None
            raise WorkflowStepOrderError(dispute_id, step_id.value, current_value)

        current.completed = True
        current.completed_at = self.clock()
        current.completed_by = completed_by
        current.notes = notes

        following = workflow.first_incomplete_step()
        workflow.current_step = following.step_id if following else None

        dispute_status = None
        if following is None:
            workflow.status = WorkflowStatus.EVIDENCE_SUBMITTED
            dispute_status = DisputeStatus.UNDER_REVIEW
        else:
            workflow.status = WorkflowStatus.IN_PROGRESS

        expected_version = workflow.version
        workflow.version += 1

        updated = await self.disputes.update_workflow(dispute_id, workflow, expected_version, dispute_status)
        if updated is None:
            raise PersistenceConflictError(
                entity="dispute_workflow",
                entity_id=dispute_id,
                condition=f"version = {expected_version}",
            )

        logger.info(
            f"Dispute {dispute_id}: step {step_id.value} completed by {completed_by}; "
            f"next {workflow.current_step.value if workflow.current_step else 'none'}"
        )
        return updated.workflow
