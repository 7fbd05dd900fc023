# ===================================================================
# HarborList Billing - Dispute Repository
# Dispute cases with nested evidence and workflow (JSONB)
# ===================================================================

from typing import Any, Dict, Optional
import logging

import asyncpg

from ..billing.models import (
    DisputeCase,
    DisputeEvidence,
    DisputePriority,
    DisputeStatus,
    DisputeType,
    DisputeWorkflow,
    EvidenceType,
)
from ..exceptions import PersistenceConflictError
from .base_repository import BaseRepository

logger = logging.getLogger("harbor_billing.database.dispute")


class DisputeRepository(BaseRepository[DisputeCase]):
    """
    Dispute cases.

    ``case_number`` and ``processor_dispute_id`` are unique; a clash on
    insert surfaces as PersistenceConflictError naming the column.
    """

    table_name = "dispute_cases"

    def _record_to_entity(self, record: Any) -> Optional[DisputeCase]:
        if not record:
            return None
        return DisputeCase(
            id=record["id"],
            case_number=record["case_number"],
            transaction_id=record["transaction_id"],
            processor_dispute_id=record["processor_dispute_id"],
            user_id=record["user_id"],
            dispute_type=DisputeType(record["dispute_type"]),
            dispute_reason=record["dispute_reason"],
            dispute_amount=record["dispute_amount"],
            currency=record["currency"],
            dispute_date=record["dispute_date"],
            respond_by_date=record["respond_by_date"],
            priority=DisputePriority(record["priority"]),
            dispute_status=DisputeStatus(record["dispute_status"]),
            evidence_required=[EvidenceType(kind) for kind in record["evidence_required"] or []],
            evidence_submitted=[
                DisputeEvidence.from_dict(item) for item in record["evidence_submitted"] or []
            ],
            workflow=DisputeWorkflow.from_dict(record["workflow"]),
            created_at=record["created_at"],
            updated_at=record["updated_at"],
        )

    def _entity_to_dict(self, entity: DisputeCase) -> Dict[str, Any]:
        return {
            "id": entity.id,
            "case_number": entity.case_number,
            "transaction_id": entity.transaction_id,
            "processor_dispute_id": entity.processor_dispute_id,
            "user_id": entity.user_id,
            "dispute_type": entity.dispute_type,
            "dispute_reason": entity.dispute_reason,
            "dispute_amount": entity.dispute_amount,
            "currency": entity.currency,
            "dispute_date": entity.dispute_date,
            "respond_by_date": entity.respond_by_date,
            "priority": entity.priority,
            "dispute_status": entity.dispute_status,
            "evidence_required": [kind.value for kind in entity.evidence_required],
            "evidence_submitted": [evidence.to_dict() for evidence in entity.evidence_submitted],
            "workflow": entity.workflow.to_dict(),
            "created_at": entity.created_at,
        }

    async def create(self, entity: DisputeCase) -> DisputeCase:
        try:
            return await super().create(entity)
        except asyncpg.UniqueViolationError as e:
            column = "processor_dispute_id" if "processor_dispute_id" in (e.constraint_name or "") else "case_number"
            raise PersistenceConflictError(
                entity="dispute_case",
                entity_id=entity.id,
                condition=f"{column} unique",
                details={"case_number": entity.case_number},
            ) from e

    async def get_by_processor_dispute_id(self, processor_dispute_id: str) -> Optional[DisputeCase]:
        return await self.fetch_entity(
            f"SELECT * FROM {self.table_name} WHERE processor_dispute_id = $1",
            processor_dispute_id
        )

    async def append_evidence(self, id: str, evidence: DisputeEvidence) -> Optional[DisputeCase]:
        """Atomically append one evidence record."""
        return await self.fetch_entity(
            f"""
            UPDATE {self.table_name}
            SET evidence_submitted = evidence_submitted || $2::jsonb,
                updated_at = NOW()
            WHERE id = $1
            RETURNING *
            """,
            id, [evidence.to_dict()]
        )

    async def update_workflow(
        self,
        id: str,
        workflow: DisputeWorkflow,
        expected_version: int,
        dispute_status: Optional[DisputeStatus] = None,
    ) -> Optional[DisputeCase]:
        """
        Replace the workflow if its stored version still equals
        ``expected_version``.
        """
        updates: Dict[str, Any] = {"workflow": workflow.to_dict()}
        if dispute_status is not None:
            updates["dispute_status"] = dispute_status
        return await self.conditional_update(
            id,
            updates,
            "(workflow->>'version')::int = $1",
            expected_version
        )
