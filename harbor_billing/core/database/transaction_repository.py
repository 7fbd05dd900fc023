# ===================================================================
# HarborList Billing - Transaction Repository
# ===================================================================

from datetime import datetime
from typing import Any, Dict, Optional
import logging

from ..billing.models import Transaction, TransactionStatus, TransactionType
from .base_repository import BaseRepository

logger = logging.getLogger("harbor_billing.database.transaction")


class TransactionRepository(BaseRepository[Transaction]):

    table_name = "transactions"
    has_updated_at = False

    def _record_to_entity(self, record: Any) -> Optional[Transaction]:
        if not record:
            return None
        return Transaction(
            id=record["id"],
            type=TransactionType(record["type"]),
            amount=record["amount"],
            currency=record["currency"],
            status=TransactionStatus(record["status"]),
            user_id=record["user_id"],
            billing_account_id=record["billing_account_id"],
            processor_transaction_id=record["processor_transaction_id"],
            description=record["description"],
            fees=record["fees"],
            net_amount=record["net_amount"],
            metadata=record["metadata"] or {},
            created_at=record["created_at"],
            completed_at=record["completed_at"],
        )

    def _entity_to_dict(self, entity: Transaction) -> Dict[str, Any]:
        return {
            "id": entity.id,
            "type": entity.type,
            "amount": entity.amount,
            "currency": entity.currency,
            "status": entity.status,
            "user_id": entity.user_id,
            "billing_account_id": entity.billing_account_id,
            "processor_transaction_id": entity.processor_transaction_id,
            "description": entity.description,
            "fees": entity.fees,
            "net_amount": entity.net_amount,
            "metadata": entity.metadata,
            "created_at": entity.created_at,
            "completed_at": entity.completed_at,
        }

    async def get_by_processor_transaction_id(self, processor_transaction_id: str) -> Optional[Transaction]:
        return await self.fetch_entity(
            f"SELECT * FROM {self.table_name} WHERE processor_transaction_id = $1 LIMIT 1",
            processor_transaction_id
        )

    async def find(self, transaction_id: str) -> Optional[Transaction]:
        """Look a transaction up by local id, then by processor id."""
        transaction = await self.get_by_id(transaction_id)
        if transaction is None:
            transaction = await self.get_by_processor_transaction_id(transaction_id)
        return transaction

    async def mark_completed(self, id: str, completed_at: datetime) -> Optional[Transaction]:
        """Complete a pending or failed transaction; completed rows are left as-is."""
        return await self.conditional_update(
            id,
            {"status": TransactionStatus.COMPLETED, "completed_at": completed_at},
            "status = ANY($1::text[])",
            [TransactionStatus.PENDING.value, TransactionStatus.FAILED.value]
        )

    async def mark_failed(self, id: str) -> Optional[Transaction]:
        return await self.conditional_update(
            id,
            {"status": TransactionStatus.FAILED},
            "status = $1",
            TransactionStatus.PENDING.value
        )

    async def mark_disputed(self, id: str) -> Optional[Transaction]:
        return await self.update(id, {"status": TransactionStatus.DISPUTED})
