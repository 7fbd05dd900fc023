# ===================================================================
# HarborList Billing - Billing Account Repository
# PostgreSQL-backed billing accounts with conditional status writes
# ===================================================================

from typing import Any, Dict, Iterable, Optional
import logging

from ..billing.models import BillingAccount, BillingAccountStatus
from .base_repository import BaseRepository

logger = logging.getLogger("harbor_billing.database.billing_account")


class BillingAccountRepository(BaseRepository[BillingAccount]):
    """
    Billing accounts keyed by id, with secondary lookups by user,
    customer and subscription.

    Status is only ever written through ``transition_status``.
    """

    table_name = "billing_accounts"

    def _record_to_entity(self, record: Any) -> Optional[BillingAccount]:
        if not record:
            return None
        return BillingAccount(
            id=record["id"],
            user_id=record["user_id"],
            customer_id=record["customer_id"],
            payment_method_id=record["payment_method_id"],
            subscription_id=record["subscription_id"],
            plan=record["plan"],
            amount=record["amount"],
            currency=record["currency"],
            status=BillingAccountStatus(record["status"]),
            next_billing_date=record["next_billing_date"],
            canceled_at=record["canceled_at"],
            cancel_at_period_end=record["cancel_at_period_end"],
            created_at=record["created_at"],
            updated_at=record["updated_at"],
        )

    def _entity_to_dict(self, entity: BillingAccount) -> Dict[str, Any]:
        data = {
            "id": entity.id,
            "user_id": entity.user_id,
            "customer_id": entity.customer_id,
            "payment_method_id": entity.payment_method_id,
            "subscription_id": entity.subscription_id,
            "plan": entity.plan,
            "amount": entity.amount,
            "currency": entity.currency,
            "status": entity.status,
            "next_billing_date": entity.next_billing_date,
            "canceled_at": entity.canceled_at,
            "cancel_at_period_end": entity.cancel_at_period_end,
        }
        if entity.created_at:
            data["created_at"] = entity.created_at
        return data

    # ===================================================================
    # Lookups
    # ===================================================================

    async def get_by_user_id(self, user_id: str) -> Optional[BillingAccount]:
        return await self.fetch_entity(
            f"SELECT * FROM {self.table_name} WHERE user_id = $1 ORDER BY created_at DESC LIMIT 1",
            user_id
        )

    async def get_by_customer_id(self, customer_id: str) -> Optional[BillingAccount]:
        return await self.fetch_entity(
            f"SELECT * FROM {self.table_name} WHERE customer_id = $1 ORDER BY created_at DESC LIMIT 1",
            customer_id
        )

    async def get_by_subscription_id(self, subscription_id: str) -> Optional[BillingAccount]:
        return await self.fetch_entity(
            f"SELECT * FROM {self.table_name} WHERE subscription_id = $1 LIMIT 1",
            subscription_id
        )

    # ===================================================================
    # Conditional Writes
    # ===================================================================

    async def transition_status(
        self,
        id: str,
        target: BillingAccountStatus,
        sources: Iterable[BillingAccountStatus],
        extra_updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[BillingAccount]:
        """
        Set ``status = target`` only while the current status is one of
        ``sources``.

        Returns:
            Updated account, or None if the status moved on meanwhile
        """
        updates = {"status": target, **(extra_updates or {})}
        return await self.conditional_update(
            id,
            updates,
            "status = ANY($1::text[])",
            [status.value for status in sources],
        )

    async def update_fields(
        self,
        id: str,
        updates: Dict[str, Any],
    ) -> Optional[BillingAccount]:
        """Update non-status fields. Canceled accounts are left untouched."""
        if "status" in updates:
            raise ValueError("status must be changed through transition_status")
        return await self.conditional_update(
            id,
            updates,
            "status <> $1",
            BillingAccountStatus.CANCELED.value,
        )
