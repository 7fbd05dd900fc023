# ===================================================================
# HarborList Billing - User Repository
# Premium entitlement flags on the user record
# ===================================================================
"""
User entitlement storage.

Only the premium columns of the ``users`` table belong to the billing
engine; identity data is owned elsewhere.
"""

from datetime import datetime
from typing import Any, Dict, Optional
import logging

from ..billing.models import UserEntitlements
from .base_repository import BaseRepository

logger = logging.getLogger("harbor_billing.database.user")


class UserRepository(BaseRepository[UserEntitlements]):

    table_name = "users"

    def _record_to_entity(self, record: Any) -> Optional[UserEntitlements]:
        if not record:
            return None
        return UserEntitlements(
            user_id=record["id"],
            premium_active=record["premium_active"],
            premium_plan=record["premium_plan"],
            premium_expires_at=record["premium_expires_at"],
        )

    def _entity_to_dict(self, entity: UserEntitlements) -> Dict[str, Any]:
        return {
            "id": entity.user_id,
            "premium_active": entity.premium_active,
            "premium_plan": entity.premium_plan,
            "premium_expires_at": entity.premium_expires_at,
        }

    async def get_entitlements(self, user_id: str) -> Optional[UserEntitlements]:
        return await self.get_by_id(user_id)

    async def clear_premium(self, user_id: str) -> bool:
        """
        Strip premium entitlements.

        Returns:
            True if the user record exists
        """
        updated = await self.update(
            user_id,
            {"premium_active": False, "premium_plan": None, "premium_expires_at": None}
        )
        if updated is None:
            logger.warning(f"Cannot clear entitlements: user {user_id} not found")
        return updated is not None

    async def extend_premium(self, user_id: str, plan: str, expires_at: datetime) -> bool:
        """
        Grant premium until ``expires_at``.

        Never shortens an existing later expiry.
        """
        row = await self.pool.fetchrow(
            f"""
            UPDATE {self.table_name}
            SET premium_active = TRUE,
                premium_plan = $2,
                premium_expires_at = GREATEST(COALESCE(premium_expires_at, $3), $3),
                updated_at = NOW()
            WHERE id = $1
            RETURNING *
            """,
            user_id, plan, expires_at
        )
        return row is not None
