# ===================================================================
# HarborList Billing - Dunning Schedule Repository
# Durable due-time records for delayed dunning steps
# ===================================================================

from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from ..billing.models import DunningStepSchedule
from .base_repository import BaseRepository

logger = logging.getLogger("harbor_billing.database.dunning")


class DunningScheduleRepository(BaseRepository[DunningStepSchedule]):

    table_name = "dunning_step_schedules"
    has_updated_at = False

    def _record_to_entity(self, record: Any) -> Optional[DunningStepSchedule]:
        if not record:
            return None
        return DunningStepSchedule(
            id=record["id"],
            failure_id=record["failure_id"],
            campaign_id=record["campaign_id"],
            step_id=record["step_id"],
            execute_at=record["execute_at"],
            executed=record["executed"],
            executed_at=record["executed_at"],
            outcome=record["outcome"],
            created_at=record["created_at"],
        )

    def _entity_to_dict(self, entity: DunningStepSchedule) -> Dict[str, Any]:
        return {
            "id": entity.id,
            "failure_id": entity.failure_id,
            "campaign_id": entity.campaign_id,
            "step_id": entity.step_id,
            "execute_at": entity.execute_at,
            "executed": entity.executed,
            "executed_at": entity.executed_at,
            "outcome": entity.outcome,
        }

    async def schedule(self, entry: DunningStepSchedule) -> Optional[DunningStepSchedule]:
        """Persist a due-time record; a step is scheduled at most once per failure."""
        return await self.create_if_absent(entry, "(failure_id, step_id)")

    async def list_due(self, now: datetime, limit: int = 100) -> List[DunningStepSchedule]:
        return await self.fetch_entities(
            f"""
            SELECT * FROM {self.table_name}
            WHERE executed = FALSE AND execute_at <= $1
            ORDER BY execute_at ASC
            LIMIT $2
            """,
            now, limit
        )

    async def list_for_failure(self, failure_id: str) -> List[DunningStepSchedule]:
        return await self.fetch_entities(
            f"SELECT * FROM {self.table_name} WHERE failure_id = $1 ORDER BY execute_at ASC",
            failure_id
        )

    async def claim(self, id: str, now: datetime) -> Optional[DunningStepSchedule]:
        """Mark a due row executed; only one caller wins."""
        return await self.conditional_update(
            id,
            {"executed": True, "executed_at": now},
            "executed = FALSE"
        )

    async def set_outcome(self, id: str, outcome: str) -> Optional[DunningStepSchedule]:
        return await self.update(id, {"outcome": outcome})
