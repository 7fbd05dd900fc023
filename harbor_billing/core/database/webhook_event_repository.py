# ===================================================================
# HarborList Billing - Processed Webhook Event Repository
# Deduplication ledger keyed on (processor_type, event_id)
# ===================================================================
"""
Processed webhook event ledger.

A delivery is dispatched only by the caller that *claims* its row:
either by inserting it (first delivery) or by reclaiming a failed or
abandoned row (redelivery). Both are single conditional statements, so
concurrent duplicates cannot both dispatch.
"""

from datetime import datetime
from typing import Any, Dict, Optional
import logging

from ..billing.models import ProcessedWebhookEvent
from .base_repository import BaseRepository

logger = logging.getLogger("harbor_billing.database.webhook_event")


class WebhookEventRepository(BaseRepository[ProcessedWebhookEvent]):

    table_name = "processed_webhook_events"
    has_updated_at = False

    def _record_to_entity(self, record: Any) -> Optional[ProcessedWebhookEvent]:
        if not record:
            return None
        return ProcessedWebhookEvent(
            event_id=record["event_id"],
            processor_type=record["processor_type"],
            event_type=record["event_type"],
            processed=record["processed"],
            processed_at=record["processed_at"],
            in_progress=record["in_progress"],
            claimed_at=record["claimed_at"],
            retry_count=record["retry_count"],
            max_retries=record["max_retries"],
            error=record["error"],
            created_at=record["created_at"],
        )

    def _entity_to_dict(self, entity: ProcessedWebhookEvent) -> Dict[str, Any]:
        return {
            "processor_type": entity.processor_type,
            "event_id": entity.event_id,
            "event_type": entity.event_type,
            "processed": entity.processed,
            "processed_at": entity.processed_at,
            "in_progress": entity.in_progress,
            "claimed_at": entity.claimed_at,
            "retry_count": entity.retry_count,
            "max_retries": entity.max_retries,
            "error": entity.error,
        }

    async def get(self, processor_type: str, event_id: str) -> Optional[ProcessedWebhookEvent]:
        return await self.fetch_entity(
            f"SELECT * FROM {self.table_name} WHERE processor_type = $1 AND event_id = $2",
            processor_type, event_id
        )

    async def claim(
        self,
        processor_type: str,
        event_id: str,
        event_type: str,
        max_retries: int,
        now: datetime,
    ) -> Optional[ProcessedWebhookEvent]:
        """
        Insert the ledger row for a first delivery.

        Returns:
            The new row, or None if the event is already in the ledger
        """
        return await self.create_if_absent(
            ProcessedWebhookEvent(
                event_id=event_id,
                processor_type=processor_type,
                event_type=event_type,
                in_progress=True,
                claimed_at=now,
                max_retries=max_retries,
            ),
            "(processor_type, event_id)"
        )

    async def reclaim(
        self,
        processor_type: str,
        event_id: str,
        now: datetime,
        stale_before: datetime,
    ) -> Optional[ProcessedWebhookEvent]:
        """
        Take over a redelivered event that previously failed, or whose
        claim was abandoned before ``stale_before``.

        Increments ``retry_count``; returns None when the row is
        processed, still actively claimed, or out of retries.
        """
        return await self.fetch_entity(
            f"""
            UPDATE {self.table_name}
            SET in_progress = TRUE,
                claimed_at = $3,
                retry_count = retry_count + 1,
                error = NULL
            WHERE processor_type = $1 AND event_id = $2
              AND processed = FALSE
              AND retry_count < max_retries
              AND (in_progress = FALSE OR claimed_at < $4)
            RETURNING *
            """,
            processor_type, event_id, now, stale_before
        )

    async def mark_processed(
        self,
        processor_type: str,
        event_id: str,
        now: datetime,
    ) -> Optional[ProcessedWebhookEvent]:
        return await self.fetch_entity(
            f"""
            UPDATE {self.table_name}
            SET processed = TRUE, processed_at = $3, in_progress = FALSE, error = NULL
            WHERE processor_type = $1 AND event_id = $2
            RETURNING *
            """,
            processor_type, event_id, now
        )

    async def mark_failed(
        self,
        processor_type: str,
        event_id: str,
        error: str,
    ) -> Optional[ProcessedWebhookEvent]:
        return await self.fetch_entity(
            f"""
            UPDATE {self.table_name}
            SET processed = FALSE, in_progress = FALSE, error = $3
            WHERE processor_type = $1 AND event_id = $2 AND processed = FALSE
            RETURNING *
            """,
            processor_type, event_id, error[:2000]
        )
