# ===================================================================
# HarborList Billing - Payment Failure Repository
# The payment failure ledger
# ===================================================================
"""
Payment failure ledger.

The partial unique index ``uq_payment_failures_open_account`` allows a
single open (unresolved, unexhausted) failure per billing account, so
``create_if_no_open`` is a conditional create rather than a
read-then-write check.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import logging

from ..billing.models import PaymentFailure, PaymentFailureReason, ResolutionMethod
from .base_repository import BaseRepository

logger = logging.getLogger("harbor_billing.database.payment_failure")

OPEN_CONDITION = "resolved = FALSE AND exhausted = FALSE"


class PaymentFailureRepository(BaseRepository[PaymentFailure]):

    table_name = "payment_failures"

    def _record_to_entity(self, record: Any) -> Optional[PaymentFailure]:
        if not record:
            return None
        method = record["resolution_method"]
        return PaymentFailure(
            id=record["id"],
            transaction_id=record["transaction_id"],
            subscription_id=record["subscription_id"],
            billing_account_id=record["billing_account_id"],
            user_id=record["user_id"],
            amount=record["amount"],
            currency=record["currency"],
            reason=PaymentFailureReason(record["reason"]),
            reason_details=record["reason_details"],
            attempt_number=record["attempt_number"],
            max_attempts=record["max_attempts"],
            next_retry_at=record["next_retry_at"],
            grace_period_ends=record["grace_period_ends"],
            resolved=record["resolved"],
            resolved_at=record["resolved_at"],
            resolution_method=ResolutionMethod(method) if method else None,
            exhausted=record["exhausted"],
            exhausted_at=record["exhausted_at"],
            created_at=record["created_at"],
            updated_at=record["updated_at"],
        )

    def _entity_to_dict(self, entity: PaymentFailure) -> Dict[str, Any]:
        return {
            "id": entity.id,
            "transaction_id": entity.transaction_id,
            "subscription_id": entity.subscription_id,
            "billing_account_id": entity.billing_account_id,
            "user_id": entity.user_id,
            "amount": entity.amount,
            "currency": entity.currency,
            "reason": entity.reason,
            "reason_details": entity.reason_details,
            "attempt_number": entity.attempt_number,
            "max_attempts": entity.max_attempts,
            "next_retry_at": entity.next_retry_at,
            "grace_period_ends": entity.grace_period_ends,
            "resolved": entity.resolved,
            "exhausted": entity.exhausted,
            "created_at": entity.created_at,
        }

    # ===================================================================
    # Creation
    # ===================================================================

    async def create_if_no_open(self, failure: PaymentFailure) -> Tuple[PaymentFailure, bool]:
        """
        Create the failure unless the account already has an open one.

        Returns:
            (failure, created) where failure is the existing open failure
            when created is False
        """
        created = await self.create_if_absent(
            failure,
            f"(billing_account_id) WHERE {OPEN_CONDITION}"
        )
        if created:
            return created, True

        existing = await self.get_open_for_account(failure.billing_account_id)
        if existing is None:
            # The blocking failure closed between the insert and the read
            created = await self.create_if_absent(
                failure,
                f"(billing_account_id) WHERE {OPEN_CONDITION}"
            )
            if created:
                return created, True
            existing = await self.get_open_for_account(failure.billing_account_id)
        return existing, False

    # ===================================================================
    # Lookups
    # ===================================================================

    async def get_open_for_account(self, billing_account_id: str) -> Optional[PaymentFailure]:
        return await self.fetch_entity(
            f"SELECT * FROM {self.table_name} WHERE billing_account_id = $1 AND {OPEN_CONDITION}",
            billing_account_id
        )

    async def get_open_by_transaction_id(self, transaction_id: str) -> Optional[PaymentFailure]:
        return await self.fetch_entity(
            f"SELECT * FROM {self.table_name} WHERE transaction_id = $1 AND {OPEN_CONDITION}",
            transaction_id
        )

    async def list_due(self, now: datetime, limit: int = 100) -> List[PaymentFailure]:
        """Open failures whose next retry is due, oldest first."""
        return await self.fetch_entities(
            f"""
            SELECT * FROM {self.table_name}
            WHERE {OPEN_CONDITION} AND next_retry_at <= $1
            ORDER BY next_retry_at ASC
            LIMIT $2
            """,
            now, limit
        )

    # ===================================================================
    # Conditional Writes
    # ===================================================================

    async def claim_retry(
        self,
        id: str,
        attempt_number: int,
        now: datetime,
        lease_until: datetime,
    ) -> Optional[PaymentFailure]:
        """
        Lease a due attempt by pushing ``next_retry_at`` to ``lease_until``.

        Only one concurrent caller can win for a given attempt number.
        """
        return await self.conditional_update(
            id,
            {"next_retry_at": lease_until},
            f"{OPEN_CONDITION} AND attempt_number = $1 AND next_retry_at <= $2",
            attempt_number, now
        )

    async def schedule_next_attempt(
        self,
        id: str,
        expected_attempt: int,
        next_attempt: int,
        next_retry_at: datetime,
    ) -> Optional[PaymentFailure]:
        return await self.conditional_update(
            id,
            {"attempt_number": next_attempt, "next_retry_at": next_retry_at},
            f"{OPEN_CONDITION} AND attempt_number = $1",
            expected_attempt
        )

    async def resolve(
        self,
        id: str,
        method: ResolutionMethod,
        resolved_at: datetime,
    ) -> Optional[PaymentFailure]:
        return await self.conditional_update(
            id,
            {
                "resolved": True,
                "resolved_at": resolved_at,
                "resolution_method": method,
                "next_retry_at": None,
            },
            OPEN_CONDITION
        )

    async def mark_exhausted(self, id: str, exhausted_at: datetime) -> Optional[PaymentFailure]:
        return await self.conditional_update(
            id,
            {"exhausted": True, "exhausted_at": exhausted_at, "next_retry_at": None},
            OPEN_CONDITION
        )
