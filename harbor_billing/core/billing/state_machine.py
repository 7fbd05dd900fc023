# ===================================================================
# HarborList Billing - Billing Account State Machine
# Conditional status transitions and entitlement stripping
# ===================================================================
"""
Billing account state machine.

    trialing ──payment failed──▶ past_due ──suspended──▶ suspended
       │                            │
       └──trial converted──▶ active ◀──payment recovered
                              │
    any non-canceled ──canceled──▶ canceled (terminal)

Each transition is a single conditional write
(``SET status = target WHERE status IN sources``) so a late or
duplicated signal cannot regress state another caller has already
advanced. Entering ``suspended`` or ``canceled`` strips premium
entitlements right after the winning write.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple

from ..exceptions import BillingAccountNotFoundError, InvalidStateTransitionError
from ..logging import BillingAuditLogger, audit_logger as default_audit_logger
from .models import BillingAccount, BillingAccountStatus, utcnow

logger = logging.getLogger("harbor_billing.state_machine")

Status = BillingAccountStatus


class BillingTransition(str, Enum):
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_RECOVERED = "payment_recovered"
    TRIAL_CONVERTED = "trial_converted"
    SUSPENDED = "suspended"
    CANCELED = "canceled"


TRANSITIONS: Dict[BillingTransition, Tuple[FrozenSet[Status], Status]] = {
    BillingTransition.PAYMENT_FAILED: (frozenset({Status.ACTIVE, Status.TRIALING}), Status.PAST_DUE),
    BillingTransition.PAYMENT_RECOVERED: (frozenset({Status.PAST_DUE}), Status.ACTIVE),
    BillingTransition.TRIAL_CONVERTED: (frozenset({Status.TRIALING}), Status.ACTIVE),
    BillingTransition.SUSPENDED: (frozenset({Status.PAST_DUE}), Status.SUSPENDED),
    BillingTransition.CANCELED: (
        frozenset({Status.TRIALING, Status.ACTIVE, Status.PAST_DUE, Status.SUSPENDED}),
        Status.CANCELED,
    ),
}

ENTITLEMENT_STRIPPING_STATES = frozenset({Status.SUSPENDED, Status.CANCELED})


class BillingStateMachine:
    """
    Owns every billing account status change.

    Example:
        machine = BillingStateMachine(accounts, users)
        account = await machine.apply(account_id, BillingTransition.PAYMENT_FAILED, "payment_failure")
    """

    def __init__(
        self,
        accounts,
        users,
        audit: Optional[BillingAuditLogger] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            accounts: BillingAccountRepository (or compatible)
            users: UserRepository (or compatible)
            audit: Audit logger for transitions
            clock: Source of the current time
        """
        self.accounts = accounts
        self.users = users
        self.audit = audit or default_audit_logger
        self.clock = clock

    async def apply(
        self,
        account_id: str,
        transition: BillingTransition,
        trigger: str,
        extra_updates: Optional[Dict[str, Any]] = None,
        strict: bool = False,
    ) -> Optional[BillingAccount]:
        """
        Apply a transition with a conditional write.

        Args:
            account_id: Billing account id
            transition: Transition to apply
            trigger: What caused it (for the audit trail)
            extra_updates: Extra columns written in the same statement
            strict: Raise instead of returning None when the account is
                not in an allowed source state

        Returns:
            The updated account, the unchanged account when it is already
            in the target state, or None when the transition does not
            apply (disallowed source state or a lost race)

        Raises:
            BillingAccountNotFoundError: Unknown account
            InvalidStateTransitionError: Disallowed source state (strict only)
        """
        sources, target = TRANSITIONS[transition]

        account = await self.accounts.get_by_id(account_id)
        if account is None:
            raise BillingAccountNotFoundError(account_id)

        if account.status == target:
            logger.debug(f"Billing account {account_id} already {target.value}; {transition.value} is a no-op")
            return account

        if account.status not in sources:
            if strict:
                raise InvalidStateTransitionError(
                    billing_account_id=account_id,
                    current_state=account.status.value,
                    target_state=target.value,
                    allowed_sources=sorted(status.value for status in sources),
                )
            logger.info(
                f"Ignoring {transition.value} for billing account {account_id} "
                f"in state {account.status.value}"
            )
            return None

        updated = await self.accounts.transition_status(account_id, target, sources, extra_updates)
        if updated is None:
            logger.info(f"Lost race applying {transition.value} to billing account {account_id}")
            return None

        self.audit.log_status_transition(
            billing_account_id=account_id,
            from_status=account.status.value,
            to_status=target.value,
            trigger=trigger,
        )

        if target in ENTITLEMENT_STRIPPING_STATES:
            await self.users.clear_premium(updated.user_id)
            self.audit.log_entitlements_stripped(updated.user_id, account_id, reason=transition.value)

        return updated

    # ===================================================================
    # Named transitions
    # ===================================================================

    async def mark_past_due(self, account_id: str, trigger: str = "payment_failure") -> Optional[BillingAccount]:
        return await self.apply(account_id, BillingTransition.PAYMENT_FAILED, trigger)

    async def mark_recovered(self, account_id: str, trigger: str = "payment_recovered") -> Optional[BillingAccount]:
        return await self.apply(account_id, BillingTransition.PAYMENT_RECOVERED, trigger)

    async def convert_trial(self, account_id: str, trigger: str = "trial_converted") -> Optional[BillingAccount]:
        return await self.apply(account_id, BillingTransition.TRIAL_CONVERTED, trigger)

    async def suspend(self, account_id: str, trigger: str) -> Optional[BillingAccount]:
        return await self.apply(account_id, BillingTransition.SUSPENDED, trigger)

    async def cancel(
        self,
        account_id: str,
        trigger: str,
        canceled_at: Optional[datetime] = None,
        clear_subscription: bool = True,
    ) -> Optional[BillingAccount]:
        """Cancel the account; records ``canceled_at`` and drops the subscription id."""
        updates: Dict[str, Any] = {"canceled_at": canceled_at or self.clock()}
        if clear_subscription:
            updates["subscription_id"] = None
        return await self.apply(account_id, BillingTransition.CANCELED, trigger, updates)

    async def activate(self, account_id: str, trigger: str) -> Optional[BillingAccount]:
        """Move a past_due or trialing account to active."""
        account = await self.accounts.get_by_id(account_id)
        if account is None:
            raise BillingAccountNotFoundError(account_id)
        if account.status == Status.TRIALING:
            return await self.convert_trial(account_id, trigger)
        return await self.mark_recovered(account_id, trigger)

    async def apply_processor_status(
        self,
        account_id: str,
        processor_status: Optional[str],
        trigger: str,
    ) -> Optional[BillingAccount]:
        """
        Reconcile the account with a processor-reported subscription status.

        Unknown processor statuses would map to suspension, which the
        machine only allows from past_due; anywhere else they are logged
        and ignored.
        """
        status = (processor_status or "").lower()

        if status in ("canceled", "cancelled"):
            return await self.cancel(account_id, trigger)
        if status == "past_due":
            return await self.mark_past_due(account_id, trigger)
        if status == "active":
            return await self.activate(account_id, trigger)
        if status == "trialing":
            account = await self.accounts.get_by_id(account_id)
            if account is None:
                raise BillingAccountNotFoundError(account_id)
            return account

        logger.warning(f"Processor status '{processor_status}' for billing account {account_id} maps to suspension")
        return await self.suspend(account_id, trigger)
