#!/usr/bin/env python3
"""
Hold State Machine with Atomic Operations
Guarded hold transitions with race condition protection
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession

from models import Hold, HoldStatus, ReleaseTrigger
from services.escrow_errors import NotFoundError, StateConflictError
from services.hold_ledger import HoldLedger

logger = logging.getLogger(__name__)


class HoldStateValidator:
    """Validates hold state transitions and prevents invalid changes"""

    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        None: {HoldStatus.HELD.value},
        HoldStatus.HELD.value: {
            HoldStatus.RELEASING.value,
            HoldStatus.DISPUTED.value,
        },
        HoldStatus.RELEASING.value: {
            HoldStatus.RELEASED.value,  # Rail confirmed the payout
            HoldStatus.HELD.value,  # Rail failed or timed out
        },
        # Dispute resolution only
        HoldStatus.DISPUTED.value: {
            HoldStatus.RELEASED.value,
            HoldStatus.REFUNDED.value,
            HoldStatus.PARTIALLY_REFUNDED.value,
        },
        # Terminal states (no transitions allowed)
        HoldStatus.RELEASED.value: set(),
        HoldStatus.REFUNDED.value: set(),
        HoldStatus.PARTIALLY_REFUNDED.value: set(),
    }

    @classmethod
    def is_valid_transition(cls, current_status: Optional[str], new_status: str) -> bool:
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def get_valid_transitions(cls, current_status: Optional[str]) -> Set[str]:
        return cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        """Check if status is terminal (no further transitions)"""
        return status in cls.VALID_TRANSITIONS and len(cls.VALID_TRANSITIONS[status]) == 0

    @classmethod
    def validate_transition(cls, current_status: Optional[str], new_status: str, hold_id: str = "") -> None:
        if not cls.is_valid_transition(current_status, new_status):
            raise StateConflictError(
                f"Illegal hold transition {current_status} -> {new_status} for hold {hold_id}",
                current_status=current_status,
            )


class HoldStateMachine:
    """
    Drives hold transitions through the ledger's conditional update.

    Each method is one compare-and-set against the expected source status.
    Losing the race raises StateConflictError and leaves the row untouched.
    The caller owns the session and its commit.
    """

    def __init__(self, ledger: Optional[HoldLedger] = None):
        self.ledger = ledger or HoldLedger()
        self.validator = HoldStateValidator()

    async def _compare_and_set(
        self,
        session: AsyncSession,
        hold_id: str,
        from_status: str,
        to_status: str,
        values: Optional[Dict[str, Any]] = None,
    ) -> Hold:
        self.validator.validate_transition(from_status, to_status, hold_id)

        updated = await self.ledger.conditional_update(
            session, hold_id, from_status, {"status": to_status, **(values or {})}
        )
        if not updated:
            hold = await self.ledger.get_hold(session, hold_id)
            if hold is None:
                raise NotFoundError(f"Hold {hold_id} not found")
            logger.warning(
                f"🔒 HOLD_STATE: CAS lost for hold {hold_id}: "
                f"expected {from_status}, found {hold.status} (wanted {to_status})"
            )
            raise StateConflictError(
                f"Hold {hold_id} is {hold.status}, cannot move {from_status} -> {to_status}",
                current_status=hold.status,
            )

        logger.info(f"✅ HOLD_STATE: {hold_id} {from_status} -> {to_status}")
        return await self.ledger.require_hold(session, hold_id)

    async def transition(
        self, session: AsyncSession, hold_id: str, to_status: str, **values: Any
    ) -> Hold:
        """Move a hold from its current status to to_status if the edge exists"""
        hold = await self.ledger.require_hold(session, hold_id)
        return await self._compare_and_set(session, hold_id, hold.status, to_status, values)

    async def begin_release(
        self, session: AsyncSession, hold_id: str, trigger: ReleaseTrigger, now: datetime
    ) -> Hold:
        return await self._compare_and_set(
            session,
            hold_id,
            HoldStatus.HELD.value,
            HoldStatus.RELEASING.value,
            {
                "releasing_started_at": now,
                "release_trigger": trigger.value,
                "last_error": None,
            },
        )

    async def complete_release(
        self,
        session: AsyncSession,
        hold_id: str,
        now: datetime,
        contractor_payout: Decimal,
        transfer_id: str,
    ) -> Hold:
        return await self._compare_and_set(
            session,
            hold_id,
            HoldStatus.RELEASING.value,
            HoldStatus.RELEASED.value,
            {
                "released_at": now,
                "contractor_payout": contractor_payout,
                "payout_transfer_id": transfer_id,
                "last_error": None,
            },
        )

    async def abort_release(self, session: AsyncSession, hold_id: str, error: str) -> Hold:
        return await self._compare_and_set(
            session,
            hold_id,
            HoldStatus.RELEASING.value,
            HoldStatus.HELD.value,
            {"releasing_started_at": None, "last_error": error[:2000]},
        )

    async def mark_disputed(self, session: AsyncSession, hold_id: str, dispute_id: str) -> Hold:
        return await self._compare_and_set(
            session,
            hold_id,
            HoldStatus.HELD.value,
            HoldStatus.DISPUTED.value,
            {"dispute_id": dispute_id, "last_error": None},
        )

    async def settle_dispute(
        self,
        session: AsyncSession,
        hold_id: str,
        to_status: str,
        now: datetime,
        contractor_payout: Optional[Decimal] = None,
        customer_refund: Optional[Decimal] = None,
        payout_transfer_id: Optional[str] = None,
        refund_transfer_id: Optional[str] = None,
    ) -> Hold:
        values: Dict[str, Any] = {
            "contractor_payout": contractor_payout,
            "customer_refund": customer_refund,
            "payout_transfer_id": payout_transfer_id,
            "refund_transfer_id": refund_transfer_id,
            "last_error": None,
        }
        if contractor_payout is not None:
            values["released_at"] = now
        if customer_refund is not None:
            values["refunded_at"] = now
        return await self._compare_and_set(
            session, hold_id, HoldStatus.DISPUTED.value, to_status, values
        )


__all__ = [
    "HoldStateValidator",
    "HoldStateMachine",
]
