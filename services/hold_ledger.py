"""
Hold Ledger

The durable record of every escrow hold. All status changes go through
conditional_update, a single UPDATE ... WHERE status = :expected statement, so
the database decides which of two racing callers wins.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from models import (
    Dispute,
    DisputeStatus,
    DisputeTimelineEntry,
    Hold,
    HoldStatus,
    NON_TERMINAL_HOLD_STATUSES,
    PaymentTransfer,
    TransferStatus,
    utc_now,
)
from services.escrow_errors import NotFoundError, StateConflictError

logger = logging.getLogger(__name__)


class HoldLedger:
    """Storage access for holds"""

    async def insert_hold(
        self,
        session: AsyncSession,
        job_id: str,
        contractor_id: str,
        customer_id: str,
        amount: Decimal,
        held_at: datetime,
        release_at: datetime,
    ) -> Hold:
        existing = await self.get_open_hold_for_job(session, job_id)
        if existing is not None:
            raise StateConflictError(
                f"Job {job_id} already has an open hold {existing.id} ({existing.status})",
                current_status=existing.status,
            )

        hold = Hold(
            job_id=job_id,
            contractor_id=contractor_id,
            customer_id=customer_id,
            amount=amount,
            status=HoldStatus.HELD.value,
            held_at=held_at,
            release_at=release_at,
        )
        session.add(hold)
        try:
            await session.flush()
        except IntegrityError as e:
            # Lost a race with a concurrent create for the same job
            logger.warning(f"🔒 HOLD_LEDGER: Concurrent hold creation for job {job_id}: {e}")
            raise StateConflictError(f"Job {job_id} already has an open hold") from e
        return hold

    async def get_hold(self, session: AsyncSession, hold_id: str) -> Optional[Hold]:
        # populate_existing: conditional_update bypasses the identity map
        stmt = (
            select(Hold)
            .where(Hold.id == hold_id)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def require_hold(self, session: AsyncSession, hold_id: str) -> Hold:
        hold = await self.get_hold(session, hold_id)
        if hold is None:
            raise NotFoundError(f"Hold {hold_id} not found")
        return hold

    async def get_open_hold_for_job(self, session: AsyncSession, job_id: str) -> Optional[Hold]:
        stmt = select(Hold).where(
            Hold.job_id == job_id,
            Hold.status.in_(NON_TERMINAL_HOLD_STATUSES),
        )
        result = await session.execute(stmt)
        return result.scalars().first()

    async def conditional_update(
        self,
        session: AsyncSession,
        hold_id: str,
        expected_status: str,
        values: Dict[str, Any],
    ) -> bool:
        """
        Atomically apply values if and only if the hold is in expected_status.

        Returns:
            bool: True if this caller performed the update, False if the hold
            was missing or in another status
        """
        stmt = (
            update(Hold)
            .where(Hold.id == hold_id, Hold.status == expected_status)
            .values(**values, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def find_due_holds(
        self, session: AsyncSession, now: datetime, limit: int = 100
    ) -> List[Hold]:
        """Held holds whose release deadline has passed, oldest first"""
        stmt = (
            select(Hold)
            .where(Hold.status == HoldStatus.HELD.value, Hold.release_at <= now)
            .order_by(Hold.release_at)
            .limit(limit)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def find_stuck_releasing(
        self, session: AsyncSession, cutoff: datetime, limit: int = 100
    ) -> List[Hold]:
        """Holds left in releasing since before cutoff"""
        stmt = (
            select(Hold)
            .where(
                Hold.status == HoldStatus.RELEASING.value,
                Hold.releasing_started_at <= cutoff,
            )
            .order_by(Hold.releasing_started_at)
            .limit(limit)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def list_holds_for_contractor(
        self, session: AsyncSession, contractor_id: str, status: Optional[str] = None
    ) -> List[Hold]:
        stmt = select(Hold).where(Hold.contractor_id == contractor_id)
        if status:
            stmt = stmt.where(Hold.status == status)
        result = await session.execute(stmt.order_by(Hold.held_at.desc()))
        return list(result.scalars().all())

    async def list_holds_for_customer(
        self, session: AsyncSession, customer_id: str, status: Optional[str] = None
    ) -> List[Hold]:
        stmt = select(Hold).where(Hold.customer_id == customer_id)
        if status:
            stmt = stmt.where(Hold.status == status)
        result = await session.execute(stmt.order_by(Hold.held_at.desc()))
        return list(result.scalars().all())

    # ============ PAYMENT TRANSFERS ============

    async def get_transfer(self, session: AsyncSession, idempotency_key: str) -> Optional[PaymentTransfer]:
        result = await session.execute(
            select(PaymentTransfer).where(PaymentTransfer.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    async def record_transfer_attempt(
        self,
        session: AsyncSession,
        hold_id: str,
        leg: str,
        idempotency_key: str,
        amount: Decimal,
        destination_account: str,
    ) -> PaymentTransfer:
        transfer = await self.get_transfer(session, idempotency_key)
        if transfer is None:
            transfer = PaymentTransfer(
                hold_id=hold_id,
                leg=leg,
                idempotency_key=idempotency_key,
                amount=amount,
                destination_account=destination_account,
                attempts=0,
            )
            session.add(transfer)
        elif transfer.amount != amount or transfer.destination_account != destination_account:
            # A key names exactly one money movement
            raise StateConflictError(
                f"Idempotency key {idempotency_key} already covers {transfer.amount} to "
                f"{transfer.destination_account}; refusing {amount} to {destination_account}",
                current_status=transfer.status,
            )
        transfer.status = TransferStatus.PENDING.value
        transfer.attempts = (transfer.attempts or 0) + 1
        await session.flush()
        return transfer

    async def mark_transfer(
        self,
        session: AsyncSession,
        idempotency_key: str,
        status: TransferStatus,
        transfer_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        transfer = await self.get_transfer(session, idempotency_key)
        if transfer is None:
            logger.warning(f"⚠️ HOLD_LEDGER: no transfer record for key {idempotency_key}")
            return False
        transfer.status = status.value
        if transfer_id:
            transfer.transfer_id = transfer_id
        transfer.last_error = error[:2000] if error else None
        await session.flush()
        return True

    async def list_transfers(self, session: AsyncSession, hold_id: str) -> List[PaymentTransfer]:
        result = await session.execute(
            select(PaymentTransfer)
            .where(PaymentTransfer.hold_id == hold_id)
            .order_by(PaymentTransfer.id)
        )
        return list(result.scalars().all())

    # ============ DISPUTE RECORDS ============

    async def get_dispute(self, session: AsyncSession, dispute_id: str) -> Optional[Dispute]:
        stmt = (
            select(Dispute)
            .where(Dispute.id == dispute_id)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def append_dispute_timeline(
        self,
        session: AsyncSession,
        dispute_id: str,
        action: str,
        description: str,
        performed_by: Optional[str] = None,
    ) -> DisputeTimelineEntry:
        entry = DisputeTimelineEntry(
            dispute_id=dispute_id,
            action=action,
            description=description,
            performed_by=performed_by,
        )
        session.add(entry)
        await session.flush()
        return entry

    async def find_unsettled_disputes(
        self, session: AsyncSession, resolved_before: datetime, limit: int = 100
    ) -> List[Dispute]:
        """
        Resolved disputes whose hold never reached a terminal status.

        Failed settlements (hold.last_error set) are returned immediately;
        interrupted ones only once they are older than resolved_before.
        """
        stmt = (
            select(Dispute)
            .join(Hold, Hold.id == Dispute.hold_id)
            .where(
                Dispute.status == DisputeStatus.RESOLVED.value,
                Hold.status == HoldStatus.DISPUTED.value,
                or_(Hold.last_error.is_not(None), Dispute.resolved_at <= resolved_before),
            )
            .order_by(Dispute.resolved_at)
            .limit(limit)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())
