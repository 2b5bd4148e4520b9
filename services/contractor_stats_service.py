"""Contractor payout statistics maintained from hold events"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import async_managed_session
from models import ContractorStats, utc_now
from services.domain_events import (
    DisputeFiled,
    EventBus,
    HoldPartiallyRefunded,
    HoldRefunded,
    HoldReleased,
)

logger = logging.getLogger(__name__)


class ContractorStatsService:
    """Event subscriber keeping contractor_stats counters current"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory

    def register(self, bus: EventBus) -> None:
        bus.subscribe(HoldReleased, self.on_released)
        bus.subscribe(HoldPartiallyRefunded, self.on_partially_refunded)
        bus.subscribe(HoldRefunded, self.on_refunded)
        bus.subscribe(DisputeFiled, self.on_dispute_filed)

    async def _increment(self, contractor_id: str, **deltas: Any) -> None:
        """Add deltas to the contractor's counters, creating the row on first use"""
        payout = deltas.pop("total_paid_out", None)
        values: Dict[str, Any] = {
            name: getattr(ContractorStats, name) + delta for name, delta in deltas.items()
        }
        if payout is not None:
            values["total_paid_out"] = ContractorStats.total_paid_out + payout
            values["last_payout_at"] = utc_now()
        values["updated_at"] = utc_now()

        stmt = (
            update(ContractorStats)
            .where(ContractorStats.contractor_id == contractor_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(stmt)
            if result.rowcount == 1:
                return

        try:
            async with async_managed_session(self.session_factory) as session:
                session.add(
                    ContractorStats(
                        contractor_id=contractor_id,
                        completed_jobs=deltas.get("completed_jobs", 0),
                        total_paid_out=payout or Decimal("0.00"),
                        disputes_filed=deltas.get("disputes_filed", 0),
                        disputes_lost=deltas.get("disputes_lost", 0),
                        last_payout_at=utc_now() if payout is not None else None,
                    )
                )
        except IntegrityError:
            # Row created concurrently; the update now applies
            async with async_managed_session(self.session_factory) as session:
                await session.execute(stmt)

    async def on_released(self, event: HoldReleased) -> None:
        await self._increment(event.contractor_id, completed_jobs=1, total_paid_out=event.contractor_payout)

    async def on_partially_refunded(self, event: HoldPartiallyRefunded) -> None:
        await self._increment(
            event.contractor_id,
            completed_jobs=1,
            disputes_lost=1,
            total_paid_out=event.contractor_payout,
        )

    async def on_refunded(self, event: HoldRefunded) -> None:
        await self._increment(event.contractor_id, disputes_lost=1)

    async def on_dispute_filed(self, event: DisputeFiled) -> None:
        await self._increment(event.contractor_id, disputes_filed=1)

    async def get_stats(self, contractor_id: str) -> Optional[ContractorStats]:
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                select(ContractorStats).where(ContractorStats.contractor_id == contractor_id)
            )
            return result.scalar_one_or_none()
