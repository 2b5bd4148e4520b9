"""
Shared fixtures for escrow engine tests

Key Components:
1. A temporary-file SQLite database per test (real conditional UPDATEs across connections)
2. A fake payment rail with rail-side idempotency, failure injection and latency
3. A recording notification emitter
4. A fully wired EscrowService and hold factory helpers
"""

import asyncio
import itertools
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Set

import pytest
import pytest_asyncio

from database import create_escrow_engine, create_session_factory, create_tables
from services.escrow_errors import PaymentRailError
from services.escrow_service import EscrowService
from services.notification_service import NotificationEmitter, NotificationEvent
from services.payment_rail import PaymentRail, TransferResult

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

ADMIN_ID = "admin-1"
CUSTOMER_ID = "customer-1"
CONTRACTOR_ID = "contractor-1"


class FakePaymentRail(PaymentRail):
    """In-memory rail that deduplicates by idempotency key like a real one"""

    def __init__(self):
        self.calls: List[Dict] = []
        self.executed: Dict[str, TransferResult] = {}
        self.failures: List[Exception] = []
        self.delay: float = 0.0
        self.lookup_failure: Optional[Exception] = None
        self.blocked_destinations: Set[str] = set()
        self._ids = itertools.count(1)

    def fail_next(self, count: int = 1, error: Optional[Exception] = None):
        for _ in range(count):
            self.failures.append(error or PaymentRailError("rail unavailable"))

    async def transfer(self, amount, destination_account, idempotency_key, metadata=None):
        self.calls.append({
            "amount": amount,
            "destination": destination_account,
            "key": idempotency_key,
            "metadata": metadata or {},
        })
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        if destination_account in self.blocked_destinations:
            raise PaymentRailError(f"destination {destination_account} unavailable")
        if idempotency_key not in self.executed:
            self.executed[idempotency_key] = TransferResult(
                transfer_id=f"tr_{next(self._ids)}", amount=amount
            )
        return self.executed[idempotency_key]

    async def lookup_transfer(self, idempotency_key):
        if self.lookup_failure:
            raise self.lookup_failure
        return self.executed.get(idempotency_key)


class RecordingEmitter(NotificationEmitter):
    def __init__(self):
        self.sent: List[NotificationEvent] = []

    async def notify(self, event: NotificationEvent) -> None:
        self.sent.append(event)

    def types_for(self, role: str) -> List[str]:
        return [n.type for n in self.sent if n.recipient_role == role]


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh schema in a temporary SQLite file"""
    db_engine = create_escrow_engine(f"sqlite+aiosqlite:///{tmp_path / 'escrow_test.db'}")
    assert await create_tables(db_engine), "schema creation failed"
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def rail():
    return FakePaymentRail()


@pytest.fixture
def emitter():
    return RecordingEmitter()


@pytest_asyncio.fixture
async def service(rail, session_factory, emitter):
    escrow_service = EscrowService(
        rail,
        session_factory=session_factory,
        emitter=emitter,
        admin_ids={ADMIN_ID},
        rail_timeout_seconds=2,
    )
    yield escrow_service
    await escrow_service.shutdown()


def past(**delta) -> datetime:
    return datetime.now(timezone.utc) - timedelta(**delta)


def future(**delta) -> datetime:
    return datetime.now(timezone.utc) + timedelta(**delta)


_job_counter = itertools.count(1)


async def make_hold(
    service: EscrowService,
    amount="500.00",
    release_at: Optional[datetime] = None,
    job_id: Optional[str] = None,
):
    return await service.create_hold(
        job_id or f"job-{next(_job_counter)}",
        CONTRACTOR_ID,
        CUSTOMER_ID,
        Decimal(amount) if isinstance(amount, str) else amount,
        release_at or future(days=7),
    )


async def make_dispute(service: EscrowService, hold_id: str, **overrides):
    params = dict(
        hold_id=hold_id,
        customer_id=CUSTOMER_ID,
        dispute_type="quality",
        category="poor_quality",
        title="Leaking pipe after repair",
        description="The sink still leaks after the plumber left.",
        desired_resolution="Partial refund",
        evidence=[{"url": "https://example.com/leak.jpg", "type": "photo"}],
    )
    params.update(overrides)
    return await service.file_dispute(**params)
