"""
Hold ledger tests: conditional updates, queries and transfer records
"""

import pytest
from decimal import Decimal

from conftest import make_hold, past
from models import HoldStatus, TransferLeg, TransferStatus
from services.escrow_errors import StateConflictError
from services.hold_ledger import HoldLedger
from services.payment_rail import derive_idempotency_key


class TestConditionalUpdate:
    """Test the compare-and-set primitive"""

    @pytest.mark.asyncio
    async def test_matching_status_updates(self, service, session_factory):
        """Test the update applies when the expected status matches"""
        hold = await make_hold(service)
        ledger = HoldLedger()

        async with session_factory() as session:
            applied = await ledger.conditional_update(
                session, hold.id, HoldStatus.HELD.value, {"status": HoldStatus.RELEASING.value}
            )
            await session.commit()

        assert applied is True
        assert (await service.get_hold(hold.id)).status == HoldStatus.RELEASING.value

    @pytest.mark.asyncio
    async def test_stale_status_does_not_update(self, service, session_factory):
        """Test the update is a no-op when another status is stored"""
        hold = await make_hold(service)
        ledger = HoldLedger()

        async with session_factory() as session:
            applied = await ledger.conditional_update(
                session, hold.id, HoldStatus.DISPUTED.value, {"status": HoldStatus.REFUNDED.value}
            )
            await session.commit()

        assert applied is False
        assert (await service.get_hold(hold.id)).status == HoldStatus.HELD.value

    @pytest.mark.asyncio
    async def test_missing_hold_does_not_update(self, session_factory):
        """Test an unknown id reports False"""
        async with session_factory() as session:
            applied = await HoldLedger().conditional_update(
                session, "hold_missing", HoldStatus.HELD.value, {"status": HoldStatus.RELEASING.value}
            )
        assert applied is False


class TestHoldQueries:
    """Test ledger read paths"""

    @pytest.mark.asyncio
    async def test_find_due_holds_oldest_first(self, service, session_factory):
        """Test only overdue held holds are returned, oldest deadline first"""
        newer = await make_hold(service, release_at=past(hours=1))
        older = await make_hold(service, release_at=past(days=2))
        await make_hold(service)  # not due yet

        async with session_factory() as session:
            due = await HoldLedger().find_due_holds(session, past(seconds=0))

        assert [h.id for h in due] == [older.id, newer.id]

    @pytest.mark.asyncio
    async def test_find_due_holds_respects_limit(self, service, session_factory):
        """Test the batch size caps the result"""
        for _ in range(3):
            await make_hold(service, release_at=past(hours=1))

        async with session_factory() as session:
            due = await HoldLedger().find_due_holds(session, past(seconds=0), limit=2)

        assert len(due) == 2

    @pytest.mark.asyncio
    async def test_one_open_hold_per_job(self, service, session_factory):
        """Test a second open hold for the same job is refused"""
        await make_hold(service, job_id="job-dup")

        async with session_factory() as session:
            with pytest.raises(StateConflictError):
                await HoldLedger().insert_hold(
                    session,
                    job_id="job-dup",
                    contractor_id="contractor-1",
                    customer_id="customer-1",
                    amount=Decimal("10.00"),
                    held_at=past(seconds=0),
                    release_at=past(seconds=0),
                )


class TestTransferRecords:
    """Test payment transfer bookkeeping"""

    @pytest.mark.asyncio
    async def test_attempts_accumulate_under_one_key(self, service, session_factory):
        """Test repeated attempts reuse the record and count up"""
        hold = await make_hold(service)
        ledger = HoldLedger()
        key = derive_idempotency_key(hold.id, TransferLeg.PAYOUT.value)

        for _ in range(2):
            async with session_factory() as session:
                await ledger.record_transfer_attempt(
                    session, hold.id, TransferLeg.PAYOUT.value, key, Decimal("499.00"), "contractor-1"
                )
                await session.commit()

        async with session_factory() as session:
            assert await ledger.mark_transfer(session, key, TransferStatus.SUCCEEDED, transfer_id="tr_9")
            await session.commit()

        async with session_factory() as session:
            transfers = await ledger.list_transfers(session, hold.id)

        assert len(transfers) == 1
        assert transfers[0].attempts == 2
        assert transfers[0].status == TransferStatus.SUCCEEDED.value
        assert transfers[0].transfer_id == "tr_9"

    @pytest.mark.asyncio
    async def test_key_reuse_with_different_terms_conflicts(self, service, session_factory):
        """Test a key already recorded for one amount cannot be reused for another"""
        hold = await make_hold(service)
        ledger = HoldLedger()
        key = derive_idempotency_key(hold.id, TransferLeg.PAYOUT.value)

        async with session_factory() as session:
            await ledger.record_transfer_attempt(
                session, hold.id, TransferLeg.PAYOUT.value, key, Decimal("499.00"), "contractor-1"
            )
            await session.commit()

        async with session_factory() as session:
            with pytest.raises(StateConflictError):
                await ledger.record_transfer_attempt(
                    session, hold.id, TransferLeg.PAYOUT.value, key, Decimal("349.00"), "contractor-1"
                )
            with pytest.raises(StateConflictError):
                await ledger.record_transfer_attempt(
                    session, hold.id, TransferLeg.PAYOUT.value, key, Decimal("499.00"), "someone-else"
                )

        async with session_factory() as session:
            transfers = await ledger.list_transfers(session, hold.id)
        assert len(transfers) == 1
        assert transfers[0].amount == Decimal("499.00")
        assert transfers[0].attempts == 1

    @pytest.mark.asyncio
    async def test_mark_unknown_transfer(self, session_factory):
        """Test marking a key that was never recorded reports False"""
        async with session_factory() as session:
            assert await HoldLedger().mark_transfer(session, "hold-unknown", TransferStatus.FAILED) is False
