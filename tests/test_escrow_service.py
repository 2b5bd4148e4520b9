"""
Escrow Service Tests

Coverage Focus Areas:
- Hold creation: validation, default release date, one open hold per job
- Status view and list queries
- Error payloads
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from conftest import ADMIN_ID, CONTRACTOR_ID, CUSTOMER_ID, make_dispute, make_hold
from models import HoldStatus
from services.escrow_errors import NotFoundError, StateConflictError, ValidationError
from services.escrow_service import EscrowService


class TestCreateHold:
    """Test hold creation"""

    @pytest.mark.asyncio
    async def test_create_with_default_release_date(self, rail, session_factory):
        """Test release_at defaults to seven days after creation"""
        fixed_now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        service = EscrowService(rail, session_factory=session_factory, clock=lambda: fixed_now)

        hold = await service.create_hold("job-42", CONTRACTOR_ID, CUSTOMER_ID, Decimal("500.00"))

        assert hold.id.startswith("hold_")
        assert hold.status == HoldStatus.HELD.value
        assert hold.amount == Decimal("500.00")
        assert hold.held_at == fixed_now
        assert hold.release_at == fixed_now + timedelta(days=7)

        stored = await service.get_hold(hold.id)
        assert stored.release_at == fixed_now + timedelta(days=7)
        assert stored.release_at.tzinfo is not None
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_naive_release_at_treated_as_utc(self, service):
        """Test a naive release_at is interpreted as UTC"""
        naive = datetime(2030, 1, 1, 9, 30)

        hold = await service.create_hold("job-naive", CONTRACTOR_ID, CUSTOMER_ID, "75.00", naive)

        stored = await service.get_hold(hold.id)
        assert stored.release_at == naive.replace(tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_invalid_amounts_rejected(self, service):
        """Test floats, sub-cent, zero, negative and garbage amounts are refused"""
        for bad in (10.5, "500.005", "0", "-20.00", "abc", None):
            with pytest.raises(ValidationError):
                await service.create_hold("job-bad", CONTRACTOR_ID, CUSTOMER_ID, bad)

        assert await service.list_holds_for_customer(CUSTOMER_ID) == []

    @pytest.mark.asyncio
    async def test_invalid_parties_rejected(self, service):
        """Test blank ids and self-dealing holds are refused"""
        with pytest.raises(ValidationError):
            await service.create_hold("", CONTRACTOR_ID, CUSTOMER_ID, "10.00")
        with pytest.raises(ValidationError):
            await service.create_hold("job-1", "  ", CUSTOMER_ID, "10.00")
        with pytest.raises(ValidationError):
            await service.create_hold("job-1", CUSTOMER_ID, CUSTOMER_ID, "10.00")
        with pytest.raises(ValidationError):
            await service.create_hold("x" * 65, CONTRACTOR_ID, CUSTOMER_ID, "10.00")

    @pytest.mark.asyncio
    async def test_tiny_amount_accepted(self, service):
        """Test amounts below the fee can be held even though they cannot be released"""
        hold = await make_hold(service, amount="0.50")

        assert hold.status == HoldStatus.HELD.value

    @pytest.mark.asyncio
    async def test_one_open_hold_per_job(self, service):
        """Test a job cannot have two open holds"""
        await make_hold(service, job_id="job-once")

        with pytest.raises(StateConflictError):
            await make_hold(service, job_id="job-once")

    @pytest.mark.asyncio
    async def test_new_hold_after_previous_settled(self, service):
        """Test a job can be held again once its previous hold is terminal"""
        first = await make_hold(service, job_id="job-repeat")
        await service.approve_release(first.id, CUSTOMER_ID)

        second = await make_hold(service, job_id="job-repeat")

        assert second.id != first.id


class TestHoldQueries:
    """Test read operations"""

    @pytest.mark.asyncio
    async def test_status_view(self, service):
        """Test the status view carries the fee split and dispute status"""
        hold = await make_hold(service, amount="500.00")
        dispute = await make_dispute(service, hold.id)

        view = await service.get_hold_status(hold.id)
        data = view.to_dict()

        assert view.status == HoldStatus.DISPUTED.value
        assert view.is_terminal is False
        assert view.dispute_id == dispute.id
        assert view.dispute_status == "open"
        assert data["fee_split"]["contractor_receives"] == "499.00"
        assert data["contractor_payout"] is None

    @pytest.mark.asyncio
    async def test_status_view_after_settlement(self, service):
        """Test terminal holds report their settled amounts"""
        hold = await make_hold(service, amount="500.00")
        dispute = await make_dispute(service, hold.id)
        await service.resolve_dispute(dispute.id, "split", refund_amount="150.00", admin_id=ADMIN_ID)

        view = await service.get_hold_status(hold.id)

        assert view.is_terminal is True
        assert view.status == HoldStatus.PARTIALLY_REFUNDED.value
        assert view.customer_refund == Decimal("150.00")
        assert view.contractor_payout == Decimal("349.00")
        assert view.dispute_status == "resolved"

    @pytest.mark.asyncio
    async def test_status_view_small_amount(self, service):
        """Test holds below the fee report no fee split"""
        hold = await make_hold(service, amount="0.75")

        view = await service.get_hold_status(hold.id)

        assert view.fee_split is None
        assert view.to_dict()["fee_split"] is None

    @pytest.mark.asyncio
    async def test_unknown_hold(self, service):
        """Test lookups of missing holds raise NotFoundError"""
        with pytest.raises(NotFoundError):
            await service.get_hold_status("hold_missing")

    @pytest.mark.asyncio
    async def test_list_by_party_and_status(self, service):
        """Test listing holds for each party with a status filter"""
        released = await make_hold(service)
        await make_hold(service)
        await service.approve_release(released.id, CUSTOMER_ID)

        assert len(await service.list_holds_for_contractor(CONTRACTOR_ID)) == 2
        assert len(await service.list_holds_for_customer(CUSTOMER_ID, HoldStatus.HELD.value)) == 1
        only_released = await service.list_holds_for_contractor(CONTRACTOR_ID, HoldStatus.RELEASED.value)
        assert [h.id for h in only_released] == [released.id]
        assert await service.list_holds_for_customer("someone-else") == []


class TestErrorPayloads:
    """Test error serialization"""

    def test_state_conflict_payload(self):
        """Test errors serialize their code and retryability"""
        error = StateConflictError("Hold h is released", current_status="released")

        assert error.to_dict() == {
            "error": "state_conflict",
            "message": "Hold h is released",
            "retryable": False,
        }
        assert error.current_status == "released"

    def test_custom_error_code(self):
        """Test an explicit error code overrides the default"""
        assert ValidationError("bad", error_code="amount_invalid").error_code == "amount_invalid"
