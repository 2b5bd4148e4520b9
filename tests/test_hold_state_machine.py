"""
Hold State Machine Tests

Coverage Focus Areas:
- Transition table: legal edges, terminal states
- Compare-and-set transitions against the database
- Illegal transitions leave the stored hold untouched
"""

import pytest

from conftest import make_hold
from models import HoldStatus, ReleaseTrigger, utc_now
from services.escrow_errors import NotFoundError, StateConflictError
from utils.escrow_state_machine import HoldStateMachine, HoldStateValidator


class TestHoldStateValidator:
    """Test the transition table"""

    def test_creation_only_into_held(self):
        """Test a new hold can only start as held"""
        assert HoldStateValidator.is_valid_transition(None, HoldStatus.HELD.value) is True
        assert HoldStateValidator.is_valid_transition(None, HoldStatus.RELEASING.value) is False

    def test_transitions_from_held(self):
        """Test held may start a release or open a dispute"""
        assert HoldStateValidator.get_valid_transitions(HoldStatus.HELD.value) == {
            HoldStatus.RELEASING.value,
            HoldStatus.DISPUTED.value,
        }
        assert HoldStateValidator.is_valid_transition(
            HoldStatus.HELD.value, HoldStatus.RELEASED.value
        ) is False

    def test_transitions_from_releasing(self):
        """Test releasing completes or rolls back to held"""
        assert HoldStateValidator.is_valid_transition(
            HoldStatus.RELEASING.value, HoldStatus.RELEASED.value
        ) is True
        assert HoldStateValidator.is_valid_transition(
            HoldStatus.RELEASING.value, HoldStatus.HELD.value
        ) is True
        # A release in flight cannot be disputed
        assert HoldStateValidator.is_valid_transition(
            HoldStatus.RELEASING.value, HoldStatus.DISPUTED.value
        ) is False

    def test_transitions_from_disputed(self):
        """Test disputed resolves into one of the three outcomes"""
        assert HoldStateValidator.get_valid_transitions(HoldStatus.DISPUTED.value) == {
            HoldStatus.RELEASED.value,
            HoldStatus.REFUNDED.value,
            HoldStatus.PARTIALLY_REFUNDED.value,
        }
        assert HoldStateValidator.is_valid_transition(
            HoldStatus.DISPUTED.value, HoldStatus.HELD.value
        ) is False

    def test_terminal_states(self):
        """Test terminal states have no outgoing edges"""
        for status in (HoldStatus.RELEASED, HoldStatus.REFUNDED, HoldStatus.PARTIALLY_REFUNDED):
            assert HoldStateValidator.is_terminal_state(status.value) is True
            assert HoldStateValidator.get_valid_transitions(status.value) == set()

        for status in (HoldStatus.HELD, HoldStatus.RELEASING, HoldStatus.DISPUTED):
            assert HoldStateValidator.is_terminal_state(status.value) is False

    def test_unknown_status_is_not_terminal(self):
        """Test an unknown status is neither terminal nor transitionable"""
        assert HoldStateValidator.is_terminal_state("archived") is False
        assert HoldStateValidator.get_valid_transitions("archived") == set()

    def test_validate_transition_raises(self):
        """Test an illegal edge raises StateConflictError with the current status"""
        with pytest.raises(StateConflictError) as exc_info:
            HoldStateValidator.validate_transition(
                HoldStatus.RELEASED.value, HoldStatus.HELD.value, "hold_x"
            )
        assert exc_info.value.current_status == HoldStatus.RELEASED.value
        assert "hold_x" in str(exc_info.value)


class TestHoldStateMachineCAS:
    """Test conditional transitions against the ledger"""

    @pytest.mark.asyncio
    async def test_begin_release_from_held(self, service, session_factory):
        """Test held -> releasing records the trigger and start time"""
        hold = await make_hold(service)
        machine = HoldStateMachine()

        async with session_factory() as session:
            updated = await machine.begin_release(session, hold.id, ReleaseTrigger.SWEEP, utc_now())
            await session.commit()

        assert updated.status == HoldStatus.RELEASING.value
        assert updated.release_trigger == "sweep"
        assert updated.releasing_started_at is not None

    @pytest.mark.asyncio
    async def test_second_begin_release_loses(self, service, session_factory):
        """Test only one caller can move a hold into releasing"""
        hold = await make_hold(service)
        machine = HoldStateMachine()

        async with session_factory() as session:
            await machine.begin_release(session, hold.id, ReleaseTrigger.MANUAL, utc_now())
            await session.commit()

        async with session_factory() as session:
            with pytest.raises(StateConflictError) as exc_info:
                await machine.begin_release(session, hold.id, ReleaseTrigger.SWEEP, utc_now())

        assert exc_info.value.current_status == HoldStatus.RELEASING.value
        stored = await service.get_hold(hold.id)
        assert stored.release_trigger == "manual"

    @pytest.mark.asyncio
    async def test_dispute_blocked_while_releasing(self, service, session_factory):
        """Test mark_disputed fails once a release is in flight"""
        hold = await make_hold(service)
        machine = HoldStateMachine()

        async with session_factory() as session:
            await machine.begin_release(session, hold.id, ReleaseTrigger.MANUAL, utc_now())
            await session.commit()

        async with session_factory() as session:
            with pytest.raises(StateConflictError):
                await machine.mark_disputed(session, hold.id, "dsp_1")

        stored = await service.get_hold(hold.id)
        assert stored.status == HoldStatus.RELEASING.value
        assert stored.dispute_id is None

    @pytest.mark.asyncio
    async def test_abort_release_returns_to_held(self, service, session_factory):
        """Test releasing -> held clears the start time and records the error"""
        hold = await make_hold(service)
        machine = HoldStateMachine()

        async with session_factory() as session:
            await machine.begin_release(session, hold.id, ReleaseTrigger.MANUAL, utc_now())
            reverted = await machine.abort_release(session, hold.id, "rail down")
            await session.commit()

        assert reverted.status == HoldStatus.HELD.value
        assert reverted.releasing_started_at is None
        assert reverted.last_error == "rail down"

    @pytest.mark.asyncio
    async def test_illegal_transition_leaves_state_unchanged(self, service, session_factory):
        """Test held -> released is refused without touching the row"""
        hold = await make_hold(service)
        machine = HoldStateMachine()

        async with session_factory() as session:
            with pytest.raises(StateConflictError):
                await machine.transition(session, hold.id, HoldStatus.RELEASED.value)

        stored = await service.get_hold(hold.id)
        assert stored.status == HoldStatus.HELD.value
        assert stored.released_at is None

    @pytest.mark.asyncio
    async def test_terminal_hold_cannot_move(self, service, session_factory):
        """Test a released hold rejects every further transition"""
        hold = await make_hold(service)
        await service.approve_release(hold.id, hold.customer_id)
        machine = HoldStateMachine()

        for target in (HoldStatus.HELD, HoldStatus.RELEASING, HoldStatus.DISPUTED, HoldStatus.REFUNDED):
            async with session_factory() as session:
                with pytest.raises(StateConflictError):
                    await machine.transition(session, hold.id, target.value)

        stored = await service.get_hold(hold.id)
        assert stored.status == HoldStatus.RELEASED.value

    @pytest.mark.asyncio
    async def test_unknown_hold(self, service, session_factory):
        """Test transitions on a missing hold raise NotFoundError"""
        machine = HoldStateMachine()

        async with session_factory() as session:
            with pytest.raises(NotFoundError):
                await machine.begin_release(session, "hold_missing", ReleaseTrigger.MANUAL, utc_now())
