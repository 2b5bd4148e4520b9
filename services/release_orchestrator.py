"""
Release Orchestrator

Single entry point for moving held funds out of escrow, whether triggered by
a customer approval, the periodic sweep, or a dispute resolution.

Release protocol:
1. Compare-and-set held -> releasing, committed on its own
2. Fee split
3. Payment rail transfer, outside any transaction, keyed by hold id
4. releasing -> released, then best-effort follow-ups (events, review)
5. On rail failure: releasing -> held so the next sweep can retry
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from database import async_managed_session
from models import (
    Dispute,
    DisputeResolution,
    Hold,
    HoldStatus,
    ReleaseTrigger,
    TransferLeg,
    TransferStatus,
    utc_now,
)
from services.domain_events import (
    EventBus,
    HoldPartiallyRefunded,
    HoldRefunded,
    HoldReleased,
    HoldReleaseFailed,
)
from services.escrow_errors import (
    AmountTooSmallError,
    EscrowError,
    PaymentRailError,
    StateConflictError,
    ValidationError,
)
from services.hold_ledger import HoldLedger
from services.payment_rail import (
    AccountResolver,
    PaymentRail,
    TransferResult,
    call_rail,
    default_account_resolver,
    derive_idempotency_key,
)
from services.review_service import ReviewService
from utils.escrow_state_machine import HoldStateMachine
from utils.fee_calculator import FeeCalculator

logger = logging.getLogger(__name__)

RELEASE_PENDING_MESSAGE = "payment release pending — will retry automatically"


class ReleaseOutcome(Enum):
    RELEASED = "released"
    PENDING_RETRY = "pending_retry"


@dataclass
class ReleaseResult:
    """What a release attempt did to a hold"""

    hold_id: str
    outcome: ReleaseOutcome
    status: str
    message: str
    contractor_payout: Optional[Decimal] = None
    customer_refund: Optional[Decimal] = None
    transfer_id: Optional[str] = None
    error: Optional[PaymentRailError] = None

    @property
    def released(self) -> bool:
        return self.outcome is ReleaseOutcome.RELEASED


@dataclass
class SweepSummary:
    """Result of one sweep or recovery pass"""

    processed: int = 0
    released: int = 0
    failed: int = 0
    skipped: int = 0
    recovered: int = 0
    errors: List[str] = field(default_factory=list)

    def record_failure(self, hold_id: str, error: Union[Exception, str]) -> None:
        self.failed += 1
        self.errors.append(f"{hold_id}: {error}")

    def to_dict(self) -> Dict[str, object]:
        return {
            "processed": self.processed,
            "released": self.released,
            "failed": self.failed,
            "skipped": self.skipped,
            "recovered": self.recovered,
            "errors": list(self.errors),
        }


class ReleaseOrchestrator:
    """Drives holds to their terminal state through the payment rail"""

    def __init__(
        self,
        rail: PaymentRail,
        session_factory: Optional[async_sessionmaker] = None,
        event_bus: Optional[EventBus] = None,
        review_service: Optional[ReviewService] = None,
        state_machine: Optional[HoldStateMachine] = None,
        account_resolver: Optional[AccountResolver] = None,
        clock: Optional[Callable[[], datetime]] = None,
        rail_timeout_seconds: Optional[float] = None,
    ):
        self.rail = rail
        self.session_factory = session_factory
        self.event_bus = event_bus or EventBus()
        self.review_service = review_service or ReviewService(session_factory)
        self.state_machine = state_machine or HoldStateMachine()
        self.ledger: HoldLedger = self.state_machine.ledger
        self.account_resolver = account_resolver or default_account_resolver
        self.clock = clock or utc_now
        self.rail_timeout_seconds = rail_timeout_seconds

    def _session(self):
        return async_managed_session(self.session_factory)

    # ============ RELEASE ============

    async def release_hold(
        self, hold_id: str, trigger: Union[ReleaseTrigger, str]
    ) -> ReleaseResult:
        """
        Release a hold's net payout to the contractor.

        Raises:
            NotFoundError: unknown hold
            StateConflictError: the hold is not exactly held (or, for a
                dispute-resolution trigger, not a disputed hold with a resolved dispute)
            AmountTooSmallError: the flat fee swallows the whole amount; hold stays held

        Rail failures do not raise: the hold is rolled back and the result
        reports the pending retry.
        """
        try:
            trigger = ReleaseTrigger(trigger)
        except ValueError as e:
            raise ValidationError(f"Unknown release trigger: {trigger!r}") from e
        if trigger is ReleaseTrigger.DISPUTE_RESOLUTION:
            return await self.settle_dispute(hold_id)

        logger.info(f"🔄 RELEASE_ORCHESTRATOR: release requested for hold {hold_id} ({trigger.value})")

        async with self._session() as session:
            hold = await self.state_machine.begin_release(session, hold_id, trigger, self.clock())

        try:
            split = FeeCalculator.compute_split(hold.amount)
        except AmountTooSmallError as e:
            logger.error(f"❌ RELEASE_ORCHESTRATOR: hold {hold_id} needs manual intervention: {e}")
            async with self._session() as session:
                await self.state_machine.abort_release(session, hold_id, str(e))
            raise

        destination = self.account_resolver("contractor", hold.contractor_id)
        try:
            transfer = await self._execute_transfer(
                hold, TransferLeg.PAYOUT, split.contractor_receives, destination, trigger
            )
        except PaymentRailError as e:
            return await self._handle_release_failure(hold, trigger, e)
        except StateConflictError as e:
            logger.error(f"❌ RELEASE_ORCHESTRATOR: hold {hold_id} payout record conflict: {e}")
            async with self._session() as session:
                await self.state_machine.abort_release(session, hold_id, str(e))
            raise

        async with self._session() as session:
            hold = await self.state_machine.complete_release(
                session, hold_id, self.clock(), split.contractor_receives, transfer.transfer_id
            )

        logger.info(
            f"✅ RELEASE_ORCHESTRATOR: hold {hold_id} released, "
            f"{split.contractor_receives} to contractor {hold.contractor_id} ({transfer.transfer_id})"
        )
        await self._after_release(hold, trigger, transfer)
        return ReleaseResult(
            hold_id=hold_id,
            outcome=ReleaseOutcome.RELEASED,
            status=hold.status,
            message="payment released",
            contractor_payout=split.contractor_receives,
            transfer_id=transfer.transfer_id,
        )

    async def _execute_transfer(
        self,
        hold: Hold,
        leg: TransferLeg,
        amount: Decimal,
        destination: str,
        trigger: ReleaseTrigger,
    ) -> TransferResult:
        key = derive_idempotency_key(hold.id, leg.value)

        async with self._session() as session:
            existing = await self.ledger.get_transfer(session, key)
            if existing is not None and existing.status == TransferStatus.SUCCEEDED.value:
                # Leg already paid by an earlier attempt
                return TransferResult(transfer_id=existing.transfer_id, amount=existing.amount)
            await self.ledger.record_transfer_attempt(
                session, hold.id, leg.value, key, amount, destination
            )

        metadata = {
            "hold_id": hold.id,
            "job_id": hold.job_id,
            "leg": leg.value,
            "trigger": trigger.value,
        }
        try:
            result = await call_rail(
                self.rail.transfer(amount, destination, key, metadata),
                self.rail_timeout_seconds,
                "transfer",
            )
        except PaymentRailError as e:
            logger.warning(f"⚠️ RELEASE_ORCHESTRATOR: {leg.value} transfer for hold {hold.id} failed: {e}")
            async with self._session() as session:
                await self.ledger.mark_transfer(session, key, TransferStatus.FAILED, error=str(e))
            raise

        async with self._session() as session:
            await self.ledger.mark_transfer(
                session, key, TransferStatus.SUCCEEDED, transfer_id=result.transfer_id
            )
        return result

    async def _handle_release_failure(
        self, hold: Hold, trigger: ReleaseTrigger, error: PaymentRailError
    ) -> ReleaseResult:
        async with self._session() as session:
            hold = await self.state_machine.abort_release(session, hold.id, str(error))

        logger.error(
            f"❌ RELEASE_ORCHESTRATOR: hold {hold.id} rolled back to held after rail failure "
            f"({trigger.value}): {error}"
        )
        self.event_bus.publish(
            HoldReleaseFailed(
                hold_id=hold.id,
                job_id=hold.job_id,
                contractor_id=hold.contractor_id,
                customer_id=hold.customer_id,
                amount=hold.amount,
                occurred_at=self.clock(),
                trigger=trigger.value,
                error=str(error),
            )
        )
        return ReleaseResult(
            hold_id=hold.id,
            outcome=ReleaseOutcome.PENDING_RETRY,
            status=hold.status,
            message=RELEASE_PENDING_MESSAGE,
            error=error,
        )

    async def _after_release(
        self, hold: Hold, trigger: ReleaseTrigger, transfer: TransferResult
    ) -> None:
        """Best-effort follow-ups; the release is already committed"""
        self.event_bus.publish(
            HoldReleased(
                hold_id=hold.id,
                job_id=hold.job_id,
                contractor_id=hold.contractor_id,
                customer_id=hold.customer_id,
                amount=hold.amount,
                occurred_at=hold.released_at or self.clock(),
                contractor_payout=hold.contractor_payout,
                trigger=trigger.value,
                transfer_id=transfer.transfer_id,
            )
        )
        if trigger is ReleaseTrigger.SWEEP:
            try:
                await self.review_service.synthesize_auto_review(hold)
            except Exception as e:
                logger.error(f"❌ RELEASE_ORCHESTRATOR: review synthesis failed for hold {hold.id}: {e}")

    # ============ DISPUTE SETTLEMENT ============

    async def settle_dispute(self, hold_id: str) -> ReleaseResult:
        """
        Move money for a resolved dispute and finish the hold.

        The dispute must already be claimed (resolved). Each leg uses its own
        idempotency key and legs paid on an earlier attempt are skipped, so a
        failed settlement can be re-driven safely.
        """
        async with self._session() as session:
            hold = await self.ledger.require_hold(session, hold_id)
            dispute = await self.ledger.get_dispute(session, hold.dispute_id) if hold.dispute_id else None

        if hold.status != HoldStatus.DISPUTED.value:
            raise StateConflictError(
                f"Hold {hold_id} is {hold.status}; only disputed holds settle by dispute resolution",
                current_status=hold.status,
            )
        if dispute is None or dispute.resolution is None:
            raise StateConflictError(
                f"Hold {hold_id} has no resolved dispute to settle", current_status=hold.status
            )

        resolution = DisputeResolution(dispute.resolution)
        refund: Optional[Decimal] = None
        payout: Optional[Decimal] = None
        if resolution is DisputeResolution.CUSTOMER:
            refund = hold.amount
            to_status = HoldStatus.REFUNDED.value
        elif resolution is DisputeResolution.CONTRACTOR:
            payout = FeeCalculator.compute_split(hold.amount).contractor_receives
            to_status = HoldStatus.RELEASED.value
        else:
            refund = dispute.refund_amount
            payout = FeeCalculator.compute_split(hold.amount - refund).contractor_receives
            to_status = HoldStatus.PARTIALLY_REFUNDED.value

        trigger = ReleaseTrigger.DISPUTE_RESOLUTION
        refund_transfer: Optional[TransferResult] = None
        payout_transfer: Optional[TransferResult] = None
        try:
            if refund is not None:
                refund_transfer = await self._execute_transfer(
                    hold, TransferLeg.REFUND, refund,
                    self.account_resolver("customer", hold.customer_id), trigger,
                )
            if payout is not None:
                payout_transfer = await self._execute_transfer(
                    hold, TransferLeg.DISPUTE_PAYOUT, payout,
                    self.account_resolver("contractor", hold.contractor_id), trigger,
                )
        except PaymentRailError as e:
            return await self._handle_settlement_failure(hold, dispute, e)

        now = self.clock()
        async with self._session() as session:
            hold = await self.state_machine.settle_dispute(
                session,
                hold_id,
                to_status,
                now,
                contractor_payout=payout,
                customer_refund=refund,
                payout_transfer_id=payout_transfer.transfer_id if payout_transfer else None,
                refund_transfer_id=refund_transfer.transfer_id if refund_transfer else None,
            )
            dispute = await self.ledger.get_dispute(session, dispute.id)
            dispute.settled_at = now
            await self.ledger.append_dispute_timeline(
                session, dispute.id, "settled",
                f"Hold {to_status}: refund {refund or Decimal('0.00')}, payout {payout or Decimal('0.00')}",
            )

        logger.info(
            f"✅ RELEASE_ORCHESTRATOR: dispute {dispute.case_number} settled, hold {hold_id} -> {to_status}"
        )
        self._publish_settlement(hold, dispute, payout_transfer)
        return ReleaseResult(
            hold_id=hold_id,
            outcome=ReleaseOutcome.RELEASED,
            status=hold.status,
            message=f"dispute settled ({resolution.value})",
            contractor_payout=payout,
            customer_refund=refund,
            transfer_id=(payout_transfer or refund_transfer).transfer_id,
        )

    async def _handle_settlement_failure(
        self, hold: Hold, dispute: Dispute, error: PaymentRailError
    ) -> ReleaseResult:
        async with self._session() as session:
            # Status stays disputed; only the error is recorded
            await self.ledger.conditional_update(
                session, hold.id, HoldStatus.DISPUTED.value, {"last_error": str(error)[:2000]}
            )
            await self.ledger.append_dispute_timeline(
                session, dispute.id, "settlement_failed", f"Settlement transfer failed: {error}"
            )

        logger.error(
            f"❌ RELEASE_ORCHESTRATOR: settlement of dispute {dispute.case_number} failed, "
            f"will retry on next sweep: {error}"
        )
        self.event_bus.publish(
            HoldReleaseFailed(
                hold_id=hold.id,
                job_id=hold.job_id,
                contractor_id=hold.contractor_id,
                customer_id=hold.customer_id,
                amount=hold.amount,
                occurred_at=self.clock(),
                trigger=ReleaseTrigger.DISPUTE_RESOLUTION.value,
                error=str(error),
            )
        )
        return ReleaseResult(
            hold_id=hold.id,
            outcome=ReleaseOutcome.PENDING_RETRY,
            status=HoldStatus.DISPUTED.value,
            message=RELEASE_PENDING_MESSAGE,
            error=error,
        )

    def _publish_settlement(
        self, hold: Hold, dispute: Dispute, payout_transfer: Optional[TransferResult]
    ) -> None:
        common = dict(
            hold_id=hold.id,
            job_id=hold.job_id,
            contractor_id=hold.contractor_id,
            customer_id=hold.customer_id,
            amount=hold.amount,
            occurred_at=self.clock(),
        )
        if hold.status == HoldStatus.REFUNDED.value:
            event = HoldRefunded(**common, refund_amount=hold.customer_refund, dispute_id=dispute.id)
        elif hold.status == HoldStatus.PARTIALLY_REFUNDED.value:
            event = HoldPartiallyRefunded(
                **common,
                refund_amount=hold.customer_refund,
                contractor_payout=hold.contractor_payout,
                dispute_id=dispute.id,
            )
        else:
            event = HoldReleased(
                **common,
                contractor_payout=hold.contractor_payout,
                trigger=ReleaseTrigger.DISPUTE_RESOLUTION.value,
                transfer_id=payout_transfer.transfer_id,
            )
        self.event_bus.publish(event)

    # ============ SWEEPS ============

    async def run_sweep(self, now: Optional[datetime] = None) -> SweepSummary:
        """
        Release every overdue held hold and retry failed dispute settlements.

        Each hold is processed independently; one failure never stops the pass.
        """
        summary = SweepSummary()
        if not Config.AUTO_RELEASE_ENABLED:
            logger.info("⏸️ RELEASE_SWEEP: auto-release disabled, skipping")
            return summary

        now = now or self.clock()
        async with self._session() as session:
            due = await self.ledger.find_due_holds(session, now, Config.RELEASE_SWEEP_BATCH_SIZE)
            unsettled = await self.ledger.find_unsettled_disputes(
                session,
                now - timedelta(minutes=Config.RELEASING_GRACE_MINUTES),
                Config.RELEASE_SWEEP_BATCH_SIZE,
            )

        logger.info(
            f"🔍 RELEASE_SWEEP: {len(due)} overdue holds, {len(unsettled)} unsettled disputes"
        )

        for hold in due:
            await self._sweep_one(summary, hold.id, ReleaseTrigger.SWEEP)
        for dispute in unsettled:
            await self._sweep_one(summary, dispute.hold_id, ReleaseTrigger.DISPUTE_RESOLUTION)

        logger.info(f"✅ RELEASE_SWEEP: {summary.to_dict()}")
        return summary

    async def _sweep_one(self, summary: SweepSummary, hold_id: str, trigger: ReleaseTrigger) -> None:
        summary.processed += 1
        try:
            result = await self.release_hold(hold_id, trigger)
        except StateConflictError as e:
            # Another caller got there first
            logger.info(f"⏭️ RELEASE_SWEEP: hold {hold_id} skipped: {e}")
            summary.skipped += 1
            return
        except EscrowError as e:
            logger.error(f"❌ RELEASE_SWEEP: hold {hold_id} failed: {e}")
            summary.record_failure(hold_id, e)
            return
        except Exception as e:
            logger.exception(f"❌ RELEASE_SWEEP: unexpected error on hold {hold_id}: {e}")
            summary.record_failure(hold_id, e)
            return

        if result.released:
            summary.released += 1
        else:
            summary.record_failure(hold_id, result.error or result.message)

    async def recover_stuck_releases(self, now: Optional[datetime] = None) -> SweepSummary:
        """
        Resolve holds left in releasing by a crash.

        The rail is asked whether the payout key was executed: if so the
        release is completed, otherwise the hold goes back to held.
        """
        summary = SweepSummary()
        now = now or self.clock()
        cutoff = now - timedelta(minutes=Config.RELEASING_GRACE_MINUTES)
        async with self._session() as session:
            stuck = await self.ledger.find_stuck_releasing(session, cutoff, Config.RELEASE_SWEEP_BATCH_SIZE)

        if stuck:
            logger.warning(f"⚠️ RELEASE_RECOVERY: {len(stuck)} holds stuck in releasing")

        for hold in stuck:
            summary.processed += 1
            key = derive_idempotency_key(hold.id, TransferLeg.PAYOUT.value)
            try:
                outcome = await call_rail(
                    self.rail.lookup_transfer(key), self.rail_timeout_seconds, "lookup"
                )
            except PaymentRailError as e:
                # Outcome unknown; leave it releasing for the next pass
                logger.error(f"❌ RELEASE_RECOVERY: lookup failed for hold {hold.id}: {e}")
                summary.record_failure(hold.id, e)
                continue

            try:
                if outcome is not None:
                    await self._complete_recovered(hold, outcome)
                    summary.released += 1
                else:
                    async with self._session() as session:
                        await self.state_machine.abort_release(
                            session, hold.id, "release interrupted; no transfer executed"
                        )
                        await self.ledger.mark_transfer(
                            session, key, TransferStatus.FAILED, error="release interrupted"
                        )
                    logger.info(f"↩️ RELEASE_RECOVERY: hold {hold.id} rolled back to held")
                summary.recovered += 1
            except StateConflictError as e:
                logger.info(f"⏭️ RELEASE_RECOVERY: hold {hold.id} moved on concurrently: {e}")
                summary.skipped += 1

        if summary.processed:
            logger.info(f"✅ RELEASE_RECOVERY: {summary.to_dict()}")
        return summary

    async def _complete_recovered(self, hold: Hold, outcome: TransferResult) -> None:
        payout = FeeCalculator.compute_split(hold.amount).contractor_receives
        key = derive_idempotency_key(hold.id, TransferLeg.PAYOUT.value)
        async with self._session() as session:
            await self.ledger.mark_transfer(
                session, key, TransferStatus.SUCCEEDED, transfer_id=outcome.transfer_id
            )
            completed = await self.state_machine.complete_release(
                session, hold.id, self.clock(), payout, outcome.transfer_id
            )
        logger.info(f"✅ RELEASE_RECOVERY: hold {hold.id} confirmed released ({outcome.transfer_id})")
        trigger = ReleaseTrigger(completed.release_trigger or ReleaseTrigger.MANUAL.value)
        await self._after_release(completed, trigger, outcome)
