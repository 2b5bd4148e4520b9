"""
Escrow Service

Public operations consumed by the surrounding application: creating holds,
customer approval, disputes, status lookups and the sweep entry points.
Wires the ledger, state machine, orchestrator, dispute service and the event
subscribers together.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from database import async_managed_session
from models import Hold, ReleaseTrigger, utc_now
from services.contractor_stats_service import ContractorStatsService
from services.dispute_service import (
    ComplaintHistory,
    DisputeResolutionResult,
    DisputeService,
)
from services.domain_events import EventBus
from services.escrow_errors import (
    AmountTooSmallError,
    AuthorizationError,
    ValidationError,
)
from services.hold_ledger import HoldLedger
from services.notification_service import NotificationEmitter, build_notification_subscriber
from services.payment_rail import AccountResolver, HttpPaymentRail, PaymentRail
from services.release_orchestrator import ReleaseOrchestrator, ReleaseResult, SweepSummary
from services.review_service import ReviewService
from utils.escrow_state_machine import HoldStateMachine, HoldStateValidator
from utils.fee_calculator import FeeCalculator, FeeSplit

logger = logging.getLogger(__name__)

MAX_ID_LENGTH = 64


@dataclass
class HoldStatusView:
    """Read model returned by get_hold_status"""

    hold_id: str
    job_id: str
    contractor_id: str
    customer_id: str
    status: str
    amount: Decimal
    held_at: datetime
    release_at: datetime
    released_at: Optional[datetime]
    refunded_at: Optional[datetime]
    dispute_id: Optional[str]
    dispute_status: Optional[str]
    is_terminal: bool
    fee_split: Optional[FeeSplit]
    contractor_payout: Optional[Decimal]
    customer_refund: Optional[Decimal]
    last_error: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "hold_id": self.hold_id,
            "job_id": self.job_id,
            "contractor_id": self.contractor_id,
            "customer_id": self.customer_id,
            "status": self.status,
            "amount": str(self.amount),
            "held_at": iso(self.held_at),
            "release_at": iso(self.release_at),
            "released_at": iso(self.released_at),
            "refunded_at": iso(self.refunded_at),
            "dispute_id": self.dispute_id,
            "dispute_status": self.dispute_status,
            "is_terminal": self.is_terminal,
            "fee_split": self.fee_split.to_dict() if self.fee_split else None,
            "contractor_payout": str(self.contractor_payout) if self.contractor_payout is not None else None,
            "customer_refund": str(self.customer_refund) if self.customer_refund is not None else None,
            "last_error": self.last_error,
        }


def _require_id(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} is required")
    if len(value) > MAX_ID_LENGTH:
        raise ValidationError(f"{field_name} must be at most {MAX_ID_LENGTH} characters")
    return value.strip()


class EscrowService:
    """Facade over the escrow engine"""

    def __init__(
        self,
        rail: PaymentRail,
        session_factory: Optional[async_sessionmaker] = None,
        emitter: Optional[NotificationEmitter] = None,
        admin_ids: Optional[Set[str]] = None,
        account_resolver: Optional[AccountResolver] = None,
        clock: Optional[Callable[[], datetime]] = None,
        rail_timeout_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock or utc_now
        self.event_bus = EventBus()
        self.ledger = HoldLedger()
        self.state_machine = HoldStateMachine(self.ledger)
        self.review_service = ReviewService(session_factory)
        self.stats_service = ContractorStatsService(session_factory)
        self.orchestrator = ReleaseOrchestrator(
            rail,
            session_factory=session_factory,
            event_bus=self.event_bus,
            review_service=self.review_service,
            state_machine=self.state_machine,
            account_resolver=account_resolver,
            clock=self.clock,
            rail_timeout_seconds=rail_timeout_seconds,
        )
        self.disputes = DisputeService(
            self.orchestrator,
            session_factory=session_factory,
            event_bus=self.event_bus,
            state_machine=self.state_machine,
            admin_ids=admin_ids,
            clock=self.clock,
        )
        self.notifications = build_notification_subscriber(self.event_bus, emitter)
        self.stats_service.register(self.event_bus)

    def _session(self):
        return async_managed_session(self.session_factory)

    # ============ HOLDS ============

    async def create_hold(
        self,
        job_id: str,
        contractor_id: str,
        customer_id: str,
        amount: Any,
        release_at: Optional[datetime] = None,
    ) -> Hold:
        """
        Escrow funds for a completed job.

        release_at defaults to HOLD_RELEASE_DAYS after creation and is never
        moved afterwards.
        """
        job_id = _require_id(job_id, "job_id")
        contractor_id = _require_id(contractor_id, "contractor_id")
        customer_id = _require_id(customer_id, "customer_id")
        if contractor_id == customer_id:
            raise ValidationError("contractor_id and customer_id must differ")

        # Sub-cent input is rejected rather than silently rounded
        gross = FeeCalculator.to_money(amount, "amount", exact=True)
        if gross <= 0:
            raise ValidationError(f"amount must be positive (got {amount})")

        now = self.clock()
        if release_at is None:
            release_at = now + timedelta(days=Config.HOLD_RELEASE_DAYS)
        elif not isinstance(release_at, datetime):
            raise ValidationError("release_at must be a datetime")
        elif release_at.tzinfo is None:
            release_at = release_at.replace(tzinfo=timezone.utc)

        try:
            FeeCalculator.compute_split(gross)
        except AmountTooSmallError as e:
            logger.warning(f"⚠️ ESCROW: hold for job {job_id} cannot be released without intervention: {e}")

        async with self._session() as session:
            hold = await self.ledger.insert_hold(
                session,
                job_id=job_id,
                contractor_id=contractor_id,
                customer_id=customer_id,
                amount=gross,
                held_at=now,
                release_at=release_at,
            )

        logger.info(
            f"🔒 ESCROW: hold {hold.id} created for job {job_id}, {gross} "
            f"releasing at {hold.release_at.isoformat()}"
        )
        return hold

    async def approve_release(self, hold_id: str, actor_id: str) -> ReleaseResult:
        """Customer approves the work; releases the net payout now"""
        async with self._session() as session:
            hold = await self.ledger.require_hold(session, hold_id)
        if hold.customer_id != actor_id:
            raise AuthorizationError(f"Only the customer of hold {hold_id} may approve its release")
        return await self.orchestrator.release_hold(hold_id, ReleaseTrigger.MANUAL)

    async def release_hold(self, hold_id: str, trigger: Any) -> ReleaseResult:
        return await self.orchestrator.release_hold(hold_id, trigger)

    async def get_hold(self, hold_id: str) -> Hold:
        async with self._session() as session:
            return await self.ledger.require_hold(session, hold_id)

    async def get_hold_status(self, hold_id: str) -> HoldStatusView:
        async with self._session() as session:
            hold = await self.ledger.require_hold(session, hold_id)
            dispute = await self.ledger.get_dispute(session, hold.dispute_id) if hold.dispute_id else None

        try:
            split = FeeCalculator.compute_split(hold.amount)
        except AmountTooSmallError:
            split = None

        return HoldStatusView(
            hold_id=hold.id,
            job_id=hold.job_id,
            contractor_id=hold.contractor_id,
            customer_id=hold.customer_id,
            status=hold.status,
            amount=hold.amount,
            held_at=hold.held_at,
            release_at=hold.release_at,
            released_at=hold.released_at,
            refunded_at=hold.refunded_at,
            dispute_id=hold.dispute_id,
            dispute_status=dispute.status if dispute else None,
            is_terminal=HoldStateValidator.is_terminal_state(hold.status),
            fee_split=split,
            contractor_payout=hold.contractor_payout,
            customer_refund=hold.customer_refund,
            last_error=hold.last_error,
        )

    async def list_holds_for_contractor(self, contractor_id: str, status: Optional[str] = None) -> List[Hold]:
        async with self._session() as session:
            return await self.ledger.list_holds_for_contractor(session, contractor_id, status)

    async def list_holds_for_customer(self, customer_id: str, status: Optional[str] = None) -> List[Hold]:
        async with self._session() as session:
            return await self.ledger.list_holds_for_customer(session, customer_id, status)

    async def get_holds_ready_for_release(self, now: Optional[datetime] = None) -> List[Hold]:
        async with self._session() as session:
            return await self.ledger.find_due_holds(
                session, now or self.clock(), Config.RELEASE_SWEEP_BATCH_SIZE
            )

    # ============ DISPUTES ============

    async def file_dispute(
        self,
        hold_id: str,
        customer_id: str,
        dispute_type: str,
        category: str,
        title: str,
        description: str,
        desired_resolution: Optional[str] = None,
        evidence: Optional[Iterable[Dict[str, Any]]] = None,
    ):
        return await self.disputes.file_dispute(
            hold_id, customer_id, dispute_type, category, title, description,
            desired_resolution, evidence,
        )

    async def resolve_dispute(
        self,
        dispute_id: str,
        resolution: str,
        refund_amount: Optional[Any] = None,
        admin_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> DisputeResolutionResult:
        return await self.disputes.resolve_dispute(dispute_id, resolution, refund_amount, admin_id, notes)

    async def add_dispute_evidence(self, dispute_id: str, actor_id: str, evidence: Iterable[Dict[str, Any]]):
        return await self.disputes.add_dispute_evidence(dispute_id, actor_id, evidence)

    async def get_dispute(self, dispute_id: str):
        return await self.disputes.get_dispute(dispute_id)

    async def check_contractor_complaint_history(self, contractor_id: str) -> ComplaintHistory:
        return await self.disputes.check_contractor_complaint_history(contractor_id)

    # ============ SWEEPS ============

    async def run_release_sweep(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Periodic entry point; returns {processed, released, failed, errors, ...}"""
        summary: SweepSummary = await self.orchestrator.run_sweep(now)
        return summary.to_dict()

    async def recover_stuck_releases(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        summary: SweepSummary = await self.orchestrator.recover_stuck_releases(now)
        return summary.to_dict()

    async def shutdown(self) -> None:
        """Let in-flight event subscribers finish"""
        await self.event_bus.drain()


_escrow_service: Optional[EscrowService] = None


def get_escrow_service() -> EscrowService:
    """Process-wide service wired from Config"""
    global _escrow_service
    if _escrow_service is None:
        _escrow_service = EscrowService(HttpPaymentRail())
        logger.info("✅ ESCROW: service initialized")
    return _escrow_service
