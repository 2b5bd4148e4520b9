"""
Dispute Service

Opening, evidencing and resolving disputes on escrow holds. Filing a dispute
is a compare-and-set from held to disputed, so it is mutually exclusive with a
release in flight. Resolution claims the dispute with a second
compare-and-set (open -> resolved) before any money moves, which makes
resolving twice a StateConflictError that never reaches the payment rail.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Config
from database import async_managed_session
from models import (
    Dispute,
    DisputeCategory,
    DisputeEvidence,
    DisputeResolution,
    DisputeStatus,
    DisputeType,
    EvidenceType,
    ReleaseTrigger,
    new_id,
    utc_now,
)
from services.domain_events import DisputeFiled, DisputeResolved, EventBus
from services.escrow_errors import (
    AuthorizationError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from services.release_orchestrator import ReleaseOrchestrator, ReleaseResult
from utils.escrow_state_machine import HoldStateMachine
from utils.fee_calculator import FeeCalculator

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 255
MAX_EVIDENCE_ITEMS = 20


@dataclass
class DisputeResolutionResult:
    """Resolved dispute plus what happened to the money"""

    dispute: Dispute
    release: ReleaseResult

    @property
    def settled(self) -> bool:
        return self.release.released


@dataclass
class ComplaintHistory:
    contractor_id: str
    upheld_complaints: int
    window_days: int
    threshold: int

    @property
    def flagged(self) -> bool:
        return self.upheld_complaints >= self.threshold


def _enum_value(enum_cls, value: Any, field_name: str) -> str:
    raw = value.value if isinstance(value, enum_cls) else value
    allowed = [member.value for member in enum_cls]
    if raw not in allowed:
        raise ValidationError(f"{field_name} must be one of {', '.join(allowed)} (got {value!r})")
    return raw


def validate_evidence(evidence: Optional[Iterable[Dict[str, Any]]]) -> List[Dict[str, Optional[str]]]:
    """Normalize evidence items of the form {url, type, description?}"""
    items = list(evidence or [])
    if len(items) > MAX_EVIDENCE_ITEMS:
        raise ValidationError(f"At most {MAX_EVIDENCE_ITEMS} evidence items are allowed")

    normalized = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"evidence[{index}] must be an object with url and type")
        url = (item.get("url") or "").strip()
        if not url:
            raise ValidationError(f"evidence[{index}].url is required")
        normalized.append({
            "url": url,
            "type": _enum_value(EvidenceType, item.get("type"), f"evidence[{index}].type"),
            "description": item.get("description"),
        })
    return normalized


class DisputeService:
    """Dispute lifecycle attached to escrow holds"""

    def __init__(
        self,
        orchestrator: ReleaseOrchestrator,
        session_factory: Optional[async_sessionmaker] = None,
        event_bus: Optional[EventBus] = None,
        state_machine: Optional[HoldStateMachine] = None,
        admin_ids: Optional[Set[str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.orchestrator = orchestrator
        self.session_factory = session_factory
        self.event_bus = event_bus or orchestrator.event_bus
        self.state_machine = state_machine or orchestrator.state_machine
        self.ledger = self.state_machine.ledger
        self.admin_ids = admin_ids
        self.clock = clock or utc_now

    def _session(self):
        return async_managed_session(self.session_factory)

    def is_admin(self, actor_id: str) -> bool:
        admins = self.admin_ids if self.admin_ids is not None else Config.ESCROW_ADMIN_IDS
        return actor_id in admins

    async def _next_case_number(self, session: AsyncSession, now: datetime) -> str:
        """Case numbers look like DSP-20261017-0001"""
        prefix = f"DSP-{now.strftime('%Y%m%d')}-"
        result = await session.execute(
            select(func.count(Dispute.id)).where(Dispute.case_number.like(f"{prefix}%"))
        )
        sequence = (result.scalar() or 0) + 1
        while True:
            candidate = f"{prefix}{sequence:04d}"
            taken = await session.execute(select(Dispute.id).where(Dispute.case_number == candidate))
            if taken.scalar_one_or_none() is None:
                return candidate
            sequence += 1

    # ============ FILING ============

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
    ) -> Dispute:
        """
        Open a dispute on a held hold.

        Raises:
            ValidationError: bad type, category, title, description or evidence
            NotFoundError: unknown hold
            AuthorizationError: customer_id does not own the hold
            StateConflictError: the hold is not held (release in flight, already settled,
                already disputed) or the dispute window has closed
        """
        dispute_type = _enum_value(DisputeType, dispute_type, "type")
        category = _enum_value(DisputeCategory, category, "category")
        title = (title or "").strip()
        description = (description or "").strip()
        if not title:
            raise ValidationError("title is required")
        if len(title) > MAX_TITLE_LENGTH:
            raise ValidationError(f"title must be at most {MAX_TITLE_LENGTH} characters")
        if not description:
            raise ValidationError("description is required")
        evidence_items = validate_evidence(evidence)

        now = self.clock()
        dispute_id = new_id("dsp")
        async with self._session() as session:
            hold = await self.ledger.require_hold(session, hold_id)
            if hold.customer_id != customer_id:
                raise AuthorizationError(f"Only the customer of hold {hold_id} may file a dispute")
            if Config.ENFORCE_DISPUTE_WINDOW and hold.release_at <= now:
                raise StateConflictError(
                    f"Dispute window has expired for hold {hold_id}", current_status=hold.status
                )

            # The guard: fails unless the hold is exactly held
            hold = await self.state_machine.mark_disputed(session, hold_id, dispute_id)

            dispute = Dispute(
                id=dispute_id,
                case_number=await self._next_case_number(session, now),
                hold_id=hold.id,
                customer_id=hold.customer_id,
                contractor_id=hold.contractor_id,
                dispute_type=dispute_type,
                category=category,
                title=title,
                description=description,
                desired_resolution=desired_resolution,
                priority="high",
                status=DisputeStatus.OPEN.value,
                response_deadline=now + timedelta(hours=Config.DISPUTE_RESPONSE_HOURS),
                resolution_deadline=now + timedelta(days=Config.DISPUTE_RESOLUTION_DAYS),
                created_at=now,
            )
            session.add(dispute)
            await session.flush()
            for item in evidence_items:
                session.add(
                    DisputeEvidence(
                        dispute_id=dispute_id,
                        uploaded_by=customer_id,
                        evidence_type=item["type"],
                        url=item["url"],
                        description=item["description"],
                    )
                )
            await self.ledger.append_dispute_timeline(
                session, dispute_id, "created", f"Dispute filed: {title}", performed_by=customer_id
            )
            dispute = await self.ledger.get_dispute(session, dispute_id)

        logger.info(
            f"⚖️ DISPUTE: {dispute.case_number} filed on hold {hold_id} "
            f"({dispute_type}/{category}) by customer {customer_id}"
        )
        self.event_bus.publish(
            DisputeFiled(
                hold_id=hold.id,
                job_id=hold.job_id,
                contractor_id=hold.contractor_id,
                customer_id=hold.customer_id,
                amount=hold.amount,
                occurred_at=now,
                dispute_id=dispute.id,
                case_number=dispute.case_number,
                dispute_type=dispute_type,
            )
        )
        return dispute

    async def add_dispute_evidence(
        self, dispute_id: str, actor_id: str, evidence: Iterable[Dict[str, Any]]
    ) -> Dispute:
        """Attach more evidence to an open dispute (either hold party)"""
        items = validate_evidence(evidence)
        if not items:
            raise ValidationError("evidence must contain at least one item")

        async with self._session() as session:
            dispute = await self._require_dispute(session, dispute_id)
            if actor_id not in (dispute.customer_id, dispute.contractor_id):
                raise AuthorizationError(f"{actor_id} is not a party to dispute {dispute.case_number}")
            if dispute.status != DisputeStatus.OPEN.value:
                raise StateConflictError(f"Dispute {dispute.case_number} is {dispute.status}")

            for item in items:
                session.add(
                    DisputeEvidence(
                        dispute_id=dispute_id,
                        uploaded_by=actor_id,
                        evidence_type=item["type"],
                        url=item["url"],
                        description=item["description"],
                    )
                )
            await self.ledger.append_dispute_timeline(
                session, dispute_id, "evidence_added",
                f"{len(items)} evidence item(s) added", performed_by=actor_id,
            )
            return await self.ledger.get_dispute(session, dispute_id)

    # ============ RESOLUTION ============

    async def resolve_dispute(
        self,
        dispute_id: str,
        resolution: str,
        refund_amount: Optional[Any] = None,
        admin_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> DisputeResolutionResult:
        """
        Resolve a dispute and settle its hold.

        customer: full refund; contractor: full net payout; split: refund_amount
        to the customer (0 < refund_amount < gross) and the fee-adjusted remainder
        to the contractor.

        Raises:
            ValidationError: bad resolution or refund amount
            NotFoundError: unknown dispute
            AuthorizationError: admin_id is not a privileged actor, or is a hold party
            StateConflictError: the dispute is already resolved
            AmountTooSmallError: the split remainder does not cover the contractor fee
        """
        resolution = _enum_value(DisputeResolution, resolution, "resolution")
        if resolution != DisputeResolution.SPLIT.value and refund_amount is not None:
            raise ValidationError("refund_amount is only accepted for split resolutions")

        async with self._session() as session:
            dispute = await self._require_dispute(session, dispute_id)
            hold = await self.ledger.require_hold(session, dispute.hold_id)

        if not admin_id or not self.is_admin(admin_id):
            raise AuthorizationError(f"{admin_id!r} may not resolve disputes")
        if admin_id in (dispute.customer_id, dispute.contractor_id):
            raise AuthorizationError("A party to the hold cannot resolve its dispute")
        if dispute.status != DisputeStatus.OPEN.value:
            raise StateConflictError(
                f"Dispute {dispute.case_number} is already resolved ({dispute.resolution})",
                current_status=dispute.status,
            )

        refund: Optional[Decimal] = None
        if resolution == DisputeResolution.SPLIT.value:
            if refund_amount is None:
                raise ValidationError("refund_amount is required for split resolutions")
            refund = FeeCalculator.to_money(refund_amount, "refund_amount", exact=True)
            if not (Decimal("0") < refund < hold.amount):
                raise ValidationError(
                    f"refund_amount must be greater than 0 and less than {hold.amount} (got {refund})"
                )
            # Surface a remainder that cannot cover the fee before anything is claimed
            FeeCalculator.compute_split(hold.amount - refund)
        elif resolution == DisputeResolution.CONTRACTOR.value:
            FeeCalculator.compute_split(hold.amount)

        now = self.clock()
        async with self._session() as session:
            claimed = await session.execute(
                update(Dispute)
                .where(Dispute.id == dispute_id, Dispute.status == DisputeStatus.OPEN.value)
                .values(
                    status=DisputeStatus.RESOLVED.value,
                    resolution=resolution,
                    refund_amount=refund,
                    resolved_by=admin_id,
                    resolved_at=now,
                    resolution_notes=notes,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                logger.warning(f"🔒 DISPUTE: concurrent resolution of {dispute.case_number} rejected")
                raise StateConflictError(
                    f"Dispute {dispute.case_number} is already resolved",
                    current_status=DisputeStatus.RESOLVED.value,
                )
            await self.ledger.append_dispute_timeline(
                session, dispute_id, "resolved",
                f"Resolved in favour of {resolution}"
                + (f" with refund {refund}" if refund is not None else ""),
                performed_by=admin_id,
            )

        logger.info(f"⚖️ DISPUTE: {dispute.case_number} resolved ({resolution}) by {admin_id}")
        self.event_bus.publish(
            DisputeResolved(
                hold_id=hold.id,
                job_id=hold.job_id,
                contractor_id=hold.contractor_id,
                customer_id=hold.customer_id,
                amount=hold.amount,
                occurred_at=now,
                dispute_id=dispute_id,
                case_number=dispute.case_number,
                resolution=resolution,
                refund_amount=refund,
            )
        )

        release = await self.orchestrator.release_hold(hold.id, ReleaseTrigger.DISPUTE_RESOLUTION)

        async with self._session() as session:
            dispute = await self.ledger.get_dispute(session, dispute_id)
        return DisputeResolutionResult(dispute=dispute, release=release)

    # ============ QUERIES ============

    async def _require_dispute(self, session: AsyncSession, dispute_id: str) -> Dispute:
        dispute = await self.ledger.get_dispute(session, dispute_id)
        if dispute is None:
            raise NotFoundError(f"Dispute {dispute_id} not found")
        return dispute

    async def get_dispute(self, dispute_id: str) -> Dispute:
        async with self._session() as session:
            return await self._require_dispute(session, dispute_id)

    async def check_contractor_complaint_history(
        self, contractor_id: str, now: Optional[datetime] = None
    ) -> ComplaintHistory:
        """Count disputes upheld against a contractor in the complaint window"""
        now = now or self.clock()
        since = now - timedelta(days=Config.COMPLAINT_WINDOW_DAYS)
        async with self._session() as session:
            result = await session.execute(
                select(func.count(Dispute.id)).where(
                    Dispute.contractor_id == contractor_id,
                    Dispute.status == DisputeStatus.RESOLVED.value,
                    Dispute.resolution.in_(
                        [DisputeResolution.CUSTOMER.value, DisputeResolution.SPLIT.value]
                    ),
                    Dispute.resolved_at >= since,
                )
            )
            upheld = result.scalar() or 0

        history = ComplaintHistory(
            contractor_id=contractor_id,
            upheld_complaints=upheld,
            window_days=Config.COMPLAINT_WINDOW_DAYS,
            threshold=Config.COMPLAINT_FLAG_THRESHOLD,
        )
        if history.flagged:
            logger.warning(
                f"🚩 DISPUTE: contractor {contractor_id} has {upheld} upheld complaints "
                f"in {history.window_days} days"
            )
        return history
