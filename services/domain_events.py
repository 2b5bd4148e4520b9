"""
Escrow domain events

Hold and dispute services publish a small set of typed events after their
state change has committed. Subscribers (notifications, contractor stats) run
as independent asyncio tasks: a failing subscriber is logged and never affects
the publisher or the hold's financial state.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, DefaultDict, List, Optional, Set, Type

logger = logging.getLogger(__name__)


# ============ EVENT TYPES ============

@dataclass(frozen=True)
class EscrowEvent:
    """Common fields of every hold event"""

    hold_id: str
    job_id: str
    contractor_id: str
    customer_id: str
    amount: Decimal
    occurred_at: datetime


@dataclass(frozen=True)
class HoldReleased(EscrowEvent):
    """Net payout reached the contractor"""

    contractor_payout: Decimal
    trigger: str
    transfer_id: str


@dataclass(frozen=True)
class HoldRefunded(EscrowEvent):
    """Full refund to the customer after a dispute"""

    refund_amount: Decimal
    dispute_id: str


@dataclass(frozen=True)
class HoldPartiallyRefunded(EscrowEvent):
    """Split dispute outcome"""

    refund_amount: Decimal
    contractor_payout: Decimal
    dispute_id: str


@dataclass(frozen=True)
class HoldReleaseFailed(EscrowEvent):
    """A transfer failed; the hold is back in a retryable state"""

    trigger: str
    error: str


@dataclass(frozen=True)
class DisputeFiled(EscrowEvent):
    dispute_id: str
    case_number: str
    dispute_type: str


@dataclass(frozen=True)
class DisputeResolved(EscrowEvent):
    dispute_id: str
    case_number: str
    resolution: str
    refund_amount: Optional[Decimal]


EventHandler = Callable[[EscrowEvent], Awaitable[None]]


# ============ EVENT BUS ============

class EventBus:
    """Explicit publish/subscribe for escrow events"""

    def __init__(self):
        self._subscribers: DefaultDict[Type[EscrowEvent], List[EventHandler]] = defaultdict(list)
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, event_type: Type[EscrowEvent], handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)

    def handlers_for(self, event: EscrowEvent) -> List[EventHandler]:
        handlers: List[EventHandler] = []
        for event_type, registered in self._subscribers.items():
            if isinstance(event, event_type):
                handlers.extend(registered)
        return handlers

    def publish(self, event: EscrowEvent) -> int:
        """Schedule every matching handler; returns the number scheduled"""
        handlers = self.handlers_for(event)
        for handler in handlers:
            task = asyncio.create_task(self._dispatch(handler, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        logger.debug(f"📣 EVENT_BUS: {type(event).__name__} for hold {event.hold_id} -> {len(handlers)} handlers")
        return len(handlers)

    async def _dispatch(self, handler: EventHandler, event: EscrowEvent) -> None:
        try:
            await handler(event)
        except Exception as e:
            logger.error(
                f"❌ EVENT_BUS: {getattr(handler, '__qualname__', handler)} failed on "
                f"{type(event).__name__} for hold {event.hold_id}: {e}",
                exc_info=True,
            )

    async def drain(self) -> None:
        """Wait for all scheduled handlers to finish"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending_count(self) -> int:
        return len(self._pending)
