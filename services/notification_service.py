"""
Escrow Notification Service
Turns hold events into per-party notifications and hands them to an emitter
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from services.domain_events import (
    DisputeFiled,
    DisputeResolved,
    EscrowEvent,
    EventBus,
    HoldPartiallyRefunded,
    HoldRefunded,
    HoldReleased,
    HoldReleaseFailed,
)

logger = logging.getLogger(__name__)


class RecipientRole(Enum):
    CUSTOMER = "customer"
    CONTRACTOR = "contractor"


class NotificationType(Enum):
    """Notification types sent to hold parties"""
    PAYMENT_RELEASED = "payment_released"
    PAYMENT_AUTO_RELEASED = "payment_auto_released"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_REFUNDED = "payment_refunded"
    PAYMENT_PARTIALLY_REFUNDED = "payment_partially_refunded"
    RELEASE_PENDING = "release_pending"
    DISPUTE_FILED = "dispute_filed"
    DISPUTE_RESOLVED = "dispute_resolved"


@dataclass(frozen=True)
class NotificationEvent:
    """A single message for one party of a hold"""

    type: str
    hold_id: str
    job_id: str
    amount: Decimal
    recipient_role: str
    recipient_id: str
    title: str
    message: str


class NotificationEmitter(ABC):
    """Delivery mechanism; fire-and-forget from the caller's point of view"""

    @abstractmethod
    async def notify(self, event: NotificationEvent) -> None:
        ...


class LoggingNotificationEmitter(NotificationEmitter):
    """Writes notifications to the log; used when no delivery channel is wired"""

    async def notify(self, event: NotificationEvent) -> None:
        logger.info(
            f"📨 NOTIFY {event.recipient_role}:{event.recipient_id} [{event.type}] "
            f"hold={event.hold_id} - {event.title}: {event.message}"
        )


def _money(amount: Decimal) -> str:
    return f"${amount:.2f}"


class NotificationSubscriber:
    """Maps escrow events to notifications for the customer and the contractor"""

    def __init__(self, emitter: NotificationEmitter):
        self.emitter = emitter

    def register(self, bus: EventBus) -> None:
        bus.subscribe(EscrowEvent, self.handle)

    def _build(
        self,
        event: EscrowEvent,
        notification_type: NotificationType,
        role: RecipientRole,
        amount: Decimal,
        title: str,
        message: str,
    ) -> NotificationEvent:
        recipient_id = event.customer_id if role is RecipientRole.CUSTOMER else event.contractor_id
        return NotificationEvent(
            type=notification_type.value,
            hold_id=event.hold_id,
            job_id=event.job_id,
            amount=amount,
            recipient_role=role.value,
            recipient_id=recipient_id,
            title=title,
            message=message,
        )

    def notifications_for(self, event: EscrowEvent) -> List[NotificationEvent]:
        if isinstance(event, HoldReleased):
            if event.trigger == "sweep":
                customer = self._build(
                    event, NotificationType.PAYMENT_AUTO_RELEASED, RecipientRole.CUSTOMER, event.amount,
                    "💰 Payment Released",
                    f"Payment of {_money(event.amount)} for job {event.job_id} has been automatically "
                    f"released after the review period. A 5-star review was posted on your behalf.",
                )
            else:
                customer = self._build(
                    event, NotificationType.PAYMENT_RELEASED, RecipientRole.CUSTOMER, event.amount,
                    "💰 Payment Released",
                    f"Payment of {_money(event.amount)} for job {event.job_id} has been released to the contractor.",
                )
            contractor = self._build(
                event, NotificationType.PAYMENT_RECEIVED, RecipientRole.CONTRACTOR, event.contractor_payout,
                "🎊 Payment Released!",
                f"Payment of {_money(event.contractor_payout)} for job {event.job_id} has been released to you.",
            )
            return [customer, contractor]

        if isinstance(event, HoldRefunded):
            return [
                self._build(
                    event, NotificationType.PAYMENT_REFUNDED, RecipientRole.CUSTOMER, event.refund_amount,
                    "↩️ Refund Issued",
                    f"Your dispute for job {event.job_id} was resolved in your favour. "
                    f"{_money(event.refund_amount)} has been refunded.",
                ),
                self._build(
                    event, NotificationType.PAYMENT_REFUNDED, RecipientRole.CONTRACTOR, event.refund_amount,
                    "Dispute Resolved",
                    f"The dispute for job {event.job_id} was resolved in the customer's favour. "
                    f"The held payment was refunded.",
                ),
            ]

        if isinstance(event, HoldPartiallyRefunded):
            return [
                self._build(
                    event, NotificationType.PAYMENT_PARTIALLY_REFUNDED, RecipientRole.CUSTOMER, event.refund_amount,
                    "↩️ Partial Refund Issued",
                    f"{_money(event.refund_amount)} of the payment for job {event.job_id} has been refunded to you.",
                ),
                self._build(
                    event, NotificationType.PAYMENT_PARTIALLY_REFUNDED, RecipientRole.CONTRACTOR,
                    event.contractor_payout,
                    "💰 Partial Payment Released",
                    f"The dispute for job {event.job_id} was settled. "
                    f"{_money(event.contractor_payout)} has been released to you.",
                ),
            ]

        if isinstance(event, HoldReleaseFailed):
            return [
                self._build(
                    event, NotificationType.RELEASE_PENDING, RecipientRole.CONTRACTOR, event.amount,
                    "⏳ Payment Pending",
                    f"Payment release for job {event.job_id} is pending and will retry automatically.",
                ),
            ]

        if isinstance(event, DisputeFiled):
            return [
                self._build(
                    event, NotificationType.DISPUTE_FILED, RecipientRole.CONTRACTOR, event.amount,
                    "⚠️ Dispute Filed",
                    f"A dispute ({event.case_number}) was filed for job {event.job_id}. "
                    f"Payment is held during review.",
                ),
                self._build(
                    event, NotificationType.DISPUTE_FILED, RecipientRole.CUSTOMER, event.amount,
                    "Dispute Received",
                    f"Your dispute {event.case_number} for job {event.job_id} has been received. "
                    f"Our team will review it shortly.",
                ),
            ]

        if isinstance(event, DisputeResolved):
            return [
                self._build(
                    event, NotificationType.DISPUTE_RESOLVED, role, event.amount,
                    f"Dispute Update: {event.case_number}",
                    f"Dispute {event.case_number} was resolved ({event.resolution}).",
                )
                for role in (RecipientRole.CUSTOMER, RecipientRole.CONTRACTOR)
            ]

        return []

    async def handle(self, event: EscrowEvent) -> None:
        for notification in self.notifications_for(event):
            try:
                await self.emitter.notify(notification)
            except Exception as e:
                logger.error(
                    f"❌ NOTIFICATION: failed to notify {notification.recipient_role} "
                    f"for hold {notification.hold_id}: {e}"
                )


def build_notification_subscriber(
    bus: EventBus, emitter: Optional[NotificationEmitter] = None
) -> NotificationSubscriber:
    subscriber = NotificationSubscriber(emitter or LoggingNotificationEmitter())
    subscriber.register(bus)
    return subscriber
