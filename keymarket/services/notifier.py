"""
Notifier Protocol - Outbound order events.

Delivery (email, push, chat) belongs to the notification service; the
order engine only states what happened. Events are published after the
transaction that caused them has committed.
"""

from typing import Protocol

from structlog import get_logger

from keymarket.models.domain import OrderEvent

logger = get_logger(__name__)


class Notifier(Protocol):
    """
    Notifier protocol.

    Implementations must not raise for delivery failures; an order that
    has committed cannot be un-committed because an email bounced.
    """

    async def publish(self, event: OrderEvent) -> None:
        """Publish a single order event."""
        ...


class LoggingNotifier:
    """Default notifier: writes each event as a structured log entry."""

    async def publish(self, event: OrderEvent) -> None:
        logger.info(
            "order_event_published",
            event_type=event.event_type.value,
            order_code=event.order_code,
            seller_id=str(event.seller_id) if event.seller_id else None,
            buyer_id=str(event.buyer_id) if event.buyer_id else None,
            buyer_email=event.buyer_email,
            amount=str(event.amount) if event.amount is not None else None,
            detail=event.detail,
        )


class RecordingNotifier:
    """In-memory notifier; keeps every published event in order."""

    def __init__(self) -> None:
        self.events: list[OrderEvent] = []

    async def publish(self, event: OrderEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[OrderEvent]:
        """Events whose type value matches."""
        return [e for e in self.events if e.event_type.value == event_type]


# Default notifier instance
default_notifier = LoggingNotifier()


def get_notifier() -> Notifier:
    """Get the configured notifier."""
    return default_notifier
