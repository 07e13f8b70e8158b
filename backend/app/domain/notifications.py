from enum import StrEnum
from typing import Protocol


class BookingEvent(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    REMINDER = "reminder"


class BookingNotifier(Protocol):
    """Signals that something happened to a booking.

    Returns True when the event was handed off. Message content and the
    delivery channel (email, SMS) are the notifier's concern.
    """

    async def notify_booking_event(self, booking_id: int, event: BookingEvent) -> bool: ...
