import logging

from ..domain.notifications import BookingEvent

logger = logging.getLogger(__name__)


class LoggingBookingNotifier:
    """Delivery stand-in: records the event and reports success."""

    async def notify_booking_event(self, booking_id: int, event: BookingEvent) -> bool:
        logger.info("booking notification queued: booking_id=%s event=%s", booking_id, event)
        return True
