"""Scheduled maintenance jobs.

Run from `backend/`:

    python -m app.jobs expire-slots [--date YYYY-MM-DD]
    python -m app.jobs send-reminders
"""

import argparse
import asyncio
import logging
from datetime import date

from .config import Settings, get_settings
from .database import async_session, engine
from .domain.notifications import BookingNotifier
from .infrastructure.notifier import LoggingBookingNotifier
from .infrastructure.repositories import SqlAlchemyBookingRepository, SqlAlchemySlotRepository
from .infrastructure.transaction import transaction
from .usecases import bookings as booking_usecase
from .usecases import slots as slot_usecase
from .utils.audit_log import emit_audit_log
from .utils.request_id import generate_request_id, set_request_id


async def run_expire_slots(settings: Settings, reference_date: date | None = None) -> slot_usecase.ExpiryResult:
    async with async_session() as session:
        async with transaction(session):
            result = await slot_usecase.expire_past_unbooked_slots(
                SqlAlchemySlotRepository(session),
                tz_name=settings.venue_timezone,
                target=settings.slot_expiry_status,
                reference_date=reference_date,
            )
    emit_audit_log(
        action="slots.expired",
        initiator="system",
        status_to=settings.slot_expiry_status,
        extra={"expired_count": result.expired_count, "cutoff_date": result.cutoff_date.isoformat()},
    )
    return result


async def run_send_reminders(
    settings: Settings,
    notifier: BookingNotifier | None = None,
) -> booking_usecase.ReminderRun:
    async with async_session() as session:
        async with transaction(session):
            return await booking_usecase.send_booking_reminders(
                SqlAlchemyBookingRepository(session),
                notifier or LoggingBookingNotifier(),
                lead_days=settings.reminder_lead_days,
                tz_name=settings.venue_timezone,
            )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="python -m app.jobs", description="Visitor booking maintenance jobs")
    sub = parser.add_subparsers(dest="command", required=True)

    expire = sub.add_parser("expire-slots", help="Expire past slots that hold no active bookings")
    expire.add_argument(
        "--date",
        type=date.fromisoformat,
        default=None,
        help="Cutoff date (YYYY-MM-DD); slots strictly before it are expired. Defaults to today.",
    )

    sub.add_parser("send-reminders", help="Signal reminders for confirmed bookings due soon")
    return parser


async def _run(args: argparse.Namespace) -> None:
    settings = get_settings()
    set_request_id(generate_request_id())
    try:
        if args.command == "expire-slots":
            result = await run_expire_slots(settings, args.date)
            print(f"expired {result.expired_count} slot(s) dated before {result.cutoff_date.isoformat()}")
        else:
            run = await run_send_reminders(settings)
            print(f"reminders for {run.day.isoformat()}: sent={run.sent} failed={run.failed}")
    finally:
        await engine.dispose()


def main(argv: list[str] | None = None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    args = build_parser().parse_args(argv)
    asyncio.run(_run(args))


if __name__ == "__main__":
    main()
