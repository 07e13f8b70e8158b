import datetime as dt
from decimal import Decimal
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field, field_serializer

from .domain.repositories import BookingStatistics
from .models import Booking, BookingStatus, PaymentMethod, PaymentStatus, SlotStatus, VisitSlot
from .usecases.capacity import AvailabilityCheck, CapacitySummary
from .usecases.slots import ExpiryResult, ScheduleGeneration

T = TypeVar("T")

TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d(:[0-5]\d)?$"


class PaginatedResponse(BaseModel, Generic[T]):
    items: List[T]
    total: int
    page: int
    limit: int



class SlotCreate(BaseModel):
    date: dt.date
    start_time: str = Field(pattern=TIME_PATTERN)
    end_time: str = Field(pattern=TIME_PATTERN)
    capacity: int = Field(ge=1, le=1000)
    description: Optional[str] = Field(default=None, max_length=1000)
    status: SlotStatus = SlotStatus.AVAILABLE


class SlotUpdate(BaseModel):
    date: Optional[dt.date] = None
    start_time: Optional[str] = Field(default=None, pattern=TIME_PATTERN)
    end_time: Optional[str] = Field(default=None, pattern=TIME_PATTERN)
    capacity: Optional[int] = Field(default=None, ge=1, le=1000)
    status: Optional[SlotStatus] = None
    description: Optional[str] = Field(default=None, max_length=1000)


class VacantRange(BaseModel):
    start_time: str = Field(pattern=TIME_PATTERN)
    end_time: str = Field(pattern=TIME_PATTERN)


class ScheduleGenerate(BaseModel):
    month: int = Field(ge=1, le=12)
    year: int = Field(ge=2020, le=2100)
    day_start_time: str = Field(pattern=TIME_PATTERN)
    day_end_time: str = Field(pattern=TIME_PATTERN)
    slot_duration: int = Field(ge=15, le=480)
    capacity: int = Field(ge=1, le=1000)
    excluded_days: List[int] = Field(default_factory=list)
    vacant_ranges: List[VacantRange] = Field(default_factory=list)


class SlotExpire(BaseModel):
    reference_date: Optional[dt.date] = None


class SlotRead(BaseModel):
    slot_id: int
    date: dt.date
    start_time: str
    end_time: str
    duration_minutes: int
    capacity: int
    booked_count: int
    available: int
    status: SlotStatus
    description: Optional[str]
    created_by: Optional[int]

    @classmethod
    def from_db(cls, *, slot: VisitSlot) -> "SlotRead":
        return cls(
            slot_id=slot.id,
            date=slot.date,
            start_time=slot.start_time,
            end_time=slot.end_time,
            duration_minutes=slot.duration_minutes,
            capacity=slot.capacity,
            booked_count=slot.booked_count,
            available=max(slot.capacity - slot.booked_count, 0),
            status=slot.status,
            description=slot.description,
            created_by=slot.created_by,
        )


class ScheduleGenerationRead(BaseModel):
    created: int
    skipped: int
    skipped_dates: List[dt.date]
    slots: List[SlotRead]

    @classmethod
    def from_result(cls, result: ScheduleGeneration) -> "ScheduleGenerationRead":
        return cls(
            created=len(result.created),
            skipped=result.skipped,
            skipped_dates=result.skipped_dates,
            slots=[SlotRead.from_db(slot=slot) for slot in result.created],
        )


class ExpiryRead(BaseModel):
    expired_count: int
    cutoff_date: dt.date
    slot_ids: List[int]

    @classmethod
    def from_result(cls, result: ExpiryResult) -> "ExpiryRead":
        return cls(expired_count=result.expired_count, cutoff_date=result.cutoff_date, slot_ids=result.slot_ids)


class AvailabilityRead(BaseModel):
    slot_id: int
    slot_status: SlotStatus
    is_available: bool
    capacity: int
    available: int
    requested: int
    conflicting_bookings: int

    @classmethod
    def from_check(cls, check: AvailabilityCheck) -> "AvailabilityRead":
        return cls(
            slot_id=check.slot_id,
            slot_status=check.slot_status,
            is_available=check.is_available,
            capacity=check.capacity,
            available=check.available,
            requested=check.requested,
            conflicting_bookings=check.conflicting_bookings,
        )


class BookingCreate(BaseModel):
    slot_id: int = Field(ge=1)
    visitor_id: int = Field(ge=1)
    group_size: int = Field(ge=1, le=50)
    special_requests: Optional[str] = Field(default=None, max_length=2000)
    notes: Optional[str] = Field(default=None, max_length=2000)
    payment_method: Optional[PaymentMethod] = None
    payment_status: Optional[PaymentStatus] = None
    total_amount: Optional[Decimal] = Field(default=None, ge=0)


class BookingUpdate(BaseModel):
    status: Optional[BookingStatus] = None
    group_size: Optional[int] = Field(default=None, ge=1, le=50)
    total_amount: Optional[Decimal] = Field(default=None, ge=0)
    payment_status: Optional[PaymentStatus] = None
    payment_method: Optional[PaymentMethod] = None
    notes: Optional[str] = Field(default=None, max_length=2000)
    special_requests: Optional[str] = Field(default=None, max_length=2000)
    cancellation_reason: Optional[str] = Field(default=None, max_length=1000)
    confirmed_at: Optional[dt.datetime] = None


class BookingConfirm(BaseModel):
    confirmed_at: Optional[dt.datetime] = None


class BookingCancel(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)
    cancelled_at: Optional[dt.datetime] = None


class BookingPayment(BaseModel):
    payment_status: PaymentStatus
    payment_method: Optional[PaymentMethod] = None
    total_amount: Optional[Decimal] = Field(default=None, ge=0)


class BookingRead(BaseModel):
    booking_id: int
    slot_id: int
    visitor_id: int
    group_size: int
    status: BookingStatus
    total_amount: Decimal
    payment_status: PaymentStatus
    payment_method: Optional[PaymentMethod]
    notes: Optional[str]
    special_requests: Optional[str]
    cancellation_reason: Optional[str]
    confirmed_at: Optional[dt.datetime]
    cancelled_at: Optional[dt.datetime]
    created_by: Optional[int]
    created_at: dt.datetime
    updated_at: dt.datetime

    @field_serializer("total_amount")
    def _ser_amount(self, value: Decimal) -> str:
        return f"{value:.2f}"

    @classmethod
    def from_db(cls, *, booking: Booking) -> "BookingRead":
        return cls(
            booking_id=booking.id,
            slot_id=booking.slot_id,
            visitor_id=booking.visitor_id,
            group_size=booking.group_size,
            status=booking.status,
            total_amount=booking.total_amount,
            payment_status=booking.payment_status,
            payment_method=booking.payment_method,
            notes=booking.notes,
            special_requests=booking.special_requests,
            cancellation_reason=booking.cancellation_reason,
            confirmed_at=booking.confirmed_at,
            cancelled_at=booking.cancelled_at,
            created_by=booking.created_by,
            created_at=booking.created_at,
            updated_at=booking.updated_at,
        )


class DailyBookingTotalsRead(BaseModel):
    day: dt.date
    count: int
    revenue: Decimal


class PaymentMethodTotalsRead(BaseModel):
    payment_method: PaymentMethod
    count: int
    total_amount: Decimal


class BookingStatisticsRead(BaseModel):
    total_bookings: int
    by_status: dict[str, int]
    by_payment_status: dict[str, int]
    total_revenue: Decimal
    average_group_size: float
    by_day: List[DailyBookingTotalsRead]
    top_payment_methods: List[PaymentMethodTotalsRead]

    @classmethod
    def from_stats(cls, stats: BookingStatistics) -> "BookingStatisticsRead":
        return cls(
            total_bookings=stats.total_bookings,
            by_status={str(k): v for k, v in stats.by_status.items()},
            by_payment_status={str(k): v for k, v in stats.by_payment_status.items()},
            total_revenue=stats.total_revenue,
            average_group_size=round(stats.average_group_size, 2),
            by_day=[DailyBookingTotalsRead(day=d.day, count=d.count, revenue=d.revenue) for d in stats.by_day],
            top_payment_methods=[
                PaymentMethodTotalsRead(payment_method=m.payment_method, count=m.count, total_amount=m.total_amount)
                for m in stats.top_payment_methods
            ],
        )


class CapacityRead(BaseModel):
    slot_id: int
    capacity: int
    booked: int
    available: int

    @classmethod
    def from_summary(cls, *, slot_id: int, summary: CapacitySummary) -> "CapacityRead":
        return cls(slot_id=slot_id, capacity=summary.capacity, booked=summary.booked, available=summary.available)
