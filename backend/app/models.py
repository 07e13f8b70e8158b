import datetime as dt
from decimal import Decimal
from enum import StrEnum
from typing import Optional

from sqlalchemy import CheckConstraint, Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql.sqltypes import BigInteger, Boolean, Date, DateTime, Integer, Numeric, String, Text


class Base(DeclarativeBase):
    pass


class SlotStatus(StrEnum):
    AVAILABLE = "available"
    BOOKED = "booked"
    CANCELLED = "cancelled"
    MAINTENANCE = "maintenance"
    EXPIRED = "expired"


class BookingStatus(StrEnum):
    TENTATIVE = "tentative"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


class PaymentStatus(StrEnum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIAL = "partial"


class PaymentMethod(StrEnum):
    CASH = "cash"
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    BANK_TRANSFER = "bank_transfer"
    ONLINE_PAYMENT = "online_payment"
    CHECK = "check"


class VisitorType(StrEnum):
    INDIVIDUAL = "individual"
    GROUP = "group"
    SCHOOL = "school"
    SENIOR = "senior"
    STUDENT = "student"


def _str_enum(enum_cls: type[StrEnum]) -> Enum:
    return Enum(
        enum_cls,
        values_callable=lambda cls: [e.value for e in cls],
        native_enum=False,
    )


class User(Base):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("email", name="uq_users_email"),)

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(50), nullable=False, default="staff")
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False)


class Visitor(Base):
    __tablename__ = "visitors"
    __table_args__ = (Index("idx_visitors_email", "email"),)

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    visitor_type: Mapped[VisitorType] = mapped_column(
        _str_enum(VisitorType), nullable=False, default=VisitorType.INDIVIDUAL
    )
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    bookings: Mapped[list["Booking"]] = relationship(back_populates="visitor")


class VisitSlot(Base):
    __tablename__ = "visit_slots"
    __table_args__ = (
        CheckConstraint("start_time < end_time", name="chk_visit_slots_time"),
        CheckConstraint("capacity >= 1", name="chk_visit_slots_capacity"),
        CheckConstraint("booked_count >= 0 AND booked_count <= capacity", name="chk_visit_slots_booked"),
        Index("idx_visit_slots_date", "date"),
        Index("idx_visit_slots_status", "status"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    # Venue-local wall clock, normalised to HH:MM:SS.
    start_time: Mapped[str] = mapped_column(String(8), nullable=False)
    end_time: Mapped[str] = mapped_column(String(8), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    # Cache of the active group-size sum; rewritten by the reconciler only.
    booked_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[SlotStatus] = mapped_column(
        _str_enum(SlotStatus), nullable=False, default=SlotStatus.AVAILABLE
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    bookings: Mapped[list["Booking"]] = relationship(back_populates="slot")


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("group_size >= 1 AND group_size <= 50", name="chk_bookings_group_size"),
        CheckConstraint("total_amount >= 0", name="chk_bookings_total_amount"),
        Index("idx_bookings_slot", "slot_id"),
        Index("idx_bookings_visitor", "visitor_id"),
        Index("idx_bookings_status", "status"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    slot_id: Mapped[int] = mapped_column(ForeignKey("visit_slots.id"), nullable=False)
    visitor_id: Mapped[int] = mapped_column(ForeignKey("visitors.id"), nullable=False)
    group_size: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        _str_enum(BookingStatus), nullable=False, default=BookingStatus.TENTATIVE
    )
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _str_enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING
    )
    payment_method: Mapped[Optional[PaymentMethod]] = mapped_column(_str_enum(PaymentMethod), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    special_requests: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confirmed_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    cancelled_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    created_by: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    slot: Mapped["VisitSlot"] = relationship(back_populates="bookings")
    visitor: Mapped["Visitor"] = relationship(back_populates="bookings")


class PricingRule(Base):
    __tablename__ = "pricing_rules"
    __table_args__ = (Index("idx_pricing_rules_type", "visitor_type", "is_active"),)

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    visitor_type: Mapped[VisitorType] = mapped_column(_str_enum(VisitorType), nullable=False)
    base_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    group_discount_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"))
    min_group_size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    effective_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[dt.date]] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False)
