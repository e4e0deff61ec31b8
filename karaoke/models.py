from sqlalchemy import Column, Integer, String, Numeric, ForeignKey, DateTime, Text, CheckConstraint
from sqlalchemy.orm import relationship
from .database.db import Base
import datetime
import enum


def utcnow() -> datetime.datetime:
    """Current UTC time as a naive datetime, the form every column stores."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class RoomType(str, enum.Enum):
    STANDARD = "Standard"
    VIP = "VIP"
    PREMIUM = "Premium"
    SUITE = "Suite"


class RoomStatus(str, enum.Enum):
    # Informational label set by staff; availability comes from bookings.
    AVAILABLE = "available"
    OCCUPIED = "occupied"
    MAINTENANCE = "maintenance"


class CustomerRole(str, enum.Enum):
    USER = "user"
    ADMIN = "admin"


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value)
REVENUE_STATUSES = (BookingStatus.COMPLETED.value, BookingStatus.CONFIRMED.value)

BOOKING_TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
}


class Room(Base):
    __tablename__ = "rooms"
    __table_args__ = (
        CheckConstraint("price_per_hour >= 0", name="ck_rooms_price_non_negative"),
        CheckConstraint("capacity >= 1", name="ck_rooms_capacity_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False, index=True)
    type = Column(String(20), nullable=False, default=RoomType.STANDARD.value)
    price_per_hour = Column(Numeric(10, 2), nullable=False)
    capacity = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default=RoomStatus.AVAILABLE.value)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    bookings = relationship("Booking", back_populates="room")


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    password = Column(String(255), nullable=False)  # bcrypt hash
    name = Column(String(100), nullable=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    phone_number = Column(String(20), nullable=True)
    role = Column(String(10), nullable=False, default=CustomerRole.USER.value)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    bookings = relationship("Booking", back_populates="customer")


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("start_time < end_time", name="ck_bookings_interval"),
        CheckConstraint("total_amount >= 0", name="ck_bookings_amount_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    room_id = Column(Integer, ForeignKey("rooms.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=False, index=True)
    status = Column(String(20), nullable=False, default=BookingStatus.PENDING.value, index=True)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    notes = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    room = relationship("Room", back_populates="bookings")
    customer = relationship("Customer", back_populates="bookings")
