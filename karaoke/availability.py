"""Room availability for a time window.

Intervals are half-open: a booking ending at 12:00 does not collide with one
starting at 12:00. Two intervals [a1, a2) and [b1, b2) overlap when
``a1 < b2 and a2 > b1``. Only pending and confirmed bookings occupy a room.
"""
import math
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from .errors import ConflictError, ValidationError
from .models import ACTIVE_STATUSES, Booking, Room


def to_naive_utc(value: datetime) -> datetime:
    """Timestamps are stored as naive UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value, field: str = "timestamp") -> datetime:
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if not value or not isinstance(value, str):
        raise ValidationError(f"{field} is required")
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f"{field} is not a valid ISO-8601 timestamp: {value!r}")
    return to_naive_utc(parsed)


def validate_interval(start: Optional[datetime], end: Optional[datetime]) -> None:
    if start is None or end is None:
        raise ValidationError("start_time and end_time are required")
    if start >= end:
        raise ValidationError("start_time must be before end_time")


def overlap_clause(start: datetime, end: datetime):
    return and_(Booking.start_time < end, Booking.end_time > start)


def calculate_total_amount(price_per_hour, start: datetime, end: datetime) -> Decimal:
    """Charge whole hours, rounding any started hour up."""
    validate_interval(start, end)
    seconds = (end - start).total_seconds()
    hours = math.ceil(seconds / 3600)
    return Decimal(str(price_per_hour)) * hours


def find_available_rooms(db: Session, start: datetime, end: datetime) -> List[Room]:
    """Rooms with no active booking overlapping [start, end), cheapest first."""
    busy_rooms = (
        select(Booking.room_id)
        .where(Booking.status.in_(ACTIVE_STATUSES))
        .where(overlap_clause(start, end))
    )
    query = (
        select(Room)
        .where(Room.id.not_in(busy_rooms))
        .order_by(Room.price_per_hour, Room.name, Room.id)
    )
    return list(db.scalars(query).all())


def is_time_slot_overlapping(
    db: Session,
    room_id: int,
    start: datetime,
    end: datetime,
    exclude_booking_id: Optional[int] = None,
) -> bool:
    query = (
        select(Booking.id)
        .where(Booking.room_id == room_id)
        .where(Booking.status.in_(ACTIVE_STATUSES))
        .where(overlap_clause(start, end))
    )
    if exclude_booking_id is not None:
        query = query.where(Booking.id != exclude_booking_id)
    return db.execute(query.limit(1)).first() is not None


def ensure_slot_is_free(
    db: Session,
    room_id: int,
    start: datetime,
    end: datetime,
    exclude_booking_id: Optional[int] = None,
) -> None:
    if is_time_slot_overlapping(db, room_id, start, end, exclude_booking_id):
        raise ConflictError(
            f"Room {room_id} is already booked between {start.isoformat()} and {end.isoformat()}"
        )
