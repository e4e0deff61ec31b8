"""Booking persistence and lifecycle.

All writes that can change which room/time a booking occupies go through
this repository. Each such write locks the target room row, re-runs the
overlap guard and inserts/updates inside one transaction, so two concurrent
requests for the same room are serialized by the database.
"""
import logging
import sqlite3
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..availability import (
    calculate_total_amount,
    ensure_slot_is_free,
    parse_timestamp,
    validate_interval,
)
from ..errors import (
    ConflictError,
    KaraokeError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from ..models import (
    ACTIVE_STATUSES,
    BOOKING_TRANSITIONS,
    Booking,
    BookingStatus,
    Customer,
    Room,
)

logger = logging.getLogger(__name__)

INITIAL_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)
UPDATABLE_FIELDS = ("room_id", "start_time", "end_time", "status", "total_amount", "notes")

# SQLSTATE codes reported by PostgreSQL drivers
PG_FOREIGN_KEY_VIOLATION = "23503"
PG_EXCLUSION_VIOLATION = "23P01"


def _error_code(exc: IntegrityError):
    orig = exc.orig
    return (
        getattr(orig, "pgcode", None)
        or getattr(orig, "sqlstate", None)
        or getattr(orig, "sqlite_errorcode", None)
    )


def translate_integrity_error(exc: IntegrityError, action: str) -> KaraokeError:
    code = _error_code(exc)
    if code == PG_EXCLUSION_VIOLATION:
        return ConflictError(f"Failed to {action}: room is already booked for that time")
    if code in (PG_FOREIGN_KEY_VIOLATION, getattr(sqlite3, "SQLITE_CONSTRAINT_FOREIGNKEY", None)):
        return NotFoundError(f"Failed to {action}: referenced room or customer does not exist")
    return PersistenceError(f"Failed to {action}: constraint violation")


def parse_status(value) -> BookingStatus:
    try:
        return BookingStatus(value)
    except ValueError:
        raise ValidationError(
            f"Invalid status {value!r}. Must be one of: {', '.join(s.value for s in BookingStatus)}"
        )


def parse_amount(value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (TypeError, ValueError, InvalidOperation):
        raise ValidationError("Invalid total_amount value")
    if not amount.is_finite() or amount < 0:
        raise ValidationError("total_amount must be a number >= 0")
    return amount


class BookingRepository:
    def __init__(self, db: Session):
        self.db = db

    # ----- reads -----

    def get(self, booking_id: int) -> Booking:
        booking = self.db.get(Booking, booking_id)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        return booking

    def list(self, customer_id: Optional[int] = None) -> List[Booking]:
        query = select(Booking).order_by(Booking.start_time, Booking.id)
        if customer_id is not None:
            query = query.where(Booking.customer_id == customer_id)
        return list(self.db.scalars(query).all())

    def find_confirmed_past_end(self, now: datetime) -> List[Booking]:
        query = (
            select(Booking)
            .where(Booking.status == BookingStatus.CONFIRMED.value)
            .where(Booking.end_time < now)
            .order_by(Booking.end_time, Booking.id)
        )
        return list(self.db.scalars(query).all())

    def count_active_at(self, now: datetime) -> int:
        return self.db.scalar(
            select(func.count(Booking.id))
            .where(Booking.status == BookingStatus.CONFIRMED.value)
            .where(Booking.start_time <= now)
            .where(Booking.end_time > now)
        )

    # ----- writes -----

    def create(self, data: dict) -> Booking:
        room_id = data.get("room_id")
        customer_id = data.get("customer_id")
        if not room_id or not customer_id or not data.get("start_time") or not data.get("end_time"):
            raise ValidationError("room_id, customer_id, start_time and end_time are required")

        start = parse_timestamp(data["start_time"], "start_time")
        end = parse_timestamp(data["end_time"], "end_time")
        validate_interval(start, end)

        status = parse_status(data.get("status") or BookingStatus.PENDING)
        if status not in INITIAL_STATUSES:
            raise ValidationError("A new booking must be pending or confirmed")

        amount = data.get("total_amount")
        if amount is not None:
            amount = parse_amount(amount)

        try:
            room = self._lock_room(room_id)
            if self.db.get(Customer, customer_id) is None:
                raise NotFoundError(f"Customer {customer_id} not found")
            ensure_slot_is_free(self.db, room.id, start, end)

            booking = Booking(
                room_id=room.id,
                customer_id=customer_id,
                start_time=start,
                end_time=end,
                status=status.value,
                total_amount=amount if amount is not None else calculate_total_amount(room.price_per_hour, start, end),
                notes=data.get("notes") or "",
            )
            self.db.add(booking)
            self._commit("create booking")
        except KaraokeError:
            self.db.rollback()
            raise

        self.db.refresh(booking)
        logger.info(
            "Booking %s created: room %s, %s - %s, %s",
            booking.id, booking.room_id, booking.start_time, booking.end_time, booking.total_amount,
        )
        return booking

    def update(self, booking_id: int, data: dict) -> Booking:
        updates = {k: v for k, v in data.items() if k in UPDATABLE_FIELDS and v is not None}
        if not updates:
            raise ValidationError("No valid fields to update")

        try:
            booking = self._lock_booking(booking_id)
            current = BookingStatus(booking.status)

            new_status = current
            if "status" in updates:
                new_status = parse_status(updates["status"])
                if new_status != current and new_status not in BOOKING_TRANSITIONS[current]:
                    raise ValidationError(
                        f"Cannot change booking status from {current.value} to {new_status.value}"
                    )

            start = booking.start_time
            end = booking.end_time
            if "start_time" in updates:
                start = parse_timestamp(updates["start_time"], "start_time")
            if "end_time" in updates:
                end = parse_timestamp(updates["end_time"], "end_time")
            room_id = updates.get("room_id", booking.room_id)

            moved = start != booking.start_time or end != booking.end_time or room_id != booking.room_id
            room = None
            if moved:
                if current.value not in ACTIVE_STATUSES:
                    raise ValidationError(f"Cannot reschedule a {current.value} booking")
                validate_interval(start, end)
                room = self._lock_room(room_id)
                if new_status.value in ACTIVE_STATUSES:
                    ensure_slot_is_free(self.db, room.id, start, end, exclude_booking_id=booking.id)

            if "total_amount" in updates:
                booking.total_amount = parse_amount(updates["total_amount"])
            elif moved:
                booking.total_amount = calculate_total_amount(room.price_per_hour, start, end)

            booking.room_id = room_id
            booking.start_time = start
            booking.end_time = end
            booking.status = new_status.value
            if "notes" in updates:
                booking.notes = updates["notes"]
            self._commit("update booking")
        except KaraokeError:
            self.db.rollback()
            raise

        self.db.refresh(booking)
        if new_status != current:
            logger.info("Booking %s: %s -> %s", booking.id, current.value, new_status.value)
        else:
            logger.info("Booking %s updated", booking.id)
        return booking

    def confirm(self, booking_id: int) -> Booking:
        return self.update(booking_id, {"status": BookingStatus.CONFIRMED})

    def cancel(self, booking_id: int) -> Booking:
        return self.update(booking_id, {"status": BookingStatus.CANCELLED})

    def mark_completed(self, booking_id: int) -> bool:
        """Complete a confirmed booking. Returns False if it is no longer confirmed."""
        try:
            booking = self._lock_booking(booking_id)
            if booking.status != BookingStatus.CONFIRMED.value:
                self.db.rollback()
                return False
            booking.status = BookingStatus.COMPLETED.value
            self._commit("complete booking")
        except KaraokeError:
            self.db.rollback()
            raise
        return True

    def delete(self, booking_id: int) -> None:
        booking = self.get(booking_id)
        self.db.delete(booking)
        self._commit("delete booking")
        logger.info("Booking %s deleted", booking_id)

    # ----- helpers -----

    def _lock_room(self, room_id: int) -> Room:
        room = self.db.get(Room, room_id, with_for_update=True)
        if room is None:
            raise NotFoundError(f"Room {room_id} not found")
        return room

    def _lock_booking(self, booking_id: int) -> Booking:
        booking = self.db.get(Booking, booking_id, with_for_update=True)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        return booking

    def _commit(self, action: str) -> None:
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            logger.warning("Failed to %s: %s", action, exc.orig)
            raise translate_integrity_error(exc, action) from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Failed to %s: %s", action, exc)
            raise PersistenceError(f"Failed to {action}") from exc
