import logging
from decimal import Decimal, InvalidOperation
from typing import List

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import NotFoundError, PersistenceError, ReferentialGuardError, ValidationError
from ..models import Booking, Room, RoomStatus, RoomType

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("name", "type", "price_per_hour", "capacity", "status")


def normalize_room_type(value) -> str:
    if value is None:
        return RoomType.STANDARD.value
    raw = value.value if isinstance(value, RoomType) else str(value)
    # Older clients still send the pre-rename label.
    if raw == "Normal":
        return RoomType.STANDARD.value
    try:
        return RoomType(raw).value
    except ValueError:
        raise ValidationError(
            f"Invalid room type {raw!r}. Must be one of: {', '.join(t.value for t in RoomType)}"
        )


def normalize_room_status(value) -> str:
    if value is None:
        return RoomStatus.AVAILABLE.value
    raw = value.value if isinstance(value, RoomStatus) else str(value)
    try:
        return RoomStatus(raw).value
    except ValueError:
        raise ValidationError(
            f"Invalid status {raw!r}. Must be one of: {', '.join(s.value for s in RoomStatus)}"
        )


class RoomRepository:
    def __init__(self, db: Session):
        self.db = db

    def list(self) -> List[Room]:
        return list(self.db.scalars(select(Room).order_by(Room.name, Room.id)).all())

    def get(self, room_id: int) -> Room:
        room = self.db.get(Room, room_id)
        if room is None:
            raise NotFoundError(f"Room {room_id} not found")
        return room

    def create(self, data: dict) -> Room:
        name = (data.get("name") or "").strip()
        if not name or data.get("price_per_hour") is None or data.get("capacity") is None:
            raise ValidationError("Missing required fields: name, price_per_hour, and capacity")

        room = Room(
            name=name,
            type=normalize_room_type(data.get("type")),
            price_per_hour=self._check_price(data["price_per_hour"]),
            capacity=self._check_capacity(data["capacity"]),
            status=normalize_room_status(data.get("status")),
        )
        self.db.add(room)
        self._commit("create room")
        self.db.refresh(room)
        logger.info("Room %s created (%s, %s/hour)", room.id, room.name, room.price_per_hour)
        return room

    def update(self, room_id: int, data: dict) -> Room:
        room = self.get(room_id)
        updates = {k: v for k, v in data.items() if k in UPDATABLE_FIELDS and v is not None}
        if not updates:
            raise ValidationError("No valid fields to update")

        if "name" in updates:
            updates["name"] = updates["name"].strip()
            if not updates["name"]:
                raise ValidationError("Room name cannot be empty")
        if "type" in updates:
            updates["type"] = normalize_room_type(updates["type"])
        if "status" in updates:
            updates["status"] = normalize_room_status(updates["status"])
        if "price_per_hour" in updates:
            updates["price_per_hour"] = self._check_price(updates["price_per_hour"])
        if "capacity" in updates:
            updates["capacity"] = self._check_capacity(updates["capacity"])

        for key, value in updates.items():
            setattr(room, key, value)
        self._commit("update room")
        self.db.refresh(room)
        return room

    def delete(self, room_id: int) -> None:
        room = self.get(room_id)
        booking_count = self.db.scalar(
            select(func.count(Booking.id)).where(Booking.room_id == room_id)
        )
        if booking_count:
            logger.warning("Refusing to delete room %s: %s bookings reference it", room_id, booking_count)
            raise ReferentialGuardError(f"Cannot delete room {room_id}: room has existing bookings")
        self.db.delete(room)
        self._commit("delete room")
        logger.info("Room %s deleted", room_id)

    @staticmethod
    def _check_price(value) -> Decimal:
        try:
            price = Decimal(str(value))
        except (TypeError, ValueError, InvalidOperation):
            raise ValidationError("Invalid price_per_hour value")
        if not price.is_finite() or price < 0:
            raise ValidationError("price_per_hour must be a number >= 0")
        return price

    @staticmethod
    def _check_capacity(value) -> int:
        try:
            capacity = int(value)
        except (TypeError, ValueError):
            raise ValidationError("Invalid capacity value")
        if capacity < 1:
            raise ValidationError("capacity must be >= 1")
        return capacity

    def _commit(self, action: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Failed to %s: %s", action, exc)
            raise PersistenceError(f"Failed to {action}") from exc
