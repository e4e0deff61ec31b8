"""Revenue aggregation over completed and confirmed bookings."""
import datetime
import logging
from typing import List

from sqlalchemy import extract, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import PersistenceError, ValidationError
from .models import REVENUE_STATUSES, Booking, Room

logger = logging.getLogger(__name__)


def _year_bounds(start_year: int, end_year: int):
    return datetime.datetime(start_year, 1, 1), datetime.datetime(end_year + 1, 1, 1)


def _revenue_rows(rows) -> List[dict]:
    return [
        {
            "period": int(row.period),
            "total_revenue": float(row.total_revenue or 0),
            "bookings_count": int(row.bookings_count),
            "avg_revenue": float(row.avg_revenue or 0),
        }
        for row in rows
    ]


class RevenueReport:
    """
    Grouped revenue figures.

    When ``swallow_errors`` is set, a failing query is logged and reported as
    an empty list; otherwise it raises PersistenceError.
    """

    def __init__(self, db: Session, swallow_errors: bool = False):
        self.db = db
        self.swallow_errors = swallow_errors

    def revenue_by_month(self, year: int) -> List[dict]:
        month = extract("month", Booking.start_time)
        return self._grouped(month, year, year, "monthly revenue")

    def revenue_by_quarter(self, year: int) -> List[dict]:
        # Quarters are folded from months; integer division differs per dialect.
        quarters = {}
        for row in self._grouped(extract("month", Booking.start_time), year, year, "quarterly revenue"):
            quarter = quarters.setdefault(
                (row["period"] - 1) // 3 + 1, {"total_revenue": 0.0, "bookings_count": 0}
            )
            quarter["total_revenue"] += row["total_revenue"]
            quarter["bookings_count"] += row["bookings_count"]
        return [
            {
                "period": period,
                "total_revenue": totals["total_revenue"],
                "bookings_count": totals["bookings_count"],
                "avg_revenue": totals["total_revenue"] / totals["bookings_count"],
            }
            for period, totals in sorted(quarters.items())
        ]

    def revenue_by_year(self, start_year: int, end_year: int) -> List[dict]:
        if start_year > end_year:
            raise ValidationError("start_year must not be after end_year")
        return self._grouped(extract("year", Booking.start_time), start_year, end_year, "yearly revenue")

    def top_rooms(self, year: int, limit: int = 5) -> List[dict]:
        if limit < 1:
            raise ValidationError("limit must be at least 1")
        start, end = _year_bounds(year, year)
        total_revenue = func.coalesce(func.sum(Booking.total_amount), 0)
        query = (
            select(
                Room.id,
                Room.name,
                Room.type,
                func.count(Booking.id).label("booking_count"),
                total_revenue.label("total_revenue"),
            )
            .select_from(Room)
            .outerjoin(
                Booking,
                (Booking.room_id == Room.id)
                & (Booking.start_time >= start)
                & (Booking.start_time < end)
                & Booking.status.in_(REVENUE_STATUSES),
            )
            .group_by(Room.id, Room.name, Room.type)
            .order_by(total_revenue.desc(), Room.id)
            .limit(limit)
        )
        try:
            rows = self.db.execute(query).all()
        except SQLAlchemyError as exc:
            return self._failed("top rooms", exc)
        return [
            {
                "id": row.id,
                "name": row.name,
                "type": row.type,
                "booking_count": int(row.booking_count),
                "total_revenue": float(row.total_revenue or 0),
            }
            for row in rows
        ]

    def _grouped(self, period, start_year: int, end_year: int, label: str) -> List[dict]:
        start, end = _year_bounds(start_year, end_year)
        query = (
            select(
                period.label("period"),
                func.sum(Booking.total_amount).label("total_revenue"),
                func.count(Booking.id).label("bookings_count"),
                func.avg(Booking.total_amount).label("avg_revenue"),
            )
            .where(Booking.start_time >= start)
            .where(Booking.start_time < end)
            .where(Booking.status.in_(REVENUE_STATUSES))
            .group_by(period)
            .order_by(period)
        )
        try:
            rows = self.db.execute(query).all()
        except SQLAlchemyError as exc:
            return self._failed(label, exc)
        return _revenue_rows(rows)

    def _failed(self, label: str, exc: Exception) -> List[dict]:
        self.db.rollback()
        logger.error("Error getting %s: %s", label, exc)
        if self.swallow_errors:
            return []
        raise PersistenceError(f"Failed to get {label}") from exc
