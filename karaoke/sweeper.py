"""Periodic reconciliation of booking status with wall-clock time."""
import asyncio
import datetime
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from .errors import KaraokeError
from .models import utcnow
from .repositories.bookings import BookingRepository

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    completed: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    active_count: int = 0
    skipped: bool = False


class BookingSweeper:
    """Moves confirmed bookings whose end time has passed to completed.

    Only one sweep runs at a time; a tick that finds a sweep in progress is
    skipped rather than queued.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory
        self._lock = threading.Lock()

    def sweep(self, now: Optional[datetime.datetime] = None) -> SweepResult:
        if not self._lock.acquire(blocking=False):
            logger.warning("Previous booking sweep still running, skipping this tick")
            return SweepResult(skipped=True)
        try:
            return self._sweep(now or utcnow())
        finally:
            self._lock.release()

    def _sweep(self, now: datetime.datetime) -> SweepResult:
        result = SweepResult()
        db = self.session_factory()
        try:
            bookings = BookingRepository(db)
            expired_ids = [b.id for b in bookings.find_confirmed_past_end(now)]
            db.rollback()

            for booking_id in expired_ids:
                try:
                    if bookings.mark_completed(booking_id):
                        result.completed.append(booking_id)
                        logger.info("Booking %s marked as completed", booking_id)
                except (KaraokeError, SQLAlchemyError) as e:
                    db.rollback()
                    result.failed.append(booking_id)
                    logger.error("Error completing booking %s: %s", booking_id, e)

            result.active_count = bookings.count_active_at(now)
        finally:
            db.close()

        logger.info(
            "Booking sweep at %s: %d completed, %d failed, %d currently active",
            now.isoformat(), len(result.completed), len(result.failed), result.active_count,
        )
        return result

    async def run_periodically(self, interval_seconds: float) -> None:
        """Sweep every ``interval_seconds`` until cancelled."""
        logger.info("Booking sweeper started, interval %ss", interval_seconds)
        while True:
            try:
                await run_in_threadpool(self.sweep)
            except Exception:
                # Anything short of cancellation is logged; the next tick retries.
                logger.exception("Booking sweep failed")
            await asyncio.sleep(interval_seconds)
