import asyncio
from datetime import timedelta

import pytest

from karaoke.errors import PersistenceError
from karaoke.main import app, stop_sweeper
from karaoke.models import Booking, utcnow
from karaoke.repositories.bookings import BookingRepository
from karaoke.sweeper import BookingSweeper, SweepResult

from conftest import at

NOW = at(12, 1)


def status_of(db, booking_id):
    db.expire_all()
    return db.get(Booking, booking_id).status


def test_confirmed_booking_past_end_is_completed(make_room, make_booking, customer, db, session_factory):
    room = make_room("A")
    expired = make_booking(room, customer, at(10), NOW - timedelta(minutes=1), status="confirmed")

    result = BookingSweeper(session_factory).sweep(now=NOW)

    assert result.completed == [expired.id]
    assert status_of(db, expired.id) == "completed"


def test_sweep_leaves_other_bookings_alone(make_room, make_booking, customer, db, session_factory):
    room = make_room("A")
    pending_past = make_booking(room, customer, at(8), at(9), status="pending")
    cancelled_past = make_booking(room, customer, at(9), at(10), status="cancelled")
    running = make_booking(room, customer, at(12), at(14), status="confirmed")
    ends_now = make_booking(make_room("B"), customer, at(11), NOW, status="confirmed")

    result = BookingSweeper(session_factory).sweep(now=NOW)

    assert result.completed == []
    assert status_of(db, pending_past.id) == "pending"
    assert status_of(db, cancelled_past.id) == "cancelled"
    assert status_of(db, running.id) == "confirmed"
    assert status_of(db, ends_now.id) == "confirmed"


def test_sweep_counts_currently_active_bookings(make_room, make_booking, customer, session_factory):
    make_booking(make_room("A"), customer, at(12), at(14), status="confirmed")
    make_booking(make_room("B"), customer, at(11), at(13), status="confirmed")
    make_booking(make_room("C"), customer, at(11), at(13), status="pending")
    make_booking(make_room("D"), customer, at(13), at(14), status="confirmed")

    result = BookingSweeper(session_factory).sweep(now=NOW)

    assert result.active_count == 2


def test_second_sweep_changes_nothing(make_room, make_booking, customer, db, session_factory):
    room = make_room("A")
    for hour in (6, 8, 10):
        make_booking(room, customer, at(hour), at(hour + 1), status="confirmed")
    sweeper = BookingSweeper(session_factory)

    first = sweeper.sweep(now=NOW)
    second = sweeper.sweep(now=NOW)

    assert len(first.completed) == 3
    assert second.completed == []
    assert second.failed == []


def test_one_failing_booking_does_not_abort_the_sweep(make_room, make_booking, customer, db, session_factory, monkeypatch):
    room = make_room("A")
    ids = [make_booking(room, customer, at(h), at(h + 1), status="confirmed").id for h in (6, 8, 10)]
    original = BookingRepository.mark_completed

    def flaky(self, booking_id):
        if booking_id == ids[1]:
            raise PersistenceError("Failed to complete booking")
        return original(self, booking_id)

    monkeypatch.setattr(BookingRepository, "mark_completed", flaky)

    result = BookingSweeper(session_factory).sweep(now=NOW)

    assert result.completed == [ids[0], ids[2]]
    assert result.failed == [ids[1]]
    assert status_of(db, ids[1]) == "confirmed"

    monkeypatch.setattr(BookingRepository, "mark_completed", original)
    retry = BookingSweeper(session_factory).sweep(now=NOW)
    assert retry.completed == [ids[1]]


def test_overlapping_sweep_is_skipped(session_factory):
    sweeper = BookingSweeper(session_factory)
    sweeper._lock.acquire()
    try:
        result = sweeper.sweep(now=NOW)
    finally:
        sweeper._lock.release()

    assert result.skipped is True
    assert result.completed == []


@pytest.mark.parametrize("error", [PersistenceError("database unreachable"), RuntimeError("bug in a sweep")])
def test_run_periodically_survives_failures(session_factory, monkeypatch, error):
    sweeper = BookingSweeper(session_factory)
    calls = []

    def fake_sweep(now=None):
        calls.append(now)
        if len(calls) == 1:
            raise error
        return SweepResult()

    monkeypatch.setattr(sweeper, "sweep", fake_sweep)

    async def run_briefly():
        task = asyncio.create_task(sweeper.run_periodically(0.01))
        await asyncio.sleep(0.2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(run_briefly())

    assert len(calls) >= 2


def test_sweep_defaults_to_current_utc_time(make_room, make_booking, customer, db, session_factory):
    now = utcnow()
    assert now.tzinfo is None
    finished = make_booking(make_room("A"), customer, now - timedelta(hours=2), now - timedelta(hours=1))
    assert finished.created_at.tzinfo is None

    result = BookingSweeper(session_factory).sweep()

    assert result.completed == [finished.id]
    assert status_of(db, finished.id) == "completed"


def test_shutdown_logs_a_crashed_sweeper_task(monkeypatch, caplog):
    async def crashed():
        raise RuntimeError("sweeper crashed")

    async def shut_down():
        monkeypatch.setattr(app.state, "sweeper_task", asyncio.create_task(crashed()), raising=False)
        await asyncio.sleep(0)
        await stop_sweeper()

    asyncio.run(shut_down())

    assert "Booking sweeper stopped with an error" in caplog.text
