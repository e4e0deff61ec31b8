import random
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from karaoke.availability import (
    calculate_total_amount,
    find_available_rooms,
    is_time_slot_overlapping,
    parse_timestamp,
    validate_interval,
)
from karaoke.errors import ValidationError

from conftest import DAY, at


def room_names(rooms):
    return [r.name for r in rooms]


def test_confirmed_booking_blocks_overlapping_window(make_room, make_booking, customer, db):
    room_a = make_room("A", price=100)
    make_booking(room_a, customer, at(10), at(12), status="confirmed")

    assert "A" not in room_names(find_available_rooms(db, at(11), at(13)))
    assert "A" in room_names(find_available_rooms(db, at(12), at(13)))
    assert "A" in room_names(find_available_rooms(db, at(9), at(10)))


@pytest.mark.parametrize("window", [
    (at(9), at(11)),    # covers the start
    (at(11), at(13)),   # covers the end
    (at(10, 30), at(11, 30)),  # inside
    (at(9), at(13)),    # encloses
    (at(10), at(12)),   # identical
])
def test_every_overlap_shape_is_detected(make_room, make_booking, customer, db, window):
    room = make_room("A")
    make_booking(room, customer, at(10), at(12), status="pending")

    assert is_time_slot_overlapping(db, room.id, *window)
    assert find_available_rooms(db, *window) == []


@pytest.mark.parametrize("status", ["cancelled", "completed"])
def test_inactive_bookings_do_not_block(make_room, make_booking, customer, db, status):
    room = make_room("A")
    make_booking(room, customer, at(10), at(12), status=status)

    assert not is_time_slot_overlapping(db, room.id, at(10), at(12))
    assert room_names(find_available_rooms(db, at(10), at(12))) == ["A"]


def test_exclude_booking_ignores_itself(make_room, make_booking, customer, db):
    room = make_room("A")
    booking = make_booking(room, customer, at(10), at(12))

    assert is_time_slot_overlapping(db, room.id, at(11), at(13))
    assert not is_time_slot_overlapping(db, room.id, at(11), at(13), exclude_booking_id=booking.id)


def test_rooms_ordered_by_price_then_name(make_room, db):
    make_room("Zebra", price=100)
    make_room("Suite", price=250, type="Suite")
    make_room("Alpha", price=100)
    make_room("Budget", price=80)

    rooms = find_available_rooms(db, at(18), at(20))

    assert room_names(rooms) == ["Budget", "Alpha", "Zebra", "Suite"]
    assert room_names(find_available_rooms(db, at(18), at(20))) == room_names(rooms)


def test_room_status_label_does_not_affect_availability(make_room, db):
    make_room("Under repair", status="maintenance")

    assert room_names(find_available_rooms(db, at(18), at(20))) == ["Under repair"]


@pytest.mark.parametrize("seed", range(5))
def test_available_rooms_match_brute_force(make_room, make_booking, customer, db, seed):
    rng = random.Random(seed)
    rooms = [make_room(f"R{i}", price=rng.choice([80, 100, 150])) for i in range(4)]
    statuses = ["pending", "confirmed", "completed", "cancelled"]

    stored = []
    for _ in range(25):
        room = rng.choice(rooms)
        start = at(0) + timedelta(minutes=15 * rng.randrange(0, 80))
        end = start + timedelta(minutes=15 * rng.randrange(1, 12))
        status = rng.choice(statuses)
        make_booking(room, customer, start, end, status=status)
        stored.append((room.id, start, end, status))

    for _ in range(30):
        start = at(0) + timedelta(minutes=15 * rng.randrange(0, 90))
        end = start + timedelta(minutes=15 * rng.randrange(1, 16))
        busy = {
            room_id
            for room_id, b_start, b_end, status in stored
            if status in ("pending", "confirmed") and start < b_end and end > b_start
        }
        expected = {r.id for r in rooms} - busy

        assert {r.id for r in find_available_rooms(db, start, end)} == expected


@pytest.mark.parametrize("start, end, expected", [
    (at(10), at(12, 30), Decimal("300")),
    (at(10), at(12), Decimal("200")),
    (at(10), at(10, 1), Decimal("100")),
    (at(23), DAY + timedelta(days=1, hours=1), Decimal("200")),
])
def test_total_amount_rounds_up_to_whole_hours(start, end, expected):
    assert calculate_total_amount(Decimal("100"), start, end) == expected


def test_total_amount_rejects_empty_interval():
    with pytest.raises(ValidationError):
        calculate_total_amount(100, at(10), at(10))


def test_parse_timestamp_normalizes_to_naive_utc():
    assert parse_timestamp("2026-03-14T10:00:00Z") == datetime(2026, 3, 14, 10, 0)
    assert parse_timestamp("2026-03-14T17:00:00+07:00") == datetime(2026, 3, 14, 10, 0)
    assert parse_timestamp("2026-03-14T10:00:00") == datetime(2026, 3, 14, 10, 0)
    aware = datetime(2026, 3, 14, 12, 0, tzinfo=timezone(timedelta(hours=2)))
    assert parse_timestamp(aware) == datetime(2026, 3, 14, 10, 0)


@pytest.mark.parametrize("value", [None, "", "tomorrow", "2026-13-01T00:00:00"])
def test_parse_timestamp_rejects_garbage(value):
    with pytest.raises(ValidationError):
        parse_timestamp(value, "start_time")


def test_validate_interval():
    validate_interval(at(10), at(11))
    with pytest.raises(ValidationError):
        validate_interval(at(11), at(10))
    with pytest.raises(ValidationError):
        validate_interval(None, at(10))
