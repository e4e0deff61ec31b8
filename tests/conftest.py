import os
from datetime import datetime
from decimal import Decimal

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SWEEPER_ENABLED", "false")

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from karaoke import models
from karaoke.auth import create_access_token
from karaoke.database.db import Base, enable_sqlite_foreign_keys, get_db
from karaoke.main import app

DAY = datetime(2026, 3, 14)


def at(hour, minute=0, day=DAY):
    return day.replace(hour=hour, minute=minute)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_room(db):
    def _make(name="Room", price=100, capacity=6, type="Standard", status="available"):
        room = models.Room(
            name=name,
            price_per_hour=Decimal(str(price)),
            capacity=capacity,
            type=type,
            status=status,
        )
        db.add(room)
        db.commit()
        db.refresh(room)
        return room

    return _make


@pytest.fixture
def make_customer(db):
    def _make(username="singer", role="user"):
        # Not a real hash; tests that log in go through the API instead.
        customer = models.Customer(
            username=username,
            password="!",
            email=f"{username}@example.com",
            name=username.title(),
            role=role,
        )
        db.add(customer)
        db.commit()
        db.refresh(customer)
        return customer

    return _make


@pytest.fixture
def make_booking(db):
    """Inserts a row directly, bypassing the overlap guard."""

    def _make(room, customer, start, end, status="confirmed", total_amount=0):
        booking = models.Booking(
            room_id=room.id,
            customer_id=customer.id,
            start_time=start,
            end_time=end,
            status=status,
            total_amount=Decimal(str(total_amount)),
            notes="",
        )
        db.add(booking)
        db.commit()
        db.refresh(booking)
        return booking

    return _make


@pytest.fixture
def customer(make_customer):
    return make_customer("singer")


@pytest.fixture
def admin(make_customer):
    return make_customer("boss", role="admin")


def auth_header(customer):
    return {"Authorization": f"Bearer {create_access_token(customer)}"}
