import asyncio
import logging
import os
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import schemas
from .auth import (
    CurrentCustomer,
    create_access_token,
    ensure_self_or_admin,
    get_current_customer,
    require_admin,
)
from .availability import find_available_rooms, parse_timestamp, validate_interval
from .config import (
    configure_logging,
    get_sweep_interval,
    load_environment,
    reports_swallow_errors,
    sweeper_enabled,
)
from .database.db import SessionLocal, get_db, init_db
from .errors import KaraokeError, PermissionDeniedError
from .models import CustomerRole
from .reports import RevenueReport
from .repositories.bookings import BookingRepository
from .repositories.customers import CustomerRepository
from .repositories.rooms import RoomRepository
from .sweeper import BookingSweeper

load_environment()

logger = logging.getLogger(__name__)


def ok(data=None, message: Optional[str] = None, status_code: int = 200, **extra) -> JSONResponse:
    body = {"success": True, "data": data}
    if message:
        body["message"] = message
    body.update(extra)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def room_out(room) -> schemas.Room:
    return schemas.Room.model_validate(room)


def customer_out(customer) -> schemas.Customer:
    return schemas.Customer.model_validate(customer)


def booking_out(booking) -> schemas.Booking:
    return schemas.Booking.model_validate(booking)


def revenue_rows(rows) -> list:
    return [schemas.RevenueRow(**row) for row in rows]


# ---------------------------------------------------------------------------
# App FastAPI
# ---------------------------------------------------------------------------
app = FastAPI(title="Karaoke - Room Bookings")
sweeper = BookingSweeper(SessionLocal)


@app.exception_handler(KaraokeError)
async def karaoke_error_handler(request: Request, exc: KaraokeError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.message, "error": exc.kind},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "message": "Invalid request data",
            "error": "validation",
            "details": jsonable_encoder(exc.errors()),
        },
    )


@app.on_event("startup")
def startup_db_seed():
    """Creates tables, the overlap constraint and the default admin if missing."""
    configure_logging()
    init_db()
    db = SessionLocal()
    try:
        customers = CustomerRepository(db)
        admin_username = os.getenv("ADMIN_USERNAME", "admin")
        if customers.get_by_username(admin_username) is None:
            customers.create(
                username=admin_username,
                password=os.getenv("ADMIN_PASSWORD", "Karaoke@2026#Admin!"),
                email=os.getenv("ADMIN_EMAIL", "admin@karaoke.local"),
                name="Administrator",
                role=CustomerRole.ADMIN,
            )
            logger.info("Admin user '%s' created", admin_username)
    finally:
        db.close()


@app.on_event("startup")
async def start_sweeper():
    if not sweeper_enabled():
        logger.info("Booking sweeper disabled")
        return
    app.state.sweeper_task = asyncio.create_task(sweeper.run_periodically(get_sweep_interval()))


@app.on_event("shutdown")
async def stop_sweeper():
    task = getattr(app.state, "sweeper_task", None)
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.exception("Booking sweeper stopped with an error")


@app.get("/api/health")
def health():
    return {"success": True, "message": "API is working!"}


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

@app.post("/api/auth/register")
def register(payload: schemas.CustomerRegister, db: Session = Depends(get_db)):
    customer = CustomerRepository(db).create(
        username=payload.username,
        password=payload.password,
        email=payload.email,
        name=payload.name,
        phone_number=payload.phone_number,
    )
    token = create_access_token(customer)
    return ok(
        schemas.TokenResponse(token=token, customer=customer_out(customer)),
        "Registered successfully",
        status_code=201,
    )


@app.post("/api/auth/login")
def login(payload: schemas.LoginRequest, db: Session = Depends(get_db)):
    customer = CustomerRepository(db).authenticate(payload.username, payload.password)
    token = create_access_token(customer)
    return ok(schemas.TokenResponse(token=token, customer=customer_out(customer)))


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------

@app.get("/api/customers")
def list_customers(db: Session = Depends(get_db), admin: CurrentCustomer = Depends(require_admin)):
    return ok([customer_out(c) for c in CustomerRepository(db).list()])


@app.get("/api/customers/{customer_id}")
def get_customer(
    customer_id: int,
    db: Session = Depends(get_db),
    current: CurrentCustomer = Depends(get_current_customer),
):
    ensure_self_or_admin(current, customer_id)
    return ok(customer_out(CustomerRepository(db).get(customer_id)))


@app.put("/api/customers/{customer_id}")
def update_customer(
    customer_id: int,
    payload: schemas.CustomerUpdate,
    db: Session = Depends(get_db),
    current: CurrentCustomer = Depends(get_current_customer),
):
    ensure_self_or_admin(current, customer_id)
    customer = CustomerRepository(db).update(customer_id, payload.model_dump(exclude_unset=True))
    return ok(customer_out(customer), "Profile updated")


@app.put("/api/customers/{customer_id}/password")
def change_password(
    customer_id: int,
    payload: schemas.PasswordChange,
    db: Session = Depends(get_db),
    current: CurrentCustomer = Depends(get_current_customer),
):
    if current.id != customer_id:
        raise PermissionDeniedError("You can only change your own password.")
    CustomerRepository(db).change_password(customer_id, payload.current_password, payload.new_password)
    return ok(message="Password changed")


@app.delete("/api/customers/{customer_id}")
def delete_customer(
    customer_id: int,
    db: Session = Depends(get_db),
    admin: CurrentCustomer = Depends(require_admin),
):
    CustomerRepository(db).delete(customer_id)
    return ok(message="Customer deleted")


# ---------------------------------------------------------------------------
# Rooms
# ---------------------------------------------------------------------------

@app.get("/api/rooms")
def list_rooms(db: Session = Depends(get_db)):
    return ok([room_out(r) for r in RoomRepository(db).list()])


@app.get("/api/rooms/{room_id}")
def get_room(room_id: int, db: Session = Depends(get_db)):
    return ok(room_out(RoomRepository(db).get(room_id)))


@app.post("/api/rooms")
def create_room(
    payload: schemas.RoomCreate,
    db: Session = Depends(get_db),
    admin: CurrentCustomer = Depends(require_admin),
):
    room = RoomRepository(db).create(payload.model_dump())
    return ok(room_out(room), "Room created", status_code=201)


@app.put("/api/rooms/{room_id}")
def update_room(
    room_id: int,
    payload: schemas.RoomUpdate,
    db: Session = Depends(get_db),
    admin: CurrentCustomer = Depends(require_admin),
):
    room = RoomRepository(db).update(room_id, payload.model_dump(exclude_unset=True))
    return ok(room_out(room), "Room updated")


@app.delete("/api/rooms/{room_id}")
def delete_room(
    room_id: int,
    db: Session = Depends(get_db),
    admin: CurrentCustomer = Depends(require_admin),
):
    RoomRepository(db).delete(room_id)
    return ok(message="Room deleted")


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------

@app.get("/api/bookings/available")
def available_rooms(
    start_time: Optional[str] = None,
    end_time: Optional[str] = None,
    db: Session = Depends(get_db),
):
    start = parse_timestamp(start_time, "start_time")
    end = parse_timestamp(end_time, "end_time")
    validate_interval(start, end)
    rooms = find_available_rooms(db, start, end)
    return ok(
        [room_out(r) for r in rooms],
        "Available rooms found",
        meta={
            "start_time": start.isoformat(),
            "end_time": end.isoformat(),
            "total_rooms": len(rooms),
        },
    )


@app.post("/api/bookings")
def create_booking(
    payload: schemas.BookingCreate,
    db: Session = Depends(get_db),
    current: CurrentCustomer = Depends(get_current_customer),
):
    data = payload.model_dump()
    if data["customer_id"] is None:
        data["customer_id"] = current.id
    ensure_self_or_admin(current, data["customer_id"])
    booking = BookingRepository(db).create(data)
    return ok(booking_out(booking), "Booking created", status_code=201)


@app.get("/api/bookings")
def list_bookings(
    db: Session = Depends(get_db),
    current: CurrentCustomer = Depends(get_current_customer),
):
    customer_id = None if current.is_admin else current.id
    return ok([booking_out(b) for b in BookingRepository(db).list(customer_id=customer_id)])


@app.get("/api/bookings/{booking_id}")
def get_booking(
    booking_id: int,
    db: Session = Depends(get_db),
    current: CurrentCustomer = Depends(get_current_customer),
):
    booking = BookingRepository(db).get(booking_id)
    ensure_self_or_admin(current, booking.customer_id)
    return ok(booking_out(booking))


@app.put("/api/bookings/{booking_id}")
def update_booking(
    booking_id: int,
    payload: schemas.BookingUpdate,
    db: Session = Depends(get_db),
    admin: CurrentCustomer = Depends(require_admin),
):
    booking = BookingRepository(db).update(booking_id, payload.model_dump(exclude_unset=True))
    return ok(booking_out(booking), "Booking updated")


@app.post("/api/bookings/{booking_id}/confirm")
def confirm_booking(
    booking_id: int,
    db: Session = Depends(get_db),
    admin: CurrentCustomer = Depends(require_admin),
):
    return ok(booking_out(BookingRepository(db).confirm(booking_id)), "Booking confirmed")


@app.post("/api/bookings/{booking_id}/cancel")
def cancel_booking(
    booking_id: int,
    db: Session = Depends(get_db),
    current: CurrentCustomer = Depends(get_current_customer),
):
    bookings = BookingRepository(db)
    ensure_self_or_admin(current, bookings.get(booking_id).customer_id)
    return ok(booking_out(bookings.cancel(booking_id)), "Booking cancelled")


@app.delete("/api/bookings/{booking_id}")
def delete_booking(
    booking_id: int,
    db: Session = Depends(get_db),
    admin: CurrentCustomer = Depends(require_admin),
):
    BookingRepository(db).delete(booking_id)
    return ok(message="Booking deleted")


# ---------------------------------------------------------------------------
# Reports (admin)
# ---------------------------------------------------------------------------

def get_report(db: Session = Depends(get_db)) -> RevenueReport:
    return RevenueReport(db, swallow_errors=reports_swallow_errors())


@app.get("/api/reports/revenue/monthly")
def revenue_monthly(
    year: int,
    report: RevenueReport = Depends(get_report),
    admin: CurrentCustomer = Depends(require_admin),
):
    return ok(revenue_rows(report.revenue_by_month(year)))


@app.get("/api/reports/revenue/quarterly")
def revenue_quarterly(
    year: int,
    report: RevenueReport = Depends(get_report),
    admin: CurrentCustomer = Depends(require_admin),
):
    return ok(revenue_rows(report.revenue_by_quarter(year)))


@app.get("/api/reports/revenue/yearly")
def revenue_yearly(
    start_year: int,
    end_year: int,
    report: RevenueReport = Depends(get_report),
    admin: CurrentCustomer = Depends(require_admin),
):
    return ok(revenue_rows(report.revenue_by_year(start_year, end_year)))


@app.get("/api/reports/rooms/top")
def top_rooms(
    year: int,
    limit: int = 5,
    report: RevenueReport = Depends(get_report),
    admin: CurrentCustomer = Depends(require_admin),
):
    return ok([schemas.TopRoomRow(**row) for row in report.top_rooms(year, limit)])
