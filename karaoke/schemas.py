from pydantic import BaseModel, EmailStr, Field, model_validator
from datetime import datetime
from decimal import Decimal
from typing import Optional

from .availability import to_naive_utc
from .models import BookingStatus, CustomerRole, RoomStatus, RoomType


# ----- Rooms -----

class RoomBase(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    # Free text on input; RoomRepository maps legacy names such as "Normal".
    type: str = RoomType.STANDARD.value
    price_per_hour: Decimal = Field(ge=0)
    capacity: int = Field(ge=1)
    status: RoomStatus = RoomStatus.AVAILABLE


class RoomCreate(RoomBase):
    pass


class RoomUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[str] = None
    price_per_hour: Optional[Decimal] = Field(default=None, ge=0)
    capacity: Optional[int] = Field(default=None, ge=1)
    status: Optional[RoomStatus] = None


class Room(RoomBase):
    id: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# ----- Customers -----

class CustomerRegister(BaseModel):
    username: str = Field(min_length=3, max_length=50)
    password: str = Field(min_length=6, max_length=72)
    email: EmailStr
    name: Optional[str] = None
    phone_number: Optional[str] = Field(default=None, max_length=20)


class CustomerUpdate(BaseModel):
    """Profile edits. Password and role never travel through this path."""
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone_number: Optional[str] = Field(default=None, max_length=20)


class PasswordChange(BaseModel):
    current_password: str
    new_password: str = Field(min_length=6, max_length=72)


class Customer(BaseModel):
    id: int
    username: str
    name: Optional[str] = None
    email: str
    phone_number: Optional[str] = None
    role: CustomerRole
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class LoginRequest(BaseModel):
    username: str
    password: str


class TokenResponse(BaseModel):
    token: str
    customer: Customer


# ----- Bookings -----

class BookingCreate(BaseModel):
    room_id: int
    customer_id: Optional[int] = None
    start_time: datetime
    end_time: datetime
    notes: str = ""
    status: Optional[BookingStatus] = None
    total_amount: Optional[Decimal] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def check_interval(self):
        if to_naive_utc(self.start_time) >= to_naive_utc(self.end_time):
            raise ValueError("start_time must be before end_time")
        return self


class BookingUpdate(BaseModel):
    """Schema for partial booking edits by staff."""
    room_id: Optional[int] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    status: Optional[BookingStatus] = None
    total_amount: Optional[Decimal] = Field(default=None, ge=0)
    notes: Optional[str] = None


class Booking(BaseModel):
    id: int
    room_id: int
    customer_id: int
    start_time: datetime
    end_time: datetime
    status: BookingStatus
    total_amount: Decimal
    notes: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# ----- Reports -----

class RevenueRow(BaseModel):
    period: int
    total_revenue: float
    bookings_count: int
    avg_revenue: float


class TopRoomRow(BaseModel):
    id: int
    name: str
    type: str
    booking_count: int
    total_revenue: float
