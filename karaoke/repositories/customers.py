import logging
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..auth import hash_password, verify_password
from ..errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    PersistenceError,
    ReferentialGuardError,
    ValidationError,
)
from ..models import Booking, Customer, CustomerRole

logger = logging.getLogger(__name__)

# password and role are changed through dedicated paths only
PROFILE_FIELDS = ("name", "email", "phone_number")


class CustomerRepository:
    def __init__(self, db: Session):
        self.db = db

    def list(self) -> List[Customer]:
        return list(self.db.scalars(select(Customer).order_by(Customer.id)).all())

    def get(self, customer_id: int) -> Customer:
        customer = self.db.get(Customer, customer_id)
        if customer is None:
            raise NotFoundError(f"Customer {customer_id} not found")
        return customer

    def get_by_username(self, username: str) -> Optional[Customer]:
        return self.db.scalars(select(Customer).where(Customer.username == username)).first()

    def get_by_email(self, email: str) -> Optional[Customer]:
        return self.db.scalars(select(Customer).where(Customer.email == email)).first()

    def create(
        self,
        username: str,
        password: str,
        email: str,
        name: Optional[str] = None,
        phone_number: Optional[str] = None,
        role: CustomerRole = CustomerRole.USER,
    ) -> Customer:
        if not username or not password or not email:
            raise ValidationError("Username, password and email are required")
        if self.get_by_username(username) is not None:
            raise ConflictError("Username already exists")
        if self.get_by_email(email) is not None:
            raise ConflictError("Email already registered")

        customer = Customer(
            username=username,
            password=hash_password(password),
            email=email,
            name=name or username,
            phone_number=phone_number,
            role=CustomerRole(role).value,
        )
        self.db.add(customer)
        self._commit("create customer")
        self.db.refresh(customer)
        logger.info("Customer %s registered as %s", customer.id, customer.username)
        return customer

    def update(self, customer_id: int, data: dict) -> Customer:
        customer = self.get(customer_id)
        updates = {k: v for k, v in data.items() if k in PROFILE_FIELDS and v is not None}
        if not updates:
            raise ValidationError("No valid fields to update")

        email = updates.get("email")
        if email and email != customer.email:
            other = self.get_by_email(email)
            if other is not None and other.id != customer.id:
                raise ConflictError("Email already registered")

        for key, value in updates.items():
            setattr(customer, key, value)
        self._commit("update customer")
        self.db.refresh(customer)
        return customer

    def change_password(self, customer_id: int, current_password: str, new_password: str) -> None:
        customer = self.get(customer_id)
        if not verify_password(current_password, customer.password):
            raise AuthenticationError("Current password is incorrect")
        customer.password = hash_password(new_password)
        self._commit("change password")
        logger.info("Customer %s changed password", customer_id)

    def delete(self, customer_id: int) -> None:
        customer = self.get(customer_id)
        booking_count = self.db.scalar(
            select(func.count(Booking.id)).where(Booking.customer_id == customer_id)
        )
        if booking_count:
            raise ReferentialGuardError(f"Cannot delete customer {customer_id}: customer has existing bookings")
        self.db.delete(customer)
        self._commit("delete customer")
        logger.info("Customer %s deleted", customer_id)

    def authenticate(self, username: str, password: str) -> Customer:
        customer = self.get_by_username(username)
        if customer is None or not verify_password(password, customer.password):
            raise AuthenticationError("Invalid credentials")
        return customer

    def _commit(self, action: str) -> None:
        try:
            self.db.commit()
        except IntegrityError as exc:
            # Unique username/email lost a race with another writer.
            self.db.rollback()
            raise ConflictError(f"Failed to {action}: duplicate value") from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Failed to %s: %s", action, exc)
            raise PersistenceError(f"Failed to {action}") from exc
