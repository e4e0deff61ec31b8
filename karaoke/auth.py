"""
Customer authentication.
- Password hashing with bcrypt (passlib)
- Signed, time-limited access tokens with itsdangerous
- FastAPI dependencies get_current_customer() / require_admin()
"""
from dataclasses import dataclass

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from passlib.context import CryptContext

from .config import get_secret_key, get_token_max_age
from .errors import AuthenticationError, PermissionDeniedError
from .models import CustomerRole

# ----- Password hashing -----
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(plain: str) -> str:
    return pwd_context.hash(plain)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


# ----- Signed access tokens -----
@dataclass(frozen=True)
class CurrentCustomer:
    id: int
    username: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == CustomerRole.ADMIN.value


def _get_serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(get_secret_key(), salt="customer-access")


def create_access_token(customer) -> str:
    return _get_serializer().dumps(
        {"id": customer.id, "username": customer.username, "role": customer.role}
    )


def verify_access_token(token: str, max_age_seconds: int | None = None) -> CurrentCustomer:
    """Returns the token's customer, raises AuthenticationError when invalid or expired."""
    if max_age_seconds is None:
        max_age_seconds = get_token_max_age()
    try:
        payload = _get_serializer().loads(token, max_age=max_age_seconds)
    except SignatureExpired:
        raise AuthenticationError("Token has expired")
    except BadSignature:
        raise AuthenticationError("Invalid token")
    return CurrentCustomer(id=payload["id"], username=payload["username"], role=payload["role"])


# ----- FastAPI dependencies -----
bearer_scheme = HTTPBearer(auto_error=False)


def get_current_customer(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> CurrentCustomer:
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Authentication token is required")
    return verify_access_token(credentials.credentials)


def require_admin(current: CurrentCustomer = Depends(get_current_customer)) -> CurrentCustomer:
    if not current.is_admin:
        raise PermissionDeniedError("Access denied. Admin privileges required.")
    return current


def ensure_self_or_admin(current: CurrentCustomer, customer_id: int) -> None:
    if current.id != customer_id and not current.is_admin:
        raise PermissionDeniedError("Access denied. You can only access your own data.")
