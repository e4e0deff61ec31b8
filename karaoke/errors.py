"""Typed failures raised by the booking core.

Every error carries a machine-readable ``kind`` and the HTTP status the
request layer answers with, so callers never inspect message text.
"""


class KaraokeError(Exception):
    kind = "error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(KaraokeError):
    """Missing or malformed input."""

    kind = "validation"
    status_code = 400


class NotFoundError(KaraokeError):
    kind = "not_found"
    status_code = 404


class ConflictError(KaraokeError):
    """The requested slot overlaps an active booking, or a unique value is taken."""

    kind = "conflict"
    status_code = 409


class ReferentialGuardError(ConflictError):
    """Deletion refused while bookings still reference the row."""

    kind = "in_use"


class PersistenceError(KaraokeError):
    kind = "persistence"
    status_code = 500


class AuthenticationError(KaraokeError):
    kind = "unauthenticated"
    status_code = 401


class PermissionDeniedError(KaraokeError):
    kind = "forbidden"
    status_code = 403
