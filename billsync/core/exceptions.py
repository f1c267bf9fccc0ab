from fastapi import HTTPException, status
from typing import Optional
import enum


class DatastoreErrorKind(str, enum.Enum):
    """Classification of datastore failures used to drive retries"""
    DEADLOCK = "deadlock"
    CONNECTION = "connection"
    TIMEOUT = "timeout"
    CONFLICT = "conflict"
    SERIALIZATION = "serialization"
    UNIQUE_VIOLATION = "unique_violation"
    NOT_FOUND = "not_found"
    OTHER = "other"


RETRYABLE_KINDS = frozenset({
    DatastoreErrorKind.DEADLOCK,
    DatastoreErrorKind.CONNECTION,
    DatastoreErrorKind.TIMEOUT,
    DatastoreErrorKind.CONFLICT,
    DatastoreErrorKind.SERIALIZATION,
})


class DatabaseError(HTTPException):
    """Custom exception for database errors"""
    def __init__(self, detail: str = "Database operation failed"):
        super().__init__(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)


class DatastoreError(DatabaseError):
    """Datastore failure carrying its classified kind"""
    def __init__(self, kind: DatastoreErrorKind, detail: str = "Database operation failed"):
        super().__init__(detail=detail)
        self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


class NotFoundError(HTTPException):
    """Custom exception for not found errors"""
    def __init__(self, resource: str = "Resource"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=f"{resource} not found")


class ForbiddenError(HTTPException):
    """Custom exception for forbidden errors"""
    def __init__(self, detail: str = "Not authorized to access this resource"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


class ValidationError(HTTPException):
    """Custom exception for validation errors"""
    def __init__(self, detail: str = "Validation failed"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class ConflictError(HTTPException):
    """Custom exception for uniqueness and state conflicts"""
    def __init__(self, detail: str = "Resource conflict"):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class LockNotAcquiredError(ConflictError):
    """Raised when an advisory lock could not be taken in time"""
    def __init__(self, key: str):
        super().__init__(detail="Operation already in progress, please retry")
        self.key = key


class CheckoutExpiredError(HTTPException):
    """Checkout metadata exists but is past its expiry"""
    def __init__(self, detail: str = "Checkout session has expired"):
        super().__init__(status_code=status.HTTP_410_GONE, detail=detail)


class ProcessorError(HTTPException):
    """Payment processor call failed"""
    def __init__(self, detail: str = "Payment processor request failed", code: Optional[str] = None):
        super().__init__(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)
        self.code = code
