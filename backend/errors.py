from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"
    VALIDATION = "validation"
    UPSTREAM = "upstream"


HTTP_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.CONFLICT: 409,
    ErrorKind.VALIDATION: 400,
    ErrorKind.UPSTREAM: 502,
}


class DomainError(Exception):
    """Business rule failure with a stable machine-readable code."""

    kind = ErrorKind.VALIDATION

    def __init__(self, code: str, message: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message or code)
        self.code = code
        self.message = message or code
        self.details = details or {}

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.kind]

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFoundError(DomainError):
    kind = ErrorKind.NOT_FOUND


class ForbiddenError(DomainError):
    kind = ErrorKind.FORBIDDEN

    def __init__(self, code: str = "FORBIDDEN", message: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(code, message, details)


class StateConflictError(DomainError):
    kind = ErrorKind.CONFLICT


class InvalidInputError(DomainError):
    kind = ErrorKind.VALIDATION


class VerificationError(DomainError):
    """On-chain payment proof rejected. The payment stays PENDING."""
    kind = ErrorKind.VALIDATION


class UpstreamError(DomainError):
    kind = ErrorKind.UPSTREAM
