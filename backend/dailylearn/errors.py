"""
Tagged service errors.

Every failure the services surface is a ServiceError carrying an ErrorKind.
Callers branch on ``error.kind`` instead of on exception subclasses; the
HTTP layer maps each kind to a status code through STATUS_BY_KIND.
"""

from enum import Enum
from typing import Dict, Optional


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    VALIDATION = "validation"
    TRANSIENT_EXTERNAL = "transient_external"
    PERMANENT_EXTERNAL = "permanent_external"
    INFRASTRUCTURE = "infrastructure"


# Must cover every ErrorKind
STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.VALIDATION: 422,
    ErrorKind.TRANSIENT_EXTERNAL: 503,
    ErrorKind.PERMANENT_EXTERNAL: 502,
    ErrorKind.INFRASTRUCTURE: 503,
}


class ServiceError(Exception):
    """A failure tagged with the kind of error it is."""

    def __init__(self, kind: ErrorKind, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.code = code

    def __repr__(self) -> str:
        return f"ServiceError(kind={self.kind.value!r}, message={self.message!r})"


def not_found(message: str) -> ServiceError:
    return ServiceError(ErrorKind.NOT_FOUND, message)


def validation_error(message: str) -> ServiceError:
    return ServiceError(ErrorKind.VALIDATION, message)


def http_status_for(error: ServiceError) -> int:
    return STATUS_BY_KIND[error.kind]
