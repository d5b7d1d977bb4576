"""
Domain error type shared by the service layer.

Services raise ServiceError tagged with an ErrorKind. They never pick HTTP
status codes; the transport layer in main.py maps each kind to a status.
"""

import enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, enum.Enum):
    validation_error = "validation_error"
    not_found = "not_found"
    forbidden = "forbidden"
    conflict = "conflict"
    unauthenticated = "unauthenticated"
    delivery_failed = "delivery_failed"


class ServiceError(Exception):
    """
    A failed domain operation.

    Args:
        kind: Machine-readable error category
        message: Human-readable message safe to show to the caller
        fields: Optional per-field details for validation errors
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        fields: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.fields = fields or []

    def __repr__(self) -> str:
        return f"ServiceError(kind={self.kind.value!r}, message={self.message!r})"


def not_found(message: str) -> ServiceError:
    return ServiceError(ErrorKind.not_found, message)


def forbidden(message: str) -> ServiceError:
    return ServiceError(ErrorKind.forbidden, message)


def conflict(message: str) -> ServiceError:
    return ServiceError(ErrorKind.conflict, message)


def invalid(message: str, field: Optional[str] = None) -> ServiceError:
    fields = [{"field": field, "message": message}] if field else None
    return ServiceError(ErrorKind.validation_error, message, fields)


def unauthenticated(message: str) -> ServiceError:
    return ServiceError(ErrorKind.unauthenticated, message)
