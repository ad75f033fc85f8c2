"""
Error taxonomy and tagged results for the reply pipeline.

Services that talk to external systems never raise past their boundary.
They return a Result instead, so the pipeline can tell "no attempt was
possible" (configuration) apart from "the attempt failed" (service or
protocol) and keep going.
"""

from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar


T = TypeVar("T")


class ServiceError(Exception):
    """Base class for every error the service reports."""

    kind = "service_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class ConfigurationError(ServiceError):
    """A required secret or endpoint is missing. Raised before any I/O."""

    kind = "configuration_error"


class ExternalServiceError(ServiceError):
    """
    Non-success outcome from the language model or the messaging gateway.

    status_code is None when the request never got a response
    (connection refused, timeout, ...).
    """

    kind = "external_service_error"

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["status_code"] = self.status_code
        data["body"] = self.body
        return data


class ProtocolError(ServiceError):
    """The remote side answered with a malformed or unexpected payload."""

    kind = "protocol_error"


class NotFoundError(ServiceError):
    """No stored entity has the given id."""

    kind = "not_found"


class ValidationError(ServiceError):
    """Malformed input or a forbidden state change."""

    kind = "validation_error"


@dataclass
class Result(Generic[T]):
    """
    Tagged outcome of a sub-step: either a value or an error, never both.

    Use Result.success(value) / Result.failure(error) to build one.
    """

    ok: bool
    value: Optional[T] = None
    error: Optional[ServiceError] = None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: ServiceError) -> "Result[T]":
        return cls(ok=False, error=error)

    def to_dict(self) -> dict:
        """Serialize for the response envelope."""
        if self.ok:
            value: Any = self.value
            if hasattr(value, "to_dict"):
                value = value.to_dict()
            return {"success": True, "data": value}
        return {
            "success": False,
            "error": self.error.message,
            "detail": self.error.to_dict(),
        }
