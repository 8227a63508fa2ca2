"""Error taxonomy and the tagged result returned by the message gateway.

Client errors (validation, ban, rate limit) are shown to the user with a
stable ``reason``. Infrastructure errors (``StoreUnavailable``) only ever
show a generic message; the detail goes to the log.
"""

from dataclasses import dataclass
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")

GENERIC_FAILURE = "Something went wrong, please try again later."


class ChatError(Exception):
    """Base class for every error the core reports."""

    default_reason = "error"

    def __init__(self, reason: Optional[str] = None, message: str = ""):
        self.reason = reason or self.default_reason
        self.message = message or self.reason
        super().__init__(self.message)

    @property
    def public_message(self) -> str:
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.reason, "message": self.public_message}


class ClientError(ChatError):
    """User-facing error: caused by the request, never retried as-is."""


class ValidationError(ClientError):
    default_reason = "validation_error"


class BannedError(ClientError):
    default_reason = "banned"


class RateLimitError(ClientError):
    """Transient: the caller should back off for ``retry_after`` seconds."""

    default_reason = "rate_limited"

    def __init__(self, reason: Optional[str] = None, message: str = "", retry_after: int = 0):
        super().__init__(reason, message)
        self.retry_after = retry_after

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["retry_after"] = self.retry_after
        return data


class StoreUnavailable(ChatError):
    """Cache or durable store unreachable; detail stays in the logs."""

    default_reason = "store_unavailable"

    @property
    def public_message(self) -> str:
        return GENERIC_FAILURE


@dataclass
class Result(Generic[T]):
    """Outcome of a gateway operation: either ``value`` or ``error``."""

    value: Optional[T] = None
    error: Optional[ChatError] = None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ChatError) -> "Result[T]":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def is_client_error(self) -> bool:
        return isinstance(self.error, ClientError)
