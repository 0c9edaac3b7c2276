"""Error taxonomy for the aidriver pipeline.

Every failure that leaves a driver is a single ``ProviderError`` tagged with an
``ErrorKind``. The structured detail lives in an immutable ``ErrorInfo`` so the
retry layer can annotate the exception (attempt count) without touching what
the upstream reported.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any


class DriverError(Exception):
    """Base exception for all aidriver errors."""

    pass


class ErrorKind(str, Enum):
    """Closed set of failure kinds a driver can surface."""

    INVALID_CREDENTIALS = "invalid_credentials"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    QUOTA_EXCEEDED = "quota_exceeded"
    VALIDATION_ERROR = "validation_error"
    SAFETY_VIOLATION = "safety_violation"
    SERVER_ERROR = "server_error"
    SERVICE_UNAVAILABLE = "service_unavailable"
    TIMEOUT = "timeout"
    FUNCTION_CALLING_LIMIT_EXCEEDED = "function_calling_limit_exceeded"
    UNKNOWN_PROVIDER_ERROR = "unknown_provider_error"

    @property
    def is_transient(self) -> bool:
        """Whether failures of this kind are retried by default."""
        return self in _TRANSIENT_KINDS

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").title()


_TRANSIENT_KINDS = frozenset({
    ErrorKind.RATE_LIMIT_EXCEEDED,
    ErrorKind.SERVER_ERROR,
    ErrorKind.SERVICE_UNAVAILABLE,
    ErrorKind.TIMEOUT,
})


@dataclass(frozen=True)
class ErrorInfo:
    """Structured description of one failed call.

    Attributes:
        kind: Taxonomy bucket for the failure
        message: Human-readable message
        code: Upstream status or error code (HTTP status, ``insufficient_quota``...)
        request_id: Upstream request id, when the backend returned one
        retryable: Whether the retry policy may re-attempt the call
        backoff_seconds: Suggested delay before retrying (from a retry hint
            header when present)
        details: Arbitrary read-only detail map
    """

    kind: ErrorKind
    message: str
    code: int | str | None = None
    request_id: str | None = None
    retryable: bool = False
    backoff_seconds: float | None = None
    details: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "details", MappingProxyType(dict(self.details)))


@dataclass(eq=False)
class ProviderError(DriverError):
    """The one exception type raised by drivers and adapters.

    ``attempts`` counts upstream calls made before the error surfaced. It is
    the only field the retry executor updates.
    """

    provider: str
    model: str
    info: ErrorInfo
    attempts: int = 1

    def __post_init__(self) -> None:
        super().__init__(self.info.message)

    @classmethod
    def create(
        cls,
        kind: ErrorKind,
        message: str,
        *,
        provider: str = "",
        model: str = "",
        code: int | str | None = None,
        request_id: str | None = None,
        retryable: bool | None = None,
        backoff_seconds: float | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> "ProviderError":
        """Build an error, defaulting ``retryable`` from the kind."""
        info = ErrorInfo(
            kind=kind,
            message=message,
            code=code,
            request_id=request_id,
            retryable=kind.is_transient if retryable is None else retryable,
            backoff_seconds=backoff_seconds,
            details=details or {},
        )
        return cls(provider=provider, model=model, info=info)

    @property
    def kind(self) -> ErrorKind:
        return self.info.kind

    @property
    def message(self) -> str:
        return self.info.message

    @property
    def retryable(self) -> bool:
        return self.info.retryable

    @property
    def request_id(self) -> str | None:
        return self.info.request_id

    @property
    def retry_count(self) -> int:
        return max(self.attempts - 1, 0)

    @property
    def retried(self) -> bool:
        return self.attempts > 1

    def __str__(self) -> str:
        base = f"{self.kind.label} [{self.provider}/{self.model}]: {self.message}"
        notes = []
        if self.info.code is not None:
            notes.append(f"code: {self.info.code}")
        if self.request_id:
            notes.append(f"request_id: {self.request_id}")
        if self.retried:
            notes.append(f"retried {self.retry_count} time(s)")
        if notes:
            base += f" ({', '.join(notes)})"
        return base
