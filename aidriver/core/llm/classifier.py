"""Map transport and backend failures onto the ``ErrorKind`` taxonomy.

Classification order for an HTTP failure:
    1. backend error type/status string (``insufficient_quota``, ``RESOURCE_EXHAUSTED``...)
    2. HTTP status code
    3. keywords in the error message

Retry hints are read from ``Retry-After``/``retry-after-ms`` headers and from
Google-style ``RetryInfo`` details, and end up in ``ErrorInfo.backoff_seconds``.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Mapping
from typing import Any

import anthropic
import httpx
import openai
from google.genai import errors as genai_errors

from aidriver.core.errors import ErrorInfo, ErrorKind, ProviderError

# Backend error type/code/status strings, lowercased
ERROR_TYPE_KINDS: dict[str, ErrorKind] = {
    # OpenAI / xAI
    "invalid_api_key": ErrorKind.INVALID_CREDENTIALS,
    "invalid_organization": ErrorKind.INVALID_CREDENTIALS,
    "invalid_project": ErrorKind.INVALID_CREDENTIALS,
    "insufficient_quota": ErrorKind.QUOTA_EXCEEDED,
    "billing_not_active": ErrorKind.QUOTA_EXCEEDED,
    "quota_exceeded": ErrorKind.QUOTA_EXCEEDED,
    "rate_limit_exceeded": ErrorKind.RATE_LIMIT_EXCEEDED,
    "context_length_exceeded": ErrorKind.VALIDATION_ERROR,
    "invalid_request_error": ErrorKind.VALIDATION_ERROR,
    "content_filter": ErrorKind.SAFETY_VIOLATION,
    "content_policy_violation": ErrorKind.SAFETY_VIOLATION,
    "server_error": ErrorKind.SERVER_ERROR,
    # Anthropic
    "authentication_error": ErrorKind.INVALID_CREDENTIALS,
    "permission_error": ErrorKind.INVALID_CREDENTIALS,
    "rate_limit_error": ErrorKind.RATE_LIMIT_EXCEEDED,
    "overloaded_error": ErrorKind.SERVICE_UNAVAILABLE,
    "api_error": ErrorKind.SERVER_ERROR,
    # Gemini (google.rpc.Code names)
    "unauthenticated": ErrorKind.INVALID_CREDENTIALS,
    "permission_denied": ErrorKind.INVALID_CREDENTIALS,
    "resource_exhausted": ErrorKind.RATE_LIMIT_EXCEEDED,
    "invalid_argument": ErrorKind.VALIDATION_ERROR,
    "failed_precondition": ErrorKind.VALIDATION_ERROR,
    "not_found": ErrorKind.VALIDATION_ERROR,
    "internal": ErrorKind.SERVER_ERROR,
    "unavailable": ErrorKind.SERVICE_UNAVAILABLE,
    "deadline_exceeded": ErrorKind.TIMEOUT,
}

STATUS_KINDS: dict[int, ErrorKind] = {
    400: ErrorKind.VALIDATION_ERROR,
    401: ErrorKind.INVALID_CREDENTIALS,
    403: ErrorKind.INVALID_CREDENTIALS,
    404: ErrorKind.VALIDATION_ERROR,
    408: ErrorKind.TIMEOUT,
    413: ErrorKind.VALIDATION_ERROR,
    422: ErrorKind.VALIDATION_ERROR,
    429: ErrorKind.RATE_LIMIT_EXCEEDED,
    500: ErrorKind.SERVER_ERROR,
    502: ErrorKind.SERVER_ERROR,
    503: ErrorKind.SERVICE_UNAVAILABLE,
    504: ErrorKind.TIMEOUT,
    529: ErrorKind.SERVICE_UNAVAILABLE,
}

# Checked in order; first hit wins
MESSAGE_KEYWORDS: tuple[tuple[tuple[str, ...], ErrorKind], ...] = (
    (("api key", "api_key", "authentication", "unauthorized"), ErrorKind.INVALID_CREDENTIALS),
    (("quota", "billing"), ErrorKind.QUOTA_EXCEEDED),
    (("rate limit", "too many requests"), ErrorKind.RATE_LIMIT_EXCEEDED),
    (("safety", "blocked"), ErrorKind.SAFETY_VIOLATION),
    (("timeout", "timed out"), ErrorKind.TIMEOUT),
    (("service unavailable", "overloaded"), ErrorKind.SERVICE_UNAVAILABLE),
    (("server error",), ErrorKind.SERVER_ERROR),
)

_REQUEST_ID_HEADERS = ("x-request-id", "request-id", "x-goog-request-id")
_PROTO_DURATION = re.compile(r"^(\d+(?:\.\d+)?)s$")


def error_body(body: Any) -> dict[str, Any]:
    """The error object inside a backend error payload.

    Accepts ``{"error": {...}}`` (OpenAI, Gemini, Anthropic) or the inner
    object itself, as the OpenAI SDK exposes it on exceptions.
    """
    if not isinstance(body, Mapping):
        return {}
    inner = body.get("error")
    if isinstance(inner, Mapping):
        return dict(inner)
    return dict(body)


def _retry_info_seconds(error: Mapping[str, Any]) -> float | None:
    """Read a Google ``RetryInfo.retryDelay`` such as ``"8s"`` or ``"8.35s"``."""
    details = error.get("details")
    if not isinstance(details, list):
        return None
    for entry in details:
        if not isinstance(entry, Mapping) or "RetryInfo" not in str(entry.get("@type", "")):
            continue
        match = _PROTO_DURATION.match(str(entry.get("retryDelay", "")))
        if match:
            return float(match.group(1))
    return None


def retry_after_seconds(headers: Mapping[str, str] | None, error: Mapping[str, Any] | None = None) -> float | None:
    """Retry hint in seconds from response headers or error details."""
    headers = _lower_keys(headers)
    if headers:
        raw_ms = headers.get("retry-after-ms")
        if raw_ms:
            try:
                return max(float(raw_ms) / 1000.0, 0.0)
            except ValueError:
                pass
        raw = headers.get("retry-after")
        if raw:
            try:
                return max(float(raw), 0.0)
            except ValueError:
                pass
    if error:
        return _retry_info_seconds(error)
    return None


def _lower_keys(headers: Mapping[str, str] | None) -> dict[str, str]:
    return {key.lower(): value for key, value in (headers or {}).items()}


def _kind_from_message(message: str) -> ErrorKind | None:
    lowered = message.lower()
    for keywords, kind in MESSAGE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return kind
    return None


class ErrorClassifier:
    """Stateless mapper from exceptions and HTTP replies to ``ProviderError``."""

    def classify(self, exc: BaseException, *, provider: str, model: str) -> ProviderError:
        """Classify any exception raised while talking to a backend.

        Raises:
            asyncio.CancelledError: re-raised as-is, cancellation is never wrapped
        """
        if isinstance(exc, asyncio.CancelledError):
            raise exc
        if isinstance(exc, ProviderError):
            return exc

        if isinstance(exc, (openai.APITimeoutError, anthropic.APITimeoutError, httpx.TimeoutException)):
            return self._make(ErrorKind.TIMEOUT, f"Request timed out: {exc}", provider, model)

        if isinstance(exc, (openai.APIStatusError, anthropic.APIStatusError)):
            return self.classify_status(
                exc.status_code,
                body=exc.body,
                headers=exc.response.headers,
                message=getattr(exc, "message", str(exc)),
                provider=provider,
                model=model,
                request_id=getattr(exc, "request_id", None),
            )

        if isinstance(exc, genai_errors.APIError):
            response = getattr(exc, "response", None)
            return self.classify_status(
                exc.code or 0,
                body=exc.details,
                headers=getattr(response, "headers", None),
                message=exc.message or str(exc),
                provider=provider,
                model=model,
            )

        if isinstance(exc, httpx.HTTPStatusError):
            try:
                body: Any = exc.response.json()
            except ValueError:
                body = {"message": exc.response.text}
            return self.classify_status(
                exc.response.status_code,
                body=body,
                headers=exc.response.headers,
                message=str(exc),
                provider=provider,
                model=model,
            )

        if isinstance(exc, (openai.APIConnectionError, anthropic.APIConnectionError, httpx.TransportError)):
            return self._make(
                ErrorKind.SERVICE_UNAVAILABLE, f"Connection failed: {exc}", provider, model
            )

        kind = _kind_from_message(str(exc)) or ErrorKind.UNKNOWN_PROVIDER_ERROR
        return self._make(
            kind,
            f"Unexpected error: {exc}",
            provider,
            model,
            details={"exception": type(exc).__name__},
        )

    def classify_status(
        self,
        status_code: int,
        *,
        body: Any = None,
        headers: Mapping[str, str] | None = None,
        message: str = "",
        provider: str,
        model: str,
        request_id: str | None = None,
    ) -> ProviderError:
        """Classify an HTTP error reply from its status, body and headers."""
        error = error_body(body)
        upstream_message = str(error.get("message") or message or f"HTTP {status_code}")

        kind: ErrorKind | None = None
        code: int | str | None = status_code
        for field_name in ("code", "type", "status"):
            value = error.get(field_name)
            if isinstance(value, str) and value.lower() in ERROR_TYPE_KINDS:
                kind = ERROR_TYPE_KINDS[value.lower()]
                code = value
                break

        if kind is None:
            kind = STATUS_KINDS.get(status_code)
            if kind is None and 500 <= status_code < 600:
                kind = ErrorKind.SERVER_ERROR

        # A generic 400 body can still name a more specific cause
        sniffed = _kind_from_message(upstream_message)
        if kind is None:
            kind = sniffed or ErrorKind.UNKNOWN_PROVIDER_ERROR
        elif kind is ErrorKind.VALIDATION_ERROR and sniffed in (
            ErrorKind.INVALID_CREDENTIALS,
            ErrorKind.SAFETY_VIOLATION,
        ):
            kind = sniffed

        headers = _lower_keys(headers)
        if request_id is None:
            for header in _REQUEST_ID_HEADERS:
                if headers.get(header):
                    request_id = headers[header]
                    break

        details: dict[str, Any] = {"status_code": status_code}
        if error:
            details["error"] = error

        return self._make(
            kind,
            upstream_message,
            provider,
            model,
            code=code,
            request_id=request_id,
            backoff_seconds=retry_after_seconds(headers, error),
            details=details,
        )

    @staticmethod
    def _make(
        kind: ErrorKind,
        message: str,
        provider: str,
        model: str,
        *,
        code: int | str | None = None,
        request_id: str | None = None,
        backoff_seconds: float | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> ProviderError:
        info = ErrorInfo(
            kind=kind,
            message=message,
            code=code,
            request_id=request_id,
            retryable=kind.is_transient,
            backoff_seconds=backoff_seconds,
            details=details or {},
        )
        return ProviderError(provider=provider, model=model, info=info)
