"""Driver façade: one entry point over any backend adapter.

``send_message`` pipeline:
    validate -> build_request -> execute (under retry) -> parse_response
    -> function-calling loop (when calls are pending and an executor is given)
    -> attach cost

Example:
    >>> async with Driver.from_settings(settings, provider="openai") as driver:
    ...     response = await driver.send_message(
    ...         [Message.user("2+2?")],
    ...         {"tools": [calc_tool]},
    ...         executor=run_tool,
    ...     )
    ...     response.content, response.cost.total_cost
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from aidriver.core.config import Settings
from aidriver.core.errors import ErrorKind, ProviderError
from aidriver.core.llm.adapters import ChatRequest, ModelInfo, ProviderAdapter, create_adapter
from aidriver.core.llm.adapters.base import AdapterCapabilities
from aidriver.core.llm.costs import CostBreakdown, CostCalculator
from aidriver.core.llm.models import Message, Response, Role, TokenUsage
from aidriver.core.llm.orchestrator import FunctionCallingOrchestrator, FunctionExecutor
from aidriver.core.llm.pricing import PricingTable, load_pricing_table
from aidriver.core.llm.retry import RetryConfig, RetryExecutor
from aidriver.core.llm.streaming import ResponseStream
from aidriver.core.logging import get_logger

if TYPE_CHECKING:
    from aidriver.core.logging import LoggerProtocol


@dataclass(frozen=True)
class SyncResult:
    """Outcome of a model-list sync.

    ``refreshed`` is False when the cache was still fresh and no request was made.
    """

    added: int
    updated: int
    removed: int
    total: int
    refreshed: bool
    synced_at: datetime | None


@dataclass(frozen=True)
class CredentialCheck:
    provider: str
    valid: bool
    message: str


@dataclass(frozen=True)
class HealthStatus:
    provider: str
    healthy: bool
    latency_ms: float | None
    model_count: int | None
    checked_at: datetime
    error: str | None = None


class ModelCache:
    """Model list with a TTL. Concurrent refreshes are not serialized; the last one to finish wins."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._models: dict[str, ModelInfo] | None = None
        self._loaded_at: float | None = None
        self.synced_at: datetime | None = None

    @property
    def models(self) -> list[ModelInfo]:
        return list((self._models or {}).values())

    def is_fresh(self) -> bool:
        if self._models is None or self._loaded_at is None:
            return False
        return self._clock() - self._loaded_at < self.ttl

    def replace(self, models: Sequence[ModelInfo]) -> SyncResult:
        new = {model.id: model for model in models}
        old = self._models or {}
        updated = sum(1 for key in new.keys() & old.keys() if new[key] != old[key])
        self._models = new
        self._loaded_at = self._clock()
        self.synced_at = datetime.now(tz=timezone.utc)
        return SyncResult(
            added=len(new.keys() - old.keys()),
            updated=updated,
            removed=len(old.keys() - new.keys()),
            total=len(new),
            refreshed=True,
            synced_at=self.synced_at,
        )


class Driver:
    """Sends conversations through one adapter with retry, function calling and cost.

    Args:
        adapter: Backend adapter
        pricing: Pricing table used for cost (defaults to the bundled rates)
        settings: Settings (defaults to ``Settings()``)
        retry: Retry configuration (defaults to per-kind policies capped by
            ``settings.retry_attempts``)
        logger: Optional logger
        sleep: Sleep used between retries
        clock: Monotonic clock for the model-cache TTL
        timer: Clock used to measure latency
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        pricing: PricingTable | None = None,
        settings: Settings | None = None,
        retry: RetryConfig | None = None,
        logger: LoggerProtocol | None = None,
        *,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        timer: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.adapter = adapter
        self._timer = timer
        self.settings = settings or Settings()
        self.pricing = pricing if pricing is not None else PricingTable.default()
        self._logger = logger
        self._calculator = CostCalculator(
            self.pricing, self.settings.cost_precision, logger, currency=self.settings.cost_currency
        )
        self._retry = RetryExecutor(retry or RetryConfig.from_settings(self.settings), logger, sleep)
        self._models = ModelCache(self.settings.model_cache_ttl, clock)

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        provider: str | None = None,
        *,
        pricing: PricingTable | None = None,
        logger: LoggerProtocol | None = None,
        **adapter_kwargs: Any,
    ) -> Driver:
        """Build a driver and its adapter from settings.

        ``settings.pricing_file`` replaces the bundled rates when set.
        """
        settings = settings or Settings()
        provider = provider or settings.default_provider
        if logger is None:
            logger = get_logger(settings).bind(provider=provider)
        if pricing is None:
            pricing = (
                load_pricing_table(settings.pricing_file)
                if settings.pricing_file
                else PricingTable.default()
            )
        adapter = create_adapter(provider, settings, logger=logger, **adapter_kwargs)
        return cls(adapter, pricing, settings, logger=logger)

    @property
    def provider(self) -> str:
        return self.adapter.name

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def send_message(
        self,
        messages: Sequence[Message],
        options: Mapping[str, Any] | None = None,
        executor: FunctionExecutor | None = None,
        max_function_rounds: int | None = None,
    ) -> Response:
        """Send a conversation and return the model's response.

        When the response requests function calls and ``executor`` is given,
        the calls are run and the conversation resubmitted until the model
        answers without calls.

        Args:
            messages: Non-empty conversation with user-authored content
            options: Request options (``model``, ``temperature``, ``tools``...)
            executor: ``(name, arguments, call_id) -> result``, sync or async
            max_function_rounds: Round limit (defaults to ``settings.max_function_rounds``)

        Raises:
            ProviderError: ``VALIDATION_ERROR`` for invalid input, the
                classified upstream error after retries, or
                ``FUNCTION_CALLING_LIMIT_EXCEEDED``
        """
        options = {key: value for key, value in (options or {}).items() if key != "stream"}
        response = await self._send_once(messages, options)
        if executor is None or not response.has_function_calls:
            return response

        orchestrator = FunctionCallingOrchestrator(
            lambda conversation: self._send_once(conversation, options),
            executor,
            max_rounds=max_function_rounds or self.settings.max_function_rounds,
            logger=self._logger,
        )
        return await orchestrator.run(messages, response)

    async def _send_once(self, messages: Sequence[Message], options: Mapping[str, Any]) -> Response:
        request = self._prepare(messages, options)
        payload = self.adapter.build_request(request)

        if self._logger:
            self._logger.debug(
                f"Sending {len(request.messages)} message(s) to {request.model}",
                model=request.model,
                functions=len(request.functions),
            )
        started = self._timer()
        raw = await self._retry.run(
            lambda: self.adapter.execute(payload),
            lambda exc: self.adapter.classify_error(exc, request.model),
        )
        latency_ms = (self._timer() - started) * 1000
        response = self.adapter.parse_response(raw, request)
        return self._finalize(replace(response, latency_ms=latency_ms))

    def send_streaming_message(
        self, messages: Sequence[Message], options: Mapping[str, Any] | None = None
    ) -> ResponseStream:
        """Start a streamed request.

        Nothing is sent until the returned stream is first iterated. Input is
        validated immediately. Latency is measured from that first pull.

        A stream read to its terminal chunk releases its connection itself.
        To stop early, consume it inside ``async with stream:`` (or
        ``contextlib.aclosing(stream)``) so that leaving the loop with
        ``break`` or an exception closes the connection.

        Raises:
            ProviderError: ``VALIDATION_ERROR`` for invalid input
        """
        request = self._prepare(messages, {**(options or {}), "stream": True})
        payload = self.adapter.build_request(request)

        def classify(exc: BaseException) -> ProviderError:
            return self.adapter.classify_error(exc, request.model)

        started: float | None = None

        async def connect():
            nonlocal started
            started = self._timer()
            return await self._retry.run(lambda: self.adapter.open_stream(payload), classify)

        def on_terminal(chunk: Response) -> Response:
            latency_ms = (self._timer() - started) * 1000
            return self._finalize(replace(chunk, latency_ms=latency_ms))

        return ResponseStream(
            connect,
            self.adapter.stream_decoder(request),
            classify,
            on_terminal=on_terminal,
            logger=self._logger,
        )

    def _prepare(self, messages: Sequence[Message], options: Mapping[str, Any]) -> ChatRequest:
        self._validate(messages)
        try:
            return ChatRequest.build(messages, options, self.adapter.default_model)
        except ProviderError as exc:
            # Validation errors raised before an adapter is involved carry no provider
            if not exc.provider:
                exc.provider = self.provider
            raise

    def _validate(self, messages: Sequence[Message]) -> None:
        if not messages:
            raise self._invalid("At least one message is required")
        for index, message in enumerate(messages):
            if not isinstance(message, Message):
                raise self._invalid(
                    f"Message {index} is a {type(message).__name__}, expected Message"
                )
            if message.role is Role.TOOL and not message.tool_call_id:
                raise self._invalid(f"Message {index} is a tool result without a tool_call_id")
            if message.role is Role.FUNCTION and not message.name:
                raise self._invalid(f"Message {index} is a function result without a name")
        if not any(message.has_user_content for message in messages):
            raise self._invalid("The conversation has no user-authored content")

    def _invalid(self, message: str) -> ProviderError:
        return ProviderError.create(ErrorKind.VALIDATION_ERROR, message, provider=self.provider)

    def _finalize(self, response: Response) -> Response:
        """Attach cost when tracking is enabled and the model is priced."""
        if not self.settings.cost_tracking_enabled:
            return response
        try:
            cost = self._calculator.calculate(response)
        except ProviderError as exc:
            if exc.kind is not ErrorKind.VALIDATION_ERROR:
                raise
            if self._logger:
                self._logger.warning(
                    f"No cost for {response.model}: {exc.message}",
                    model=response.model,
                )
            return response
        return replace(response, cost=cost)

    # ------------------------------------------------------------------
    # Cost
    # ------------------------------------------------------------------

    def calculate_cost(
        self, usage: TokenUsage | Response, model_id: str | None = None
    ) -> CostBreakdown:
        """Cost from the pricing table. Never touches the network."""
        return self._calculator.calculate(usage, model_id, self.provider)

    def estimate_cost(
        self, messages: Sequence[Message], options: Mapping[str, Any] | None = None
    ) -> CostBreakdown:
        """Approximate cost before sending; not for billing reconciliation."""
        options = options or {}
        return self._calculator.estimate(
            messages,
            options.get("model") or self.adapter.default_model,
            self.provider,
            options.get("max_tokens"),
        )

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    async def sync_models(self, force_refresh: bool = False) -> SyncResult:
        """Refresh the cached model list when forced or when the TTL expired.

        Raises:
            ProviderError: On failure; the previous cache is left untouched
        """
        if not force_refresh and self._models.is_fresh():
            return SyncResult(
                added=0,
                updated=0,
                removed=0,
                total=len(self._models.models),
                refreshed=False,
                synced_at=self._models.synced_at,
            )

        models = await self._retry.run(
            self.adapter.list_models,
            lambda exc: self.adapter.classify_error(exc, ""),
        )
        result = self._models.replace(models)
        if self._logger:
            self._logger.info(
                f"Synced {result.total} model(s): +{result.added} ~{result.updated} -{result.removed}",
                added=result.added,
                updated=result.updated,
                removed=result.removed,
            )
        return result

    async def list_models(self, force_refresh: bool = False) -> list[ModelInfo]:
        await self.sync_models(force_refresh)
        return self._models.models

    def capabilities(self, model: str | None = None) -> AdapterCapabilities:
        return self.adapter.capabilities(model)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def validate_credentials(self) -> CredentialCheck:
        """Check the API key with a model-list request.

        Raises:
            ProviderError: For failures other than rejected credentials
        """
        try:
            await self.adapter.list_models()
        except Exception as exc:
            error = self.adapter.classify_error(exc, "")
            if error.kind is not ErrorKind.INVALID_CREDENTIALS:
                if error is exc:
                    raise
                raise error from exc
            return CredentialCheck(self.provider, False, error.message)
        return CredentialCheck(self.provider, True, "Credentials accepted")

    async def health_status(self) -> HealthStatus:
        """Probe the backend with one unretried model-list request.

        A successful probe also refreshes the model cache.
        """
        started = self._timer()
        try:
            models = await self.adapter.list_models()
        except Exception as exc:
            error = self.adapter.classify_error(exc, "")
            if self._logger:
                self._logger.warning(f"Health check failed: {error}", kind=error.kind.value)
            return HealthStatus(
                provider=self.provider,
                healthy=False,
                latency_ms=None,
                model_count=None,
                checked_at=datetime.now(tz=timezone.utc),
                error=str(error),
            )
        latency_ms = (self._timer() - started) * 1000
        result = self._models.replace(models)
        return HealthStatus(
            provider=self.provider,
            healthy=True,
            latency_ms=latency_ms,
            model_count=result.total,
            checked_at=datetime.now(tz=timezone.utc),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        await self.adapter.close()

    async def __aenter__(self) -> Driver:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.close()
        return False
