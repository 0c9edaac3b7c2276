"""Pull-based streaming over one backend connection.

``ResponseStream`` is single-pass and forward-only. The connection is opened
on the first pull; every raw event is handed to the adapter's
``StreamDecoder``, which turns it into zero or one ``Response`` chunk.

The last chunk a consumer sees is always terminal:
    - a terminal event from the backend ends the stream
    - a connection that closes without one gets a synthesized terminal chunk
      (the recorded finish reason, else ``length`` if the transport dropped,
      else ``stop``)

Usage:
    async with driver.send_streaming_message([Message.user("Hi")]) as stream:
        async for chunk in stream:
            print(chunk.delta, end="")
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import anthropic
import httpx
import openai

from aidriver.core.errors import ProviderError
from aidriver.core.llm.models import FinishReason, FunctionCallRequest, Response, TokenUsage

if TYPE_CHECKING:
    from aidriver.core.logging import LoggerProtocol

# Failures that mean the connection went away rather than the backend refusing
_TRANSPORT_ERRORS = (httpx.TransportError, openai.APIConnectionError, anthropic.APIConnectionError)


@dataclass
class EventSource:
    """An open streaming connection.

    Attributes:
        events: Raw backend events, already decoded from the wire (dicts)
        close: Releases the connection; must be safe to call more than once
    """

    events: AsyncIterator[Any]
    close: Callable[[], Awaitable[None]]


class StreamDecoder:
    """Accumulates stream state and builds chunks for one request.

    Subclasses implement ``feed``. They report text with ``emit`` and end the
    stream with ``terminal``; ``finish`` is used by ``ResponseStream`` when the
    connection closes first.
    """

    def __init__(self, provider: str, model: str) -> None:
        self.provider = provider
        self.model = model
        self.content = ""
        self.usage = TokenUsage()
        self.finish_reason: FinishReason | None = None
        self.metadata: dict[str, Any] = {}
        self.terminal_seen = False

    def feed(self, event: Any) -> Response | None:
        raise NotImplementedError

    def function_calls(self) -> list[FunctionCallRequest]:
        """Calls assembled from the events seen so far."""
        return []

    def emit(self, delta: str) -> Response | None:
        if not delta:
            return None
        self.content += delta
        return self._chunk(delta, None, ())

    def terminal(self, reason: FinishReason | None = None, delta: str = "") -> Response:
        self.content += delta
        self.terminal_seen = True
        calls = self.function_calls()
        reason = reason or self.finish_reason or FinishReason.STOP
        if calls and reason is FinishReason.STOP:
            reason = FinishReason.TOOL_CALLS if calls[0].is_tool_call else FinishReason.FUNCTION_CALL
        return self._chunk(delta, reason, calls)

    def finish(self, truncated: bool = False) -> Response:
        """Terminal chunk for a connection that closed without one."""
        if truncated:
            self.metadata["truncated"] = True
        if self.finish_reason is not None:
            return self.terminal(self.finish_reason)
        return self.terminal(FinishReason.LENGTH if truncated else FinishReason.STOP)

    def _chunk(
        self, delta: str, reason: FinishReason | None, calls: Any
    ) -> Response:
        return Response(
            content=self.content,
            model=self.model,
            provider=self.provider,
            finish_reason=reason,
            usage=self.usage,
            function_calls=tuple(calls),
            metadata=dict(self.metadata),
            is_streaming=True,
            delta=delta,
        )


class ResponseStream:
    """Explicit async iterator of streamed ``Response`` chunks.

    The connection is released after the terminal chunk, on a backend error,
    or by ``aclose``. Iteration that stops early (``break``) does not close
    it: use ``async with`` or ``contextlib.aclosing``.

    Args:
        connect: Opens the connection; called once, on the first pull
        decoder: Decoder for this request's events
        classify: Maps transport/backend exceptions to ``ProviderError``
        on_terminal: Applied to the terminal chunk before it is returned
            (the driver uses it to attach latency and cost)
        logger: Optional logger for truncation notices
    """

    def __init__(
        self,
        connect: Callable[[], Awaitable[EventSource]],
        decoder: StreamDecoder,
        classify: Callable[[BaseException], ProviderError],
        on_terminal: Callable[[Response], Response] | None = None,
        logger: LoggerProtocol | None = None,
    ) -> None:
        self._connect = connect
        self._decoder = decoder
        self._classify = classify
        self._on_terminal = on_terminal
        self._logger = logger
        self._source: EventSource | None = None
        self._chunks = 0
        self._done = False

    @property
    def closed(self) -> bool:
        return self._done

    def __aiter__(self) -> ResponseStream:
        return self

    async def __anext__(self) -> Response:
        if self._done:
            raise StopAsyncIteration

        if self._source is None:
            try:
                self._source = await self._connect()
            except asyncio.CancelledError:
                self._done = True
                raise
            except ProviderError:
                self._done = True
                raise
            except Exception as exc:
                self._done = True
                raise self._classify(exc) from exc

        while True:
            try:
                event = await anext(self._source.events)
            except StopAsyncIteration:
                return await self._deliver(self._decoder.finish(truncated=False))
            except asyncio.CancelledError:
                await self.aclose()
                raise
            except _TRANSPORT_ERRORS as exc:
                if self._chunks == 0:
                    await self._fail()
                    raise self._classify(exc) from exc
                if self._logger:
                    self._logger.warning(
                        f"Stream from {self._decoder.provider} dropped after "
                        f"{self._chunks} chunk(s), closing as truncated",
                        model=self._decoder.model,
                        error=str(exc),
                    )
                return await self._deliver(self._decoder.finish(truncated=True))
            except ProviderError:
                await self._fail()
                raise
            except Exception as exc:
                await self._fail()
                raise self._classify(exc) from exc

            try:
                chunk = self._decoder.feed(event)
            except ProviderError:
                await self._fail()
                raise

            if chunk is None:
                continue
            if chunk.is_terminal:
                return await self._deliver(chunk)
            self._chunks += 1
            return chunk

    async def aclose(self) -> None:
        """Stop the stream and release the connection. Never raises."""
        self._done = True
        await self._release()

    async def __aenter__(self) -> ResponseStream:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.aclose()
        return False

    async def collect(self) -> Response:
        """Drain the stream and return its terminal chunk."""
        last: Response | None = None
        async for chunk in self:
            last = chunk
        if last is None:
            raise RuntimeError("Stream was already consumed")
        return last

    async def _deliver(self, chunk: Response) -> Response:
        self._done = True
        await self._release()
        if self._on_terminal is not None:
            chunk = self._on_terminal(chunk)
        return chunk

    async def _fail(self) -> None:
        self._done = True
        await self._release()

    async def _release(self) -> None:
        source, self._source = self._source, None
        if source is None:
            return
        try:
            await source.close()
        except Exception as exc:
            if self._logger:
                self._logger.warning(
                    f"Error while closing {self._decoder.provider} stream: {exc}",
                    model=self._decoder.model,
                )

