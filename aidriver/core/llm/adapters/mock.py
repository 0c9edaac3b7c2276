"""Mock adapter for tests and offline development.

Replies are scripted up front and consumed in order; when the script runs out
a ``responder`` callable (if any) is asked, else a fixed default reply is used.

Reply forms:
    - ``"text"``: a plain stop reply
    - a dict with any of ``content``, ``function_calls``, ``finish_reason``,
      ``usage``, ``model``, ``metadata`` and, for streams, ``stream_end``
    - a ``ProviderError`` (or any exception), raised instead of replying

``stream_end`` controls how a simulated stream finishes:
    - ``"finish"``: a terminal event (default)
    - ``"eof"``: the connection closes with no terminal event
    - ``"drop"``: the transport fails after the content was sent

Example:
    >>> adapter = MockAdapter([
    ...     {"function_calls": [{"name": "calc", "arguments": {"a": 2, "b": 2}, "call_id": "c1"}]},
    ...     "4",
    ... ])
"""

from __future__ import annotations

import re
from collections import deque
from collections.abc import AsyncIterator, Callable, Iterable, Mapping
from typing import TYPE_CHECKING, Any

import httpx

from aidriver.core.llm.adapters.base import (
    AdapterBase,
    AdapterCapabilities,
    ChatRequest,
    ModelInfo,
)
from aidriver.core.llm.costs import estimate_tokens
from aidriver.core.llm.models import FinishReason, FunctionCallRequest, Response, TokenUsage
from aidriver.core.llm.streaming import EventSource, StreamDecoder

if TYPE_CHECKING:
    from aidriver.core.logging import LoggerProtocol

DEFAULT_REPLY = "This is a mock response from the AI provider."

Reply = str | Mapping[str, Any] | BaseException

_WORD = re.compile(r"\S+\s*")


def _call_dicts(calls: Iterable[Any]) -> list[dict[str, Any]]:
    normalized = []
    for call in calls:
        if isinstance(call, FunctionCallRequest):
            normalized.append({"name": call.name, "arguments": call.arguments, "call_id": call.call_id})
        else:
            normalized.append(
                {
                    "name": call["name"],
                    "arguments": dict(call.get("arguments") or {}),
                    "call_id": call.get("call_id"),
                }
            )
    return normalized


def _calls(raw: Iterable[Mapping[str, Any]]) -> tuple[FunctionCallRequest, ...]:
    return tuple(
        FunctionCallRequest(name=call["name"], arguments=dict(call["arguments"]), call_id=call.get("call_id"))
        for call in raw
    )


class MockStreamDecoder(StreamDecoder):
    def __init__(self, provider: str, model: str) -> None:
        super().__init__(provider, model)
        self._calls: tuple[FunctionCallRequest, ...] = ()

    def feed(self, event: Any) -> Response | None:
        if event["type"] == "delta":
            return self.emit(event["text"])
        usage = event.get("usage") or {}
        self.usage = TokenUsage(usage.get("input_tokens", 0), usage.get("output_tokens", 0))
        self._calls = _calls(event.get("function_calls") or [])
        return self.terminal(FinishReason(event["finish_reason"]))

    def function_calls(self) -> list[FunctionCallRequest]:
        return list(self._calls)


class MockAdapter(AdapterBase):
    """Scripted adapter with no network access.

    Attributes:
        requests: Every payload passed to ``execute``/``open_stream``
        models: Model list returned by ``list_models``; tests may replace it
        models_error: Raised by ``list_models`` when set
        streams_closed: How many simulated connections were released
    """

    name = "mock"

    def __init__(
        self,
        replies: Iterable[Reply] = (),
        *,
        responder: Callable[[dict[str, Any]], Reply] | None = None,
        default_model: str = "mock-model",
        models: Iterable[ModelInfo] | None = None,
        logger: LoggerProtocol | None = None,
    ) -> None:
        super().__init__(default_model, logger)
        self._replies: deque[Reply] = deque(replies)
        self._responder = responder
        self.requests: list[dict[str, Any]] = []
        self.models: list[ModelInfo] = list(
            models if models is not None else [ModelInfo(id=default_model, provider=self.name)]
        )
        self.models_error: BaseException | None = None
        self.streams_closed = 0
        self.closed = False

    def queue(self, *replies: Reply) -> None:
        self._replies.extend(replies)

    def capabilities(self, model: str | None = None) -> AdapterCapabilities:
        return AdapterCapabilities(vision=True, parallel_calls=True, max_context_length=128_000)

    def build_request(self, request: ChatRequest) -> dict[str, Any]:
        return {
            "model": request.model,
            "messages": [
                {
                    "role": message.role.value,
                    "content": message.text,
                    "name": message.name,
                    "tool_call_id": message.tool_call_id,
                    "function_calls": _call_dicts(message.function_calls),
                }
                for message in request.messages
            ],
            "functions": [spec.name for spec in request.functions],
            "options": {
                "temperature": request.temperature,
                "max_tokens": request.max_tokens,
                "tool_choice": request.tool_choice,
                **request.extra,
            },
            "stream": request.stream,
        }

    def _next_reply(self, payload: dict[str, Any]) -> dict[str, Any]:
        if self._replies:
            reply = self._replies.popleft()
        elif self._responder is not None:
            reply = self._responder(payload)
        else:
            reply = DEFAULT_REPLY
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, str):
            reply = {"content": reply}

        content = reply.get("content") or ""
        calls = _call_dicts(reply.get("function_calls") or [])
        if "finish_reason" in reply:
            finish_reason = FinishReason(reply["finish_reason"]).value
        elif calls:
            finish_reason = (
                FinishReason.TOOL_CALLS if calls[0]["call_id"] else FinishReason.FUNCTION_CALL
            ).value
        else:
            finish_reason = FinishReason.STOP.value
        usage = reply.get("usage") or {
            "input_tokens": sum(estimate_tokens(message["content"]) for message in payload["messages"]),
            "output_tokens": estimate_tokens(content),
        }
        return {
            "model": reply.get("model") or payload["model"],
            "content": content,
            "function_calls": calls,
            "finish_reason": finish_reason,
            "usage": dict(usage),
            "metadata": dict(reply.get("metadata") or {}),
            "stream_end": reply.get("stream_end", "finish"),
        }

    async def execute(self, payload: dict[str, Any]) -> dict[str, Any]:
        self.requests.append(payload)
        return self._next_reply(payload)

    def parse_response(self, raw: Mapping[str, Any], request: ChatRequest) -> Response:
        usage = raw.get("usage") or {}
        return Response(
            content=raw.get("content") or "",
            model=raw.get("model") or request.model,
            provider=self.name,
            finish_reason=FinishReason(raw.get("finish_reason") or "stop"),
            usage=TokenUsage(usage.get("input_tokens", 0), usage.get("output_tokens", 0)),
            function_calls=_calls(raw.get("function_calls") or []),
            metadata=dict(raw.get("metadata") or {}),
        )

    async def open_stream(self, payload: dict[str, Any]) -> EventSource:
        self.requests.append(payload)
        reply = self._next_reply(payload)
        released = False

        async def events() -> AsyncIterator[dict[str, Any]]:
            for word in _WORD.findall(reply["content"]):
                yield {"type": "delta", "text": word}
            match reply["stream_end"]:
                case "eof":
                    return
                case "drop":
                    raise httpx.RemoteProtocolError("peer closed connection without sending complete message body")
                case _:
                    yield {
                        "type": "finish",
                        "finish_reason": reply["finish_reason"],
                        "usage": reply["usage"],
                        "function_calls": reply["function_calls"],
                    }

        async def close() -> None:
            nonlocal released
            if not released:
                released = True
                self.streams_closed += 1

        return EventSource(events=events(), close=close)

    def stream_decoder(self, request: ChatRequest) -> StreamDecoder:
        return MockStreamDecoder(self.name, request.model)

    async def list_models(self) -> list[ModelInfo]:
        if self.models_error is not None:
            raise self.models_error
        return list(self.models)

    async def close(self) -> None:
        self.closed = True
