"""Anthropic messages API adapter."""

from __future__ import annotations

import base64
from collections.abc import AsyncIterator, Mapping
from typing import TYPE_CHECKING, Any

import httpx
from anthropic import AsyncAnthropic

from aidriver.core.errors import ErrorKind, ProviderError
from aidriver.core.llm.adapters.base import (
    AdapterBase,
    AdapterCapabilities,
    ChatRequest,
    ModelInfo,
)
from aidriver.core.llm.classifier import ErrorClassifier
from aidriver.core.llm.models import (
    Attachment,
    FinishReason,
    FunctionCallRequest,
    Message,
    Response,
    Role,
    TokenUsage,
)
from aidriver.core.llm.streaming import EventSource, StreamDecoder

if TYPE_CHECKING:
    from aidriver.core.logging import LoggerProtocol

STOP_REASONS: dict[str, FinishReason] = {
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "pause_turn": FinishReason.STOP,
    "max_tokens": FinishReason.LENGTH,
    "model_context_window_exceeded": FinishReason.LENGTH,
    "tool_use": FinishReason.TOOL_CALLS,
    "refusal": FinishReason.CONTENT_FILTER,
}

# Every current Claude model has a 200k window and accepts images
_CONTEXT_LENGTH = 200_000


def _image_block(attachment: Attachment) -> dict[str, Any]:
    if attachment.url is not None:
        return {"type": "image", "source": {"type": "url", "url": attachment.url}}
    return {
        "type": "image",
        "source": {
            "type": "base64",
            "media_type": attachment.mime_type,
            "data": base64.b64encode(attachment.data or b"").decode("ascii"),
        },
    }


def _blocks(message: Message) -> list[dict[str, Any]]:
    """Content blocks for one non-system message."""
    match message.role:
        case Role.TOOL | Role.FUNCTION:
            if not message.tool_call_id:
                raise ProviderError.create(
                    ErrorKind.VALIDATION_ERROR,
                    f"Anthropic needs a tool_call_id on the result of '{message.name}'",
                    provider="anthropic",
                )
            block: dict[str, Any] = {
                "type": "tool_result",
                "tool_use_id": message.tool_call_id,
                "content": message.text,
            }
            if message.metadata.get("is_error"):
                block["is_error"] = True
            return [block]

    if isinstance(message.content, list):
        blocks = list(message.content)
    else:
        blocks = [{"type": "text", "text": message.content}] if message.content else []
    blocks.extend(_image_block(attachment) for attachment in message.attachments)
    blocks.extend(
        {"type": "tool_use", "id": call.call_id, "name": call.name, "input": call.arguments}
        for call in message.function_calls
    )
    return blocks


def to_anthropic_messages(messages: tuple[Message, ...]) -> tuple[str | None, list[dict[str, Any]]]:
    """Split off system text and merge consecutive turns of the same role.

    Tool results travel inside ``user`` turns, so a result followed by a user
    message becomes a single turn, as the API requires alternating roles.
    """
    system_parts: list[str] = []
    turns: list[dict[str, Any]] = []
    for message in messages:
        if message.role is Role.SYSTEM:
            system_parts.append(message.text)
            continue
        role = "assistant" if message.role is Role.ASSISTANT else "user"
        blocks = _blocks(message)
        if turns and turns[-1]["role"] == role:
            turns[-1]["content"].extend(blocks)
        else:
            turns.append({"role": role, "content": blocks})
    system = "\n\n".join(part for part in system_parts if part) or None
    return system, turns


def _usage(raw: Mapping[str, Any] | None) -> TokenUsage:
    raw = raw or {}
    return TokenUsage(
        input_tokens=int(raw.get("input_tokens") or 0),
        output_tokens=int(raw.get("output_tokens") or 0),
    )


class AnthropicStreamDecoder(StreamDecoder):
    """Decodes the ``message_start`` ... ``message_stop`` event sequence."""

    def __init__(self, provider: str, model: str) -> None:
        super().__init__(provider, model)
        self._tool_blocks: dict[int, dict[str, Any]] = {}
        self._input_tokens = 0
        self._output_tokens = 0

    def feed(self, event: Any) -> Response | None:
        match event.get("type"):
            case "message_start":
                message = event.get("message") or {}
                self.model = message.get("model") or self.model
                if message.get("id"):
                    self.metadata["id"] = message["id"]
                usage = message.get("usage") or {}
                self._input_tokens = int(usage.get("input_tokens") or 0)
                self._output_tokens = int(usage.get("output_tokens") or 0)
                self._refresh_usage()
            case "content_block_start":
                block = event.get("content_block") or {}
                if block.get("type") == "tool_use":
                    self._tool_blocks[event.get("index", 0)] = {
                        "id": block.get("id"),
                        "name": block.get("name", ""),
                        "json": "",
                    }
                elif block.get("type") == "text":
                    return self.emit(block.get("text") or "")
            case "content_block_delta":
                delta = event.get("delta") or {}
                if delta.get("type") == "text_delta":
                    return self.emit(delta.get("text") or "")
                if delta.get("type") == "input_json_delta":
                    slot = self._tool_blocks.get(event.get("index", 0))
                    if slot is not None:
                        slot["json"] += delta.get("partial_json") or ""
            case "message_delta":
                delta = event.get("delta") or {}
                if delta.get("stop_reason"):
                    self.finish_reason = STOP_REASONS.get(delta["stop_reason"], FinishReason.STOP)
                    self.metadata["stop_reason"] = delta["stop_reason"]
                usage = event.get("usage") or {}
                if usage.get("input_tokens"):
                    self._input_tokens = int(usage["input_tokens"])
                if usage.get("output_tokens") is not None:
                    self._output_tokens = int(usage["output_tokens"])
                self._refresh_usage()
            case "message_stop":
                return self.terminal()
            case "error":
                raise ErrorClassifier().classify_status(
                    0,
                    body=event,
                    provider=self.provider,
                    model=self.model,
                )
        return None

    def _refresh_usage(self) -> None:
        self.usage = TokenUsage(input_tokens=self._input_tokens, output_tokens=self._output_tokens)

    def function_calls(self) -> list[FunctionCallRequest]:
        return [
            FunctionCallRequest(
                name=slot["name"],
                arguments=FunctionCallRequest.parse_arguments(slot["json"]),
                call_id=slot["id"],
            )
            for _, slot in sorted(self._tool_blocks.items())
        ]


class AnthropicAdapter(AdapterBase):
    """Adapter for the Anthropic messages API.

    ``max_tokens`` is mandatory for this API, so requests without one use
    ``default_max_tokens``.
    """

    name = "anthropic"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str | None = None,
        timeout: float = 30.0,
        connect_timeout: float = 10.0,
        default_model: str = "claude-sonnet-4-20250514",
        default_max_tokens: int = 1000,
        client: AsyncAnthropic | None = None,
        http_client: httpx.AsyncClient | None = None,
        logger: LoggerProtocol | None = None,
    ) -> None:
        super().__init__(default_model, logger)
        self._api_key = api_key
        self.base_url = base_url
        self._timeout = httpx.Timeout(timeout, connect=connect_timeout)
        self.default_max_tokens = default_max_tokens
        self._http_client = http_client
        self._client = client

    @property
    def client(self) -> AsyncAnthropic:
        if self._client is None:
            self._client = AsyncAnthropic(
                api_key=self._api_key,
                base_url=self.base_url,
                timeout=self._timeout,
                max_retries=0,
                http_client=self._http_client,
            )
        return self._client

    def capabilities(self, model: str | None = None) -> AdapterCapabilities:
        return AdapterCapabilities(vision=True, parallel_calls=True, max_context_length=_CONTEXT_LENGTH)

    def build_request(self, request: ChatRequest) -> dict[str, Any]:
        system, turns = to_anthropic_messages(request.messages)
        payload: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens or self.default_max_tokens,
            "messages": turns,
        }
        if system:
            payload["system"] = system
        payload.update(
            self._sampling(
                request,
                {"temperature": "temperature", "max_tokens": "max_tokens", "top_p": "top_p"},
            )
        )
        if request.functions:
            payload["tools"] = [
                {
                    "name": spec.name,
                    "description": spec.description,
                    "input_schema": spec.json_schema(),
                }
                for spec in request.functions
            ]
            if request.tool_choice is not None:
                payload["tool_choice"] = self._tool_choice(request.tool_choice)
        if request.stream:
            payload["stream"] = True
        if request.timeout is not None:
            payload["timeout"] = request.timeout
        if request.extra:
            payload["extra_body"] = dict(request.extra)
        return payload

    @staticmethod
    def _tool_choice(choice: str | Mapping[str, Any]) -> dict[str, Any]:
        if isinstance(choice, Mapping):
            function = choice.get("function")
            if choice.get("type") == "function" and isinstance(function, Mapping):
                return {"type": "tool", "name": function["name"]}
            return dict(choice)
        match choice:
            case "auto":
                return {"type": "auto"}
            case "required" | "any":
                return {"type": "any"}
            case "none":
                return {"type": "none"}
            case _:
                return {"type": "tool", "name": choice}

    async def execute(self, payload: dict[str, Any]) -> dict[str, Any]:
        message = await self.client.messages.create(**payload)
        return message.model_dump()

    def parse_response(self, raw: Mapping[str, Any], request: ChatRequest) -> Response:
        text_parts: list[str] = []
        calls: list[FunctionCallRequest] = []
        other_blocks: list[Any] = []
        for block in raw.get("content") or []:
            match block.get("type"):
                case "text":
                    text_parts.append(block.get("text") or "")
                case "tool_use":
                    calls.append(
                        FunctionCallRequest(
                            name=block.get("name", ""),
                            arguments=FunctionCallRequest.parse_arguments(block.get("input")),
                            call_id=block.get("id"),
                        )
                    )
                case _:
                    other_blocks.append(block)

        stop_reason = raw.get("stop_reason")
        finish_reason = STOP_REASONS.get(stop_reason or "end_turn", FinishReason.STOP)
        if calls and finish_reason is FinishReason.STOP:
            finish_reason = FinishReason.TOOL_CALLS

        metadata = self._metadata(raw, ("content", "usage", "model", "type", "role"))
        if other_blocks:
            metadata["content_blocks"] = other_blocks
        usage = raw.get("usage") or {}
        for key in ("cache_creation_input_tokens", "cache_read_input_tokens"):
            if usage.get(key):
                metadata[key] = usage[key]

        return Response(
            content="".join(text_parts),
            model=raw.get("model") or request.model,
            provider=self.name,
            finish_reason=finish_reason,
            usage=_usage(usage),
            function_calls=tuple(calls),
            metadata=metadata,
        )

    async def open_stream(self, payload: dict[str, Any]) -> EventSource:
        stream = await self.client.messages.create(**{**payload, "stream": True})

        async def events() -> AsyncIterator[dict[str, Any]]:
            async for event in stream:
                yield event.model_dump()

        return EventSource(events=events(), close=stream.close)

    def stream_decoder(self, request: ChatRequest) -> StreamDecoder:
        return AnthropicStreamDecoder(self.name, request.model)

    async def list_models(self) -> list[ModelInfo]:
        models = []
        async for model in self.client.models.list():
            models.append(
                ModelInfo(
                    id=model.id,
                    provider=self.name,
                    display_name=getattr(model, "display_name", None),
                    context_length=_CONTEXT_LENGTH,
                    created=getattr(model, "created_at", None),
                    owned_by="anthropic",
                )
            )
        return models

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
