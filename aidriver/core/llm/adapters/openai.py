"""OpenAI chat completions adapter (also the base for OpenAI-compatible backends)."""

from __future__ import annotations

import base64
import json
from collections.abc import AsyncIterator, Mapping
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import httpx
from openai import AsyncOpenAI

from aidriver.core.errors import ErrorKind, ProviderError
from aidriver.core.llm.adapters.base import (
    AdapterBase,
    AdapterCapabilities,
    ChatRequest,
    ModelInfo,
)
from aidriver.core.llm.adapters.openai_responses import (
    REASONING_MODEL_PREFIXES,
    RESPONSES_MODEL_PREFIXES,
    ResponsesStreamDecoder,
    parse_responses_reply,
    responses_tool_choice,
    to_responses_input,
)
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

FINISH_REASONS: dict[str, FinishReason] = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "content_filter": FinishReason.CONTENT_FILTER,
    "function_call": FinishReason.FUNCTION_CALL,
    "tool_calls": FinishReason.TOOL_CALLS,
}

# (model prefix, context window, vision), matched longest prefix first
_MODEL_FAMILIES: tuple[tuple[str, int, bool], ...] = (
    ("gpt-5", 400_000, True),
    ("gpt-4.1", 1_047_576, True),
    ("gpt-4o", 128_000, True),
    ("gpt-4-turbo", 128_000, True),
    ("gpt-4-32k", 32_768, False),
    ("gpt-4", 8_192, False),
    ("gpt-3.5-turbo", 16_385, False),
    ("o1-mini", 128_000, False),
    ("o1", 200_000, True),
    ("o3-mini", 200_000, False),
    ("o3", 200_000, True),
    ("o4-mini", 200_000, True),
)

_FAMILIES_BY_LENGTH = sorted(_MODEL_FAMILIES, key=lambda family: len(family[0]), reverse=True)

_NON_CHAT_MARKERS = ("instruct", "audio", "realtime", "tts", "transcribe", "search", "embedding", "image")


def _attachment_part(attachment: Attachment) -> dict[str, Any]:
    if attachment.url is not None:
        url = attachment.url
    else:
        encoded = base64.b64encode(attachment.data or b"").decode("ascii")
        url = f"data:{attachment.mime_type};base64,{encoded}"
    return {"type": "image_url", "image_url": {"url": url}}


def _message_to_openai(message: Message) -> dict[str, Any]:
    match message.role:
        case Role.TOOL:
            return {"role": "tool", "tool_call_id": message.tool_call_id, "content": message.text}
        case Role.FUNCTION:
            return {"role": "function", "name": message.name, "content": message.text}
        case Role.ASSISTANT if message.function_calls:
            turn: dict[str, Any] = {"role": "assistant", "content": message.text or None}
            calls = message.function_calls
            if calls[0].is_tool_call:
                turn["tool_calls"] = [
                    {
                        "id": call.call_id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                    }
                    for call in calls
                ]
            else:
                turn["function_call"] = {
                    "name": calls[0].name,
                    "arguments": json.dumps(calls[0].arguments),
                }
            return turn

    converted: dict[str, Any] = {"role": message.role.value}
    if message.attachments:
        parts = message.content if isinstance(message.content, list) else (
            [{"type": "text", "text": message.content}] if message.content else []
        )
        converted["content"] = [*parts, *(_attachment_part(a) for a in message.attachments)]
    else:
        converted["content"] = message.content
    if message.name:
        converted["name"] = message.name
    return converted


def _usage(raw: Mapping[str, Any] | None) -> TokenUsage:
    raw = raw or {}
    return TokenUsage(
        input_tokens=int(raw.get("prompt_tokens") or 0),
        output_tokens=int(raw.get("completion_tokens") or 0),
    )


class OpenAIStreamDecoder(StreamDecoder):
    """Decodes ``chat.completion.chunk`` events.

    Tool-call fragments arrive keyed by ``index`` and are joined until the
    stream ends. With ``include_usage`` the last event has no choices and
    carries the usage; that event is terminal.
    """

    def __init__(self, provider: str, model: str) -> None:
        super().__init__(provider, model)
        self._tool_slots: dict[int, dict[str, Any]] = {}
        self._legacy: dict[str, str] | None = None

    def feed(self, event: Any) -> Response | None:
        if event.get("model"):
            self.model = event["model"]
        if event.get("usage"):
            self.usage = _usage(event["usage"])

        choices = event.get("choices") or []
        if not choices:
            if event.get("usage"):
                return self.terminal()
            return None

        choice = choices[0]
        delta = choice.get("delta") or {}
        for fragment in delta.get("tool_calls") or []:
            slot = self._tool_slots.setdefault(
                fragment.get("index", 0), {"id": None, "name": "", "arguments": ""}
            )
            if fragment.get("id"):
                slot["id"] = fragment["id"]
            function = fragment.get("function") or {}
            if function.get("name"):
                slot["name"] = function["name"]
            slot["arguments"] += function.get("arguments") or ""
        if delta.get("function_call"):
            legacy = self._legacy or {"name": "", "arguments": ""}
            legacy["name"] = delta["function_call"].get("name") or legacy["name"]
            legacy["arguments"] += delta["function_call"].get("arguments") or ""
            self._legacy = legacy

        reason = choice.get("finish_reason")
        if reason:
            self.finish_reason = FINISH_REASONS.get(reason, FinishReason.STOP)

        text = delta.get("content") or ""
        if self.finish_reason is not None and event.get("usage"):
            return self.terminal(self.finish_reason, text)
        return self.emit(text)

    def function_calls(self) -> list[FunctionCallRequest]:
        calls = [
            FunctionCallRequest(
                name=slot["name"],
                arguments=FunctionCallRequest.parse_arguments(slot["arguments"]),
                call_id=slot["id"],
            )
            for _, slot in sorted(self._tool_slots.items())
        ]
        if self._legacy is not None:
            calls.append(
                FunctionCallRequest(
                    name=self._legacy["name"],
                    arguments=FunctionCallRequest.parse_arguments(self._legacy["arguments"]),
                )
            )
        return calls


class OpenAIAdapter(AdapterBase):
    """Adapter for the OpenAI chat completions and Responses APIs.

    GPT-5 models, and requests made with ``use_responses_api``, go to the
    Responses API (see ``openai_responses``); everything else uses chat
    completions.

    Args:
        api_key: API key
        base_url: Endpoint override (None for api.openai.com)
        organization: Optional organization id
        project: Optional project id
        timeout: Read timeout in seconds
        connect_timeout: Connect timeout in seconds
        default_model: Model used when a request names none
        client: Preconfigured ``AsyncOpenAI`` (tests)
        http_client: httpx client handed to the SDK (tests, proxies)
        logger: Optional logger
    """

    name = "openai"
    _max_tokens_key = "max_completion_tokens"
    _stream_usage = True
    _responses_api = True

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str | None = None,
        organization: str | None = None,
        project: str | None = None,
        timeout: float = 30.0,
        connect_timeout: float = 10.0,
        default_model: str = "gpt-4o-mini",
        client: AsyncOpenAI | None = None,
        http_client: httpx.AsyncClient | None = None,
        logger: LoggerProtocol | None = None,
    ) -> None:
        super().__init__(default_model, logger)
        self._api_key = api_key
        self.base_url = base_url
        self._organization = organization
        self._project = project
        self._timeout = httpx.Timeout(timeout, connect=connect_timeout)
        self._http_client = http_client
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        # Lazy-init; retries are owned by the driver's RetryExecutor
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self._api_key,
                base_url=self.base_url,
                organization=self._organization,
                project=self._project,
                timeout=self._timeout,
                max_retries=0,
                http_client=self._http_client,
            )
        return self._client

    def capabilities(self, model: str | None = None) -> AdapterCapabilities:
        model = (model or self.default_model).lower()
        for prefix, context, vision in _FAMILIES_BY_LENGTH:
            if model.startswith(prefix):
                return AdapterCapabilities(
                    vision=vision, parallel_calls=True, max_context_length=context
                )
        return AdapterCapabilities(parallel_calls=True)

    def prepare(self, request: ChatRequest) -> ChatRequest:
        """Backend-specific adjustments applied before the payload is built."""
        return request

    def uses_responses_api(self, request: ChatRequest) -> bool:
        if not self._responses_api:
            return False
        return request.use_responses_api or request.model.lower().startswith(RESPONSES_MODEL_PREFIXES)

    def build_request(self, request: ChatRequest) -> dict[str, Any]:
        request = self.prepare(request)
        if self.uses_responses_api(request):
            return self._build_responses_request(request)
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": [_message_to_openai(message) for message in request.messages],
        }
        payload.update(
            self._sampling(
                request,
                {
                    "temperature": "temperature",
                    "max_tokens": self._max_tokens_key,
                    "top_p": "top_p",
                    "frequency_penalty": "frequency_penalty",
                    "presence_penalty": "presence_penalty",
                },
            )
        )

        if request.functions:
            definitions = [
                {
                    "name": spec.name,
                    "description": spec.description,
                    "parameters": spec.json_schema(),
                }
                for spec in request.functions
            ]
            if request.tool_style:
                payload["tools"] = [{"type": "function", "function": d} for d in definitions]
                if request.tool_choice is not None:
                    payload["tool_choice"] = self._tool_choice(request.tool_choice)
            else:
                payload["functions"] = definitions
                if request.tool_choice is not None:
                    payload["function_call"] = self._function_call_choice(request.tool_choice)

        if request.stream:
            payload["stream"] = True
            if self._stream_usage:
                payload["stream_options"] = {"include_usage": True}
        if request.timeout is not None:
            payload["timeout"] = request.timeout
        if request.extra:
            payload["extra_body"] = dict(request.extra)
        return payload

    def _build_responses_request(self, request: ChatRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model,
            "input": to_responses_input(request.messages, self.name),
        }
        names = {"max_tokens": "max_output_tokens"}
        if not request.model.lower().startswith(REASONING_MODEL_PREFIXES):
            names |= {"temperature": "temperature", "top_p": "top_p"}
        payload.update(self._sampling(request, names))

        if request.functions:
            payload["tools"] = [
                {
                    "type": "function",
                    "name": spec.name,
                    "description": spec.description,
                    "parameters": spec.json_schema(),
                    "strict": False,
                }
                for spec in request.functions
            ]
            if request.tool_choice is not None:
                payload["tool_choice"] = responses_tool_choice(request.tool_choice)

        if request.stream:
            payload["stream"] = True
        if request.timeout is not None:
            payload["timeout"] = request.timeout
        if request.extra:
            payload["extra_body"] = dict(request.extra)
        return payload

    @staticmethod
    def _tool_choice(choice: str | Mapping[str, Any]) -> str | dict[str, Any]:
        if isinstance(choice, Mapping):
            return dict(choice)
        if choice in ("auto", "none", "required"):
            return choice
        if choice == "any":
            return "required"
        return {"type": "function", "function": {"name": choice}}

    @staticmethod
    def _function_call_choice(choice: str | Mapping[str, Any]) -> str | dict[str, Any]:
        if isinstance(choice, Mapping):
            function = choice.get("function")
            return {"name": function["name"]} if isinstance(function, Mapping) else dict(choice)
        if choice in ("auto", "none"):
            return choice
        return {"name": choice}

    def _create(self, payload: Mapping[str, Any]):
        if "input" in payload:
            return self.client.responses.create
        return self.client.chat.completions.create

    async def execute(self, payload: dict[str, Any]) -> dict[str, Any]:
        completion = await self._create(payload)(**payload)
        return completion.model_dump()

    def parse_response(self, raw: Mapping[str, Any], request: ChatRequest) -> Response:
        if self.uses_responses_api(request):
            return parse_responses_reply(raw, self.name, request.model)
        choices = raw.get("choices") or []
        if not choices:
            raise ProviderError.create(
                ErrorKind.UNKNOWN_PROVIDER_ERROR,
                "Response contained no choices",
                provider=self.name,
                model=request.model,
            )

        choice = choices[0]
        message = choice.get("message") or {}
        calls = [
            FunctionCallRequest(
                name=(tool_call.get("function") or {}).get("name", ""),
                arguments=FunctionCallRequest.parse_arguments(
                    (tool_call.get("function") or {}).get("arguments")
                ),
                call_id=tool_call.get("id"),
            )
            for tool_call in message.get("tool_calls") or []
        ]
        legacy = message.get("function_call")
        if legacy:
            calls.append(
                FunctionCallRequest(
                    name=legacy.get("name", ""),
                    arguments=FunctionCallRequest.parse_arguments(legacy.get("arguments")),
                )
            )

        finish_reason = FINISH_REASONS.get(choice.get("finish_reason") or "stop", FinishReason.STOP)
        if calls and finish_reason is FinishReason.STOP:
            finish_reason = FinishReason.TOOL_CALLS if calls[0].is_tool_call else FinishReason.FUNCTION_CALL

        metadata = self._metadata(raw, ("choices", "usage", "model", "object"))
        if message.get("refusal"):
            metadata["refusal"] = message["refusal"]
        if len(choices) > 1:
            metadata["additional_choices"] = choices[1:]

        return Response(
            content=message.get("content") or "",
            model=raw.get("model") or request.model,
            provider=self.name,
            finish_reason=finish_reason,
            usage=_usage(raw.get("usage")),
            function_calls=tuple(calls),
            metadata=metadata,
        )

    async def open_stream(self, payload: dict[str, Any]) -> EventSource:
        stream = await self._create(payload)(**{**payload, "stream": True})

        async def events() -> AsyncIterator[dict[str, Any]]:
            async for chunk in stream:
                yield chunk.model_dump()

        return EventSource(events=events(), close=stream.close)

    def stream_decoder(self, request: ChatRequest) -> StreamDecoder:
        if self.uses_responses_api(request):
            return ResponsesStreamDecoder(self.name, request.model)
        return OpenAIStreamDecoder(self.name, request.model)

    def is_chat_model(self, model_id: str) -> bool:
        lowered = model_id.lower()
        if not lowered.startswith(("gpt", "o1", "o3", "o4", "chatgpt")):
            return False
        return not any(marker in lowered for marker in _NON_CHAT_MARKERS)

    async def list_models(self) -> list[ModelInfo]:
        models = []
        async for model in self.client.models.list():
            if not self.is_chat_model(model.id):
                continue
            created = getattr(model, "created", None)
            models.append(
                ModelInfo(
                    id=model.id,
                    provider=self.name,
                    context_length=self.capabilities(model.id).max_context_length,
                    created=datetime.fromtimestamp(created, tz=timezone.utc) if created else None,
                    owned_by=getattr(model, "owned_by", None),
                )
            )
        return models

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
