"""Gemini adapter over the ``google-genai`` SDK (``client.aio.models``).

Payload handed to ``generate_content``::

    {
      "model": "gemini-2.5-flash",
      "contents": [{"role": "user" | "model", "parts": [...]}],
      "config": {
        "system_instruction": {"parts": [{"text": "..."}]},
        "temperature": 0.2, "max_output_tokens": 1000,
        "safety_settings": [{"category": "HARM_CATEGORY_...", "threshold": "BLOCK_..."}],
        "tools": [{"function_declarations": [...]}],
        "automatic_function_calling": {"disable": True}
      }
    }

Function calls come back per candidate as ``function_call`` parts; results are
sent back as ``function_response`` parts. SDK replies are dumped to plain
dicts (snake_case) before parsing.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Mapping
from typing import TYPE_CHECKING, Any

from google import genai
from google.genai import types

from aidriver.core.config import HARM_CATEGORIES, SAFETY_THRESHOLDS
from aidriver.core.errors import ErrorKind, ProviderError
from aidriver.core.llm.adapters.base import (
    AdapterBase,
    AdapterCapabilities,
    ChatRequest,
    ModelInfo,
)
from aidriver.core.llm.models import (
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
    "STOP": FinishReason.STOP,
    "MAX_TOKENS": FinishReason.LENGTH,
    "SAFETY": FinishReason.CONTENT_FILTER,
    "RECITATION": FinishReason.CONTENT_FILTER,
    "BLOCKLIST": FinishReason.CONTENT_FILTER,
    "PROHIBITED_CONTENT": FinishReason.CONTENT_FILTER,
    "SPII": FinishReason.CONTENT_FILTER,
    "IMAGE_SAFETY": FinishReason.CONTENT_FILTER,
    "MALFORMED_FUNCTION_CALL": FinishReason.ERROR,
    "UNEXPECTED_TOOL_CALL": FinishReason.ERROR,
    "OTHER": FinishReason.STOP,
    "FINISH_REASON_UNSPECIFIED": FinishReason.STOP,
}

_TOOL_CHOICE_MODES = {"auto": "AUTO", "none": "NONE", "required": "ANY", "any": "ANY"}

# (model prefix, context window), matched in order
_MODEL_FAMILIES: tuple[tuple[str, int], ...] = (
    ("gemini-2.5", 1_048_576),
    ("gemini-2.0", 1_048_576),
    ("gemini-1.5-pro", 2_097_152),
    ("gemini-1.5", 1_048_576),
    ("gemini-pro", 32_760),
)

# SDK reply fields that are not part of the API response
_SDK_FIELDS = {"sdk_http_response", "automatic_function_calling_history"}


def _dump(reply: types.GenerateContentResponse) -> dict[str, Any]:
    return reply.model_dump(mode="json", exclude_none=True, exclude=_SDK_FIELDS)


def _blocked(feedback: Mapping[str, Any], provider: str, model: str) -> ProviderError:
    reason = feedback.get("block_reason")
    return ProviderError.create(
        ErrorKind.SAFETY_VIOLATION,
        f"Prompt blocked by Gemini safety filters ({reason})",
        provider=provider,
        model=model,
        code=reason,
        details={"safety_ratings": feedback.get("safety_ratings") or []},
    )


def _function_response(message: Message) -> dict[str, Any]:
    try:
        result: Any = json.loads(message.text)
    except json.JSONDecodeError:
        result = message.text
    response = result if isinstance(result, dict) else {"result": result}
    part: dict[str, Any] = {"name": message.name, "response": response}
    if message.tool_call_id:
        part["id"] = message.tool_call_id
    return {"function_response": part}


def _parts(message: Message) -> list[dict[str, Any]]:
    if message.role in (Role.TOOL, Role.FUNCTION):
        return [_function_response(message)]

    parts: list[dict[str, Any]] = []
    if isinstance(message.content, list):
        parts.extend({"text": part["text"]} for part in message.content if part.get("text"))
    elif message.content:
        parts.append({"text": message.content})
    for attachment in message.attachments:
        if attachment.url is not None:
            parts.append({"file_data": {"mime_type": attachment.mime_type, "file_uri": attachment.url}})
        else:
            parts.append({"inline_data": {"mime_type": attachment.mime_type, "data": attachment.data or b""}})
    for call in message.function_calls:
        function_call: dict[str, Any] = {"name": call.name, "args": call.arguments}
        if call.call_id:
            function_call["id"] = call.call_id
        parts.append({"function_call": function_call})
    return parts


def to_gemini_contents(messages: tuple[Message, ...]) -> tuple[dict[str, Any] | None, list[dict[str, Any]]]:
    """System instruction plus ``contents``, merging consecutive same-role turns."""
    system_parts: list[dict[str, str]] = []
    contents: list[dict[str, Any]] = []
    for message in messages:
        if message.role is Role.SYSTEM:
            if message.text:
                system_parts.append({"text": message.text})
            continue
        role = "model" if message.role is Role.ASSISTANT else "user"
        parts = _parts(message)
        if contents and contents[-1]["role"] == role:
            contents[-1]["parts"].extend(parts)
        else:
            contents.append({"role": role, "parts": parts})
    system = {"parts": system_parts} if system_parts else None
    return system, contents


def _usage(raw: Mapping[str, Any] | None) -> TokenUsage:
    raw = raw or {}
    # Thinking tokens are billed as output
    output = int(raw.get("candidates_token_count") or 0) + int(raw.get("thoughts_token_count") or 0)
    return TokenUsage(input_tokens=int(raw.get("prompt_token_count") or 0), output_tokens=output)


def _read_parts(parts: list[Mapping[str, Any]]) -> tuple[str, list[FunctionCallRequest], list[str]]:
    """Text, function calls and thought summaries from one candidate's parts."""
    text: list[str] = []
    thoughts: list[str] = []
    calls: list[FunctionCallRequest] = []
    for part in parts:
        if "function_call" in part:
            function_call = part["function_call"]
            calls.append(
                FunctionCallRequest(
                    name=function_call.get("name", ""),
                    arguments=FunctionCallRequest.parse_arguments(function_call.get("args")),
                    call_id=function_call.get("id"),
                )
            )
        elif part.get("thought"):
            thoughts.append(part.get("text") or "")
        elif "text" in part:
            text.append(part["text"])
    return "".join(text), calls, thoughts


class GeminiStreamDecoder(StreamDecoder):
    """Decodes streamed chunks; each is a partial ``GenerateContentResponse``."""

    def __init__(self, provider: str, model: str) -> None:
        super().__init__(provider, model)
        self._calls: list[FunctionCallRequest] = []

    def feed(self, event: Any) -> Response | None:
        feedback = event.get("prompt_feedback") or {}
        if feedback.get("block_reason"):
            raise _blocked(feedback, self.provider, self.model)
        if event.get("usage_metadata"):
            self.usage = _usage(event["usage_metadata"])
        if event.get("model_version"):
            self.model = event["model_version"]

        candidates = event.get("candidates") or []
        if not candidates:
            return None
        candidate = candidates[0]
        text, calls, _ = _read_parts((candidate.get("content") or {}).get("parts") or [])
        self._calls.extend(calls)

        reason = candidate.get("finish_reason")
        if reason:
            self.finish_reason = FINISH_REASONS.get(reason, FinishReason.STOP)
            if candidate.get("safety_ratings"):
                self.metadata["safety_ratings"] = candidate["safety_ratings"]
            return self.terminal(self.finish_reason, text)
        return self.emit(text)

    def function_calls(self) -> list[FunctionCallRequest]:
        return list(self._calls)


class GeminiAdapter(AdapterBase):
    """Adapter for Gemini through the ``google-genai`` async client.

    Args:
        api_key: Gemini API key
        base_url: Endpoint override (None for the SDK default)
        timeout: Request timeout in seconds
        safety_settings: Default threshold per harm category
        client: Preconfigured ``genai.Client`` (tests); not closed by the adapter
    """

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str | None = None,
        timeout: float = 30.0,
        default_model: str = "gemini-2.5-flash",
        safety_settings: Mapping[str, str] | None = None,
        client: genai.Client | None = None,
        logger: LoggerProtocol | None = None,
    ) -> None:
        super().__init__(default_model, logger)
        self._api_key = api_key
        self.base_url = base_url
        self._timeout = timeout
        self.safety_settings = dict(
            safety_settings
            if safety_settings is not None
            else {category: "BLOCK_MEDIUM_AND_ABOVE" for category in HARM_CATEGORIES}
        )
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> genai.Client:
        # Lazy-init; retries are owned by the driver's RetryExecutor
        if self._client is None:
            self._client = genai.Client(
                api_key=self._api_key,
                http_options=types.HttpOptions(
                    base_url=self.base_url,
                    timeout=int(self._timeout * 1000),
                ),
            )
        return self._client

    def capabilities(self, model: str | None = None) -> AdapterCapabilities:
        model = (model or self.default_model).lower().removeprefix("models/")
        for prefix, context in _MODEL_FAMILIES:
            if model.startswith(prefix):
                return AdapterCapabilities(
                    vision=prefix != "gemini-pro", parallel_calls=True, max_context_length=context
                )
        return AdapterCapabilities(vision=True, parallel_calls=True)

    def _safety(self, overrides: Mapping[str, str] | None) -> list[dict[str, str]]:
        merged = {**self.safety_settings, **(overrides or {})}
        settings = []
        for category, threshold in merged.items():
            if category not in HARM_CATEGORIES:
                raise ProviderError.create(
                    ErrorKind.VALIDATION_ERROR,
                    f"Unknown harm category '{category}'",
                    provider=self.name,
                )
            if threshold not in SAFETY_THRESHOLDS:
                raise ProviderError.create(
                    ErrorKind.VALIDATION_ERROR,
                    f"Invalid safety threshold '{threshold}' for {category}",
                    provider=self.name,
                )
            settings.append({"category": category, "threshold": threshold})
        return settings

    def build_request(self, request: ChatRequest) -> dict[str, Any]:
        system, contents = to_gemini_contents(request.messages)
        config: dict[str, Any] = self._sampling(
            request,
            {
                "temperature": "temperature",
                "max_tokens": "max_output_tokens",
                "top_p": "top_p",
                "frequency_penalty": "frequency_penalty",
                "presence_penalty": "presence_penalty",
            },
        )
        if system:
            config["system_instruction"] = system
        config["safety_settings"] = self._safety(request.safety_settings)
        # Calls are executed by the orchestrator, never by the SDK
        config["automatic_function_calling"] = {"disable": True}

        if request.functions:
            declarations = []
            for spec in request.functions:
                declaration: dict[str, Any] = {"name": spec.name, "description": spec.description}
                if spec.parameters:
                    declaration["parameters_json_schema"] = spec.json_schema()
                declarations.append(declaration)
            config["tools"] = [{"function_declarations": declarations}]
            if request.tool_choice is not None:
                config["tool_config"] = self._tool_config(request.tool_choice)

        if request.extra and self._logger:
            self._logger.warning(
                f"Gemini does not accept extra request fields, ignoring {sorted(request.extra)}",
                ignored=sorted(request.extra),
            )
        if request.timeout is not None:
            config["http_options"] = {"timeout": int(request.timeout * 1000)}
        return {"model": request.model, "contents": contents, "config": config}

    @staticmethod
    def _tool_config(choice: str | Mapping[str, Any]) -> dict[str, Any]:
        if isinstance(choice, Mapping):
            function = choice.get("function")
            if isinstance(function, Mapping):
                choice = function["name"]
            else:
                return dict(choice)
        mode = _TOOL_CHOICE_MODES.get(choice)
        if mode is not None:
            return {"function_calling_config": {"mode": mode}}
        return {"function_calling_config": {"mode": "ANY", "allowed_function_names": [choice]}}

    async def execute(self, payload: dict[str, Any]) -> dict[str, Any]:
        reply = await self.client.aio.models.generate_content(**payload)
        return _dump(reply)

    def parse_response(self, raw: Mapping[str, Any], request: ChatRequest) -> Response:
        feedback = raw.get("prompt_feedback") or {}
        if feedback.get("block_reason"):
            raise _blocked(feedback, self.name, request.model)

        candidates = raw.get("candidates") or []
        if not candidates:
            raise ProviderError.create(
                ErrorKind.UNKNOWN_PROVIDER_ERROR,
                "Gemini returned no candidates",
                provider=self.name,
                model=request.model,
            )
        candidate = candidates[0]
        text, calls, thoughts = _read_parts((candidate.get("content") or {}).get("parts") or [])

        finish_reason = FINISH_REASONS.get(candidate.get("finish_reason") or "STOP", FinishReason.STOP)
        if calls and finish_reason is FinishReason.STOP:
            finish_reason = FinishReason.TOOL_CALLS if calls[0].is_tool_call else FinishReason.FUNCTION_CALL

        metadata = self._metadata(raw, ("candidates", "usage_metadata", "model_version"))
        if candidate.get("safety_ratings"):
            metadata["safety_ratings"] = candidate["safety_ratings"]
        if thoughts:
            metadata["thoughts"] = thoughts
        if len(candidates) > 1:
            metadata["additional_candidates"] = candidates[1:]

        return Response(
            content=text,
            model=raw.get("model_version") or request.model,
            provider=self.name,
            finish_reason=finish_reason,
            usage=_usage(raw.get("usage_metadata")),
            function_calls=tuple(calls),
            metadata=metadata,
        )

    async def open_stream(self, payload: dict[str, Any]) -> EventSource:
        stream = await self.client.aio.models.generate_content_stream(**payload)
        # The SDK sends the request on the first pull; pulling here keeps
        # connection and status errors inside the driver's retry loop
        try:
            first: types.GenerateContentResponse | None = await anext(stream)
        except StopAsyncIteration:
            first = None

        async def events() -> AsyncIterator[dict[str, Any]]:
            if first is not None:
                yield _dump(first)
            async for chunk in stream:
                yield _dump(chunk)

        source = events()

        async def close() -> None:
            await source.aclose()
            await stream.aclose()

        return EventSource(events=source, close=close)

    def stream_decoder(self, request: ChatRequest) -> StreamDecoder:
        return GeminiStreamDecoder(self.name, request.model)

    async def list_models(self) -> list[ModelInfo]:
        models: list[ModelInfo] = []
        async for model in await self.client.aio.models.list(config={"page_size": 1000}):
            if "generateContent" not in (model.supported_actions or []):
                continue
            models.append(
                ModelInfo(
                    id=(model.name or "").removeprefix("models/"),
                    provider=self.name,
                    display_name=model.display_name,
                    context_length=model.input_token_limit,
                    owned_by="google",
                    metadata={
                        "version": model.version,
                        "output_token_limit": model.output_token_limit,
                    },
                )
            )
        return models

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aio.aclose()
            self._client = None
