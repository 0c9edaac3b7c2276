"""OpenAI Responses API translation (``client.responses.create``).

GPT-5 models, and any request made with ``use_responses_api``, are sent to the
Responses API instead of chat completions. What changes:

    - the conversation is an ``input`` list of typed items; calls and their
      results travel as ``function_call`` / ``function_call_output`` items
    - ``max_tokens`` is sent as ``max_output_tokens``
    - tools are flat: ``{"type": "function", "name", "description", "parameters"}``
    - reasoning models take no sampling options
    - reasoning summaries come back as ``reasoning`` items and are kept in
      ``Response.metadata["reasoning"]``
"""

from __future__ import annotations

import base64
import json
from collections.abc import Iterable, Mapping
from typing import Any

from aidriver.core.errors import ErrorKind, ProviderError
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
from aidriver.core.llm.streaming import StreamDecoder

# Models routed to the Responses API without being asked
RESPONSES_MODEL_PREFIXES = ("gpt-5",)

# Reasoning models reject temperature/top_p
REASONING_MODEL_PREFIXES = ("gpt-5", "o1", "o3", "o4")

INCOMPLETE_REASONS: dict[str, FinishReason] = {
    "max_output_tokens": FinishReason.LENGTH,
    "content_filter": FinishReason.CONTENT_FILTER,
}


def _attachment_item(attachment: Attachment) -> dict[str, Any]:
    if attachment.url is not None:
        url = attachment.url
    else:
        encoded = base64.b64encode(attachment.data or b"").decode("ascii")
        url = f"data:{attachment.mime_type};base64,{encoded}"
    return {"type": "input_image", "image_url": url}


def _content(message: Message) -> str | list[dict[str, Any]]:
    if isinstance(message.content, str) and not message.attachments:
        return message.content
    text_type = "output_text" if message.role is Role.ASSISTANT else "input_text"
    if isinstance(message.content, list):
        parts = list(message.content)
    else:
        parts = [{"type": text_type, "text": message.content}] if message.content else []
    parts.extend(_attachment_item(attachment) for attachment in message.attachments)
    return parts


def _missing_call_id(name: str | None, provider: str) -> ProviderError:
    return ProviderError.create(
        ErrorKind.VALIDATION_ERROR,
        f"The Responses API needs a call id for function '{name}'; offer functions as 'tools'",
        provider=provider,
    )


def to_responses_input(messages: Iterable[Message], provider: str = "openai") -> list[dict[str, Any]]:
    """Conversation as Responses API ``input`` items.

    Raises:
        ProviderError: ``VALIDATION_ERROR`` for legacy function turns, which
            carry no call id
    """
    items: list[dict[str, Any]] = []
    for message in messages:
        match message.role:
            case Role.TOOL:
                items.append(
                    {
                        "type": "function_call_output",
                        "call_id": message.tool_call_id,
                        "output": message.text,
                    }
                )
            case Role.FUNCTION:
                raise _missing_call_id(message.name, provider)
            case Role.ASSISTANT if message.function_calls:
                if message.text:
                    items.append({"type": "message", "role": "assistant", "content": message.text})
                for call in message.function_calls:
                    if call.call_id is None:
                        raise _missing_call_id(call.name, provider)
                    items.append(
                        {
                            "type": "function_call",
                            "call_id": call.call_id,
                            "name": call.name,
                            "arguments": json.dumps(call.arguments),
                        }
                    )
            case _:
                items.append({"type": "message", "role": message.role.value, "content": _content(message)})
    return items


def responses_tool_choice(choice: str | Mapping[str, Any]) -> str | dict[str, Any]:
    if isinstance(choice, Mapping):
        function = choice.get("function")
        if isinstance(function, Mapping):
            return {"type": "function", "name": function["name"]}
        return dict(choice)
    if choice in ("auto", "none", "required"):
        return choice
    if choice == "any":
        return "required"
    return {"type": "function", "name": choice}


def responses_usage(raw: Mapping[str, Any] | None) -> TokenUsage:
    # Reasoning tokens are already part of output_tokens
    raw = raw or {}
    return TokenUsage(
        input_tokens=int(raw.get("input_tokens") or 0),
        output_tokens=int(raw.get("output_tokens") or 0),
    )


def read_output(
    output: Iterable[Mapping[str, Any]] | None,
) -> tuple[str, list[FunctionCallRequest], list[str], list[str]]:
    """Text, function calls, reasoning texts and refusals from ``output`` items."""
    text: list[str] = []
    calls: list[FunctionCallRequest] = []
    reasoning: list[str] = []
    refusals: list[str] = []
    for item in output or []:
        match item.get("type"):
            case "message":
                for part in item.get("content") or []:
                    if part.get("type") == "output_text":
                        text.append(part.get("text") or "")
                    elif part.get("type") == "refusal":
                        refusals.append(part.get("refusal") or "")
            case "function_call":
                calls.append(
                    FunctionCallRequest(
                        name=item.get("name", ""),
                        arguments=FunctionCallRequest.parse_arguments(item.get("arguments")),
                        call_id=item.get("call_id"),
                    )
                )
            case "reasoning":
                for part in [*(item.get("summary") or []), *(item.get("content") or [])]:
                    if part.get("text"):
                        reasoning.append(part["text"])
    return "".join(text), calls, reasoning, refusals


def finish_reason_for(raw: Mapping[str, Any], calls: list[FunctionCallRequest]) -> FinishReason:
    status = raw.get("status")
    if status == "incomplete":
        reason = (raw.get("incomplete_details") or {}).get("reason")
        return INCOMPLETE_REASONS.get(reason, FinishReason.LENGTH)
    if status == "failed":
        return FinishReason.ERROR
    return FinishReason.TOOL_CALLS if calls else FinishReason.STOP


def reply_metadata(raw: Mapping[str, Any], reasoning: list[str], refusals: list[str]) -> dict[str, Any]:
    metadata: dict[str, Any] = {"api_type": "responses"}
    if raw.get("id"):
        metadata["response_id"] = raw["id"]
    if reasoning:
        metadata["reasoning"] = "\n\n".join(reasoning)
    reasoning_tokens = ((raw.get("usage") or {}).get("output_tokens_details") or {}).get("reasoning_tokens")
    if reasoning_tokens:
        metadata["reasoning_tokens"] = reasoning_tokens
    if refusals:
        metadata["refusal"] = "".join(refusals)
    if raw.get("error"):
        metadata["error"] = raw["error"]
    if raw.get("incomplete_details"):
        metadata["incomplete_details"] = raw["incomplete_details"]
    return metadata


def parse_responses_reply(raw: Mapping[str, Any], provider: str, model: str) -> Response:
    text, calls, reasoning, refusals = read_output(raw.get("output"))
    return Response(
        content=text,
        model=raw.get("model") or model,
        provider=provider,
        finish_reason=finish_reason_for(raw, calls),
        usage=responses_usage(raw.get("usage")),
        function_calls=tuple(calls),
        metadata=reply_metadata(raw, reasoning, refusals),
    )


class ResponsesStreamDecoder(StreamDecoder):
    """Decodes Responses API stream events.

    Text arrives as ``response.output_text.delta``; calls, usage and
    reasoning are read from the final ``response.completed`` (or
    ``incomplete``/``failed``) event, which carries the whole response.
    """

    def __init__(self, provider: str, model: str) -> None:
        super().__init__(provider, model)
        self._calls: list[FunctionCallRequest] = []

    def feed(self, event: Any) -> Response | None:
        match event.get("type"):
            case "response.created" | "response.in_progress":
                model = (event.get("response") or {}).get("model")
                if model:
                    self.model = model
            case "response.output_text.delta":
                return self.emit(event.get("delta") or "")
            case "response.completed" | "response.incomplete" | "response.failed":
                raw = event.get("response") or {}
                _, calls, reasoning, refusals = read_output(raw.get("output"))
                self._calls = calls
                self.usage = responses_usage(raw.get("usage"))
                if raw.get("model"):
                    self.model = raw["model"]
                self.metadata.update(reply_metadata(raw, reasoning, refusals))
                return self.terminal(finish_reason_for(raw, calls))
            case "error":
                raise ErrorClassifier().classify_status(
                    0,
                    body=event,
                    provider=self.provider,
                    model=self.model,
                )
        return None

    def function_calls(self) -> list[FunctionCallRequest]:
        return list(self._calls)
