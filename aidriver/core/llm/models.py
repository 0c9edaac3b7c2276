"""Provider-agnostic request and response types.

A conversation is an ordered sequence of immutable ``Message`` objects; every
adapter turns its backend reply into one ``Response`` (or one per chunk when
streaming).
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from aidriver.core.llm.costs import CostBreakdown


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    FUNCTION = "function"


class FinishReason(str, Enum):
    """Why generation stopped. Non-terminal chunks carry ``None`` instead."""

    STOP = "stop"
    LENGTH = "length"
    CONTENT_FILTER = "content_filter"
    FUNCTION_CALL = "function_call"
    TOOL_CALLS = "tool_calls"
    ERROR = "error"

    @property
    def requests_calls(self) -> bool:
        return self in (FinishReason.FUNCTION_CALL, FinishReason.TOOL_CALLS)


@dataclass(frozen=True)
class TokenUsage:
    """Input/output token counts; ``total_tokens`` is always their sum."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = field(init=False)

    def __post_init__(self) -> None:
        if self.input_tokens < 0 or self.output_tokens < 0:
            raise ValueError(
                f"Token counts must be non-negative (input={self.input_tokens}, "
                f"output={self.output_tokens})"
            )
        object.__setattr__(self, "total_tokens", self.input_tokens + self.output_tokens)

    def __add__(self, other: TokenUsage) -> TokenUsage:
        if not isinstance(other, TokenUsage):
            return NotImplemented
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


@dataclass(frozen=True)
class FunctionCallRequest:
    """A model's request for the caller to run a named function.

    Attributes:
        name: Function/tool name
        arguments: Parsed arguments
        call_id: Present for tool-style (parallel) calls, ``None`` for the
            legacy single-call style
    """

    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    call_id: str | None = None

    @property
    def is_tool_call(self) -> bool:
        return self.call_id is not None

    @staticmethod
    def parse_arguments(raw: str | Mapping[str, Any] | None) -> dict[str, Any]:
        """Decode arguments sent either as a JSON string or as an object.

        Malformed JSON decodes to an empty dict with the raw text under
        ``"_raw"`` so the executor can still report what it received.
        """
        if raw is None or raw == "":
            return {}
        if isinstance(raw, Mapping):
            return dict(raw)
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {"_raw": raw}
        return parsed if isinstance(parsed, dict) else {"value": parsed}


@dataclass(frozen=True)
class Attachment:
    """Image or file sent alongside message text, by URL or as inline bytes."""

    mime_type: str
    url: str | None = None
    data: bytes | None = None

    def __post_init__(self) -> None:
        if (self.url is None) == (self.data is None):
            raise ValueError("Attachment needs exactly one of url or data")

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


@dataclass(frozen=True)
class Message:
    """One conversation turn.

    ``content`` is plain text or a list of structured parts passed to the
    backend as-is. Assistant turns that requested calls keep them in
    ``function_calls`` so the follow-up request can reference them.
    """

    role: Role
    content: str | list[dict[str, Any]] = ""
    attachments: tuple[Attachment, ...] = ()
    name: str | None = None
    tool_call_id: str | None = None
    function_calls: tuple[FunctionCallRequest, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "role", Role(self.role))
        object.__setattr__(self, "attachments", tuple(self.attachments))
        object.__setattr__(self, "function_calls", tuple(self.function_calls))
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(Role.SYSTEM, content)

    @classmethod
    def user(cls, content: str | list[dict[str, Any]], *attachments: Attachment) -> Message:
        return cls(Role.USER, content, attachments=attachments)

    @classmethod
    def assistant(
        cls, content: str = "", function_calls: Sequence[FunctionCallRequest] = ()
    ) -> Message:
        return cls(Role.ASSISTANT, content, function_calls=tuple(function_calls))

    @classmethod
    def function_result(
        cls, call: FunctionCallRequest, result: Any = None, error: str | None = None
    ) -> Message:
        """Wrap an executor outcome as a ``tool`` (or legacy ``function``) turn."""
        if error is not None:
            payload = json.dumps({"error": error})
        elif isinstance(result, str):
            payload = result
        else:
            payload = json.dumps(result, default=str)
        return cls(
            Role.TOOL if call.is_tool_call else Role.FUNCTION,
            payload,
            name=call.name,
            tool_call_id=call.call_id,
            metadata={"is_error": error is not None},
        )

    @property
    def text(self) -> str:
        """Text content only, with structured text parts joined."""
        if isinstance(self.content, str):
            return self.content
        return "".join(
            part.get("text", "") for part in self.content if isinstance(part, dict)
        )

    @property
    def has_user_content(self) -> bool:
        return self.role is Role.USER and (bool(self.text.strip()) or bool(self.attachments) or (
            isinstance(self.content, list) and bool(self.content)
        ))


@dataclass(frozen=True)
class Response:
    """Normalized result of one request, or one chunk of a streamed request.

    When streaming, ``content`` is everything received so far and ``delta`` is
    what this chunk added; only the final chunk has a ``finish_reason``.
    """

    content: str
    model: str
    provider: str
    finish_reason: FinishReason | None = FinishReason.STOP
    usage: TokenUsage = field(default_factory=TokenUsage)
    function_calls: tuple[FunctionCallRequest, ...] = ()
    latency_ms: float | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    is_streaming: bool = False
    delta: str = ""
    cost: CostBreakdown | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "function_calls", tuple(self.function_calls))
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @property
    def is_terminal(self) -> bool:
        return self.finish_reason is not None

    @property
    def has_function_calls(self) -> bool:
        return bool(self.function_calls)

    def to_message(self) -> Message:
        """The assistant turn this response represents in a conversation."""
        return Message.assistant(self.content, self.function_calls)
