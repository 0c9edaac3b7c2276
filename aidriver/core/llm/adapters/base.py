"""Contract shared by every backend adapter.

An adapter owns translation for one backend and nothing else:

    ChatRequest --build_request--> payload --execute--> raw dict --parse_response--> Response
                                   payload --open_stream--> EventSource --StreamDecoder--> chunks

The driver composes an adapter; it never subclasses one. Raw replies are
always plain dicts so parsing can be tested without a network or an SDK.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from aidriver.core.errors import ErrorKind, ProviderError
from aidriver.core.llm.classifier import ErrorClassifier
from aidriver.core.llm.models import Message, Response

if TYPE_CHECKING:
    from aidriver.core.llm.streaming import EventSource, StreamDecoder
    from aidriver.core.logging import LoggerProtocol

# Option keys with a meaning across backends; anything else is passed through
RECOGNIZED_OPTIONS = frozenset({
    "model",
    "temperature",
    "max_tokens",
    "top_p",
    "frequency_penalty",
    "presence_penalty",
    "functions",
    "tools",
    "tool_choice",
    "safety_settings",
    "stream",
    "timeout",
    "use_responses_api",
})

# Inclusive bounds for sampling options
OPTION_RANGES: dict[str, tuple[float, float]] = {
    "temperature": (0.0, 2.0),
    "top_p": (0.0, 1.0),
    "frequency_penalty": (-2.0, 2.0),
    "presence_penalty": (-2.0, 2.0),
}

_FUNCTION_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]{0,63}$")


@dataclass(frozen=True)
class AdapterCapabilities:
    streaming: bool = True
    function_calling: bool = True
    vision: bool = False
    parallel_calls: bool = False
    max_context_length: int | None = None


@dataclass(frozen=True)
class ModelInfo:
    """One entry of a backend's model list."""

    id: str
    provider: str
    display_name: str | None = None
    context_length: int | None = None
    created: datetime | None = None
    owned_by: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class FunctionSpec:
    """A callable function/tool offered to the model.

    Attributes:
        name: Function name, validated against ``[A-Za-z_][A-Za-z0-9_.-]{0,63}``
        description: What the function does
        parameters: JSON schema of the arguments (an ``object`` schema)
    """

    name: str
    description: str = ""
    parameters: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_definition(cls, definition: Any) -> FunctionSpec:
        """Normalize any supported tool definition shape.

        Accepted shapes:
            - ``FunctionSpec``
            - OpenAI tool: ``{"type": "function", "function": {...}}``
            - OpenAI legacy function / Gemini declaration: ``{"name", "description", "parameters"}``
            - Anthropic tool: ``{"name", "description", "input_schema"}``

        Raises:
            ProviderError: ``VALIDATION_ERROR`` for a malformed definition
        """
        if isinstance(definition, FunctionSpec):
            spec = definition
        elif isinstance(definition, Mapping):
            body = definition.get("function") if definition.get("type") == "function" else definition
            if not isinstance(body, Mapping) or "name" not in body:
                raise _invalid(f"Function definition has no name: {definition!r}")
            parameters = body.get("parameters", body.get("input_schema")) or {}
            if not isinstance(parameters, Mapping):
                raise _invalid(f"Parameters of '{body['name']}' must be a JSON schema object")
            spec = cls(
                name=str(body["name"]),
                description=str(body.get("description") or ""),
                parameters=dict(parameters),
            )
        else:
            raise _invalid(f"Unsupported function definition type: {type(definition).__name__}")

        if not _FUNCTION_NAME.match(spec.name):
            raise _invalid(
                f"Invalid function name '{spec.name}': use letters, digits, '_', '.' or '-', "
                "start with a letter or '_', at most 64 characters"
            )
        schema_type = spec.parameters.get("type")
        if schema_type is not None and schema_type != "object":
            raise _invalid(f"Parameters of '{spec.name}' must have type 'object', got '{schema_type}'")
        return spec

    def json_schema(self) -> dict[str, Any]:
        """Parameters as a complete object schema."""
        schema = dict(self.parameters)
        schema.setdefault("type", "object")
        schema.setdefault("properties", {})
        return schema


def _invalid(message: str) -> ProviderError:
    return ProviderError.create(ErrorKind.VALIDATION_ERROR, message)


@dataclass(frozen=True)
class ChatRequest:
    """Validated, backend-neutral form of ``messages`` + ``options``.

    ``tool_style`` is True when functions were offered as ``tools`` (parallel
    calls with ids) and False for the legacy ``functions`` style.
    ``use_responses_api`` asks OpenAI for its Responses API; other backends
    ignore it.
    """

    messages: tuple[Message, ...]
    model: str
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    functions: tuple[FunctionSpec, ...] = ()
    tool_style: bool = True
    tool_choice: str | Mapping[str, Any] | None = None
    safety_settings: Mapping[str, str] | None = None
    stream: bool = False
    timeout: float | None = None
    use_responses_api: bool = False
    extra: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        messages: Sequence[Message],
        options: Mapping[str, Any] | None,
        default_model: str,
    ) -> ChatRequest:
        """Split ``options`` into recognized fields and pass-through extras.

        Raises:
            ProviderError: ``VALIDATION_ERROR`` for out-of-range sampling
                options, a non-positive ``max_tokens`` or a malformed tool
        """
        options = dict(options or {})

        for key, (low, high) in OPTION_RANGES.items():
            value = options.get(key)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise _invalid(f"'{key}' must be a number, got {type(value).__name__}")
            if not low <= value <= high:
                raise _invalid(f"'{key}' must be between {low} and {high}, got {value}")

        max_tokens = options.get("max_tokens")
        if max_tokens is not None and (
            isinstance(max_tokens, bool) or not isinstance(max_tokens, int) or max_tokens < 1
        ):
            raise _invalid(f"'max_tokens' must be a positive integer, got {max_tokens!r}")

        if options.get("tools") and options.get("functions"):
            raise _invalid("Pass either 'tools' or 'functions', not both")
        tool_style = not options.get("functions")
        definitions: Iterable[Any] = options.get("tools") or options.get("functions") or ()
        functions = tuple(FunctionSpec.from_definition(item) for item in definitions)
        names = [spec.name for spec in functions]
        if len(names) != len(set(names)):
            raise _invalid(f"Duplicate function names in {names}")

        return cls(
            messages=tuple(messages),
            model=options.get("model") or default_model,
            temperature=options.get("temperature"),
            max_tokens=max_tokens,
            top_p=options.get("top_p"),
            frequency_penalty=options.get("frequency_penalty"),
            presence_penalty=options.get("presence_penalty"),
            functions=functions,
            tool_style=tool_style,
            tool_choice=options.get("tool_choice"),
            safety_settings=options.get("safety_settings"),
            stream=bool(options.get("stream", False)),
            timeout=options.get("timeout"),
            use_responses_api=bool(options.get("use_responses_api", False)),
            extra={key: value for key, value in options.items() if key not in RECOGNIZED_OPTIONS},
        )


def limit_descriptions(
    request: ChatRequest,
    limit: int,
    *,
    provider: str,
    logger: LoggerProtocol | None = None,
) -> ChatRequest:
    """Cut function descriptions longer than ``limit`` characters.

    The cut keeps ``limit - 3`` characters plus ``"..."`` and is logged as a
    warning for each affected function.
    """
    functions = []
    for spec in request.functions:
        if len(spec.description) > limit:
            if logger:
                logger.warning(
                    f"Description of function '{spec.name}' is {len(spec.description)} "
                    f"characters; {provider} accepts {limit}, truncating",
                    function=spec.name,
                    length=len(spec.description),
                    limit=limit,
                )
            spec = replace(spec, description=spec.description[: limit - 3] + "...")
        functions.append(spec)
    return replace(request, functions=tuple(functions))


@runtime_checkable
class ProviderAdapter(Protocol):
    """What the driver needs from a backend."""

    name: str
    default_model: str

    def capabilities(self, model: str | None = None) -> AdapterCapabilities: ...

    def build_request(self, request: ChatRequest) -> dict[str, Any]: ...

    async def execute(self, payload: dict[str, Any]) -> dict[str, Any]: ...

    def parse_response(self, raw: Mapping[str, Any], request: ChatRequest) -> Response: ...

    async def open_stream(self, payload: dict[str, Any]) -> EventSource: ...

    def stream_decoder(self, request: ChatRequest) -> StreamDecoder: ...

    async def list_models(self) -> list[ModelInfo]: ...

    def classify_error(self, exc: BaseException, model: str) -> ProviderError: ...

    async def close(self) -> None: ...


class AdapterBase:
    """Helpers shared by the concrete adapters."""

    name = "base"
    _classifier = ErrorClassifier()

    def __init__(self, default_model: str, logger: LoggerProtocol | None = None) -> None:
        self.default_model = default_model
        self._logger = logger

    def classify_error(self, exc: BaseException, model: str) -> ProviderError:
        return self._classifier.classify(exc, provider=self.name, model=model)

    def _metadata(self, raw: Mapping[str, Any], consumed: Iterable[str]) -> dict[str, Any]:
        """Top-level reply fields the parser did not turn into Response fields."""
        skip = set(consumed)
        return {key: value for key, value in raw.items() if key not in skip and value is not None}

    def _sampling(self, request: ChatRequest, names: Mapping[str, str]) -> dict[str, Any]:
        """Set sampling options under backend-specific keys, skipping unset ones."""
        values = {
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "top_p": request.top_p,
            "frequency_penalty": request.frequency_penalty,
            "presence_penalty": request.presence_penalty,
        }
        out: dict[str, Any] = {}
        for option, value in values.items():
            if value is None:
                continue
            key = names.get(option)
            if key is None:
                if self._logger:
                    self._logger.warning(
                        f"{self.name} does not support '{option}', ignoring it",
                        option=option,
                    )
                continue
            out[key] = value
        return out
