"""Characterization tests for the OpenAI adapter.

Parsing and payload building use plain dicts shaped like the API's JSON; the
end-to-end tests route the real SDK through ``httpx.MockTransport``.
"""

from __future__ import annotations

import json

import httpx
import pytest

from aidriver.core.errors import ErrorKind, ProviderError
from aidriver.core.llm.adapters import ChatRequest, OpenAIAdapter
from aidriver.core.llm.adapters.openai import OpenAIStreamDecoder
from aidriver.core.llm.driver import Driver
from aidriver.core.llm.models import Attachment, FinishReason, FunctionCallRequest, Message
from aidriver.core.llm.retry import RetryConfig

pytestmark = pytest.mark.unit

BASE_URL = "https://openai.test/v1"

CALC_TOOL = {
    "type": "function",
    "function": {"name": "calc", "description": "Add", "parameters": {"type": "object", "properties": {}}},
}


def _request(messages=None, **options) -> ChatRequest:
    return ChatRequest.build(messages or [Message.user("hi")], options, "gpt-4o-mini")


def _completion(message: dict, finish_reason: str = "stop", **extra) -> dict:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 1,
        "model": "gpt-4o-mini-2024-07-18",
        "choices": [{"index": 0, "message": {"role": "assistant", **message}, "finish_reason": finish_reason}],
        "usage": {"prompt_tokens": 11, "completion_tokens": 7, "total_tokens": 18},
        **extra,
    }


@pytest.fixture
def adapter() -> OpenAIAdapter:
    return OpenAIAdapter("sk-test", base_url=BASE_URL)


# =============================================================================
# Payload building
# =============================================================================


def test_build_request_maps_options_and_tools(adapter):
    payload = adapter.build_request(
        _request(temperature=0.3, max_tokens=50, tools=[CALC_TOOL], tool_choice="calc", seed=1)
    )

    assert payload["model"] == "gpt-4o-mini"
    assert payload["temperature"] == 0.3
    assert payload["max_completion_tokens"] == 50
    assert payload["tools"][0]["function"]["name"] == "calc"
    assert payload["tool_choice"] == {"type": "function", "function": {"name": "calc"}}
    assert payload["extra_body"] == {"seed": 1}
    assert "stream" not in payload


def test_legacy_functions_style(adapter):
    legacy = {"name": "calc", "description": "Add", "parameters": {"type": "object"}}
    payload = adapter.build_request(_request(functions=[legacy], tool_choice="auto"))

    assert payload["functions"][0]["parameters"] == {"type": "object", "properties": {}}
    assert payload["function_call"] == "auto"
    assert "tools" not in payload


def test_stream_requests_usage(adapter):
    payload = adapter.build_request(_request(stream=True))
    assert payload["stream"] is True
    assert payload["stream_options"] == {"include_usage": True}


def test_conversation_translation(adapter):
    call = FunctionCallRequest("calc", {"a": 1}, call_id="c1")
    messages = [
        Message.system("be brief"),
        Message.user("look", Attachment("image/png", data=b"\x89PNG")),
        Message.assistant("", [call]),
        Message.function_result(call, 2),
    ]

    sent = adapter.build_request(_request(messages))["messages"]

    assert sent[0] == {"role": "system", "content": "be brief"}
    assert sent[1]["content"][0] == {"type": "text", "text": "look"}
    assert sent[1]["content"][1]["image_url"]["url"].startswith("data:image/png;base64,")
    assert sent[2]["tool_calls"][0]["id"] == "c1"
    assert json.loads(sent[2]["tool_calls"][0]["function"]["arguments"]) == {"a": 1}
    assert sent[3] == {"role": "tool", "tool_call_id": "c1", "content": "2"}


# =============================================================================
# Response parsing
# =============================================================================


def test_parse_text_response(adapter):
    response = adapter.parse_response(_completion({"content": "Hello"}, system_fingerprint="fp_1"), _request())

    assert response.content == "Hello"
    assert response.model == "gpt-4o-mini-2024-07-18"
    assert response.finish_reason is FinishReason.STOP
    assert (response.usage.input_tokens, response.usage.output_tokens) == (11, 7)
    assert response.metadata["system_fingerprint"] == "fp_1"
    assert response.metadata["id"] == "chatcmpl-1"


def test_parse_tool_calls(adapter):
    raw = _completion(
        {
            "content": None,
            "tool_calls": [
                {"id": "c1", "type": "function", "function": {"name": "calc", "arguments": '{"a": 2, "b": 2}'}},
                {"id": "c2", "type": "function", "function": {"name": "calc", "arguments": "{bad"}},
            ],
        },
        finish_reason="tool_calls",
    )

    response = adapter.parse_response(raw, _request())

    assert response.finish_reason is FinishReason.TOOL_CALLS
    assert response.function_calls[0] == FunctionCallRequest("calc", {"a": 2, "b": 2}, "c1")
    assert response.function_calls[1].arguments == {"_raw": "{bad"}


def test_parse_legacy_function_call(adapter):
    raw = _completion({"content": None, "function_call": {"name": "calc", "arguments": "{}"}}, finish_reason="function_call")
    response = adapter.parse_response(raw, _request())
    assert response.finish_reason is FinishReason.FUNCTION_CALL
    assert not response.function_calls[0].is_tool_call


def test_parse_without_choices_is_an_error(adapter):
    with pytest.raises(ProviderError) as exc_info:
        adapter.parse_response({"choices": []}, _request())
    assert exc_info.value.kind is ErrorKind.UNKNOWN_PROVIDER_ERROR


def test_content_filter_and_refusal(adapter):
    raw = _completion({"content": None, "refusal": "I can't help"}, finish_reason="content_filter")
    response = adapter.parse_response(raw, _request())
    assert response.finish_reason is FinishReason.CONTENT_FILTER
    assert response.metadata["refusal"] == "I can't help"


# =============================================================================
# Stream decoding
# =============================================================================


def _chunk(delta: dict | None = None, finish_reason: str | None = None, usage: dict | None = None) -> dict:
    choices = [] if delta is None else [{"index": 0, "delta": delta, "finish_reason": finish_reason}]
    return {
        "id": "c",
        "object": "chat.completion.chunk",
        "created": 1,
        "model": "gpt-4o-mini",
        "choices": choices,
        "usage": usage,
    }


def test_stream_decoder_joins_tool_call_fragments():
    decoder = OpenAIStreamDecoder("openai", "gpt-4o-mini")
    events = [
        _chunk({"role": "assistant", "content": ""}),
        _chunk({"tool_calls": [{"index": 0, "id": "c1", "function": {"name": "calc", "arguments": '{"a":'}}]}),
        _chunk({"tool_calls": [{"index": 0, "function": {"arguments": " 2}"}}]}),
        _chunk({}, finish_reason="tool_calls"),
        _chunk(usage={"prompt_tokens": 5, "completion_tokens": 3, "total_tokens": 8}),
    ]

    chunks = [chunk for chunk in (decoder.feed(event) for event in events) if chunk is not None]

    assert len(chunks) == 1
    terminal = chunks[0]
    assert terminal.finish_reason is FinishReason.TOOL_CALLS
    assert terminal.function_calls == (FunctionCallRequest("calc", {"a": 2}, "c1"),)
    assert terminal.usage.total_tokens == 8


def test_stream_decoder_emits_text_deltas():
    decoder = OpenAIStreamDecoder("openai", "gpt-4o-mini")
    first = decoder.feed(_chunk({"content": "Hel"}))
    second = decoder.feed(_chunk({"content": "lo"}))
    assert (first.delta, second.delta, second.content) == ("Hel", "lo", "Hello")
    assert not second.is_terminal


# =============================================================================
# Models and capabilities
# =============================================================================


@pytest.mark.parametrize(
    ("model", "expected"),
    [("gpt-4o", True), ("gpt-4o-realtime-preview", False), ("text-embedding-3-small", False), ("o3-mini", True), ("dall-e-3", False)],
)
def test_is_chat_model(adapter, model, expected):
    assert adapter.is_chat_model(model) is expected


def test_capabilities_match_longest_family(adapter):
    assert adapter.capabilities("gpt-4o-mini").max_context_length == 128_000
    assert adapter.capabilities("gpt-4-32k-0613").max_context_length == 32_768
    assert adapter.capabilities("gpt-4o").vision


# =============================================================================
# End to end over httpx.MockTransport
# =============================================================================


def _transport_adapter(handler) -> OpenAIAdapter:
    return OpenAIAdapter(
        "sk-test",
        base_url=BASE_URL,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


@pytest.mark.asyncio
async def test_send_message_over_http(fake_sleep):
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test"
        seen.append(json.loads(request.content))
        return httpx.Response(200, json=_completion({"content": "4"}))

    async with Driver(_transport_adapter(handler), sleep=fake_sleep) as driver:
        response = await driver.send_message([Message.user("2+2?")], {"model": "gpt-4o-mini", "temperature": 0})

    assert response.content == "4"
    assert response.provider == "openai"
    assert response.cost is not None
    assert seen[0]["temperature"] == 0


@pytest.mark.asyncio
async def test_rate_limit_over_http_is_retried_with_hint(fake_sleep):
    replies = [
        httpx.Response(
            429,
            headers={"retry-after": "2", "x-request-id": "req_1"},
            json={"error": {"message": "Rate limit reached", "type": "requests", "code": "rate_limit_exceeded"}},
        ),
        httpx.Response(200, json=_completion({"content": "ok"})),
    ]

    async with Driver(_transport_adapter(lambda request: replies.pop(0)), sleep=fake_sleep) as driver:
        response = await driver.send_message([Message.user("hi")])

    assert response.content == "ok"
    assert fake_sleep.delays == [2.0]


@pytest.mark.asyncio
async def test_invalid_key_over_http(fake_sleep):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            401, json={"error": {"message": "Incorrect API key provided", "type": "invalid_request_error", "code": "invalid_api_key"}}
        )

    driver = Driver(_transport_adapter(handler), retry=RetryConfig(), sleep=fake_sleep)
    with pytest.raises(ProviderError) as exc_info:
        await driver.send_message([Message.user("hi")])

    assert exc_info.value.kind is ErrorKind.INVALID_CREDENTIALS
    assert exc_info.value.attempts == 1
    await driver.close()


@pytest.mark.asyncio
async def test_streaming_over_http(fake_sleep):
    events = [
        _chunk({"role": "assistant", "content": "Hel"}),
        _chunk({"content": "lo"}),
        _chunk({}, finish_reason="stop"),
        _chunk(usage={"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}),
    ]
    body = "".join(f"data: {json.dumps(event)}\n\n" for event in events) + "data: [DONE]\n\n"

    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["stream"] is True
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body.encode())

    async with Driver(_transport_adapter(handler), sleep=fake_sleep) as driver:
        chunks = [chunk async for chunk in driver.send_streaming_message([Message.user("hi")])]

    assert [chunk.delta for chunk in chunks if not chunk.is_terminal] == ["Hel", "lo"]
    assert chunks[-1].content == "Hello"
    assert chunks[-1].finish_reason is FinishReason.STOP
    assert chunks[-1].usage.total_tokens == 5


@pytest.mark.asyncio
async def test_streamed_usage_matches_non_streamed_call_over_http(fake_sleep):
    usage = {"prompt_tokens": 11, "completion_tokens": 7, "total_tokens": 18}
    events = [
        _chunk({"role": "assistant", "content": "Hel"}),
        _chunk({"content": "lo"}),
        _chunk({}, finish_reason="stop"),
        _chunk(usage=usage),
    ]
    stream_body = "".join(f"data: {json.dumps(event)}\n\n" for event in events) + "data: [DONE]\n\n"

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if body.get("stream"):
            assert body["stream_options"] == {"include_usage": True}
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=stream_body.encode())
        return httpx.Response(200, json=_completion({"content": "Hello"}))

    messages = [Message.user("say hello")]
    async with Driver(_transport_adapter(handler), sleep=fake_sleep) as driver:
        whole = await driver.send_message(messages)
        streamed = await driver.send_streaming_message(messages).collect()

    assert streamed.content == whole.content == "Hello"
    assert streamed.usage == whole.usage
    assert streamed.usage.total_tokens == 18


@pytest.mark.asyncio
async def test_list_models_filters_non_chat_models():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/models"
        return httpx.Response(
            200,
            json={
                "object": "list",
                "data": [
                    {"id": "gpt-4o", "object": "model", "created": 1715367049, "owned_by": "system"},
                    {"id": "whisper-1", "object": "model", "created": 1677532384, "owned_by": "openai-internal"},
                    {"id": "gpt-4o-audio-preview", "object": "model", "created": 1727460443, "owned_by": "system"},
                ],
            },
        )

    adapter = _transport_adapter(handler)
    models = await adapter.list_models()

    assert [model.id for model in models] == ["gpt-4o"]
    assert models[0].context_length == 128_000
    assert models[0].created.year == 2024
    await adapter.close()
