"""Characterization tests for the OpenAI Responses API path.

GPT-5 models are routed here by default; ``use_responses_api`` opts other
models in. The end-to-end tests route the real SDK through
``httpx.MockTransport`` against ``/v1/responses``.
"""

from __future__ import annotations

import json

import httpx
import pytest

from aidriver.core.errors import ErrorKind, ProviderError
from aidriver.core.llm.adapters import ChatRequest, OpenAIAdapter, XAIAdapter
from aidriver.core.llm.adapters.openai import OpenAIStreamDecoder
from aidriver.core.llm.adapters.openai_responses import ResponsesStreamDecoder
from aidriver.core.llm.driver import Driver
from aidriver.core.llm.models import FinishReason, FunctionCallRequest, Message

pytestmark = pytest.mark.unit

BASE_URL = "https://openai.test/v1"

CALC_TOOL = {
    "type": "function",
    "function": {
        "name": "calc",
        "description": "Add two numbers",
        "parameters": {"type": "object", "properties": {"a": {"type": "number"}, "b": {"type": "number"}}},
    },
}

USAGE = {
    "input_tokens": 12,
    "input_tokens_details": {"cached_tokens": 0},
    "output_tokens": 20,
    "output_tokens_details": {"reasoning_tokens": 8},
    "total_tokens": 32,
}


def _request(messages=None, model: str = "gpt-5", **options) -> ChatRequest:
    return ChatRequest.build(messages or [Message.user("hi")], options, model)


def _text_item(text: str) -> dict:
    return {
        "id": "msg_1",
        "type": "message",
        "role": "assistant",
        "status": "completed",
        "content": [{"type": "output_text", "text": text, "annotations": []}],
    }


def _call_item(call_id: str, arguments: str) -> dict:
    return {"id": "fc_1", "type": "function_call", "call_id": call_id, "name": "calc", "arguments": arguments, "status": "completed"}


def _reasoning_item(summary: str) -> dict:
    return {"id": "rs_1", "type": "reasoning", "summary": [{"type": "summary_text", "text": summary}]}


def _reply(output: list[dict], status: str = "completed", **extra) -> dict:
    return {
        "id": "resp_1",
        "object": "response",
        "created_at": 1754000000,
        "model": "gpt-5-2025-08-07",
        "status": status,
        "output": output,
        "usage": USAGE,
        "error": None,
        "incomplete_details": None,
        "instructions": None,
        "metadata": {},
        "parallel_tool_calls": True,
        "temperature": 1.0,
        "top_p": 1.0,
        "tool_choice": "auto",
        "tools": [],
        **extra,
    }


@pytest.fixture
def adapter() -> OpenAIAdapter:
    return OpenAIAdapter("sk-test", base_url=BASE_URL)


# =============================================================================
# Routing
# =============================================================================


def test_gpt5_models_use_the_responses_api(adapter):
    assert adapter.uses_responses_api(_request(model="gpt-5-mini"))
    assert not adapter.uses_responses_api(_request(model="gpt-4o-mini"))


def test_other_models_can_opt_in(adapter):
    assert adapter.uses_responses_api(_request(model="gpt-4o-mini", use_responses_api=True))
    assert "input" in adapter.build_request(_request(model="gpt-4o-mini", use_responses_api=True))


def test_xai_stays_on_chat_completions():
    adapter = XAIAdapter("xai-test")
    request = _request(model="grok-4", use_responses_api=True)

    assert not adapter.uses_responses_api(request)
    assert "messages" in adapter.build_request(request)
    assert isinstance(adapter.stream_decoder(request), OpenAIStreamDecoder)


def test_stream_decoder_follows_the_api(adapter):
    assert isinstance(adapter.stream_decoder(_request()), ResponsesStreamDecoder)
    assert isinstance(adapter.stream_decoder(_request(model="gpt-4o")), OpenAIStreamDecoder)


# =============================================================================
# Payload building
# =============================================================================


def test_build_request_uses_responses_shapes(adapter):
    payload = adapter.build_request(_request(max_tokens=200, tools=[CALC_TOOL], tool_choice="calc", stream=True))

    assert payload["model"] == "gpt-5"
    assert payload["input"] == [{"type": "message", "role": "user", "content": "hi"}]
    assert payload["max_output_tokens"] == 200
    assert payload["tools"] == [
        {
            "type": "function",
            "name": "calc",
            "description": "Add two numbers",
            "parameters": CALC_TOOL["function"]["parameters"],
            "strict": False,
        }
    ]
    assert payload["tool_choice"] == {"type": "function", "name": "calc"}
    assert payload["stream"] is True
    assert "messages" not in payload
    assert "stream_options" not in payload


def test_reasoning_models_drop_sampling_options(logger):
    adapter = OpenAIAdapter("sk-test", base_url=BASE_URL, logger=logger)

    payload = adapter.build_request(_request(temperature=0.2, top_p=0.9))

    assert "temperature" not in payload
    assert "top_p" not in payload
    assert any("'temperature'" in message for message in logger.messages("warning"))


def test_non_reasoning_models_keep_sampling_options(adapter):
    payload = adapter.build_request(_request(model="gpt-4o", use_responses_api=True, temperature=0.2))
    assert payload["temperature"] == 0.2


def test_function_round_trip_becomes_input_items(adapter):
    call = FunctionCallRequest("calc", {"a": 2, "b": 2}, call_id="call_1")
    messages = [
        Message.system("be brief"),
        Message.user("2+2?"),
        Message.assistant("", [call]),
        Message.function_result(call, 4),
    ]

    sent = adapter.build_request(_request(messages))["input"]

    assert sent[0] == {"type": "message", "role": "system", "content": "be brief"}
    assert sent[2] == {"type": "function_call", "call_id": "call_1", "name": "calc", "arguments": '{"a": 2, "b": 2}'}
    assert sent[3] == {"type": "function_call_output", "call_id": "call_1", "output": "4"}


def test_legacy_function_turn_is_rejected(adapter):
    call = FunctionCallRequest("calc", {})
    messages = [Message.user("go"), Message.assistant("", [call])]

    with pytest.raises(ProviderError) as exc_info:
        adapter.build_request(_request(messages))

    assert exc_info.value.kind is ErrorKind.VALIDATION_ERROR


# =============================================================================
# Response parsing
# =============================================================================


def test_parse_keeps_reasoning_in_metadata(adapter):
    raw = _reply([_reasoning_item("Adding the numbers."), _text_item("4")])

    response = adapter.parse_response(raw, _request())

    assert response.content == "4"
    assert response.model == "gpt-5-2025-08-07"
    assert response.finish_reason is FinishReason.STOP
    assert (response.usage.input_tokens, response.usage.output_tokens) == (12, 20)
    assert response.metadata["reasoning"] == "Adding the numbers."
    assert response.metadata["reasoning_tokens"] == 8
    assert response.metadata["response_id"] == "resp_1"
    assert response.metadata["api_type"] == "responses"


def test_parse_function_calls(adapter):
    raw = _reply([_call_item("call_1", '{"a": 2, "b": 2}')])

    response = adapter.parse_response(raw, _request())

    assert response.finish_reason is FinishReason.TOOL_CALLS
    assert response.function_calls == (FunctionCallRequest("calc", {"a": 2, "b": 2}, "call_1"),)


@pytest.mark.parametrize(
    ("reason", "expected"),
    [("max_output_tokens", FinishReason.LENGTH), ("content_filter", FinishReason.CONTENT_FILTER)],
)
def test_incomplete_reply(adapter, reason, expected):
    raw = _reply([_text_item("partial")], status="incomplete", incomplete_details={"reason": reason})

    response = adapter.parse_response(raw, _request())

    assert response.finish_reason is expected
    assert response.metadata["incomplete_details"] == {"reason": reason}


# =============================================================================
# Stream decoding
# =============================================================================


def test_stream_decoder_reads_the_completed_response():
    decoder = ResponsesStreamDecoder("openai", "gpt-5")
    events = [
        {"type": "response.created", "response": {"model": "gpt-5-2025-08-07"}},
        {"type": "response.output_text.delta", "delta": "Hel"},
        {"type": "response.output_text.delta", "delta": "lo"},
        {"type": "response.completed", "response": _reply([_reasoning_item("Greeting."), _text_item("Hello")])},
    ]

    chunks = [chunk for chunk in (decoder.feed(event) for event in events) if chunk is not None]

    assert [chunk.delta for chunk in chunks] == ["Hel", "lo", ""]
    terminal = chunks[-1]
    assert terminal.content == "Hello"
    assert terminal.finish_reason is FinishReason.STOP
    assert terminal.usage.total_tokens == 32
    assert terminal.metadata["reasoning"] == "Greeting."


def test_stream_decoder_collects_calls_from_the_final_event():
    decoder = ResponsesStreamDecoder("openai", "gpt-5")

    terminal = decoder.feed({"type": "response.completed", "response": _reply([_call_item("call_9", "{}")])})

    assert terminal.finish_reason is FinishReason.TOOL_CALLS
    assert terminal.function_calls[0].call_id == "call_9"


def test_stream_error_event_is_classified():
    decoder = ResponsesStreamDecoder("openai", "gpt-5")

    with pytest.raises(ProviderError) as exc_info:
        decoder.feed({"type": "error", "code": "rate_limit_exceeded", "message": "Slow down"})

    assert exc_info.value.kind is ErrorKind.RATE_LIMIT_EXCEEDED


# =============================================================================
# End to end over httpx.MockTransport
# =============================================================================


def _transport_adapter(handler) -> OpenAIAdapter:
    return OpenAIAdapter(
        "sk-test",
        base_url=BASE_URL,
        default_model="gpt-5",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


@pytest.mark.asyncio
async def test_function_calling_over_http(fake_sleep):
    bodies: list[dict] = []
    replies = [
        _reply([_reasoning_item("Need the tool."), _call_item("call_1", '{"a": 2, "b": 2}')]),
        _reply([_text_item("4")]),
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/responses"
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json=replies.pop(0))

    async with Driver(_transport_adapter(handler), sleep=fake_sleep) as driver:
        response = await driver.send_message(
            [Message.user("2+2?")],
            {"tools": [CALC_TOOL]},
            executor=lambda name, arguments, call_id: arguments["a"] + arguments["b"],
        )

    assert response.content == "4"
    assert response.metadata["function_call_rounds"] == 1
    assert bodies[0]["tools"][0]["name"] == "calc"
    assert bodies[1]["input"][-2:] == [
        {"type": "function_call", "call_id": "call_1", "name": "calc", "arguments": '{"a": 2, "b": 2}'},
        {"type": "function_call_output", "call_id": "call_1", "output": "4"},
    ]
    assert response.cost.pricing_model == "gpt-5"


@pytest.mark.asyncio
async def test_streaming_over_http(fake_sleep):
    events = [
        {"type": "response.created", "sequence_number": 0, "response": _reply([], status="in_progress", usage=None)},
        {"type": "response.output_text.delta", "sequence_number": 1, "item_id": "msg_1", "output_index": 0,
         "content_index": 0, "delta": "Hel", "logprobs": []},
        {"type": "response.output_text.delta", "sequence_number": 2, "item_id": "msg_1", "output_index": 0,
         "content_index": 0, "delta": "lo", "logprobs": []},
        {"type": "response.completed", "sequence_number": 3, "response": _reply([_text_item("Hello")])},
    ]
    body = "".join(f"event: {event['type']}\ndata: {json.dumps(event)}\n\n" for event in events)

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/responses"
        assert json.loads(request.content)["stream"] is True
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body.encode())

    async with Driver(_transport_adapter(handler), sleep=fake_sleep) as driver:
        chunks = [chunk async for chunk in driver.send_streaming_message([Message.user("hi")])]

    assert [chunk.delta for chunk in chunks if not chunk.is_terminal] == ["Hel", "lo"]
    assert chunks[-1].content == "Hello"
    assert chunks[-1].finish_reason is FinishReason.STOP
    assert chunks[-1].usage.total_tokens == 32
    assert chunks[-1].cost is not None
