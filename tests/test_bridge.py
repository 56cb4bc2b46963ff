from __future__ import annotations

import json

import httpx
import pytest

from hybrid_llm.bridge.envelopes import InvokeEnvelope, InvokePayload, ResultEnvelope
from hybrid_llm.bridge.handler import (
    BridgeHandler,
    clean_json_text,
    describe_schema,
    limit_remote_schema,
    truncate_prompt,
)
from hybrid_llm.bridge.transport import HttpBridgeTransport, InProcessTransport
from hybrid_llm.core.errors import TransportError
from hybrid_llm.core.types import InlineDataPart, InvokeRequest, MultimodalContent, TextPart

from fakes import ANSWER_SCHEMA, FakeRemoteModel


def _envelope(**payload) -> InvokeEnvelope:
    return InvokeEnvelope(payload=InvokePayload(**payload))


def test_envelope_round_trips_multimodal_requests():
    request = InvokeRequest(
        content=MultimodalContent(
            parts=(TextPart(text="Describe"), InlineDataPart(data=b"\x00\x01", mime_type="audio/wav"))
        ),
        system="Be brief.",
        schema=ANSWER_SCHEMA,
    )

    envelope = InvokeEnvelope.from_request(request)
    wire = json.loads(envelope.to_json_bytes())
    restored = InvokeEnvelope.model_validate(wire).payload.to_request()

    assert wire["type"] == "INVOKE"
    assert wire["payload"]["schema"] == ANSWER_SCHEMA
    assert "prompt" not in wire["payload"]
    assert restored.content == request.content
    assert restored.schema == ANSWER_SCHEMA
    assert restored.system == "Be brief."


async def test_handler_turns_schema_into_prompt_instruction():
    model = FakeRemoteModel(reply='```json\n{"answer": 4}\n```')
    handler = BridgeHandler(model)

    result = await handler.handle(_envelope(prompt="2+2", system="Math tutor.", schema=ANSWER_SCHEMA))

    assert result == ResultEnvelope(ok=True, text='{"answer": 4}', model="fake-remote")
    parts, stream = model.calls[0]
    assert stream is False
    assert parts[0] == {"text": "Math tutor."}
    assert parts[1]["text"].startswith("2+2\n\nYou MUST respond with ONLY valid JSON.")
    assert '"answer": number (required)' in parts[1]["text"]


async def test_handler_appends_instruction_after_media_parts():
    model = FakeRemoteModel(reply='{"answer": 4}')
    handler = BridgeHandler(model)
    envelope = _envelope(
        content=[
            {"text": "Read the receipt"},
            {"inline_data": {"mime_type": "image/png", "data": "iVBORw=="}},
        ],
        schema=ANSWER_SCHEMA,
    )

    await handler.handle(envelope)

    parts, _ = model.calls[0]
    assert parts[0] == {"text": "Read the receipt"}
    assert parts[1] == {"inline_data": {"mime_type": "image/png", "data": "iVBORw=="}}
    assert parts[2]["text"].startswith("You MUST respond with ONLY valid JSON.")


async def test_handler_reports_model_errors_as_failed_results():
    handler = BridgeHandler(FakeRemoteModel(reply=RuntimeError("quota exceeded")))

    result = await handler.handle(_envelope(prompt="Hi"))

    assert result.ok is False
    assert result.error == "quota exceeded"


async def test_handler_leaves_plain_text_alone():
    handler = BridgeHandler(FakeRemoteModel(reply="```json\nnot touched\n```"))

    result = await handler.handle(_envelope(prompt="Hi", stream=True))

    assert result.text == "```json\nnot touched\n```"


def test_truncate_prompt_keeps_both_ends():
    prompt = "A" * 5_000 + "B" * 5_000 + "C" * 5_000

    truncated = truncate_prompt(prompt, system=None, reserved=0, max_chars=10_000)

    assert len(truncated) < len(prompt)
    assert truncated.startswith("A" * 100)
    assert truncated.endswith("C" * 100)
    assert "characters truncated" in truncated


def test_truncate_prompt_leaves_short_prompts_and_tiny_budgets():
    assert truncate_prompt("short", system="sys", reserved=10) == "short"
    long_prompt = "x" * 2_000
    assert truncate_prompt(long_prompt, system="s" * 1_000, reserved=0, max_chars=2_200) == long_prompt


def test_limit_remote_schema_caps_wide_objects():
    schema = {
        "type": "object",
        "properties": {f"f{i}": {"type": "string"} for i in range(10)},
        "required": ["f0", "f9"],
    }

    limited = limit_remote_schema(schema, max_properties=8)

    assert list(limited["properties"]) == [f"f{i}" for i in range(8)]
    assert limited["required"] == ["f0"]


def test_describe_schema_handles_arrays_and_unknown_shapes():
    assert describe_schema({"type": "array", "items": {"type": "string"}}) == (
        "The response must be a JSON array of string."
    )
    assert describe_schema(None) == "The response should be a valid JSON object."


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ('```json\n{"a": 1}\n```', '{"a": 1}'),
        ('Here you go: {"a": 1}', '{"a": 1}'),
        ('{"a": 1}{"b": 2}', '{"a": 1}'),
        ('{"a": 1} trailing words', '{"a": 1}'),
        ("[1, 2]", "[1, 2]"),
    ],
)
def test_clean_json_text(raw: str, expected: str):
    assert clean_json_text(raw) == expected


async def test_http_transport_posts_envelope_and_parses_result():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"ok": True, "provider": "remote", "text": "hi", "model": "m"})

    transport = HttpBridgeTransport(
        "http://bridge.test/v1/bridge",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )

    result = await transport.send(_envelope(prompt="Hello"))
    await transport.aclose()

    assert result == ResultEnvelope(ok=True, text="hi", model="m")
    assert seen == [{"type": "INVOKE", "payload": {"prompt": "Hello", "stream": False}}]


async def test_http_transport_maps_413_to_payload_too_large():
    transport = HttpBridgeTransport(
        "http://bridge.test/v1/bridge",
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(413))),
    )

    with pytest.raises(TransportError) as exc_info:
        await transport.send(_envelope(prompt="Hello"))

    assert exc_info.value.is_payload_too_large


async def test_http_transport_maps_connection_errors_to_connectivity():
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    transport = HttpBridgeTransport(
        "http://bridge.test/v1/bridge",
        client=httpx.AsyncClient(transport=httpx.MockTransport(refuse)),
    )

    with pytest.raises(TransportError) as exc_info:
        await transport.send(_envelope(prompt="Hello"))

    assert exc_info.value.kind == "connectivity"


async def test_http_transport_rejects_malformed_responses():
    transport = HttpBridgeTransport(
        "http://bridge.test/v1/bridge",
        client=httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(500, text="Internal Server Error"))
        ),
    )

    with pytest.raises(TransportError) as exc_info:
        await transport.send(_envelope(prompt="Hello"))

    assert exc_info.value.kind == "remote_failure"
    assert "HTTP 500" in exc_info.value.message


async def test_in_process_transport_enforces_message_size():
    transport = InProcessTransport(BridgeHandler(FakeRemoteModel()), max_message_bytes=64)

    with pytest.raises(TransportError) as exc_info:
        await transport.send(_envelope(prompt="x" * 100))

    assert exc_info.value.is_payload_too_large


async def test_in_process_transport_reaches_the_handler():
    model = FakeRemoteModel(reply="remote text")
    transport = InProcessTransport(BridgeHandler(model))

    result = await transport.send(_envelope(prompt="Hello"))

    assert result.ok
    assert result.text == "remote text"
    assert model.calls[0][0] == [{"text": "Hello"}]
