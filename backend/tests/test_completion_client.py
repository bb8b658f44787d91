"""Tests for the LM Studio completion client."""

import asyncio
import json

import httpx
import pytest

from conftest import PROVIDER_URL, completion_body, make_client, provider, sse_body
from lmchat.services.completion_client import (
    ChatMessage,
    CompletionClient,
    CompletionRequest,
    CompletionTransportError,
    parse_stream_line,
)


def _request(**kwargs) -> CompletionRequest:
    return CompletionRequest(
        model="qwen2.5-7b-instruct",
        messages=[ChatMessage(role="system", content="Be brief."), ChatMessage(role="user", content="Hello")],
        **kwargs,
    )


async def _collect(aiter) -> list[str]:
    return [fragment async for fragment in aiter]


# ── parse_stream_line ─────────────────────────────


class TestParseStreamLine:
    def test_content_delta(self):
        chunk = parse_stream_line('data: {"choices":[{"delta":{"content":"Hi"},"finish_reason":null}]}')
        assert chunk.content == "Hi"
        assert not chunk.done

    def test_done_marker(self):
        assert parse_stream_line("data: [DONE]").done

    def test_blank_and_comment_lines_are_ignored(self):
        assert parse_stream_line("") is None
        assert parse_stream_line("   ") is None
        assert parse_stream_line(": keep-alive") is None
        assert parse_stream_line("event: message") is None

    def test_malformed_json_is_skipped(self):
        assert parse_stream_line("data: {not json") is None

    def test_choices_of_the_wrong_shape_are_skipped(self):
        assert parse_stream_line('data: {"choices": 5}') is None
        assert parse_stream_line('data: {"choices": {"a": 1}}') is None
        assert parse_stream_line('data: {"choices": ["text"]}') is None
        assert parse_stream_line("data: [1, 2]") is None

    def test_role_only_delta_has_no_content(self):
        chunk = parse_stream_line('data: {"choices":[{"delta":{"role":"assistant"}}]}')
        assert chunk is not None
        assert chunk.content is None

    def test_finish_reason(self):
        chunk = parse_stream_line('data: {"choices":[{"delta":{},"finish_reason":"stop"}]}')
        assert chunk.finish_reason == "stop"
        assert chunk.content is None


# ── Payload ───────────────────────────────────────


def test_payload_shape():
    payload = _request(temperature=0.2, max_tokens=64).to_payload(stream=True)
    assert payload["model"] == "qwen2.5-7b-instruct"
    assert payload["stream"] is True
    assert payload["messages"][0] == {"role": "system", "content": "Be brief."}
    assert payload["max_tokens"] == 64
    assert "seed" not in payload


def test_payload_includes_seed_when_set():
    assert _request(seed=42).to_payload(stream=False)["seed"] == 42


# ── Streaming ─────────────────────────────────────


@pytest.mark.asyncio
async def test_stream_yields_fragments_in_order():
    handler = provider(stream=httpx.Response(200, content=sse_body("Hi", " there")))
    fragments = await _collect(make_client(handler).stream_complete(_request()))
    assert fragments == ["Hi", " there"]


@pytest.mark.asyncio
async def test_stream_skips_malformed_and_empty_lines():
    body = (
        b": keep-alive\n\n"
        b'data: {"choices":[{"delta":{"role":"assistant"}}]}\n\n'
        b'data: {"choices":[{"delta":{"content":"A"}}]}\n\n'
        b"data: {broken\n\n"
        b'data: {"choices": 5}\n\n'
        b'data: {"choices": {"a": 1}}\n\n'
        b'data: {"choices":[{"delta":{"content":""}}]}\n\n'
        b'data: {"choices":[{"delta":{"content":"B"}}]}\n\n'
        b"data: [DONE]\n\n"
    )
    handler = provider(stream=httpx.Response(200, content=body))
    assert await _collect(make_client(handler).stream_complete(_request())) == ["A", "B"]


@pytest.mark.asyncio
async def test_stream_stops_at_done_marker():
    body = sse_body("A") + b'data: {"choices":[{"delta":{"content":"late"}}]}\n\n'
    handler = provider(stream=httpx.Response(200, content=body))
    assert await _collect(make_client(handler).stream_complete(_request())) == ["A"]


@pytest.mark.asyncio
async def test_stream_ends_when_body_ends_without_done_marker():
    handler = provider(stream=httpx.Response(200, content=sse_body("A", "B", done=False)))
    assert await _collect(make_client(handler).stream_complete(_request())) == ["A", "B"]


@pytest.mark.asyncio
async def test_stream_sends_stream_flag():
    handler = provider(stream=httpx.Response(200, content=sse_body("A")))
    await _collect(make_client(handler).stream_complete(_request()))
    request = handler.calls[-1]
    assert request.url == httpx.URL(f"{PROVIDER_URL}/chat/completions")
    assert json.loads(request.content)["stream"] is True


@pytest.mark.asyncio
async def test_stream_http_error_status():
    handler = provider(stream=httpx.Response(500, text="model crashed"))
    with pytest.raises(CompletionTransportError) as exc_info:
        await _collect(make_client(handler).stream_complete(_request()))
    assert exc_info.value.status_code == 500


@pytest.mark.asyncio
async def test_stream_connection_refused():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(CompletionTransportError):
        await _collect(make_client(refuse).stream_complete(_request()))


@pytest.mark.asyncio
async def test_stream_failure_mid_body_after_fragments():
    async def body():
        yield sse_body("Hi", done=False)
        raise httpx.ReadError("connection reset")

    handler = provider(stream=lambda request: httpx.Response(200, content=body()))
    received = []
    with pytest.raises(CompletionTransportError):
        async for fragment in make_client(handler).stream_complete(_request()):
            received.append(fragment)
    assert received == ["Hi"]


@pytest.mark.asyncio
async def test_stream_can_be_closed_early():
    release = asyncio.Event()

    async def body():
        yield sse_body("Hi", done=False)
        await release.wait()
        yield sse_body("never")

    handler = provider(stream=lambda request: httpx.Response(200, content=body()))
    fragments = make_client(handler).stream_complete(_request())
    assert await anext(fragments) == "Hi"
    await fragments.aclose()
    with pytest.raises(StopAsyncIteration):
        await anext(fragments)


# ── Non-streaming ─────────────────────────────────


@pytest.mark.asyncio
async def test_complete_returns_content_and_usage():
    usage = {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15}
    handler = provider(completion=httpx.Response(200, json=completion_body("Hello there", usage)))
    result = await make_client(handler).complete(_request())
    assert result.content == "Hello there"
    assert result.finish_reason == "stop"
    assert result.usage.total_tokens == 15
    assert result.usage.completion_tokens == 3


@pytest.mark.asyncio
async def test_complete_without_usage():
    handler = provider(completion=httpx.Response(200, json=completion_body("ok")))
    result = await make_client(handler).complete(_request())
    assert result.usage is None


@pytest.mark.asyncio
async def test_complete_error_status():
    handler = provider(completion=httpx.Response(503, text="loading model"))
    with pytest.raises(CompletionTransportError) as exc_info:
        await make_client(handler).complete(_request())
    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
async def test_complete_malformed_body():
    handler = provider(completion=httpx.Response(200, json={"unexpected": True}))
    with pytest.raises(CompletionTransportError):
        await make_client(handler).complete(_request())


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"choices": [{"message": "oops"}]},
        {"choices": [{"message": {"content": 42}}]},
        {"choices": ["oops"]},
        {"choices": 5},
        ["not", "an", "object"],
    ],
)
async def test_complete_malformed_message(body):
    handler = provider(completion=httpx.Response(200, json=body))
    with pytest.raises(CompletionTransportError, match="Malformed"):
        await make_client(handler).complete(_request())


@pytest.mark.asyncio
async def test_complete_timeout():
    def slow(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(CompletionTransportError, match="timed out"):
        await make_client(slow).complete(_request())


# ── Inventory ─────────────────────────────────────


@pytest.mark.asyncio
async def test_list_models():
    handler = provider(models=["qwen2.5-7b-instruct", "llama-3.2-3b"])
    models = await make_client(handler).list_models()
    assert [m.id for m in models] == ["qwen2.5-7b-instruct", "llama-3.2-3b"]


@pytest.mark.asyncio
async def test_list_models_unreachable_returns_empty():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    assert await make_client(refuse).list_models() == []


@pytest.mark.asyncio
async def test_list_loaded_models_uses_server_root():
    handler = provider(loaded=["qwen2.5-7b-instruct"])
    loaded = await make_client(handler).list_loaded_models()
    assert handler.calls[-1].url == httpx.URL("http://lmstudio.test/api/v0/models")
    assert loaded[0].id == "qwen2.5-7b-instruct"
    assert loaded[0].is_loaded


@pytest.mark.asyncio
async def test_list_loaded_models_unsupported_endpoint():
    def old_server(request):
        return httpx.Response(404)

    assert await make_client(old_server).list_loaded_models() == []


@pytest.mark.asyncio
async def test_test_connection():
    assert await make_client(provider()).test_connection() is True

    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    assert await make_client(refuse).test_connection() is False


@pytest.mark.asyncio
async def test_api_key_is_sent_as_bearer_token():
    handler = provider()
    client = CompletionClient(
        base_url=PROVIDER_URL, api_key="secret", transport=httpx.MockTransport(handler)
    )
    await client.list_models()
    assert handler.calls[-1].headers["Authorization"] == "Bearer secret"


@pytest.mark.asyncio
async def test_no_authorization_header_without_api_key():
    handler = provider()
    await make_client(handler).list_models()
    assert "Authorization" not in handler.calls[-1].headers
