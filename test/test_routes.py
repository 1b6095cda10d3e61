import asyncio
import json

import httpx
import pytest
import respx
from litestar.testing import AsyncTestClient

from application.routes import _stream
from dispatch import DONE_FRAME
from inference import ChatCompletionRequest
from inference.mock import CHAT_STREAM_TOKENS, COMPLETION_STREAM_TOKENS
from inference.mock.generator import GREETING_REPLY
from inference.tokens import count_tokens

URL = "https://upstream.test/v1"

HELLO = {"model": "fake-llama-3-8b", "messages": [{"role": "user", "content": "Hello there"}]}


async def last_entry(client) -> dict:
    response = await client.get("/doctor/requests", params={"limit": 1})
    [entry] = response.json()["data"]
    return entry


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert isinstance(body["uptime"], int)


@pytest.mark.asyncio
async def test_models_are_tracked(client):
    response = await client.get("/v1/models")
    assert response.status_code == 200
    assert response.json()["object"] == "list"

    entry = await last_entry(client)
    assert entry["endpoint"] == "/v1/models"
    assert entry["method"] == "GET"
    assert entry["status"] == "completed"

    stats = (await client.get("/doctor/stats")).json()
    assert stats["models"] == 1
    assert stats["total_requests"] == 1


@pytest.mark.asyncio
async def test_chat_completion_greeting(client):
    response = await client.post("/v1/chat/completions", json=HELLO)
    assert response.status_code == 200
    body = response.json()
    assert body["choices"][0]["message"]["content"] == GREETING_REPLY

    entry = await last_entry(client)
    assert entry["status"] == "completed"
    assert entry["body"] == HELLO
    assert entry["response"]["content"] == GREETING_REPLY
    assert entry["tokens_in"] == count_tokens("Hello there")
    assert entry["tokens_out"] == count_tokens(GREETING_REPLY)
    assert entry["elapsed_ms"] >= 0

    stats = (await client.get("/doctor/stats")).json()
    assert stats["chat_completions"] == 1
    assert stats["total_prompt_tokens"] == count_tokens("Hello there")
    assert stats["pending"] == 0


@pytest.mark.asyncio
async def test_completion(client):
    response = await client.post("/v1/completions", json={"prompt": "Robots", "n": 2})
    assert response.status_code == 200
    assert len(response.json()["choices"]) == 2


@pytest.mark.asyncio
async def test_streaming_completion(client, events):
    response = await client.post("/v1/completions", json={"prompt": "Robots", "stream": True})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.content.endswith(DONE_FRAME)

    payloads, done = events(response.content)
    assert done
    texts = [p["choices"][0]["text"] for p in payloads]
    assert texts == list(COMPLETION_STREAM_TOKENS)

    entry = await last_entry(client)
    assert entry["status"] == "completed"
    assert entry["response"]["content"] == "".join(texts)
    assert entry["streaming_content"] is None
    assert entry["tokens_out"] == count_tokens("".join(texts))


@pytest.mark.asyncio
async def test_streaming_chat(client, events):
    response = await client.post("/v1/chat/completions", json={**HELLO, "stream": True})
    payloads, done = events(response.content)
    assert done
    content = "".join(p["choices"][0]["delta"]["content"] for p in payloads)
    assert content == "".join(CHAT_STREAM_TOKENS)
    assert (await last_entry(client))["response"]["content"] == content


@pytest.mark.asyncio
async def test_embeddings(client):
    response = await client.post("/v1/embeddings", json={"input": ["a", "b"], "dimensions": 8})
    assert response.status_code == 200
    data = response.json()["data"]
    assert [len(d["embedding"]) for d in data] == [8, 8]


@pytest.mark.asyncio
async def test_simulated_fault_round_trip(client):
    response = await client.put("/doctor/errors", json={"kind": "rate_limit"})
    assert response.status_code == 200
    assert response.json()["enabled"] is True
    assert response.json()["kind"] == "rate_limit"

    response = await client.post("/v1/chat/completions", json=HELLO)
    assert response.status_code == 429
    assert response.json()["error"]["type"] == "rate_limit_exceeded"

    response = await client.post("/v1/chat/completions", json={**HELLO, "stream": True})
    assert response.status_code == 429
    assert not response.headers["content-type"].startswith("text/event-stream")

    entry = await last_entry(client)
    assert entry["status"] == "completed"
    assert entry["response"]["status_code"] == 429

    stats = (await client.get("/doctor/stats")).json()
    assert stats["simulated_faults"] == 2
    assert stats["errors"] == 0

    response = await client.delete("/doctor/errors")
    assert response.json()["enabled"] is False
    response = await client.post("/v1/chat/completions", json=HELLO)
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_error_state_lists_kinds(client):
    body = (await client.get("/doctor/errors")).json()
    assert body["enabled"] is False
    assert body["kind"] == "none"
    kinds = [k["kind"] for k in body["available"]]
    assert "timeout" in kinds
    assert "none" not in kinds


@pytest.mark.asyncio
async def test_unknown_error_kind(client):
    response = await client.put("/doctor/errors", json={"kind": "meteor_strike"})
    assert response.status_code == 400
    assert "meteor_strike" in response.json()["error"]["message"]


@pytest.mark.asyncio
async def test_invalid_messages_are_rejected_and_recorded(client):
    response = await client.post("/v1/chat/completions", json={"messages": "hi"})
    assert response.status_code == 400
    error = response.json()["error"]
    assert error["type"] == "invalid_request_error"
    assert error["code"] == "invalid_request_error"

    entry = await last_entry(client)
    assert entry["response"]["status_code"] == 400
    assert entry["response"]["finish_reason"] == "error"


@pytest.mark.asyncio
@pytest.mark.parametrize("stream", ["false", "true", 0, 1])
async def test_non_boolean_stream_is_rejected(client, stream):
    response = await client.post("/v1/chat/completions", json={**HELLO, "stream": stream})
    assert response.status_code == 400
    assert "'stream'" in response.json()["error"]["message"]
    assert response.headers["content-type"].startswith("application/json")


@pytest.mark.asyncio
async def test_stream_null_means_unary(client):
    response = await client.post("/v1/completions", json={"prompt": "p", "stream": None})
    assert response.status_code == 200
    assert response.json()["object"] == "text_completion"


@pytest.mark.asyncio
@pytest.mark.parametrize("dimensions", [0, -3, "8"])
async def test_invalid_embedding_dimensions(client, dimensions):
    response = await client.post("/v1/embeddings", json={"input": "x", "dimensions": dimensions})
    assert response.status_code == 400
    assert "'dimensions'" in response.json()["error"]["message"]

    entry = await last_entry(client)
    assert entry["response"]["status_code"] == 400


@pytest.mark.asyncio
async def test_malformed_json(client):
    response = await client.post(
        "/v1/chat/completions",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )
    assert response.status_code == 400
    assert response.json()["error"]["type"] == "invalid_request_error"


@pytest.mark.asyncio
async def test_unknown_route(client):
    response = await client.get("/v1/nothing-here")
    assert response.status_code == 404
    assert "message" in response.json()["error"]


@pytest.mark.asyncio
async def test_internal_error(server, client, monkeypatch):
    async def broken():
        raise RuntimeError("generator exploded")

    monkeypatch.setattr(server.doctor.dispatcher, "models", broken)
    response = await client.get("/v1/models")
    assert response.status_code == 500
    assert response.json() == {
        "error": {"message": "Internal server error", "type": "internal_error"}
    }

    entry = await last_entry(client)
    assert entry["response"]["status_code"] == 500
    assert (await client.get("/doctor/stats")).json()["errors"] == 1


@pytest.mark.asyncio
async def test_passthrough_requires_a_key(client):
    response = await client.put("/doctor/passthrough", json={"enabled": True})
    assert response.status_code == 400
    assert response.json()["error"]["message"] == "No API key configured"

    response = await client.put("/doctor/passthrough", json={"api_key": "sk-new"})
    body = response.json()
    assert body["enabled"] is True
    assert body["has_api_key"] is True

    response = await client.put("/doctor/passthrough", json={"enabled": False})
    assert response.json()["enabled"] is False
    assert (await client.get("/doctor/passthrough")).json()["has_api_key"] is True


@pytest.mark.asyncio
async def test_passthrough_fallback_is_invisible(make_server, upstream_config, http):
    server = make_server(upstream_config, http_client=http)
    with respx.mock() as upstream:
        upstream.post(URL + "/chat/completions").mock(
            return_value=httpx.Response(500, text="upstream down")
        )
        async with AsyncTestClient(app=server.app) as client:
            response = await client.post("/v1/chat/completions", json=HELLO)

    assert response.status_code == 200
    assert response.json()["choices"][0]["message"]["content"] == GREETING_REPLY


@pytest.mark.asyncio
async def test_passthrough_stream_is_proxied(make_server, upstream_config, http):
    server = make_server(upstream_config, http_client=http)
    body = (
        b'data: {"choices":[{"index":0,"delta":{"content":"up"}}]}\n\n'
        b'data: {"choices":[{"index":0,"delta":{"content":"stream"}}]}\n\n'
        b"data: [DONE]\n\n"
    )
    with respx.mock() as upstream:
        upstream.post(URL + "/chat/completions").mock(
            return_value=httpx.Response(200, content=body)
        )
        async with AsyncTestClient(app=server.app) as client:
            response = await client.post("/v1/chat/completions", json={**HELLO, "stream": True})

    assert response.content == body
    [entry] = server.doctor.tracker.history()
    assert entry.response.content == "upstream"


@pytest.mark.asyncio
async def test_requests_limit(client):
    for _ in range(3):
        await client.get("/v1/models")
    assert len((await client.get("/doctor/requests")).json()["data"]) == 3
    assert len((await client.get("/doctor/requests", params={"limit": 2})).json()["data"]) == 2
    assert (await client.get("/doctor/requests", params={"limit": 0})).json()["data"] == []


@pytest.mark.asyncio
async def test_metrics(client):
    await client.get("/v1/models")
    response = await client.get("/metrics")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "llm_doctor_requests_total" in response.text


@pytest.mark.asyncio
async def test_reader_leaving_aborts_entry(server):
    doctor = server.doctor
    doctor.dispatcher.emitter.delay = 10
    rid = doctor.tracker.begin("/v1/chat/completions", "POST")
    sinks = []

    def open_stream(callbacks, on_disconnect):
        sink = doctor.dispatcher.stream_chat_completion(
            ChatCompletionRequest.from_body({**HELLO, "stream": True}), callbacks, on_disconnect
        )
        sinks.append(sink)
        return sink

    _stream(doctor, rid, open_stream)
    reader = sinks[0].drain()
    await anext(reader)
    assert doctor.tracker.get(rid).status == 'streaming'

    await reader.aclose()
    entry = doctor.tracker.get(rid)
    assert entry.status == 'aborted'
    assert entry.streaming_content == CHAT_STREAM_TOKENS[0]

    await doctor.dispatcher.shutdown()
    assert doctor.tracker.get(rid).status == 'aborted'


@pytest.mark.asyncio
async def test_client_disconnect_mid_stream_aborts_entry(make_server):
    server = make_server(stream_delay=0.05)
    doctor = server.doctor
    body = json.dumps({**HELLO, "stream": True}).encode()
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/v1/chat/completions",
        "raw_path": b"/v1/chat/completions",
        "query_string": b"",
        "root_path": "",
        "headers": [(b"content-type", b"application/json"), (b"host", b"test")],
        "client": ("test", 1),
        "server": ("test", 80),
        "state": {},
    }
    first_chunk = asyncio.Event()
    request_sent = False
    chunks: list[bytes] = []

    async def receive():
        nonlocal request_sent
        if not request_sent:
            request_sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        await first_chunk.wait()
        return {"type": "http.disconnect"}

    async def send(message):
        if message["type"] == "http.response.body" and message.get("body"):
            chunks.append(message["body"])
            first_chunk.set()

    await asyncio.wait_for(server.app(scope, receive, send), timeout=5)

    [entry] = doctor.tracker.history()
    assert entry.status == 'aborted'
    assert entry.response is None
    assert entry.streaming_content.startswith(CHAT_STREAM_TOKENS[0])
    assert doctor.tracker.pending_count == 0
    assert not any(DONE_FRAME in chunk for chunk in chunks)

    await doctor.dispatcher.shutdown()
    assert entry.status == 'aborted'
