import asyncio

import pytest

from dispatch import (
    DONE_FRAME,
    ChannelSink,
    StreamCallbacks,
    StreamEmitter,
    split_words,
    sse_frame,
)
from inference.mock import CHAT_STREAM_TOKENS, COMPLETION_STREAM_TOKENS
from inference.tokens import count_tokens


def recorder():
    chunks: list[str] = []
    results = []
    callbacks = StreamCallbacks(on_chunk=chunks.append, on_complete=results.append)
    return callbacks, chunks, results


def test_sse_frame_is_compact():
    assert sse_frame({"a": 1, "b": [1, 2]}) == b'data: {"a":1,"b":[1,2]}\n\n'


@pytest.mark.parametrize(
    "text, expected",
    [
        ("hello world", ["hello", " world"]),
        ("one", ["one"]),
        ("", [""]),
        ("a  b", ["a", " ", " b"]),
    ],
)
def test_split_words(text, expected):
    pieces = split_words(text)
    assert pieces == expected
    assert "".join(pieces) == text


@pytest.mark.asyncio
async def test_emit_completion_frames(make_sink, events):
    sink = make_sink()
    callbacks, chunks, results = recorder()
    await StreamEmitter(delay=0).emit_completion(
        sink,
        COMPLETION_STREAM_TOKENS,
        model="fake-llama-3-8b",
        prompt_tokens=5,
        callbacks=callbacks,
        stream_id="cmpl-fixed",
        created=1700000000,
    )

    payloads, done = events(sink.body)
    assert done
    assert sink.chunks[-1] == DONE_FRAME
    assert sink.closed
    assert len(payloads) == len(COMPLETION_STREAM_TOKENS)
    assert [p["choices"][0]["text"] for p in payloads] == list(COMPLETION_STREAM_TOKENS)
    assert {p["id"] for p in payloads} == {"cmpl-fixed"}
    assert {p["created"] for p in payloads} == {1700000000}
    assert {p["object"] for p in payloads} == {"text_completion"}
    finish = [p["choices"][0]["finish_reason"] for p in payloads]
    assert finish[-1] == "stop"
    assert set(finish[:-1]) == {None}

    assert chunks == list(COMPLETION_STREAM_TOKENS)
    [result] = results
    content = "".join(COMPLETION_STREAM_TOKENS)
    assert result.content == content
    assert result.usage.prompt_tokens == 5
    assert result.usage.completion_tokens == count_tokens(content)
    assert result.model == "fake-llama-3-8b"


@pytest.mark.asyncio
async def test_emit_chat_frames(make_sink, events):
    sink = make_sink()
    callbacks, chunks, results = recorder()
    await StreamEmitter(delay=0).emit_chat(
        sink, CHAT_STREAM_TOKENS, model="fake-mistral-7b", prompt_tokens=2, callbacks=callbacks
    )

    payloads, done = events(sink.body)
    assert done
    deltas = [p["choices"][0]["delta"] for p in payloads]
    assert deltas[0] == {"role": "assistant", "content": CHAT_STREAM_TOKENS[0]}
    assert all("role" not in d for d in deltas[1:])
    assert "".join(d["content"] for d in deltas) == "".join(CHAT_STREAM_TOKENS)
    assert len({p["id"] for p in payloads}) == 1
    assert payloads[0]["id"].startswith("chatcmpl-")
    assert payloads[0]["object"] == "chat.completion.chunk"
    assert payloads[-1]["choices"][0]["finish_reason"] == "stop"
    assert results[0].content == "".join(chunks)


@pytest.mark.asyncio
async def test_emit_stops_when_sink_closes(make_sink):
    sink = make_sink(open_for=3)
    callbacks, chunks, results = recorder()
    await StreamEmitter(delay=0).emit_chat(
        sink, CHAT_STREAM_TOKENS, model="m", prompt_tokens=0, callbacks=callbacks
    )

    assert len(sink.chunks) == 3
    assert DONE_FRAME not in sink.chunks
    assert chunks == list(CHAT_STREAM_TOKENS[:3])
    # completion still fires once, with what was actually sent
    [result] = results
    assert result.content == "".join(CHAT_STREAM_TOKENS[:3])


@pytest.mark.asyncio
async def test_emit_completes_once_on_cancel(make_sink):
    sink = make_sink()
    callbacks, chunks, results = recorder()
    task = asyncio.create_task(
        StreamEmitter(delay=10).emit_chat(
            sink, CHAT_STREAM_TOKENS, model="m", prompt_tokens=0, callbacks=callbacks
        )
    )
    while not chunks:
        await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(results) == 1
    assert results[0].content == CHAT_STREAM_TOKENS[0]


@pytest.mark.asyncio
async def test_channel_sink_drains_until_closed():
    sink = ChannelSink()
    await sink.write(b"one")
    await sink.write(b"two")
    await sink.close()
    await sink.close()
    await sink.write(b"late")

    assert [item async for item in sink.drain()] == [b"one", b"two"]
    assert not sink.is_open
    assert not sink.abandoned


@pytest.mark.asyncio
async def test_channel_sink_reader_leaving_fires_disconnect_once():
    disconnects = []
    sink = ChannelSink(on_disconnect=lambda: disconnects.append(True))
    await sink.write(b"first")

    reader = sink.drain()
    assert await anext(reader) == b"first"
    await reader.aclose()

    assert sink.abandoned
    assert not sink.is_open
    sink.abandon()
    assert disconnects == [True]

    # the producer keeps going without noticing, but nothing is queued
    await sink.write(b"ignored")
    assert sink._queue.empty()


def test_channel_sink_headers():
    sink = ChannelSink()
    sink.set_header("X-Request-Id", "abc")
    assert sink.headers["Cache-Control"] == "no-cache"
    assert sink.headers["Connection"] == "keep-alive"
    assert sink.headers["X-Request-Id"] == "abc"


@pytest.mark.asyncio
async def test_channel_sink_write_waits_for_reader():
    sink = ChannelSink(max_buffered=2)
    await sink.write(b"1")
    await sink.write(b"2")
    writer = asyncio.create_task(sink.write(b"3"))
    await asyncio.sleep(0.01)
    assert not writer.done()
    assert sink.buffered == 2

    reader = sink.drain()
    assert await anext(reader) == b"1"
    await asyncio.wait_for(writer, timeout=1)
    assert sink.buffered == 2

    await sink.close()
    assert [item async for item in reader] == [b"2", b"3"]


@pytest.mark.asyncio
async def test_channel_sink_abandon_releases_blocked_writer():
    disconnects = []
    sink = ChannelSink(on_disconnect=lambda: disconnects.append(True), max_buffered=1)
    await sink.write(b"1")
    writer = asyncio.create_task(sink.write(b"2"))
    await asyncio.sleep(0.01)
    assert not writer.done()

    sink.abandon()
    await asyncio.wait_for(writer, timeout=1)
    assert sink.buffered == 1
    assert disconnects == [True]


def test_channel_sink_rejects_empty_buffer():
    with pytest.raises(ValueError):
        ChannelSink(max_buffered=0)
