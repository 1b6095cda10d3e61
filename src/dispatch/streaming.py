import asyncio
import json
from collections.abc import AsyncGenerator, Callable, Sequence
from dataclasses import dataclass, field
from logging import getLogger
from typing import Any, Protocol

from inference.tokens import count_tokens
from inference.types import ToolCall, Usage, fresh_id, now

logger = getLogger(__name__)

DONE_FRAME = b"data: [DONE]\n\n"

DEFAULT_MAX_BUFFERED = 64

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}

type FrameBuilder = Callable[[int, str, bool], dict[str, Any]]


class ResponseSink(Protocol):
    @property
    def is_open(self) -> bool: ...

    def set_header(self, name: str, value: str) -> None: ...

    async def write(self, data: bytes) -> None: ...

    async def close(self) -> None: ...


def sse_frame(payload: dict[str, Any]) -> bytes:
    return f"data: {json.dumps(payload, separators=(',', ':'))}\n\n".encode("utf-8")


class ChannelSink:
    """
    A response sink backed by a queue.

    The producer writes frames and closes; the HTTP layer streams `drain()`.
    At most `max_buffered` frames wait in the queue: a write beyond that blocks
    until the reader takes one. If the reader goes away before the producer
    closes, the sink reports itself closed to the producer, any blocked write
    returns, and `on_disconnect` fires once.
    """

    headers: dict[str, str]
    on_disconnect: Callable[[], None] | None
    max_buffered: int

    def __init__(
        self,
        on_disconnect: Callable[[], None] | None = None,
        max_buffered: int = DEFAULT_MAX_BUFFERED,
    ):
        if max_buffered < 1:
            raise ValueError(f"max_buffered must be positive, got {max_buffered}")
        self.headers = dict(SSE_HEADERS)
        self.on_disconnect = on_disconnect
        self.max_buffered = max_buffered
        # unbounded so close() can always enqueue the end marker without waiting
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._room = asyncio.Event()
        self._room.set()
        self._closed = False
        self._abandoned = False

    @property
    def is_open(self) -> bool:
        return not (self._closed or self._abandoned)

    @property
    def abandoned(self) -> bool:
        return self._abandoned

    @property
    def buffered(self) -> int:
        return self._queue.qsize()

    def set_header(self, name: str, value: str) -> None:
        self.headers[name] = value

    async def write(self, data: bytes) -> None:
        while self.is_open and self._queue.qsize() >= self.max_buffered:
            self._room.clear()
            await self._room.wait()
        if self.is_open:
            self._queue.put_nowait(data)

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    def abandon(self) -> None:
        if self._abandoned:
            return
        self._abandoned = True
        self._room.set()
        if self.on_disconnect is not None:
            self.on_disconnect()

    async def drain(self) -> AsyncGenerator[bytes, None]:
        finished = False
        try:
            while (item := await self._queue.get()) is not None:
                self._room.set()
                yield item
            finished = True
        finally:
            if not finished:
                self.abandon()


@dataclass(frozen=True)
class StreamResult:
    content: str
    usage: Usage
    model: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str = "stop"


@dataclass
class StreamCallbacks:
    on_chunk: Callable[[str], None] | None = None
    on_complete: Callable[[StreamResult], None] | None = None
    on_error: Callable[[Exception], None] | None = None

    def chunk(self, text: str) -> None:
        if self.on_chunk is not None:
            self.on_chunk(text)

    def complete(self, result: StreamResult) -> None:
        if self.on_complete is not None:
            self.on_complete(result)

    def error(self, exc: Exception) -> None:
        if self.on_error is not None:
            self.on_error(exc)


def split_words(text: str) -> list[str]:
    """Split on spaces, re-attaching a leading space to every word but the first."""
    words = text.split(" ")
    return [words[0], *(" " + word for word in words[1:])]


def completion_frames(stream_id: str, created: int, model: str) -> FrameBuilder:
    def frame(index: int, text: str, last: bool) -> dict[str, Any]:
        return {
            "id": stream_id,
            "object": "text_completion",
            "created": created,
            "model": model,
            "choices": [
                {
                    "index": 0,
                    "text": text,
                    "logprobs": None,
                    "finish_reason": "stop" if last else None,
                }
            ],
        }

    return frame


def chat_frames(stream_id: str, created: int, model: str) -> FrameBuilder:
    def frame(index: int, text: str, last: bool) -> dict[str, Any]:
        delta = {"role": "assistant", "content": text} if index == 0 else {"content": text}
        return {
            "id": stream_id,
            "object": "chat.completion.chunk",
            "created": created,
            "model": model,
            "choices": [
                {
                    "index": 0,
                    "delta": delta,
                    "logprobs": None,
                    "finish_reason": "stop" if last else None,
                }
            ],
        }

    return frame


class StreamEmitter:
    """Writes a response as SSE frames, one piece at a time, `delay` seconds apart."""

    delay: float

    def __init__(self, delay: float = 0.05):
        self.delay = delay

    async def emit(
        self,
        sink: ResponseSink,
        pieces: Sequence[str],
        frame: FrameBuilder,
        *,
        prompt_tokens: int,
        model: str | None,
        callbacks: StreamCallbacks,
    ) -> None:
        content = ""
        try:
            for index, piece in enumerate(pieces):
                if not sink.is_open:
                    logger.debug("Sink closed after %d of %d chunks", index, len(pieces))
                    break
                content += piece
                callbacks.chunk(piece)
                await sink.write(sse_frame(frame(index, piece, index == len(pieces) - 1)))
                await asyncio.sleep(self.delay)
            await sink.write(DONE_FRAME)
            await sink.close()
        finally:
            callbacks.complete(
                StreamResult(
                    content=content,
                    usage=Usage(prompt_tokens, count_tokens(content)),
                    model=model,
                )
            )

    async def emit_completion(
        self,
        sink: ResponseSink,
        pieces: Sequence[str],
        *,
        model: str,
        prompt_tokens: int,
        callbacks: StreamCallbacks,
        stream_id: str | None = None,
        created: int | None = None,
    ) -> None:
        frame = completion_frames(stream_id or fresh_id("cmpl"), created or now(), model)
        await self.emit(
            sink, pieces, frame, prompt_tokens=prompt_tokens, model=model, callbacks=callbacks
        )

    async def emit_chat(
        self,
        sink: ResponseSink,
        pieces: Sequence[str],
        *,
        model: str,
        prompt_tokens: int,
        callbacks: StreamCallbacks,
    ) -> None:
        frame = chat_frames(fresh_id("chatcmpl"), now(), model)
        await self.emit(
            sink, pieces, frame, prompt_tokens=prompt_tokens, model=model, callbacks=callbacks
        )
