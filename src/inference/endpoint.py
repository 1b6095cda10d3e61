import asyncio
import codecs
import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from logging import getLogger
from typing import TYPE_CHECKING, Any

import httpx

from application.http_client import get_client

from .config import PassthroughConfig
from .types import (
    ChatCompletionRequest,
    CompletionRequest,
    EmbeddingRequest,
    ToolCall,
    Usage,
    fresh_id,
    now,
)

if TYPE_CHECKING:
    from dispatch.streaming import ResponseSink

logger = getLogger(__name__)

DATA_PREFIX = "data: "
END_MARKER = "[DONE]"

UPSTREAM_DEFAULT_MODELS = {
    'completion': 'gpt-3.5-turbo-instruct',
    'chat': 'gpt-3.5-turbo',
    'embedding': 'text-embedding-3-small',
}


class PassthroughError(Exception):
    """Any failure talking to the upstream provider."""

    status: int | None
    body: str | None

    def __init__(self, message: str, status: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status = status
        self.body = body


class ToolCallAccumulator:
    """Merges streamed tool-call fragments by their index."""

    _calls: dict[int, ToolCall]

    def __init__(self) -> None:
        self._calls = {}

    def __len__(self) -> int:
        return len(self._calls)

    def merge(self, fragment: Mapping[str, Any]) -> None:
        index = fragment.get("index", 0)
        function = fragment.get("function") or {}
        call = self._calls.get(index)
        if call is None:
            self._calls[index] = ToolCall(
                id=fragment.get("id") or "",
                type=fragment.get("type") or "function",
                name=function.get("name") or "",
                arguments=function.get("arguments") or "",
            )
            return
        # first fragment wins for identity, arguments always concatenate
        if not call.id and fragment.get("id"):
            call.id = fragment["id"]
        if not call.name and function.get("name"):
            call.name = function["name"]
        call.arguments += function.get("arguments") or ""

    def finalize(self) -> list[ToolCall]:
        return [self._calls[i] for i in sorted(self._calls)]


class StreamAccumulator:
    """Parses a raw SSE byte stream on the side, collecting content and tool calls."""

    content: str
    tool_calls: ToolCallAccumulator

    def __init__(self) -> None:
        self.content = ""
        self.tool_calls = ToolCallAccumulator()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, data: bytes) -> list[str]:
        """Consume raw bytes, returning the content deltas found in complete lines."""
        self._pending += self._decoder.decode(data)
        *lines, self._pending = self._pending.split("\n")
        return [delta for line in lines if (delta := self._parse_line(line))]

    def flush(self) -> list[str]:
        self._pending += self._decoder.decode(b"", final=True)
        line, self._pending = self._pending, ""
        delta = self._parse_line(line)
        return [delta] if delta else []

    def _parse_line(self, line: str) -> str | None:
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return None
        data = line[len(DATA_PREFIX) :].strip()
        if data == END_MARKER:
            return None
        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Skipping undecodable stream event: %r", data[:200])
            return None
        choices = event.get("choices") if isinstance(event, dict) else None
        if not choices:
            return None
        delta = choices[0].get("delta") or {}
        for fragment in delta.get("tool_calls") or []:
            self.tool_calls.merge(fragment)
        content = delta.get("content")
        if content:
            self.content += content
            return content
        return None


@dataclass
class PassthroughClient:
    """Forwards generation requests to an OpenAI-compatible upstream."""

    config: PassthroughConfig
    client: httpx.AsyncClient | None = field(default=None, repr=False)

    def _http(self) -> httpx.AsyncClient:
        return self.client if self.client is not None else get_client()

    def _headers(self, stream: bool = False) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        if stream:
            headers["Accept"] = "text/event-stream"
        return headers

    def effective_model(
        self, request: CompletionRequest | ChatCompletionRequest | EmbeddingRequest
    ) -> str:
        return self.config.model or request.model or UPSTREAM_DEFAULT_MODELS[request.kind]

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = self.config.endpoint(path)
        timeout = self.config.timeout
        try:
            async with asyncio.timeout(timeout):
                res = await self._http().post(
                    url,
                    json=payload,
                    headers=self._headers(),
                    timeout=timeout,
                )
        except TimeoutError as e:
            raise PassthroughError(f"Upstream timed out after {timeout}s") from e
        except httpx.HTTPError as e:
            raise PassthroughError(f"Upstream request failed: {e!r}") from e

        if not res.is_success:
            raise PassthroughError(
                f"OpenAI API error: {res.status_code} - {res.text}",
                status=res.status_code,
                body=res.text,
            )
        try:
            data = res.json()
        except ValueError as e:
            raise PassthroughError(f"Upstream returned invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise PassthroughError(f"Upstream returned {type(data).__name__}, expected object")
        return data

    async def completion(self, request: CompletionRequest) -> dict[str, Any]:
        model = self.effective_model(request)
        data = await self._post("completions", {**request.body, "model": model, "stream": False})
        return {
            "id": data.get("id") or fresh_id("cmpl"),
            "object": "text_completion",
            "created": data.get("created") or now(),
            "model": data.get("model") or model,
            "choices": data.get("choices") or [],
            "usage": data.get("usage") or Usage().to_dict(),
        }

    async def chat_completion(self, request: ChatCompletionRequest) -> dict[str, Any]:
        model = self.effective_model(request)
        data = await self._post(
            "chat/completions", {**request.body, "model": model, "stream": False}
        )
        return {
            "id": data.get("id") or fresh_id("chatcmpl"),
            "object": "chat.completion",
            "created": data.get("created") or now(),
            "model": data.get("model") or model,
            "choices": data.get("choices") or [],
            "usage": data.get("usage") or Usage().to_dict(),
        }

    async def embeddings(self, request: EmbeddingRequest) -> dict[str, Any]:
        model = self.effective_model(request)
        data = await self._post("embeddings", {**request.body, "model": model})
        return {
            "id": data.get("id") or fresh_id("embd"),
            "object": "list",
            "created": data.get("created") or now(),
            "model": data.get("model") or model,
            "data": data.get("data") or [],
            "usage": data.get("usage") or Usage().to_dict(completion=False),
        }

    async def stream_chat(
        self,
        request: ChatCompletionRequest,
        sink: 'ResponseSink',
        on_chunk: Callable[[str], None] | None = None,
        on_complete: Callable[[str, list[ToolCall]], None] | None = None,
    ) -> None:
        """
        Proxy an upstream SSE stream byte-for-byte into `sink`.

        Content deltas and tool-call fragments are parsed on the side; `on_complete`
        receives the accumulated content and merged tool calls once the upstream ends.
        """
        model = self.effective_model(request)
        url = self.config.endpoint("chat/completions")
        timeout = self.config.timeout
        payload = {**request.body, "model": model, "stream": True}
        acc = StreamAccumulator()

        try:
            async with asyncio.timeout(timeout):
                async with self._http().stream(
                    "POST",
                    url,
                    json=payload,
                    headers=self._headers(stream=True),
                    timeout=httpx.Timeout(timeout),
                ) as res:
                    if not res.is_success:
                        text = (await res.aread()).decode("utf-8", errors="replace")
                        raise PassthroughError(
                            f"OpenAI API error: {res.status_code} - {text}",
                            status=res.status_code,
                            body=text,
                        )
                    async for raw in res.aiter_bytes():
                        if not sink.is_open:
                            logger.debug("Sink closed, abandoning upstream stream")
                            break
                        await sink.write(raw)
                        for delta in acc.feed(raw):
                            if on_chunk:
                                on_chunk(delta)
        except TimeoutError as e:
            raise PassthroughError(f"Upstream stream timed out after {timeout}s") from e
        except httpx.HTTPError as e:
            raise PassthroughError(f"Upstream stream failed: {e!r}") from e

        for delta in acc.flush():
            if on_chunk:
                on_chunk(delta)
        await sink.close()
        if on_complete:
            on_complete(acc.content, acc.tool_calls.finalize())
