import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from logging import getLogger
from typing import Any

import httpx

from application.metrics import passthrough_attempts_total
from faults import ErrorSimulator
from inference.config import PassthroughManager
from inference.endpoint import PassthroughClient, PassthroughError
from inference.mock import CHAT_STREAM_TOKENS, COMPLETION_STREAM_TOKENS, FakeResponseGenerator
from inference.tokens import count_messages, count_prompt, count_tokens
from inference.types import (
    DEFAULT_MODEL,
    ChatCompletionRequest,
    CompletionRequest,
    EmbeddingRequest,
    ToolCall,
    Usage,
)

from .streaming import ChannelSink, StreamCallbacks, StreamEmitter, StreamResult, split_words

logger = getLogger(__name__)


@dataclass(frozen=True)
class Ok[T]:
    value: T


@dataclass(frozen=True)
class Failed:
    reason: str


type Attempt[T] = Ok[T] | Failed


async def attempt[T](call: Awaitable[T]) -> Attempt[T]:
    """Run an upstream call, turning a passthrough failure into a value."""
    try:
        return Ok(await call)
    except PassthroughError as e:
        return Failed(str(e))


class Dispatcher:
    """
    Decides how each generation request is answered.

    A selected fault always wins and is raised before any work starts, for
    streaming requests too. Otherwise the request is forwarded upstream when
    passthrough is enabled, and any upstream failure falls back to the fake
    generator without the client seeing an error.
    """

    faults: ErrorSimulator
    passthrough: PassthroughManager
    generator: FakeResponseGenerator
    emitter: StreamEmitter
    http_client: httpx.AsyncClient | None

    def __init__(
        self,
        faults: ErrorSimulator,
        passthrough: PassthroughManager,
        generator: FakeResponseGenerator,
        emitter: StreamEmitter,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.faults = faults
        self.passthrough = passthrough
        self.generator = generator
        self.emitter = emitter
        self.http_client = http_client
        self._tasks: set[asyncio.Task[None]] = set()

    def _client(self) -> PassthroughClient:
        return PassthroughClient(self.passthrough.config, self.http_client)

    def _fell_back(self, endpoint: str, reason: str) -> None:
        logger.warning("Passthrough %s failed, falling back to fake: %s", endpoint, reason)
        passthrough_attempts_total.labels(endpoint=endpoint, outcome='fallback').inc()

    async def _forward[T](
        self, endpoint: str, call: Callable[[PassthroughClient], Awaitable[T]]
    ) -> T | None:
        if not self.passthrough.is_enabled():
            return None
        match await attempt(call(self._client())):
            case Ok(value):
                passthrough_attempts_total.labels(endpoint=endpoint, outcome='ok').inc()
                return value
            case Failed(reason):
                self._fell_back(endpoint, reason)
                return None

    async def models(self) -> dict[str, Any]:
        return await self.generator.models()

    async def completion(self, request: CompletionRequest) -> dict[str, Any]:
        self.faults.raise_if_active()
        response = await self._forward('completions', lambda c: c.completion(request))
        if response is not None:
            return response
        return await self.generator.completion(request.prompt, request.model, request.n)

    async def chat_completion(self, request: ChatCompletionRequest) -> dict[str, Any]:
        self.faults.raise_if_active()
        response = await self._forward('chat/completions', lambda c: c.chat_completion(request))
        if response is not None:
            return response
        return await self.generator.chat_completion(
            request.messages, request.model, request.tools, request.n
        )

    async def embeddings(self, request: EmbeddingRequest) -> dict[str, Any]:
        self.faults.raise_if_active()
        response = await self._forward('embeddings', lambda c: c.embeddings(request))
        if response is not None:
            return response
        return await self.generator.embeddings(request.input, request.model, request.dimensions)

    def stream_completion(
        self,
        request: CompletionRequest,
        callbacks: StreamCallbacks,
        on_disconnect: Callable[[], None] | None = None,
    ) -> ChannelSink:
        self.faults.raise_if_active()
        sink = ChannelSink(on_disconnect=on_disconnect)
        self._spawn(self._produce_completion(request, sink, callbacks), sink, callbacks)
        return sink

    def stream_chat_completion(
        self,
        request: ChatCompletionRequest,
        callbacks: StreamCallbacks,
        on_disconnect: Callable[[], None] | None = None,
    ) -> ChannelSink:
        self.faults.raise_if_active()
        sink = ChannelSink(on_disconnect=on_disconnect)
        self._spawn(self._produce_chat(request, sink, callbacks), sink, callbacks)
        return sink

    def _spawn(
        self,
        producer: Coroutine[Any, Any, None],
        sink: ChannelSink,
        callbacks: StreamCallbacks,
    ) -> None:
        async def run() -> None:
            try:
                await producer
            except Exception as e:
                logger.exception("Stream producer failed")
                callbacks.error(e)
            finally:
                await sink.close()

        task = asyncio.create_task(run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _produce_completion(
        self, request: CompletionRequest, sink: ChannelSink, callbacks: StreamCallbacks
    ) -> None:
        prompt_tokens = count_prompt(request.prompt)
        # upstream answers in one piece; it is replayed word by word
        response = await self._forward('completions', lambda c: c.completion(request))
        if response is not None:
            choices = response.get("choices") or [{}]
            text = choices[0].get("text") or ""
            await self.emitter.emit_completion(
                sink,
                split_words(text),
                model=response["model"],
                prompt_tokens=prompt_tokens,
                callbacks=callbacks,
                stream_id=response["id"],
                created=response["created"],
            )
            return
        await self.emitter.emit_completion(
            sink,
            COMPLETION_STREAM_TOKENS,
            model=request.model or DEFAULT_MODEL,
            prompt_tokens=prompt_tokens,
            callbacks=callbacks,
        )

    async def _produce_chat(
        self, request: ChatCompletionRequest, sink: ChannelSink, callbacks: StreamCallbacks
    ) -> None:
        prompt_tokens = count_messages(request.messages)
        if self.passthrough.is_enabled():
            client = self._client()
            model = client.effective_model(request)

            def finished(content: str, tool_calls: list[ToolCall]) -> None:
                callbacks.complete(
                    StreamResult(
                        content=content,
                        usage=Usage(prompt_tokens, count_tokens(content)),
                        model=model,
                        tool_calls=tool_calls,
                    )
                )

            match await attempt(client.stream_chat(request, sink, callbacks.chunk, finished)):
                case Ok():
                    passthrough_attempts_total.labels(
                        endpoint='chat/completions', outcome='ok'
                    ).inc()
                    return
                case Failed(reason):
                    self._fell_back('chat/completions', reason)
        await self.emitter.emit_chat(
            sink,
            CHAT_STREAM_TOKENS,
            model=request.model or DEFAULT_MODEL,
            prompt_tokens=prompt_tokens,
            callbacks=callbacks,
        )

    async def shutdown(self) -> None:
        """Cancel producers still running, e.g. streams nobody is reading."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
