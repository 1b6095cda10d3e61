import asyncio
import math
import random
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from inference.tokens import count_input, count_messages, count_prompt, count_tokens, message_text
from inference.types import (
    DEFAULT_EMBEDDING_DIMENSIONS,
    DEFAULT_EMBEDDING_MODEL,
    DEFAULT_MODEL,
    Usage,
    fresh_id,
    now,
)

COMPLETION_TEXT = ' or through inaction allow a human being to come to harm.'

COMPLETION_STREAM_TOKENS = (
    'or', ' through', ' inaction', ' allow', ' a', ' human', ' being', ' to', ' come', ' to',
    ' harm', '.',
)  # fmt: skip

CHAT_STREAM_TOKENS = (
    'This', ' is', ' a', ' fake', ' streaming', ' chat', ' completion', ' response', '.',
)  # fmt: skip

WEATHER_REPLY = 'Based on the current data, the weather is sunny with a temperature of 22°C.'
GREETING_REPLY = 'Hello! How can I assist you today?'
HELP_REPLY = "I'm here to help! What would you like to know?"
EMPTY_CONVERSATION_REPLY = 'Hello! How can I help you today?'
FALLBACK_REPLY = 'This is a fake response generated by the vLLM fake server for testing purposes.'

# (substrings, reply) checked in order against the last message, first match wins
CHAT_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (('weather',), WEATHER_REPLY),
    (('hello', 'hi'), GREETING_REPLY),
    (('help',), HELP_REPLY),
)


@dataclass(frozen=True)
class ModelCard:
    id: str
    max_model_len: int
    owned_by: str = 'fake-vllm'

    def to_dict(self, created: int) -> dict[str, Any]:
        return {
            "id": self.id,
            "object": "model",
            "created": created,
            "owned_by": self.owned_by,
            "root": self.id,
            "parent": None,
            "max_model_len": self.max_model_len,
            "permission": [],
        }


MODEL_CATALOG: tuple[ModelCard, ...] = (
    ModelCard('fake-llama-3-8b', 8192),
    ModelCard('fake-mistral-7b', 32768),
    ModelCard('fake-e5-embeddings', 512),
)


def chat_reply(messages: Sequence[Mapping[str, Any]], tool_names: Sequence[str] = ()) -> str:
    if not messages:
        return EMPTY_CONVERSATION_REPLY
    content = message_text(messages[-1].get("content")).lower()
    for needles, reply in CHAT_RULES:
        if any(needle in content for needle in needles):
            return reply
    if tool_names:
        return f"I can help you with that using available tools: {', '.join(tool_names)}."
    return FALLBACK_REPLY


def normalized_vector(dimensions: int, rng: random.Random | None = None) -> list[float]:
    """Uniform(-1, 1) components scaled to unit length; an all-zero draw is redrawn."""
    rng = rng or random.Random()
    while True:
        vector = [rng.uniform(-1.0, 1.0) for _ in range(dimensions)]
        magnitude = math.sqrt(sum(v * v for v in vector))
        if magnitude > 0.0:
            return [v / magnitude for v in vector]


class FakeResponseGenerator:
    """Canned responses that need no upstream. Each call sleeps `latency` seconds first."""

    latency: float

    def __init__(self, latency: float = 0.1, rng: random.Random | None = None):
        self.latency = latency
        self._rng = rng or random.Random()

    async def _simulate_latency(self) -> None:
        await asyncio.sleep(self.latency)

    async def models(self) -> dict[str, Any]:
        await self._simulate_latency()
        created = now()
        return {"object": "list", "data": [card.to_dict(created) for card in MODEL_CATALOG]}

    async def completion(self, prompt: Any, model: str | None = None, n: int = 1) -> dict[str, Any]:
        await self._simulate_latency()
        usage = Usage(count_prompt(prompt), count_tokens(COMPLETION_TEXT))
        return {
            "id": fresh_id("cmpl"),
            "object": "text_completion",
            "created": now(),
            "model": model or DEFAULT_MODEL,
            "choices": [
                {
                    "index": i,
                    "text": COMPLETION_TEXT,
                    "logprobs": None,
                    "finish_reason": "stop",
                    "stop_reason": None,
                }
                for i in range(n)
            ],
            "usage": usage.to_dict(),
        }

    async def chat_completion(
        self,
        messages: Sequence[Mapping[str, Any]],
        model: str | None = None,
        tools: Sequence[Mapping[str, Any]] = (),
        n: int = 1,
    ) -> dict[str, Any]:
        await self._simulate_latency()
        tool_names = [(t.get("function") or {}).get("name", "") for t in tools]
        content = chat_reply(messages, tool_names)
        usage = Usage(count_messages(messages), count_tokens(content))
        return {
            "id": fresh_id("chatcmpl"),
            "object": "chat.completion",
            "created": now(),
            "model": model or DEFAULT_MODEL,
            "choices": [
                {
                    "index": i,
                    "message": {"role": "assistant", "content": content},
                    "logprobs": None,
                    "finish_reason": "stop",
                }
                for i in range(n)
            ],
            "usage": usage.to_dict(),
        }

    async def embeddings(
        self,
        input: Any,
        model: str | None = None,
        dimensions: int = DEFAULT_EMBEDDING_DIMENSIONS,
    ) -> dict[str, Any]:
        await self._simulate_latency()
        inputs = input if isinstance(input, list) else [input]
        prompt_tokens = sum(count_input(item) for item in inputs)
        return {
            "id": fresh_id("embd"),
            "object": "list",
            "created": now(),
            "model": model or DEFAULT_EMBEDDING_MODEL,
            "data": [
                {
                    "index": i,
                    "object": "embedding",
                    "embedding": normalized_vector(dimensions, self._rng),
                }
                for i in range(len(inputs))
            ],
            "usage": Usage(prompt_tokens).to_dict(completion=False),
        }
