import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar, Literal

__all__ = [
    'ChatCompletionRequest',
    'CompletionRequest',
    'EmbeddingRequest',
    'GenerationRequest',
    'InvalidRequestError',
    'ToolCall',
    'Usage',
    'fresh_id',
    'now',
]

DEFAULT_MODEL = 'fake-llama-3-8b'
DEFAULT_EMBEDDING_MODEL = 'fake-e5-embeddings'
DEFAULT_EMBEDDING_DIMENSIONS = 768

type RequestKind = Literal['completion', 'chat', 'embedding']


class InvalidRequestError(ValueError):
    """The request body does not have the shape its endpoint requires."""


def fresh_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4()}"


def now() -> int:
    return int(time.time())


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    def __post_init__(self):
        object.__setattr__(self, 'prompt_tokens', max(0, int(self.prompt_tokens)))
        object.__setattr__(self, 'completion_tokens', max(0, int(self.completion_tokens)))

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self, *, completion: bool = True) -> dict[str, int]:
        if not completion:
            return {"prompt_tokens": self.prompt_tokens, "total_tokens": self.total_tokens}
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> 'Usage':
        if not data:
            return cls()
        prompt = data.get("prompt_tokens") or 0
        completion = data.get("completion_tokens")
        if completion is None:
            completion = (data.get("total_tokens") or prompt) - prompt
        return cls(prompt_tokens=prompt, completion_tokens=completion)


@dataclass
class ToolCall:
    """A tool call reassembled from streamed fragments."""

    id: str = ""
    type: str = "function"
    name: str = ""
    arguments: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.name, "arguments": self.arguments},
        }


def _model(body: Mapping[str, Any]) -> str | None:
    model = body.get("model")
    if model is not None and not isinstance(model, str):
        raise InvalidRequestError("'model' must be a string")
    return model or None


def _n(body: Mapping[str, Any]) -> int:
    n = body.get("n", 1)
    if n is None:
        return 1
    if isinstance(n, bool) or not isinstance(n, int) or n < 1:
        raise InvalidRequestError("'n' must be a positive integer")
    return n


def _stream(body: Mapping[str, Any]) -> bool:
    stream = body.get("stream", False)
    if stream is None:
        return False
    if not isinstance(stream, bool):
        raise InvalidRequestError("'stream' must be a boolean")
    return stream


@dataclass(frozen=True)
class CompletionRequest:
    kind: ClassVar[RequestKind] = 'completion'

    prompt: Any = None
    model: str | None = None
    n: int = 1
    stream: bool = False
    body: Mapping[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> 'CompletionRequest':
        prompt = body.get("prompt")
        if prompt is not None and not isinstance(prompt, (str, list)):
            raise InvalidRequestError("'prompt' must be a string or an array")
        return cls(
            prompt=prompt,
            model=_model(body),
            n=_n(body),
            stream=_stream(body),
            body=dict(body),
        )


@dataclass(frozen=True)
class ChatCompletionRequest:
    kind: ClassVar[RequestKind] = 'chat'

    messages: tuple[Mapping[str, Any], ...] = ()
    model: str | None = None
    tools: tuple[Mapping[str, Any], ...] = ()
    n: int = 1
    stream: bool = False
    body: Mapping[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> 'ChatCompletionRequest':
        messages = body.get("messages")
        if not isinstance(messages, list) or not all(isinstance(m, Mapping) for m in messages):
            raise InvalidRequestError("'messages' must be an array of message objects")
        tools = body.get("tools") or []
        if not isinstance(tools, list):
            raise InvalidRequestError("'tools' must be an array")
        return cls(
            messages=tuple(messages),
            model=_model(body),
            tools=tuple(t for t in tools if isinstance(t, Mapping)),
            n=_n(body),
            stream=_stream(body),
            body=dict(body),
        )

    def tool_names(self) -> list[str]:
        return [(t.get("function") or {}).get("name", "") for t in self.tools]


@dataclass(frozen=True)
class EmbeddingRequest:
    kind: ClassVar[RequestKind] = 'embedding'

    input: Any = None
    model: str | None = None
    dimensions: int = DEFAULT_EMBEDDING_DIMENSIONS
    body: Mapping[str, Any] = field(default_factory=dict, repr=False)

    stream: ClassVar[bool] = False

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> 'EmbeddingRequest':
        if "input" not in body or body["input"] is None:
            raise InvalidRequestError("'input' is required")
        dimensions = body.get("dimensions")
        if dimensions is None:
            dimensions = DEFAULT_EMBEDDING_DIMENSIONS
        if isinstance(dimensions, bool) or not isinstance(dimensions, int) or dimensions < 1:
            raise InvalidRequestError("'dimensions' must be a positive integer")
        return cls(
            input=body["input"],
            model=_model(body),
            dimensions=dimensions,
            body=dict(body),
        )

    def inputs(self) -> list[Any]:
        return list(self.input) if isinstance(self.input, list) else [self.input]


type GenerationRequest = CompletionRequest | ChatCompletionRequest | EmbeddingRequest
