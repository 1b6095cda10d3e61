from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from inference.types import ToolCall, Usage

type EntryStatus = Literal['pending', 'streaming', 'completed', 'aborted']


@dataclass(frozen=True)
class ResponseRecord:
    """What the tracker keeps of a response."""

    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    finish_reason: str | None = None
    model: str | None = None
    usage: Usage | None = None
    status_code: int = 200
    streaming: bool = False

    @classmethod
    def stream_started(cls) -> 'ResponseRecord':
        return cls(streaming=True)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], status_code: int = 200) -> 'ResponseRecord':
        """Summarize a unary completion, chat or embeddings response body."""
        choices = payload.get("choices") or []
        first = choices[0] if choices and isinstance(choices[0], Mapping) else {}
        message = first.get("message") or {}
        content = message.get("content") if message else first.get("text")
        return cls(
            content=content or "",
            tool_calls=tuple(_tool_call(tc) for tc in message.get("tool_calls") or ()),
            finish_reason=first.get("finish_reason"),
            model=payload.get("model"),
            usage=Usage.from_dict(payload.get("usage")),
            status_code=status_code,
        )

    @classmethod
    def failure(cls, message: str, status_code: int) -> 'ResponseRecord':
        return cls(content=message, finish_reason="error", status_code=status_code)


def _tool_call(data: Mapping[str, Any]) -> ToolCall:
    function = data.get("function") or {}
    return ToolCall(
        id=data.get("id") or "",
        type=data.get("type") or "function",
        name=function.get("name") or "",
        arguments=function.get("arguments") or "",
    )


@dataclass
class RequestLogEntry:
    id: str
    arrived_at: datetime
    endpoint: str
    method: str
    body: dict[str, Any]
    headers: dict[str, str]
    started_at: float = field(repr=False, default=0.0)
    response: ResponseRecord | None = None
    streaming_content: str | None = None
    streaming: bool = False
    elapsed_ms: float | None = None
    tokens_in: int = 0
    tokens_out: int = 0
    aborted: bool = False

    @property
    def tokens(self) -> int:
        return self.tokens_in + self.tokens_out

    @property
    def status(self) -> EntryStatus:
        if self.aborted:
            return 'aborted'
        if self.response is not None:
            return 'completed'
        if self.streaming:
            return 'streaming'
        return 'pending'

    @property
    def timestamp(self) -> str:
        return self.arrived_at.strftime("%H:%M:%S.%f")[:-3]

    def to_json(self) -> dict[str, Any]:
        response = self.response
        return {
            "id": self.id,
            "timestamp": self.arrived_at.isoformat(),
            "endpoint": self.endpoint,
            "method": self.method,
            "status": self.status,
            "body": self.body,
            "headers": self.headers,
            "streaming_content": self.streaming_content,
            "elapsed_ms": self.elapsed_ms,
            "tokens_in": self.tokens_in,
            "tokens_out": self.tokens_out,
            "tokens": self.tokens,
            "aborted": self.aborted,
            "response": None
            if response is None
            else {
                "content": response.content,
                "tool_calls": [tc.to_dict() for tc in response.tool_calls],
                "finish_reason": response.finish_reason,
                "model": response.model,
                "usage": response.usage.to_dict() if response.usage else None,
                "status_code": response.status_code,
            },
        }
