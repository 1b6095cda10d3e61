"""
Fake OpenAI-style responses that need no upstream model.

Used directly when passthrough is off, and as the fallback when it fails.
"""

from .generator import (
    CHAT_STREAM_TOKENS,
    COMPLETION_STREAM_TOKENS,
    COMPLETION_TEXT,
    MODEL_CATALOG,
    FakeResponseGenerator,
    chat_reply,
    normalized_vector,
)

__all__ = [
    "CHAT_STREAM_TOKENS",
    "COMPLETION_STREAM_TOKENS",
    "COMPLETION_TEXT",
    "MODEL_CATALOG",
    "FakeResponseGenerator",
    "chat_reply",
    "normalized_vector",
]
