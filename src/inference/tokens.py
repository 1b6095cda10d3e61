"""Approximate token counting.

No tokenizer is involved: one token is taken to be four characters, rounded up.
"""

import math
from collections.abc import Iterable, Mapping
from typing import Any

CHARS_PER_TOKEN = 4


def count_tokens(text: str | None) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def count_input(value: Any) -> int:
    """Token count for an embedding input item: strings are counted, sequences by length."""
    if isinstance(value, str):
        return count_tokens(value)
    if isinstance(value, (list, tuple)):
        return len(value)
    return 1


def count_prompt(prompt: Any) -> int:
    """Token count for a completion prompt (a string, strings, or pre-tokenized ids)."""
    if prompt is None:
        return 0
    if isinstance(prompt, str):
        return count_tokens(prompt)
    if isinstance(prompt, (list, tuple)):
        return sum(count_tokens(p) if isinstance(p, str) else count_input(p) for p in prompt)
    return 1


def message_text(content: Any) -> str:
    # content parts: [{"type": "text", "text": ...}, {"type": "image_url", ...}]
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, Iterable):
        return "".join(
            part.get("text") or ""
            for part in content
            if isinstance(part, Mapping) and part.get("type", "text") == "text"
        )
    return str(content)


def count_messages(messages: Iterable[Mapping[str, Any]]) -> int:
    return sum(count_tokens(message_text(m.get("content"))) for m in messages)
