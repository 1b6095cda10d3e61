import json
from collections.abc import AsyncIterator, Callable
from os import getenv
from typing import Any

import httpx
import pytest
import pytest_asyncio
from litestar.testing import AsyncTestClient

from application.main import LLMDoctor
from inference.config import PassthroughConfig

UPSTREAM_URL = "https://upstream.test/v1"


class RecordingSink:
    """In-memory response sink; optionally reports itself closed after `open_for` writes."""

    def __init__(self, open_for: int | None = None):
        self.chunks: list[bytes] = []
        self.headers: dict[str, str] = {}
        self.closed = False
        self.close_calls = 0
        self._open_for = open_for

    @property
    def is_open(self) -> bool:
        if self.closed:
            return False
        return self._open_for is None or len(self.chunks) < self._open_for

    def set_header(self, name: str, value: str) -> None:
        self.headers[name] = value

    async def write(self, data: bytes) -> None:
        if self.is_open:
            self.chunks.append(data)

    async def close(self) -> None:
        self.close_calls += 1
        self.closed = True

    @property
    def body(self) -> bytes:
        return b"".join(self.chunks)


def parse_sse(body: bytes | str) -> tuple[list[dict[str, Any]], bool]:
    """Split an event-stream body into its JSON payloads and whether it ended with [DONE]."""
    text = body.decode() if isinstance(body, bytes) else body
    payloads = []
    done = False
    for block in text.split("\n\n"):
        if not block.startswith("data: "):
            continue
        data = block[len("data: ") :]
        if data == "[DONE]":
            done = True
        else:
            payloads.append(json.loads(data))
    return payloads, done


@pytest.fixture()
def make_sink() -> Callable[..., RecordingSink]:
    return RecordingSink


@pytest.fixture()
def events() -> Callable[[bytes | str], tuple[list[dict[str, Any]], bool]]:
    return parse_sse


@pytest.fixture()
def upstream_config() -> PassthroughConfig:
    return PassthroughConfig(enabled=True, api_key="sk-test", base_url=UPSTREAM_URL, timeout=5.0)


@pytest.fixture()
def make_server() -> Callable[..., LLMDoctor]:
    def _make(passthrough: PassthroughConfig | None = None, **kwargs: Any) -> LLMDoctor:
        kwargs.setdefault("stream_delay", 0.0)
        kwargs.setdefault("fake_latency", 0.0)
        kwargs.setdefault("log_to_console", False)
        return LLMDoctor(passthrough=passthrough or PassthroughConfig(), **kwargs)

    return _make


@pytest.fixture()
def server(make_server) -> LLMDoctor:
    return make_server()


@pytest_asyncio.fixture
async def client(server: LLMDoctor) -> AsyncIterator[AsyncTestClient]:
    async with AsyncTestClient(app=server.app) as client:
        yield client


@pytest_asyncio.fixture
async def http() -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient() as client:
        yield client


@pytest.fixture(autouse=True)
def auto_timeout(request):
    timeout_seconds = int(getenv("PYTEST_TIMEOUT", "30"))
    if timeout_seconds > 0 and getenv("DISABLE_TEST_TIMEOUT") != '1':
        request.node.add_marker(pytest.mark.timeout(timeout_seconds))
