import time
import uuid
from collections import deque
from collections.abc import Callable, Iterator, Mapping
from datetime import datetime
from logging import getLogger
from typing import Any

from .entries import RequestLogEntry, ResponseRecord
from .stats import StatsAggregate

logger = getLogger(__name__)

DEFAULT_HISTORY_SIZE = 100


class RequestTracker:
    """
    Owns every request's lifecycle entry.

    An entry sits in the pending map from `begin` until it is finalized by
    `record_response` or `mark_aborted`; history keeps the last `capacity`
    entries in arrival order whatever their state. Nothing else writes to an
    entry: request handling reports back through these methods only.
    """

    stats: StatsAggregate
    capacity: int
    _history: deque[RequestLogEntry]
    _pending: dict[str, RequestLogEntry]

    def __init__(
        self,
        stats: StatsAggregate,
        capacity: int = DEFAULT_HISTORY_SIZE,
        timer: Callable[[], float] = time.perf_counter,
    ):
        if capacity < 1:
            raise ValueError(f"History capacity must be positive, got {capacity}")
        self.stats = stats
        self.capacity = capacity
        self._timer = timer
        self._history = deque(maxlen=capacity)
        self._pending = {}

    def begin(
        self,
        endpoint: str,
        method: str,
        body: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> str:
        request_id = uuid.uuid4().hex
        entry = RequestLogEntry(
            id=request_id,
            arrived_at=datetime.now(),
            endpoint=endpoint,
            method=method,
            body=dict(body or {}),
            headers=dict(headers or {}),
            started_at=self._timer(),
        )
        self._pending[request_id] = entry
        # deque(maxlen) drops the oldest entry on overflow
        self._history.append(entry)
        self.stats.record_request()
        return request_id

    def record_response(self, request_id: str, response: ResponseRecord) -> None:
        entry = self._pending.get(request_id)
        if entry is None:
            logger.debug("Response for unknown or finalized request %s ignored", request_id)
            return
        if response.streaming:
            entry.streaming = True
            return

        entry.response = response
        entry.elapsed_ms = (self._timer() - entry.started_at) * 1000
        if response.usage is not None:
            entry.tokens_in = response.usage.prompt_tokens
            entry.tokens_out = response.usage.completion_tokens
            self.stats.add_tokens(entry.tokens_in, entry.tokens_out)
        self.stats.add_response_time(entry.elapsed_ms)
        entry.streaming_content = None
        entry.streaming = False
        del self._pending[request_id]

    def append_stream_chunk(self, request_id: str, text: str) -> None:
        entry = self._pending.get(request_id)
        if entry is None:
            return
        entry.streaming_content = (entry.streaming_content or "") + text

    def mark_aborted(self, request_id: str) -> bool:
        """Abort a request that has no response yet; a completed request stays completed."""
        entry = self._pending.get(request_id)
        if entry is None or entry.response is not None:
            return False
        entry.aborted = True
        entry.elapsed_ms = (self._timer() - entry.started_at) * 1000
        del self._pending[request_id]
        logger.info("Request %s %s aborted by client", entry.method, entry.endpoint)
        return True

    def get(self, request_id: str) -> RequestLogEntry | None:
        entry = self._pending.get(request_id)
        if entry is not None:
            return entry
        return next((e for e in self._history if e.id == request_id), None)

    def history(self) -> list[RequestLogEntry]:
        return list(self._history)

    def __iter__(self) -> Iterator[RequestLogEntry]:
        return iter(self.history())

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def clear(self) -> None:
        self._history.clear()
        self._pending.clear()
