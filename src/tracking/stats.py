import time
from collections import deque
from collections.abc import Callable
from typing import Any, Literal

type StatCategory = Literal[
    'completions', 'chat_completions', 'embeddings', 'models', 'errors', 'simulated_faults'
]

STAT_CATEGORIES: tuple[StatCategory, ...] = (
    'completions',
    'chat_completions',
    'embeddings',
    'models',
    'errors',
    'simulated_faults',
)

RATE_WINDOW_SECONDS = 60.0
LATENCY_WINDOW = 100


class StatsAggregate:
    """
    Running counters for the dashboard.

    Requests-per-minute counts arrivals within the last 60 seconds; the timestamps
    are kept in arrival order so pruning only ever pops from the left. The average
    response time covers the last 100 recorded latencies.
    """

    total_requests: int
    counters: dict[StatCategory, int]
    total_prompt_tokens: int
    total_completion_tokens: int
    requests_per_minute: int
    avg_response_time: float
    start_time: float

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        window_seconds: float = RATE_WINDOW_SECONDS,
        latency_window: int = LATENCY_WINDOW,
    ):
        self._clock = clock
        self._window_seconds = window_seconds
        self._latency_window = latency_window
        self.reset()

    def reset(self) -> None:
        self.total_requests = 0
        self.counters = {category: 0 for category in STAT_CATEGORIES}
        self.total_prompt_tokens = 0
        self.total_completion_tokens = 0
        self.requests_per_minute = 0
        self.avg_response_time = 0.0
        self.start_time = self._clock()
        self._request_times: deque[float] = deque()
        self._latencies: deque[float] = deque(maxlen=self._latency_window)
        self._latency_sum = 0.0

    def increment(self, category: StatCategory) -> None:
        self.counters[category] += 1

    def record_request(self) -> None:
        now = self._clock()
        self.total_requests += 1
        self._request_times.append(now)
        self._prune(now)

    def _prune(self, now: float) -> None:
        cutoff = now - self._window_seconds
        while self._request_times and self._request_times[0] <= cutoff:
            self._request_times.popleft()
        self.requests_per_minute = len(self._request_times)

    def add_tokens(self, prompt_tokens: int, completion_tokens: int) -> None:
        self.total_prompt_tokens += max(0, prompt_tokens)
        self.total_completion_tokens += max(0, completion_tokens)

    @property
    def total_tokens(self) -> int:
        return self.total_prompt_tokens + self.total_completion_tokens

    def add_response_time(self, elapsed_ms: float) -> None:
        if len(self._latencies) == self._latencies.maxlen:
            self._latency_sum -= self._latencies[0]
        self._latencies.append(elapsed_ms)
        self._latency_sum += elapsed_ms
        self.avg_response_time = self._latency_sum / len(self._latencies)

    @property
    def uptime(self) -> float:
        return self._clock() - self.start_time

    def snapshot(self) -> dict[str, Any]:
        self._prune(self._clock())
        return {
            "total_requests": self.total_requests,
            **self.counters,
            "total_prompt_tokens": self.total_prompt_tokens,
            "total_completion_tokens": self.total_completion_tokens,
            "total_tokens": self.total_tokens,
            "avg_response_time": round(self.avg_response_time, 2),
            "requests_per_minute": self.requests_per_minute,
            "start_time": self.start_time,
            "uptime": int(self.uptime),
        }
