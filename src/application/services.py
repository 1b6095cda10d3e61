from dataclasses import dataclass
from logging import getLogger

import httpx

from application.defaults import DEFAULT_FAKE_LATENCY, DEFAULT_MAX_HISTORY, DEFAULT_STREAM_DELAY
from dispatch import Dispatcher, StreamEmitter
from faults import ErrorSimulator
from inference.config import PassthroughConfig, PassthroughManager
from inference.mock import FakeResponseGenerator
from tracking import RequestTracker, StatsAggregate

logger = getLogger(__name__)


@dataclass
class Doctor:
    """
    The process-wide services, built once at startup and shared by the HTTP
    handlers and the dashboard. Stored on the Litestar app as `app.state.doctor`.
    """

    stats: StatsAggregate
    tracker: RequestTracker
    faults: ErrorSimulator
    passthrough: PassthroughManager
    dispatcher: Dispatcher

    @classmethod
    def build(
        cls,
        *,
        max_history: int = DEFAULT_MAX_HISTORY,
        stream_delay: float = DEFAULT_STREAM_DELAY,
        fake_latency: float = DEFAULT_FAKE_LATENCY,
        passthrough: PassthroughConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> 'Doctor':
        stats = StatsAggregate()
        faults = ErrorSimulator()
        manager = PassthroughManager(passthrough)
        dispatcher = Dispatcher(
            faults=faults,
            passthrough=manager,
            generator=FakeResponseGenerator(latency=fake_latency),
            emitter=StreamEmitter(delay=stream_delay),
            http_client=http_client,
        )
        return cls(
            stats=stats,
            tracker=RequestTracker(stats, capacity=max_history),
            faults=faults,
            passthrough=manager,
            dispatcher=dispatcher,
        )

    def clear(self) -> None:
        """Forget the request history and start the counters over."""
        self.tracker.clear()
        self.stats.reset()
        logger.info("History and stats cleared")
