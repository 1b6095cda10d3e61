from .entries import RequestLogEntry, ResponseRecord
from .stats import STAT_CATEGORIES, StatCategory, StatsAggregate
from .tracker import DEFAULT_HISTORY_SIZE, RequestTracker

__all__ = [
    "DEFAULT_HISTORY_SIZE",
    "RequestLogEntry",
    "RequestTracker",
    "ResponseRecord",
    "STAT_CATEGORIES",
    "StatCategory",
    "StatsAggregate",
]
