from .dispatcher import Attempt, Dispatcher, Failed, Ok, attempt
from .streaming import (
    DONE_FRAME,
    ChannelSink,
    ResponseSink,
    StreamCallbacks,
    StreamEmitter,
    StreamResult,
    split_words,
    sse_frame,
)

__all__ = [
    "Attempt",
    "ChannelSink",
    "DONE_FRAME",
    "Dispatcher",
    "Failed",
    "Ok",
    "ResponseSink",
    "StreamCallbacks",
    "StreamEmitter",
    "StreamResult",
    "attempt",
    "split_words",
    "sse_frame",
]
