from .config import PassthroughConfig, PassthroughManager
from .endpoint import PassthroughClient, PassthroughError, StreamAccumulator, ToolCallAccumulator
from .types import (
    ChatCompletionRequest,
    CompletionRequest,
    EmbeddingRequest,
    GenerationRequest,
    InvalidRequestError,
    ToolCall,
    Usage,
)

__all__ = [
    "ChatCompletionRequest",
    "CompletionRequest",
    "EmbeddingRequest",
    "GenerationRequest",
    "InvalidRequestError",
    "PassthroughClient",
    "PassthroughConfig",
    "PassthroughError",
    "PassthroughManager",
    "StreamAccumulator",
    "ToolCall",
    "ToolCallAccumulator",
    "Usage",
]
