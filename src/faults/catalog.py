from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any


class ErrorKind(StrEnum):
    NONE = 'none'
    SAFETY_CONTENT_FILTER = 'safety_content_filter'
    RATE_LIMIT = 'rate_limit'
    MODEL_OVERLOADED = 'model_overloaded'
    TIMEOUT = 'timeout'
    INVALID_REQUEST = 'invalid_request'
    AUTHENTICATION_ERROR = 'authentication_error'
    CONTEXT_LENGTH_EXCEEDED = 'context_length_exceeded'


@dataclass(frozen=True)
class ErrorCatalogEntry:
    kind: ErrorKind
    http_status: int
    error_code: str
    message: str
    details: Mapping[str, Any] = field(default_factory=dict)

    def body(self) -> dict[str, Any]:
        return {
            "error": {
                "message": self.message,
                "type": self.error_code,
                "code": self.error_code,
                **self.details,
            }
        }


def _entry(kind: ErrorKind, status: int, code: str, message: str, /, **details: Any):
    return kind, ErrorCatalogEntry(kind, status, code, message, MappingProxyType(details))


ERROR_CATALOG: Mapping[ErrorKind, ErrorCatalogEntry] = MappingProxyType(
    dict(
        [
            _entry(
                ErrorKind.SAFETY_CONTENT_FILTER,
                400,
                'content_filter',
                "The response was filtered due to the prompt triggering Azure OpenAI's content "
                "management policy. Please modify your prompt and retry.",
                error_type='content_policy_violation',
                filter_result={
                    'hate': {'filtered': False, 'severity': 'safe'},
                    'self_harm': {'filtered': False, 'severity': 'safe'},
                    'sexual': {'filtered': False, 'severity': 'safe'},
                    'violence': {'filtered': True, 'severity': 'high'},
                },
            ),
            _entry(
                ErrorKind.RATE_LIMIT,
                429,
                'rate_limit_exceeded',
                'Rate limit reached for requests. Please retry after a short wait.',
                retry_after=60,
                limit='100 requests per minute',
            ),
            _entry(
                ErrorKind.MODEL_OVERLOADED,
                503,
                'model_overloaded',
                'The model is currently overloaded with requests. Please try again later.',
                model_status='overloaded',
                estimated_wait_time='30 seconds',
            ),
            _entry(
                ErrorKind.TIMEOUT,
                504,
                'timeout',
                'The request timed out. The model took too long to respond.',
                timeout_duration='30s',
            ),
            _entry(
                ErrorKind.INVALID_REQUEST,
                400,
                'invalid_request_error',
                'Invalid request: The model parameter is not supported or the messages format '
                'is incorrect.',
                param='model',
                suggestion='Please check the API documentation for valid parameters.',
            ),
            _entry(
                ErrorKind.AUTHENTICATION_ERROR,
                401,
                'invalid_api_key',
                'Incorrect API key provided. Please check your API key and try again.',
            ),
            _entry(
                ErrorKind.CONTEXT_LENGTH_EXCEEDED,
                400,
                'context_length_exceeded',
                "This model's maximum context length is 8192 tokens. However, your messages "
                "resulted in 10234 tokens.",
                max_tokens=8192,
                requested_tokens=10234,
                suggestion='Please reduce the length of the messages.',
            ),
        ]
    )
)

DISPLAY_NAMES: Mapping[ErrorKind, str] = MappingProxyType(
    {
        ErrorKind.NONE: 'None',
        ErrorKind.SAFETY_CONTENT_FILTER: 'Safety Content Filter (Microsoft/Azure)',
        ErrorKind.RATE_LIMIT: 'Rate Limit Exceeded',
        ErrorKind.MODEL_OVERLOADED: 'Model Overloaded',
        ErrorKind.TIMEOUT: 'Request Timeout',
        ErrorKind.INVALID_REQUEST: 'Invalid Request Error',
        ErrorKind.AUTHENTICATION_ERROR: 'Authentication Error',
        ErrorKind.CONTEXT_LENGTH_EXCEEDED: 'Context Length Exceeded',
    }
)


def error_response_for(kind: ErrorKind) -> tuple[int, dict[str, Any]] | None:
    entry = ERROR_CATALOG.get(kind)
    if entry is None:
        return None
    return entry.http_status, entry.body()
