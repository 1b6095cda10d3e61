import logging
import sys
from collections.abc import Callable
from typing import Any

from litestar import Request, Response, delete, get, post, put
from litestar.exceptions import HTTPException, SerializationException
from litestar.handlers import BaseRouteHandler
from litestar.response import Stream

from application.metrics import (
    get_metrics,
    requests_total,
    simulated_faults_total,
    stream_aborts_total,
    tokens_total,
)
from application.services import Doctor
from dispatch import ChannelSink, StreamCallbacks, StreamResult
from faults import ErrorSimulator, SimulatedFaultError
from inference.types import (
    ChatCompletionRequest,
    CompletionRequest,
    EmbeddingRequest,
    InvalidRequestError,
)
from tracking import ResponseRecord, StatCategory

logger = logging.getLogger(__name__)

type OpenStream = Callable[[StreamCallbacks, Callable[[], None]], ChannelSink]


def _doctor(request: Request) -> Doctor:
    return request.app.state.doctor


def _track(request: Request, endpoint: str, category: StatCategory, body: dict[str, Any]) -> str:
    doctor = _doctor(request)
    request_id = doctor.tracker.begin(endpoint, request.method, body, dict(request.headers))
    # exception handlers find the entry through the request state
    request.state.request_id = request_id
    doctor.stats.increment(category)
    requests_total.labels(endpoint=endpoint).inc()
    return request_id


def _finish(doctor: Doctor, request_id: str, record: ResponseRecord) -> None:
    doctor.tracker.record_response(request_id, record)
    if record.usage is not None:
        tokens_total.labels(direction='prompt').inc(record.usage.prompt_tokens)
        tokens_total.labels(direction='completion').inc(record.usage.completion_tokens)


def _stream(doctor: Doctor, request_id: str, open_stream: OpenStream) -> Stream:
    def on_chunk(text: str) -> None:
        doctor.tracker.append_stream_chunk(request_id, text)

    def on_complete(result: StreamResult) -> None:
        record = ResponseRecord(
            content=result.content,
            tool_calls=tuple(result.tool_calls),
            finish_reason=result.finish_reason,
            model=result.model,
            usage=result.usage,
        )
        _finish(doctor, request_id, record)

    def on_error(exc: Exception) -> None:
        doctor.stats.increment('errors')
        _finish(doctor, request_id, ResponseRecord.failure("Internal server error", 500))

    def on_disconnect() -> None:
        if doctor.tracker.mark_aborted(request_id):
            stream_aborts_total.inc()

    sink = open_stream(StreamCallbacks(on_chunk, on_complete, on_error), on_disconnect)
    doctor.tracker.record_response(request_id, ResponseRecord.stream_started())
    return Stream(content=sink.drain(), media_type="text/event-stream", headers=sink.headers)


@get("/health")
async def health(request: Request) -> dict[str, str | int]:
    return {"status": "healthy", "uptime": int(_doctor(request).stats.uptime)}


@get("/metrics")
async def metrics() -> Response:
    """Prometheus metrics endpoint."""
    metrics_data, content_type = get_metrics()
    return Response(content=metrics_data, media_type=content_type)


@get("/v1/models")
async def list_models(request: Request) -> dict[str, Any]:
    doctor = _doctor(request)
    request_id = _track(request, "/v1/models", 'models', {})
    response = await doctor.dispatcher.models()
    _finish(doctor, request_id, ResponseRecord.from_payload(response))
    return response


@post("/v1/completions", status_code=200)
async def completions(request: Request, data: dict[str, Any]) -> Response:
    doctor = _doctor(request)
    request_id = _track(request, "/v1/completions", 'completions', data)
    completion = CompletionRequest.from_body(data)
    if completion.stream:
        return _stream(
            doctor,
            request_id,
            lambda callbacks, on_disconnect: doctor.dispatcher.stream_completion(
                completion, callbacks, on_disconnect
            ),
        )
    response = await doctor.dispatcher.completion(completion)
    _finish(doctor, request_id, ResponseRecord.from_payload(response))
    return Response(content=response)


@post("/v1/chat/completions", status_code=200)
async def chat_completions(request: Request, data: dict[str, Any]) -> Response:
    doctor = _doctor(request)
    request_id = _track(request, "/v1/chat/completions", 'chat_completions', data)
    chat = ChatCompletionRequest.from_body(data)
    if chat.stream:
        return _stream(
            doctor,
            request_id,
            lambda callbacks, on_disconnect: doctor.dispatcher.stream_chat_completion(
                chat, callbacks, on_disconnect
            ),
        )
    response = await doctor.dispatcher.chat_completion(chat)
    _finish(doctor, request_id, ResponseRecord.from_payload(response))
    return Response(content=response)


@post("/v1/embeddings", status_code=200)
async def embeddings(request: Request, data: dict[str, Any]) -> dict[str, Any]:
    doctor = _doctor(request)
    request_id = _track(request, "/v1/embeddings", 'embeddings', data)
    response = await doctor.dispatcher.embeddings(EmbeddingRequest.from_body(data))
    _finish(doctor, request_id, ResponseRecord.from_payload(response))
    return response


# Control endpoints. These mirror the dashboard commands and are not tracked.


@get("/doctor/stats")
async def doctor_stats(request: Request) -> dict[str, Any]:
    doctor = _doctor(request)
    return {**doctor.stats.snapshot(), "pending": doctor.tracker.pending_count}


@get("/doctor/requests")
async def doctor_requests(request: Request, limit: int | None = None) -> dict[str, Any]:
    history = _doctor(request).tracker.history()
    if limit is not None:
        history = history[-limit:] if limit > 0 else []
    return {"object": "list", "data": [entry.to_json() for entry in history]}


def _error_state(faults: ErrorSimulator) -> dict[str, Any]:
    return {
        "enabled": faults.is_active(),
        "kind": faults.current,
        "name": faults.display_name(faults.current),
        "available": [
            {"kind": kind, "name": faults.display_name(kind)} for kind in faults.available_kinds()
        ],
    }


@get("/doctor/errors")
async def get_error_simulation(request: Request) -> dict[str, Any]:
    return _error_state(_doctor(request).faults)


@put("/doctor/errors")
async def set_error_simulation(request: Request, data: dict[str, Any]) -> dict[str, Any]:
    faults = _doctor(request).faults
    kind = data.get("kind")
    try:
        faults.enable(kind)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown error kind: {kind!r}")
    return _error_state(faults)


@delete("/doctor/errors", status_code=200)
async def clear_error_simulation(request: Request) -> dict[str, Any]:
    faults = _doctor(request).faults
    faults.disable()
    return _error_state(faults)


def _passthrough_state(doctor: Doctor) -> dict[str, Any]:
    config = doctor.passthrough.config
    return {
        "enabled": doctor.passthrough.is_enabled(),
        "has_api_key": doctor.passthrough.has_api_key(),
        "base_url": config.base_url,
        "model": config.model,
        "timeout": config.timeout,
    }


@get("/doctor/passthrough")
async def get_passthrough(request: Request) -> dict[str, Any]:
    return _passthrough_state(_doctor(request))


@put("/doctor/passthrough")
async def set_passthrough(request: Request, data: dict[str, Any]) -> dict[str, Any]:
    doctor = _doctor(request)
    manager = doctor.passthrough
    if "api_key" in data:
        manager.set_api_key(data["api_key"])
    if "enabled" in data:
        if data["enabled"] and not manager.has_api_key():
            raise HTTPException(status_code=400, detail="No API key configured")
        if data["enabled"]:
            manager.enable()
        else:
            manager.disable()
    return _passthrough_state(doctor)


# Exception handlers. Each records the outcome on the request's entry when it has one.


def _record_failure(request: Request, message: str, status_code: int) -> None:
    request_id = request.state.get("request_id")
    if request_id is not None:
        _finish(_doctor(request), request_id, ResponseRecord.failure(message, status_code))


def _error_body(message: str, type: str, code: str | None = None) -> dict[str, Any]:
    error = {"message": message, "type": type}
    if code is not None:
        error["code"] = code
    return {"error": error}


def handle_simulated_fault(request: Request, exc: SimulatedFaultError) -> Response:
    doctor = _doctor(request)
    doctor.stats.increment('simulated_faults')
    simulated_faults_total.labels(kind=exc.kind).inc()
    logger.info("Simulated %s (%d) for %s", exc.kind, exc.status, request.url.path)
    _record_failure(request, exc.message, exc.status)
    return Response(content=exc.body, status_code=exc.status)


def handle_invalid_request(
    request: Request, exc: InvalidRequestError | SerializationException
) -> Response:
    _record_failure(request, str(exc), 400)
    return Response(
        content=_error_body(str(exc), "invalid_request_error", "invalid_request_error"),
        status_code=400,
    )


def handle_http_exception(request: Request, exc: HTTPException) -> Response:
    _record_failure(request, exc.detail, exc.status_code)
    error_type = "invalid_request_error" if exc.status_code < 500 else "internal_error"
    return Response(content=_error_body(exc.detail, error_type), status_code=exc.status_code)


def handle_internal_error(request: Request, exc: Exception) -> Response:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    _doctor(request).stats.increment('errors')
    _record_failure(request, "Internal server error", 500)
    return Response(content=_error_body("Internal server error", "internal_error"), status_code=500)


def get_exception_handlers() -> dict[type[Exception], Callable[..., Response]]:
    return {
        SimulatedFaultError: handle_simulated_fault,
        InvalidRequestError: handle_invalid_request,
        SerializationException: handle_invalid_request,
        HTTPException: handle_http_exception,
        Exception: handle_internal_error,
    }


def get_routes() -> list[BaseRouteHandler]:
    current_module = sys.modules[__name__]
    return [obj for obj in current_module.__dict__.values() if isinstance(obj, BaseRouteHandler)]
