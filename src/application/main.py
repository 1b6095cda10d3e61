import asyncio
import logging
import sys
import threading
from argparse import (
    ArgumentDefaultsHelpFormatter,
    ArgumentParser,
    BooleanOptionalAction,
    Namespace,
)
from typing import Literal

import httpx
import uvicorn
from litestar import Litestar
from litestar.config.cors import CORSConfig
from litestar.exceptions import HTTPException
from litestar.logging import LoggingConfig
from litestar.types import ASGIApp

from application.defaults import (
    DEFAULT_API_KEY,
    DEFAULT_FAKE_LATENCY,
    DEFAULT_HOST,
    DEFAULT_MAX_HISTORY,
    DEFAULT_PORT,
    DEFAULT_STREAM_DELAY,
    DEFAULT_UPSTREAM_MODEL,
    DEFAULT_UPSTREAM_TIMEOUT,
    DEFAULT_UPSTREAM_URL,
)
from application.http_client import close_client, init_client
from application.request_logging import RequestLoggingMiddleware
from application.routes import get_exception_handlers, get_routes
from application.services import Doctor
from inference.config import PassthroughConfig

logger = logging.getLogger('llm_doctor_application')

type LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def parse_args(argv: list[str] | None = None) -> Namespace:
    parser = ArgumentParser(
        description="Fake OpenAI-compatible server with passthrough and fault injection",
        formatter_class=ArgumentDefaultsHelpFormatter,
    )
    _ = parser.add_argument(
        "--port",
        "-p",
        type=int,
        default=DEFAULT_PORT,
        help="Port to bind to",
    )
    _ = parser.add_argument(
        "--host",
        type=str,
        default=DEFAULT_HOST,
        help="Host to bind to",
    )
    _ = parser.add_argument(
        "--api-key",
        "-k",
        type=str,
        default=DEFAULT_API_KEY,
        help="Upstream API key; passthrough starts enabled when one is given",
    )
    _ = parser.add_argument(
        "--base-url",
        type=str,
        default=DEFAULT_UPSTREAM_URL,
        help="Upstream OpenAI-compatible base URL",
    )
    _ = parser.add_argument(
        "--model",
        type=str,
        default=DEFAULT_UPSTREAM_MODEL,
        help="Model override for every passthrough request",
    )
    _ = parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_UPSTREAM_TIMEOUT,
        help="Upstream request timeout in seconds",
    )
    _ = parser.add_argument(
        "--max-history",
        type=int,
        default=DEFAULT_MAX_HISTORY,
        help="Number of requests kept in history",
    )
    _ = parser.add_argument(
        "--stream-delay",
        type=float,
        default=DEFAULT_STREAM_DELAY,
        help="Delay between streamed chunks in seconds",
    )
    _ = parser.add_argument(
        "--fake-latency",
        type=float,
        default=DEFAULT_FAKE_LATENCY,
        help="Simulated latency of fake responses in seconds",
    )
    _ = parser.add_argument(
        "--log-level",
        type=str,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        default='INFO',
        help="Log level",
    )
    _ = parser.add_argument(
        "--tui",
        action=BooleanOptionalAction,
        default=None,
        help="Run the interactive dashboard; on by default when stdin is a terminal",
    )
    return parser.parse_args(argv)


class LLMDoctor:
    host: str
    port: int
    doctor: Doctor

    _app: Litestar
    _config: uvicorn.Config
    _server: uvicorn.Server
    _thread: threading.Thread | None

    def __init__(
        self,
        *,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        passthrough: PassthroughConfig | None = None,
        max_history: int = DEFAULT_MAX_HISTORY,
        stream_delay: float = DEFAULT_STREAM_DELAY,
        fake_latency: float = DEFAULT_FAKE_LATENCY,
        log_level: LogLevel = "INFO",
        log_to_console: bool = True,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.host = host
        self.port = port
        self.doctor = Doctor.build(
            max_history=max_history,
            stream_delay=stream_delay,
            fake_latency=fake_latency,
            passthrough=passthrough,
            http_client=http_client,
        )

        # the dashboard owns the terminal, so it installs its own handler instead
        handlers = ["console"] if log_to_console else []
        logging_config = LoggingConfig(
            root={"level": log_level.upper(), "handlers": handlers},
            loggers={
                "httpx": {"level": "WARNING"},
                "httpcore": {"level": "WARNING"},
                "application.request_logging": {},  # inherits the specified log level
            },
            formatters={
                "standard": {"format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"}
            },
            disable_stack_trace={HTTPException},
        )

        def create_logging_middleware(app: ASGIApp) -> ASGIApp:
            return RequestLoggingMiddleware(app=app)

        cors_config = CORSConfig(allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

        self._app = create_app(
            self.doctor,
            logging_config=logging_config,
            middleware=[create_logging_middleware],
            cors_config=cors_config,
            on_startup=[self._init_http_client, self._log_startup_message],
            on_shutdown=[self._shutdown_dispatcher, self._shutdown_http_client],
        )

        self._config = uvicorn.Config(
            app=self._app,
            host=host,
            port=port,
            log_level="warning",
            log_config=None if not log_to_console else uvicorn.config.LOGGING_CONFIG,
        )
        self._server = uvicorn.Server(self._config)
        self._thread = None

    @property
    def app(self) -> Litestar:
        return self._app

    @property
    def should_exit(self) -> bool:
        return self._server.should_exit

    def _log_server_start(self) -> None:
        logger.info("Starting LLM Doctor on http://%s:%s", self._config.host, self._config.port)

    def start_threaded(self):
        if self._thread and self._thread.is_alive():
            return
        self._log_server_start()
        self._thread = threading.Thread(target=self._server.run, daemon=True)
        self._thread.start()

    def start_sync(self):
        self._log_server_start()
        return self._server.run()

    async def start(self):
        self._log_server_start()
        return await self._server.serve()

    def stop(self, timeout: float = 5.0):
        self._server.should_exit = True
        if self._thread:
            self._thread.join(timeout=timeout)

    async def _log_startup_message(self, app: Litestar) -> None:  # pragma: no cover
        config = self.doctor.passthrough.config
        logger.info(
            "LLM Doctor ready on http://%s:%s (passthrough %s, upstream %s)",
            self._config.host,
            self._config.port,
            "enabled" if self.doctor.passthrough.is_enabled() else "disabled",
            config.base_url,
        )

    async def _init_http_client(self, app: Litestar) -> None:
        """Initialize the shared HTTP client on startup."""
        init_client()

    async def _shutdown_dispatcher(self, app: Litestar) -> None:
        await self.doctor.dispatcher.shutdown()

    async def _shutdown_http_client(self, app: Litestar) -> None:
        """Close the shared HTTP client on shutdown."""
        await close_client()


def create_app(doctor: Doctor, **kwargs) -> Litestar:
    """Build the Litestar app around an existing set of services."""
    app = Litestar(
        route_handlers=get_routes(),
        exception_handlers=get_exception_handlers(),
        **kwargs,
    )
    app.state.doctor = doctor
    return app


def passthrough_from_args(args: Namespace) -> PassthroughConfig:
    return PassthroughConfig(
        enabled=bool(args.api_key),
        api_key=args.api_key or None,
        base_url=args.base_url,
        model=args.model or None,
        timeout=args.timeout,
    )


def wants_tui(args: Namespace, interactive: bool | None = None) -> bool:
    """Dashboard by default in a terminal; `--tui` without one falls back to plain logs."""
    if interactive is None:
        interactive = sys.stdin.isatty()
    if args.tui is None:
        return interactive
    if args.tui and not interactive:
        logger.warning("TUI requested but stdin is not a terminal, falling back to normal mode")
        return False
    return args.tui


async def main(argv: list[str] | None = None):
    args = parse_args(argv)

    log_level = args.log_level
    logger.setLevel(log_level)

    use_tui = wants_tui(args)

    server = LLMDoctor(
        host=args.host,
        port=args.port,
        passthrough=passthrough_from_args(args),
        max_history=args.max_history,
        stream_delay=args.stream_delay,
        fake_latency=args.fake_latency,
        log_level=log_level,
        log_to_console=not use_tui,
    )

    if use_tui:
        from application.tui import run_with_tui

        await run_with_tui(server)
    else:
        await server.start()


def main_sync():
    asyncio.run(main())


if __name__ == "__main__":
    main_sync()
