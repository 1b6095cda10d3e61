from logging import getLogger
from typing import Any

from .catalog import DISPLAY_NAMES, ERROR_CATALOG, ErrorCatalogEntry, ErrorKind, error_response_for

logger = getLogger(__name__)


class SimulatedFaultError(Exception):
    """Raised instead of doing any work while a fault is selected."""

    kind: ErrorKind
    status: int
    body: dict[str, Any]

    def __init__(self, kind: ErrorKind, status: int, body: dict[str, Any]):
        super().__init__(f"simulated {kind} ({status})")
        self.kind = kind
        self.status = status
        self.body = body

    @property
    def message(self) -> str:
        return self.body.get("error", {}).get("message", str(self))


class ErrorSimulator:
    """Holds the single, process-wide fault selection."""

    _kind: ErrorKind
    _enabled: bool

    def __init__(self) -> None:
        self._kind = ErrorKind.NONE
        self._enabled = False

    def enable(self, kind: ErrorKind | str) -> None:
        self._kind = ErrorKind(kind)
        self._enabled = True
        logger.info("Error simulation enabled: %s", self._kind)

    def disable(self) -> None:
        self._enabled = False
        self._kind = ErrorKind.NONE
        logger.info("Error simulation disabled")

    def toggle(self) -> bool:
        self._enabled = not self._enabled
        if not self._enabled:
            self._kind = ErrorKind.NONE
        return self.is_active()

    def is_active(self) -> bool:
        return self._enabled and self._kind is not ErrorKind.NONE

    @property
    def current(self) -> ErrorKind:
        return self._kind

    def current_entry(self) -> ErrorCatalogEntry | None:
        if not self.is_active():
            return None
        return ERROR_CATALOG[self._kind]

    def error_response(self) -> tuple[int, dict[str, Any]] | None:
        if not self.is_active():
            return None
        return error_response_for(self._kind)

    def raise_if_active(self) -> None:
        if (response := self.error_response()) is not None:
            status, body = response
            raise SimulatedFaultError(self._kind, status, body)

    @staticmethod
    def available_kinds() -> list[ErrorKind]:
        return list(ERROR_CATALOG)

    @staticmethod
    def display_name(kind: ErrorKind | str) -> str:
        try:
            return DISPLAY_NAMES[ErrorKind(kind)]
        except ValueError:
            return str(kind)
