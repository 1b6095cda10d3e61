"""
Interactive dashboard for LLM Doctor using Textual.

Provides:
- Live stats header (traffic, tokens, latency, error simulation and passthrough state)
- Request history table, newest first
- Logs displayed in a scrolling pane
- Key bindings for the error menu, toggles, API key prompt and clearing history
"""

import asyncio
import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from rich.text import Text
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.screen import ModalScreen
from textual.widgets import DataTable, Footer, Input, Label, OptionList, RichLog, Static
from textual.widgets.option_list import Option

from application.services import Doctor
from faults import ErrorKind, ErrorSimulator
from tracking import RequestLogEntry

if TYPE_CHECKING:
    from application.main import LLMDoctor

REFRESH_INTERVAL = 0.5
HISTORY_COLUMNS = ("Time", "Method", "Endpoint", "Status", "Latency", "Tokens", "Preview")
PREVIEW_WIDTH = 48

STATUS_STYLES = {
    'completed': "green",
    'streaming': "cyan",
    'pending': "yellow",
    'aborted': "red",
}


def stats_text(doctor: Doctor) -> Text:
    snapshot = doctor.stats.snapshot()
    faults = doctor.faults
    text = Text()
    text.append("Requests ", style="bold")
    text.append(f"{snapshot['total_requests']}  ")
    text.append(f"rpm {snapshot['requests_per_minute']}  ", style="dim")
    text.append(
        f"completions {snapshot['completions']}  chat {snapshot['chat_completions']}  "
        f"embeddings {snapshot['embeddings']}  models {snapshot['models']}\n"
    )
    text.append("Tokens ", style="bold")
    text.append(
        f"{snapshot['total_tokens']} (in {snapshot['total_prompt_tokens']}, "
        f"out {snapshot['total_completion_tokens']})  "
    )
    text.append("Avg ", style="bold")
    text.append(f"{snapshot['avg_response_time']:.1f}ms  ")
    text.append("Errors ", style="bold")
    text.append(f"{snapshot['errors']}  ", style="red" if snapshot['errors'] else "")
    text.append("Faults served ", style="bold")
    text.append(f"{snapshot['simulated_faults']}  ")
    text.append("Uptime ", style="bold")
    text.append(f"{snapshot['uptime']}s\n")
    text.append("Error simulation ", style="bold")
    if faults.is_active():
        text.append(f"ON: {faults.display_name(faults.current)}", style="bold red")
    else:
        text.append("off", style="green")
    text.append("   Passthrough ", style="bold")
    if doctor.passthrough.is_enabled():
        config = doctor.passthrough.config
        text.append(f"ON: {config.base_url}", style="bold magenta")
        if config.model:
            text.append(f" ({config.model})", style="magenta")
    elif doctor.passthrough.has_api_key():
        text.append("off", style="dim")
    else:
        text.append("off (no API key)", style="dim")
    return text


def preview(entry: RequestLogEntry, width: int = PREVIEW_WIDTH) -> str:
    if entry.response is not None:
        content = entry.response.content
    else:
        content = entry.streaming_content or ""
    content = " ".join(content.split())
    return content if len(content) <= width else content[: width - 1] + "…"


def history_row(entry: RequestLogEntry) -> tuple[str | Text, ...]:
    status: str = entry.status
    if entry.response is not None and entry.response.status_code != 200:
        status = str(entry.response.status_code)
    style = "red" if status.isdigit() else STATUS_STYLES[entry.status]
    latency = f"{entry.elapsed_ms:.0f}ms" if entry.elapsed_ms is not None else "-"
    return (
        entry.timestamp,
        entry.method,
        entry.endpoint,
        Text(status, style=style),
        latency,
        str(entry.tokens) if entry.tokens else "-",
        preview(entry),
    )


class TUILogHandler(logging.Handler):
    """Log handler that writes to the Textual RichLog widget."""

    def __init__(self, log_widget: RichLog):
        super().__init__()
        self.log_widget = log_widget
        self.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = Text(self.format(record))
            if record.levelno >= logging.ERROR:
                msg.stylize("bold red")
            elif record.levelno >= logging.WARNING:
                msg.stylize("yellow")
            elif record.levelno <= logging.DEBUG:
                msg.stylize("dim")
            else:
                msg.stylize("cyan")
            self.log_widget.write(msg)
        except Exception:
            self.handleError(record)


class ErrorMenu(ModalScreen[ErrorKind | None]):
    """Pick the fault every request should get; escape leaves the selection alone."""

    BINDINGS = [Binding("escape", "cancel", "Cancel")]

    def __init__(self, kinds: Iterable[ErrorKind], current: ErrorKind):
        super().__init__()
        self._kinds = list(kinds)
        self._current = current

    def compose(self) -> ComposeResult:
        options = [Option("Disable error simulation", id=ErrorKind.NONE)]
        for kind in self._kinds:
            marker = " (active)" if kind is self._current else ""
            options.append(Option(f"{ErrorSimulator.display_name(kind)}{marker}", id=kind))
        with Vertical(id="dialog"):
            yield Label("Select error to simulate")
            yield OptionList(*options, id="error-options")

    def on_option_list_option_selected(self, event: OptionList.OptionSelected) -> None:
        self.dismiss(ErrorKind(event.option.id))

    def action_cancel(self) -> None:
        self.dismiss(None)


class ApiKeyPrompt(ModalScreen[str | None]):
    BINDINGS = [Binding("escape", "cancel", "Cancel")]

    def compose(self) -> ComposeResult:
        with Vertical(id="dialog"):
            yield Label("Upstream API key (empty to clear)")
            yield Input(placeholder="sk-...", password=True, id="api-key")

    def on_input_submitted(self, event: Input.Submitted) -> None:
        self.dismiss(event.value)

    def action_cancel(self) -> None:
        self.dismiss(None)


class DoctorApp(App):
    """Read-only view of the tracked traffic plus the control commands."""

    ENABLE_COMMAND_PALETTE = False

    CSS = """
    #stats {
        height: auto;
        border: solid cyan;
        padding: 0 1;
    }
    DataTable {
        height: 2fr;
        border: solid magenta;
    }
    RichLog {
        height: 1fr;
        border: solid green;
        background: transparent;
    }
    ModalScreen {
        align: center middle;
    }
    #dialog {
        width: 60;
        height: auto;
        border: thick $accent;
        padding: 1 2;
        background: $surface;
    }
    """

    BINDINGS = [
        Binding("m", "error_menu", "Error menu"),
        Binding("e", "toggle_errors", "Toggle errors"),
        Binding("p", "toggle_passthrough", "Toggle passthrough"),
        Binding("k", "api_key", "API key"),
        Binding("c", "clear", "Clear"),
        Binding("q", "quit", "Quit"),
    ]

    def __init__(self, doctor: Doctor, server: 'LLMDoctor | None' = None):
        super().__init__()
        self.doctor = doctor
        self.server = server
        self._log_handler: TUILogHandler | None = None
        self._server_task: asyncio.Task | None = None

    def compose(self) -> ComposeResult:
        yield Static(id="stats")
        yield DataTable(id="history", zebra_stripes=True, cursor_type="row")
        yield RichLog(id="log", highlight=True, markup=False, wrap=True)
        yield Footer()

    async def on_mount(self) -> None:
        table = self.query_one("#history", DataTable)
        table.add_columns(*HISTORY_COLUMNS)

        log = self.query_one("#log", RichLog)
        self._log_handler = TUILogHandler(log)
        logging.getLogger().addHandler(self._log_handler)

        self.refresh_view()
        self.set_interval(REFRESH_INTERVAL, self.refresh_view)

        if self.server is not None:
            self._server_task = asyncio.create_task(self.server.start())

    async def on_unmount(self) -> None:
        if self._log_handler:
            logging.getLogger().removeHandler(self._log_handler)

        if self._server_task and self.server is not None:
            self.server.stop()
            try:
                await asyncio.wait_for(self._server_task, timeout=3.0)
            except TimeoutError:
                self._server_task.cancel()

    def refresh_view(self) -> None:
        self.query_one("#stats", Static).update(stats_text(self.doctor))
        table = self.query_one("#history", DataTable)
        table.clear()
        for entry in reversed(self.doctor.tracker.history()):
            table.add_row(*history_row(entry), key=entry.id)

    def action_error_menu(self) -> None:
        faults = self.doctor.faults
        self.push_screen(ErrorMenu(faults.available_kinds(), faults.current), self._select_error)

    def _select_error(self, kind: ErrorKind | None) -> None:
        if kind is None:
            return
        if kind is ErrorKind.NONE:
            self.doctor.faults.disable()
            self.notify("Error simulation disabled")
        else:
            self.doctor.faults.enable(kind)
            self.notify(f"Simulating: {ErrorSimulator.display_name(kind)}", severity="warning")
        self.refresh_view()

    def action_toggle_errors(self) -> None:
        faults = self.doctor.faults
        if faults.is_active():
            faults.toggle()
            self.notify("Error simulation disabled")
        else:
            # nothing selected yet, so let the user pick
            self.action_error_menu()
            return
        self.refresh_view()

    def action_toggle_passthrough(self) -> None:
        manager = self.doctor.passthrough
        if not manager.has_api_key():
            self.notify("No API key set, press k to add one", severity="error")
            return
        enabled = manager.toggle()
        self.notify(f"Passthrough {'enabled' if enabled else 'disabled'}")
        self.refresh_view()

    def action_api_key(self) -> None:
        self.push_screen(ApiKeyPrompt(), self._set_api_key)

    def _set_api_key(self, key: str | None) -> None:
        if key is None:
            return
        self.doctor.passthrough.set_api_key(key)
        if self.doctor.passthrough.has_api_key():
            self.notify("API key set, passthrough enabled")
        else:
            self.notify("API key cleared, passthrough disabled")
        self.refresh_view()

    def action_clear(self) -> None:
        self.doctor.clear()
        self.notify("History and stats cleared")
        self.refresh_view()


async def run_with_tui(server: 'LLMDoctor') -> None:
    """Run the server and the dashboard in the same event loop."""
    app = DoctorApp(server.doctor, server)
    await app.run_async()
