"""portchaser - Main Textual application and command-line entry point."""

import argparse
import logging
import sys
import threading
from dataclasses import replace
from datetime import datetime
from enum import Enum
from queue import Empty, Queue

from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal, Vertical
from textual.screen import ModalScreen
from textual.widgets import Button, DataTable, Footer, Label, Static

from portchaser.config import Settings, setup_logging
from portchaser.errors import HistoryError
from portchaser.history import HistoryStore
from portchaser.killer import TerminationEngine
from portchaser.models import HistoryEntry, KillResult, PortEntry
from portchaser.monitor import PortMonitor
from portchaser.scanner import ProgressiveScanner, sort_by_common_port

APP_VERSION = "0.1.0"

logger = logging.getLogger(__name__)


class SortKey(Enum):
    """Sort keys for the port table."""

    COMMON = "common"
    PORT = "port"
    PID = "pid"
    PROCESS = "process"


def format_age(moment: datetime | None, now: datetime | None = None) -> str:
    """Format how long ago ``moment`` was, e.g. '5m ago'."""
    if moment is None:
        return "-"
    seconds = max(0, int(((now or datetime.now()) - moment).total_seconds()))
    for unit, size in (("d", 86400), ("h", 3600), ("m", 60)):
        if seconds >= size:
            return f"{seconds // size}{unit} ago"
    return f"{seconds}s ago"


def sort_entries(entries: list[PortEntry], key: SortKey) -> list[PortEntry]:
    """Order entries for display by ``key``."""
    if key is SortKey.COMMON:
        return sort_by_common_port(entries)
    key_func = {
        SortKey.PORT: lambda e: e.port,
        SortKey.PID: lambda e: e.pid,
        SortKey.PROCESS: lambda e: e.process_name.lower(),
    }
    return sorted(entries, key=key_func[key])


class StatusBar(Static):
    """Summary line above the port table."""

    DEFAULT_CSS = """
    StatusBar {
        height: 1;
        padding: 0 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._count = 0
        self._docker_count = 0
        self._docker_only = False
        self._last_scan: datetime | None = None

    def update_summary(self, entries: list[PortEntry], docker_only: bool) -> None:
        """Update the summary from the rows currently shown."""
        self._count = len(entries)
        self._docker_count = sum(1 for e in entries if e.is_docker)
        self._docker_only = docker_only
        self._last_scan = datetime.now()
        self.update(self.render_summary())

    def render_summary(self) -> str:
        """Build the summary line."""
        if self._last_scan is None:
            return "Scanning..."
        mode = " [yellow](docker only)[/yellow]" if self._docker_only else ""
        return (
            f"{self._count} ports, {self._docker_count} docker{mode}"
            f"  |  last scan {self._last_scan:%H:%M:%S}"
        )


class PortTable(Container):
    """Container for the port data table."""

    DEFAULT_CSS = """
    PortTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._entries: list[PortEntry] = []
        self._rows: list[PortEntry] = []
        self._sort_key: SortKey = SortKey.COMMON
        self.docker_only = False

    @property
    def sort_key(self) -> SortKey:
        """Get current sort key."""
        return self._sort_key

    @property
    def rows(self) -> list[PortEntry]:
        """Entries in display order."""
        return list(self._rows)

    def cycle_sort(self) -> SortKey:
        """Cycle to the next sort key and return it."""
        keys = list(SortKey)
        self._sort_key = keys[(keys.index(self._sort_key) + 1) % len(keys)]
        self._render_rows()
        return self._sort_key

    def compose(self) -> ComposeResult:
        """Compose the port table."""
        yield DataTable(id="port-table")

    def on_mount(self) -> None:
        """Initialize the data table when mounted."""
        table = self.query_one("#port-table", DataTable)
        table.cursor_type = "row"

        table.add_column("PORT", key="port", width=7)
        table.add_column("PID", key="pid", width=8)
        table.add_column("PROCESS", key="process", width=16)
        table.add_column("USER", key="user", width=10)
        table.add_column("DOCKER", key="docker", width=16)
        table.add_column("KILLS", key="kills", width=6)
        table.add_column("LAST", key="last", width=9)
        table.add_column("Command", key="command")

    def update_ports(self, entries: list[PortEntry]) -> None:
        """Replace the table contents, keeping the cursor on the same port."""
        self._entries = list(entries)
        self._render_rows()

    def toggle_docker_only(self) -> bool:
        """Show only container ports, or all ports again. Returns the new mode."""
        self.docker_only = not self.docker_only
        self._render_rows()
        return self.docker_only

    def selected(self) -> PortEntry | None:
        """Entry under the cursor, if any."""
        table = self.query_one("#port-table", DataTable)
        row = table.cursor_row
        if 0 <= row < len(self._rows):
            return self._rows[row]
        return None

    def _render_rows(self) -> None:
        table = self.query_one("#port-table", DataTable)
        current = self.selected()

        visible = [e for e in self._entries if e.is_docker] if self.docker_only else self._entries
        self._rows = sort_entries(visible, self._sort_key)

        table.clear()
        for entry in self._rows:
            table.add_row(*self._cells(entry), key=str(entry.port))

        if current is not None:
            for index, entry in enumerate(self._rows):
                if entry.port == current.port:
                    table.move_cursor(row=index)
                    break

    @staticmethod
    def _cells(entry: PortEntry) -> tuple[str, ...]:
        port = f"[bold]{entry.port}[/bold]" if entry.is_common_port else str(entry.port)
        pid = "?" if entry.pid == 0 else str(entry.pid)
        if entry.should_display_warning:
            pid = f"[red]{pid}[/red]"
        docker = entry.container_name or ("yes" if entry.is_docker else "")
        kills = f"[yellow]{entry.kill_count}[/yellow]" if entry.is_recommended else str(entry.kill_count)
        return (
            port,
            pid,
            entry.process_name[:16],
            entry.user[:10],
            docker[:16],
            kills,
            format_age(entry.last_killed),
            entry.command[:60],
        )


class ConfirmKillScreen(ModalScreen[bool]):
    """Asks before terminating the process behind a port."""

    BINDINGS = [
        ("y", "confirm", "Yes"),
        ("n", "cancel", "No"),
        ("escape", "cancel", "Cancel"),
    ]

    DEFAULT_CSS = """
    ConfirmKillScreen {
        align: center middle;
    }

    #confirm-dialog {
        width: 60;
        height: auto;
        border: thick $error;
        padding: 1 2;
        background: $surface;
    }
    """

    def __init__(self, entry: PortEntry) -> None:
        super().__init__()
        self.entry = entry

    def compose(self) -> ComposeResult:
        """Compose the confirmation dialog."""
        lines = [f"Terminate {self.entry.process_name} (PID {self.entry.pid}) on port {self.entry.port}?"]
        if self.entry.should_display_warning:
            lines.append("[red]This looks like a system process.[/red]")
        if self.entry.is_docker:
            lines.append("[yellow]This process belongs to a container runtime.[/yellow]")
        with Vertical(id="confirm-dialog"):
            yield Label("\n".join(lines))
            yield Horizontal(
                Button("Kill", variant="error", id="confirm"),
                Button("Cancel", id="cancel"),
            )

    def on_button_pressed(self, event: Button.Pressed) -> None:
        """Dismiss with True only for the Kill button."""
        self.dismiss(event.button.id == "confirm")

    def action_confirm(self) -> None:
        """Confirm the kill."""
        self.dismiss(True)

    def action_cancel(self) -> None:
        """Cancel the kill."""
        self.dismiss(False)


class HistoryScreen(ModalScreen[None]):
    """Recent terminations."""

    BINDINGS = [("escape", "close", "Close"), ("h", "close", "Close")]

    def __init__(self, entries: list[HistoryEntry]) -> None:
        super().__init__()
        self.entries = entries

    def compose(self) -> ComposeResult:
        """Compose the history view."""
        yield Label("Kill history (esc to close)")
        yield DataTable(id="history-table")

    def on_mount(self) -> None:
        """Fill the history table when mounted."""
        table = self.query_one("#history-table", DataTable)
        table.cursor_type = "row"
        table.add_columns("WHEN", "PORT", "PID", "PROCESS", "Command")
        for entry in self.entries:
            table.add_row(
                f"{entry.killed_at:%Y-%m-%d %H:%M:%S}",
                str(entry.port),
                str(entry.pid),
                entry.process_name,
                entry.command[:60],
            )

    def action_close(self) -> None:
        """Close the history view."""
        self.dismiss(None)


class PortChaserApp(App):
    """Main portchaser application."""

    TITLE = "portchaser"
    SUB_TITLE = "Find and stop processes holding ports"

    CSS = """
    Screen {
        layout: vertical;
    }

    #status-bar {
        dock: top;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("r", "refresh", "Refresh"),
        ("d", "toggle_docker", "Docker only"),
        ("s", "sort", "Sort"),
        ("h", "history", "History"),
        ("x", "kill", "Kill"),
    ]

    def __init__(
        self,
        settings: Settings | None = None,
        scanner: ProgressiveScanner | None = None,
        engine: TerminationEngine | None = None,
        history: HistoryStore | None = None,
    ) -> None:
        super().__init__()
        self.settings = settings or Settings()
        self.scanner = scanner or ProgressiveScanner.from_config(self.settings.scan)
        self.engine = engine or TerminationEngine.from_config(self.settings.killer)
        self.history = history
        self._update_queue: Queue[list[PortEntry]] = Queue()
        self._monitor = PortMonitor(self._update_queue, self.scanner)
        self._last_result: KillResult | None = None
        self._cancel_kills = threading.Event()

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        yield StatusBar(id="status-bar")
        yield PortTable()
        yield Footer()

    def on_mount(self) -> None:
        """Start the port monitor when the app is mounted."""
        self._monitor.start()
        self.set_interval(0.5, self._check_for_updates)

    def on_unmount(self) -> None:
        """Release background resources however the app exits."""
        self._release_resources()

    def _check_for_updates(self) -> None:
        """Check the queue for port updates and refresh the UI."""
        entries = None
        while True:
            try:
                entries = self._update_queue.get_nowait()
            except Empty:
                break

        if entries is not None:
            self.show_ports(entries)

    def show_ports(self, entries: list[PortEntry]) -> None:
        """Annotate entries with kill history and display them."""
        if self.history is not None:
            try:
                entries = self.history.annotate(entries)
            except HistoryError as exc:
                logger.warning("Could not annotate ports with history: %s", exc)
        table = self.query_one(PortTable)
        table.update_ports(entries)
        self.query_one("#status-bar", StatusBar).update_summary(table.rows, table.docker_only)

    def action_refresh(self) -> None:
        """Handle refresh action - scan now."""
        self._monitor.refresh()
        self.notify("Refreshing...")

    def action_toggle_docker(self) -> None:
        """Handle docker filter toggle."""
        table = self.query_one(PortTable)
        table.toggle_docker_only()
        self.query_one("#status-bar", StatusBar).update_summary(table.rows, table.docker_only)

    def action_sort(self) -> None:
        """Handle sort action - cycle through sort keys."""
        key = self.query_one(PortTable).cycle_sort()
        self.notify(f"Sort: {key.value.upper()}")

    def on_data_table_row_selected(self, event: DataTable.RowSelected) -> None:
        """Enter on a port row asks to kill it."""
        if event.data_table.id == "port-table":
            self.action_kill()

    def action_kill(self) -> None:
        """Confirm, then terminate the owner of the selected port off the UI thread."""
        entry = self.query_one(PortTable).selected()
        if entry is None:
            return
        if entry.pid <= 0:
            self.notify(f"Owner of port {entry.port} is unknown", severity="warning")
            return

        def confirmed(answer: bool | None) -> None:
            if answer:
                self.run_worker(lambda: self._kill(entry), thread=True, exclusive=False)

        self.push_screen(ConfirmKillScreen(entry), confirmed)

    def _kill(self, entry: PortEntry) -> None:
        result = self.engine.terminate(entry.pid, entry, cancel=self._cancel_kills)
        if self._cancel_kills.is_set():
            logger.info("Dropping result for PID %d, app is shutting down: %s", entry.pid, result.message)
            return
        self.call_from_thread(self.kill_finished, entry, result)

    def kill_finished(self, entry: PortEntry, result: KillResult) -> None:
        """Report a termination and record it when it succeeded."""
        if self._cancel_kills.is_set():
            return
        self._last_result = result
        if not result.success:
            self.notify(result.message, title="Kill failed", severity="error")
            return

        if self.history is not None:
            try:
                self.history.record_kill(entry)
            except HistoryError as exc:
                logger.warning("Could not record kill: %s", exc)
        self.notify(f"{result.message} in {result.duration:.2f}s", title=result.method.value)
        self._monitor.refresh()

    def action_history(self) -> None:
        """Show recent kills."""
        if self.history is None:
            self.notify("History is unavailable", severity="warning")
            return
        try:
            entries = self.history.get_history()
        except HistoryError as exc:
            self.notify(str(exc), severity="error")
            return
        self.push_screen(HistoryScreen(entries))

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self._release_resources()
        self.exit()

    def _release_resources(self) -> None:
        # Cancel in-flight kills before the history they report to is closed
        self._cancel_kills.set()
        self._monitor.stop()
        self.scanner.shutdown()
        if self.history is not None:
            self.history.close()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="portchaser",
        description="Find processes listening on local ports and stop them.",
    )
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {APP_VERSION}")
    parser.add_argument("--grace-period", type=float, help="seconds to wait before forcing a kill")
    parser.add_argument("--no-protection", action="store_true", help="allow killing system processes")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--list", action="store_true", help="print one scan and exit")
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> Settings:
    """Environment settings with command-line overrides applied."""
    settings = Settings.from_env()
    killer = settings.killer
    if args.grace_period is not None:
        killer = replace(killer, grace_period=max(0.0, args.grace_period))
    if args.no_protection:
        killer = replace(killer, system_protection=False)
    log = replace(settings.log, level=args.log_level) if args.log_level else settings.log
    return replace(settings, killer=killer, log=log)


def print_ports(entries: list[PortEntry]) -> None:
    """Print one scan as a plain table."""
    print(f"{'PORT':>6}  {'PID':>7}  {'PROCESS':<16} {'USER':<10} COMMAND")
    for entry in sort_by_common_port(entries):
        pid = "?" if entry.pid == 0 else str(entry.pid)
        print(f"{entry.port:>6}  {pid:>7}  {entry.process_name[:16]:<16} {entry.user[:10]:<10} {entry.command}")


def main(argv: list[str] | None = None) -> None:
    """Entry point for portchaser."""
    args = parse_args(argv)
    settings = build_settings(args)
    setup_logging(settings)

    if args.list:
        scanner = ProgressiveScanner.from_config(settings.scan)
        try:
            print_ports(scanner.scan())
        finally:
            scanner.shutdown()
        return

    try:
        history = HistoryStore(settings.storage.history_path)
    except HistoryError as exc:
        logger.warning("Running without history: %s", exc)
        history = None

    app = PortChaserApp(settings=settings, history=history)
    app.run()


if __name__ == "__main__":
    sys.exit(main())
