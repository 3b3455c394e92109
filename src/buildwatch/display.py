"""Terminal rendering of live logs and location lists with `rich`."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable

from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm
from rich.table import Table

from buildwatch.locations import LocationKind, LocationRecord
from buildwatch.models import DisplayPolicy, Session, SessionStatus
from buildwatch.output import LogBuffer, OutputSink


class ConsoleView:
    """Streams buffer changes to a console according to the configured display policy."""

    def __init__(self, console: Console | None = None, *, policy: DisplayPolicy = DisplayPolicy.SPLIT_VIEW) -> None:
        self.console = console or Console(highlight=False)
        self.policy = policy
        self._printed: dict[int, int] = {}
        self._lock = threading.Lock()

    def attach(self, sink: OutputSink) -> Callable[[], None]:
        return sink.subscribe(self.on_buffer_changed)

    def begin(self, session: Session) -> None:
        if self.policy == DisplayPolicy.REPLACE_VIEW:
            self.console.clear()
        if self.policy != DisplayPolicy.BACKGROUND:
            self.console.rule(f"[bold]{session.role.value}[/bold] {escape(' '.join(session.command))}", style="dim")

    def on_buffer_changed(self, buffer: LogBuffer, changed_from: int) -> None:
        if self.policy == DisplayPolicy.BACKGROUND:
            return
        with self._lock, buffer.lock:
            key = id(buffer)
            printed = min(self._printed.get(key, 0), len(buffer))
            if changed_from < printed:
                # The current line was collapsed by a carriage return; redraw it.
                if self.console.is_terminal:
                    self.console.file.write("\r\x1b[2K")
                else:
                    self.console.file.write("\n")
                printed = changed_from
            if len(buffer) > printed:
                self.console.print(buffer.render(printed), end="", soft_wrap=True, highlight=False)
            self._printed[key] = len(buffer)

    def summary(self, session: Session, records: Iterable[LocationRecord]) -> None:
        records = list(records)
        if session.status == SessionStatus.KILLED:
            status = "[yellow]killed[/yellow]"
        elif session.exit_code == 0:
            status = "[green]finished[/green]"
        else:
            status = f"[red]exited with code {session.exit_code}[/red]"
        duration = session.duration_s
        suffix = f" in {duration:.1f}s" if duration is not None else ""
        self.console.print()
        self.console.print(f"[bold]{session.role.value}[/bold] {status}{suffix}")
        if records:
            self.console.print(render_locations(records))


def render_locations(records: Iterable[LocationRecord], *, current: LocationRecord | None = None) -> Table:
    table = Table(title="Locations", show_lines=False, expand=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Kind")
    table.add_column("Location", style="bold")
    for index, record in enumerate(records, start=1):
        kind = "[red]error[/red]" if record.kind == LocationKind.ERROR else "[cyan]info[/cyan]"
        marker = "> " if current is not None and record == current else ""
        table.add_row(f"{marker}{index}", kind, str(record))
    return table


def console_confirm_kill(console: Console | None = None) -> Callable[[Session], bool]:
    """Interactive yes/no prompt used as the supervisor's kill decision."""
    target = console or Console()

    def _confirm(session: Session) -> bool:
        return Confirm.ask(
            f"A {session.role.value} process is running ({' '.join(session.command)}); kill it?",
            console=target,
            default=False,
        )

    return _confirm
