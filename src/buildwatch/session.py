"""Command/directory resolution and the user-facing run operations."""

from __future__ import annotations

import logging
import shlex
import threading
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from buildwatch.locations import LocationRecord
from buildwatch.models import Role, Session
from buildwatch.settings import BuildwatchSettings, default_settings_template
from buildwatch.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

RootFinder = Callable[[Path], "Path | None"]


def find_project_root(start: str | Path, markers: Iterable[str] = ("Cargo.toml", ".git")) -> Path | None:
    """
    Walk upward from `start` and return the first directory containing a marker.

    Markers are tried in order, so a nested `Cargo.toml` wins over an enclosing `.git`.
    """
    origin = Path(start).expanduser().resolve()
    if origin.is_file():
        origin = origin.parent
    candidates = [origin, *origin.parents]
    for marker in markers:
        for directory in candidates:
            if (directory / marker).exists():
                return directory
    return None


@dataclass(frozen=True)
class RunRecord:
    command: str
    directory: Path


class SessionRegistry:
    """
    Last command and working directory used per role.

    Lives for the lifetime of the process; only `clear()` resets it. Passed explicitly to the
    controller instead of being module state.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[Role, RunRecord] = {}

    def remember(self, role: Role | str, command: str, directory: str | Path) -> None:
        with self._lock:
            self._records[Role.parse(role)] = RunRecord(command=command, directory=Path(directory))

    def last_command(self, role: Role | str) -> str | None:
        record = self._records.get(Role.parse(role))
        return record.command if record else None

    def last_directory(self, role: Role | str) -> Path | None:
        record = self._records.get(Role.parse(role))
        return record.directory if record else None

    def clear(self) -> None:
        with self._lock:
            self._records.clear()


def _command_text(command: str | Sequence[str]) -> str:
    if isinstance(command, str):
        return command.strip()
    return shlex.join([str(part) for part in command])


class SessionController:
    """Entry point for run/rerun/terminate/navigate requests."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        registry: SessionRegistry | None = None,
        settings: BuildwatchSettings | None = None,
        *,
        find_root: RootFinder | None = None,
        cwd: Callable[[], Path] = Path.cwd,
    ) -> None:
        self.supervisor = supervisor
        self.registry = registry or SessionRegistry()
        self.settings = settings or default_settings_template()
        self._find_root = find_root or (lambda start: find_project_root(start, self.settings.project_markers))
        self._cwd = cwd

    def resolve_command(self, role: Role | str, explicit_command: str | Sequence[str] | None = None) -> str:
        role = Role.parse(role)
        if explicit_command is not None:
            text = _command_text(explicit_command)
            if text:
                return text
        return self.registry.last_command(role) or self.settings.command_for(role)

    def resolve_directory(self) -> Path:
        current = self._cwd()
        root = self._find_root(current)
        return Path(root) if root is not None else Path(current)

    def run(self, role: Role | str, explicit_command: str | Sequence[str] | None = None) -> Session:
        """Start `role`; an explicit command becomes that role's default for later reruns."""
        role = Role.parse(role)
        command = self.resolve_command(role, explicit_command)
        directory = self.resolve_directory()
        return self._start(role, command, directory)

    def rerun(self, role: Role | str) -> Session:
        """Repeat the last run of `role` in the directory it last ran in."""
        role = Role.parse(role)
        command = self.resolve_command(role)
        directory = self.registry.last_directory(role) or Path(self._cwd())
        return self._start(role, command, directory)

    def _start(self, role: Role, command: str, directory: Path) -> Session:
        session = self.supervisor.start(role, command, directory)
        self.registry.remember(role, command, session.working_directory)
        return session

    def terminate(self, role: Role | str) -> Session | None:
        return self.supervisor.terminate(role)

    def session(self, role: Role | str) -> Session | None:
        return self.supervisor.session(role)

    def locations(self, role: Role | str) -> tuple[LocationRecord, ...]:
        return self.supervisor.matcher(role).refresh()

    def jump_to_next(self, role: Role | str) -> LocationRecord | None:
        return self.supervisor.matcher(role).next()

    def jump_to_previous(self, role: Role | str) -> LocationRecord | None:
        return self.supervisor.matcher(role).previous()

    def resolve_location(self, role: Role | str, record: LocationRecord) -> Path:
        session = self.supervisor.session(role)
        base = session.working_directory if session is not None else None
        return record.resolve(base)
