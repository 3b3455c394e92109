from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class Role(str, Enum):
    BUILD = "build"
    TEST = "test"
    FORMAT = "format"
    LINT = "lint"

    @classmethod
    def parse(cls, value: "str | Role") -> "Role":
        if isinstance(value, Role):
            return value
        key = str(value or "").strip().lower()
        aliases = {"fmt": "format", "clippy": "lint", "check": "lint"}
        try:
            return cls(aliases.get(key, key))
        except ValueError:
            choices = ", ".join(role.value for role in cls)
            raise ValueError(f"Unknown role {value!r} (expected one of: {choices})") from None


class SessionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    EXITED = "exited"
    KILLED = "killed"


class DisplayPolicy(str, Enum):
    REPLACE_VIEW = "replace"
    SPLIT_VIEW = "split"
    BACKGROUND = "background"


@dataclass
class Session:
    """One supervised run of an external command."""

    role: Role
    command: list[str]
    working_directory: Path
    status: SessionStatus = SessionStatus.IDLE
    exit_code: int | None = None
    pid: int | None = None
    started_at: float | None = None
    ended_at: float | None = None
    kill_requested: bool = False
    process: Any = field(default=None, repr=False, compare=False)
    finished: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    @property
    def is_live(self) -> bool:
        return self.status == SessionStatus.RUNNING

    @property
    def duration_s(self) -> float | None:
        if self.started_at is None:
            return None
        end = self.ended_at if self.ended_at is not None else time.time()
        return round(end - self.started_at, 3)

    def describe(self) -> str:
        status = self.status.value
        if self.status == SessionStatus.EXITED and self.exit_code is not None:
            status = f"exited({self.exit_code})"
        return f"{self.role.value}: {status} [{' '.join(self.command)}] in {self.working_directory}"
