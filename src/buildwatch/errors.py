from __future__ import annotations

from typing import Any


class BuildwatchError(RuntimeError):
    """Base class for errors surfaced to the caller of a buildwatch operation."""


class ProcessAlreadyRunning(BuildwatchError):
    """Raised when a start request conflicts with a live session and the kill was declined."""

    def __init__(self, session: Any) -> None:
        self.session = session
        role = getattr(getattr(session, "role", None), "value", "?")
        super().__init__(f"A {role} process is already running")


class SpawnFailure(BuildwatchError):
    """Raised when the external command cannot be started (not found, permission denied, ...)."""

    def __init__(self, command: list[str], cause: OSError) -> None:
        self.command = list(command)
        self.cause = cause
        program = command[0] if command else "(empty command)"
        super().__init__(f"Failed to start {program}: {cause}")


class PatternError(BuildwatchError, ValueError):
    """Raised when a pattern family is malformed; the family is not registered."""

    def __init__(self, family_id: str, message: str) -> None:
        self.family_id = family_id
        super().__init__(f"Pattern family {family_id!r}: {message}")
