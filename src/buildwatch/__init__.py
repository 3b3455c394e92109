"""buildwatch: supervise build/test processes and extract the source locations they report."""

from __future__ import annotations

from buildwatch.ansi import AnsiDecoder, DecoderState, Palette, StyledRun
from buildwatch.errors import BuildwatchError, PatternError, ProcessAlreadyRunning, SpawnFailure
from buildwatch.locations import LocationKind, LocationMatcher, LocationRecord, PatternFamily, PatternRegistry
from buildwatch.models import DisplayPolicy, Role, Session, SessionStatus
from buildwatch.output import LogBuffer, OutputSink
from buildwatch.session import SessionController, SessionRegistry
from buildwatch.supervisor import ProcessSupervisor

__all__ = [
    "AnsiDecoder",
    "BuildwatchError",
    "DecoderState",
    "DisplayPolicy",
    "LocationKind",
    "LocationMatcher",
    "LocationRecord",
    "LogBuffer",
    "OutputSink",
    "Palette",
    "PatternError",
    "PatternFamily",
    "PatternRegistry",
    "ProcessAlreadyRunning",
    "ProcessSupervisor",
    "Role",
    "Session",
    "SessionController",
    "SessionRegistry",
    "SessionStatus",
    "SpawnFailure",
    "StyledRun",
]
