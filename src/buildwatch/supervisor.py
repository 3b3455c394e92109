"""Spawning and tracking of the external build/test processes, one live session at a time."""

from __future__ import annotations

import contextlib
import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path
from typing import Any

from buildwatch.ansi import AnsiDecoder, DecoderState
from buildwatch.errors import ProcessAlreadyRunning, SpawnFailure
from buildwatch.locations import LocationMatcher, PatternRegistry, default_registry
from buildwatch.models import Role, Session, SessionStatus
from buildwatch.output import LogBuffer, OutputSink
from buildwatch.settings import DEFAULT_TERMINAL

logger = logging.getLogger(__name__)

ConfirmKill = Callable[[Session], bool]
ExitListener = Callable[[Session], None]
Dispatch = Callable[[Callable[[], None]], None]
PreflightHook = Callable[[Path], None]

_READ_CHUNK_BYTES = 4096


def build_process_env(*, terminal: str = DEFAULT_TERMINAL, env_overrides: dict[str, str] | None = None) -> dict[str, str]:
    """Environment for a supervised process: forces a known TERM so color output is predictable."""
    env = dict(os.environ)
    env["TERM"] = terminal
    env.setdefault("CARGO_TERM_COLOR", "always")
    if env_overrides:
        env.update(env_overrides)
    return env


def spawn_process(command: Sequence[str], *, cwd: Path, env: dict[str, str]) -> subprocess.Popen[bytes]:
    """Spawn `command` with merged, unbuffered raw-byte output."""
    popen_kwargs: dict[str, Any] = {
        "cwd": str(cwd),
        "stdin": subprocess.DEVNULL,
        "stdout": subprocess.PIPE,
        "stderr": subprocess.STDOUT,
        "bufsize": 0,
        "env": env,
    }
    if os.name == "nt":
        popen_kwargs["creationflags"] = getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)
    else:
        # Own process group so the interrupt reaches cargo's children (rustc, test binaries) too.
        popen_kwargs["start_new_session"] = True
    return subprocess.Popen(list(command), **popen_kwargs)


_STOP_SIGNALS = ("SIGINT", "SIGTERM", "SIGKILL")


def _signal_process(proc: subprocess.Popen[Any], sig: int) -> None:
    # The whole group when we own one, so cargo's rustc and test children stop too.
    if os.name == "posix" and hasattr(os, "killpg"):
        try:
            os.killpg(proc.pid, sig)
            return
        except OSError as exc:
            logger.debug("killpg(%s, %s) failed: %s", proc.pid, sig, exc)
    with contextlib.suppress(OSError, ValueError):
        proc.send_signal(sig)


def stop_process(proc: subprocess.Popen[Any], *, timeout_s: float = 2.0) -> None:
    """Stop a running subprocess, escalating interrupt -> terminate -> kill with `timeout_s` between steps."""
    if proc.poll() is not None:
        return

    for name in _STOP_SIGNALS:
        sig = getattr(signal, name, None)
        if sig is None:
            continue
        _signal_process(proc, sig)
        try:
            proc.wait(timeout=timeout_s)
            return
        except subprocess.TimeoutExpired:
            logger.debug("pid=%s still running after %s", proc.pid, name)

    # Last resort, and the only step on platforms without SIGKILL.
    with contextlib.suppress(OSError):
        proc.kill()
    with contextlib.suppress(subprocess.TimeoutExpired):
        proc.wait(timeout=timeout_s)


def _inline_dispatch(callback: Callable[[], None]) -> None:
    callback()


class ProcessSupervisor:
    """
    Runs at most one live session across all roles.

    Each role owns a reusable `LogBuffer` and `LocationMatcher`. Output is read on a
    per-session thread and delivered serially through `dispatch` (inline by default; a UI can
    pass its own call-from-thread helper). `confirm_kill` decides whether a start request may
    interrupt the live session; headless callers pass a fixed answer.
    """

    def __init__(
        self,
        confirm_kill: ConfirmKill | None = None,
        *,
        sink: OutputSink | None = None,
        registry: PatternRegistry | None = None,
        decoder: AnsiDecoder | None = None,
        terminal: str = DEFAULT_TERMINAL,
        grace_period_s: float = 2.0,
        env_overrides: dict[str, str] | None = None,
        dispatch: Dispatch | None = None,
        before_start: Iterable[PreflightHook] = (),
        deferred_scans: bool = False,
    ) -> None:
        self.confirm_kill: ConfirmKill = confirm_kill or (lambda _session: False)
        self.sink = sink or OutputSink()
        self.registry = registry or default_registry()
        self.decoder = decoder or AnsiDecoder()
        self.terminal = terminal
        self.grace_period_s = grace_period_s
        self.env_overrides = dict(env_overrides or {})
        self.before_start: list[PreflightHook] = list(before_start)
        self._dispatch: Dispatch = dispatch or _inline_dispatch

        self._lock = threading.Lock()
        self._sessions: dict[Role, Session] = {}
        self._buffers: dict[Role, LogBuffer] = {role: LogBuffer(name=role.value) for role in Role}
        self._matchers: dict[Role, LocationMatcher] = {
            role: LocationMatcher(self.registry, deferred=deferred_scans) for role in Role
        }
        self._decoder_states: dict[Role, DecoderState] = {}
        self._threads: dict[Role, threading.Thread] = {}
        self._exit_listeners: list[ExitListener] = []
        self.sink.subscribe(self._on_buffer_changed)

    def buffer(self, role: Role | str) -> LogBuffer:
        return self._buffers[Role.parse(role)]

    def matcher(self, role: Role | str) -> LocationMatcher:
        return self._matchers[Role.parse(role)]

    def session(self, role: Role | str) -> Session | None:
        return self._sessions.get(Role.parse(role))

    def live_session(self) -> Session | None:
        with self._lock:
            return self._live_session_locked()

    def on_exit(self, listener: ExitListener) -> None:
        self._exit_listeners.append(listener)

    def _live_session_locked(self) -> Session | None:
        for session in self._sessions.values():
            if session.is_live:
                return session
        return None

    def start(self, role: Role | str, command: Sequence[str] | str, cwd: str | Path) -> Session:
        role = Role.parse(role)
        argv = shlex.split(command) if isinstance(command, str) else [str(part) for part in command]
        if not argv:
            raise ValueError("command is empty")
        directory = Path(cwd).expanduser().resolve()

        # Conflict check and session creation form one decision; no other start may interleave.
        with self._lock:
            live = self._live_session_locked()
            if live is not None:
                if not self.confirm_kill(live):
                    raise ProcessAlreadyRunning(live)
                logger.info("Interrupting running %s session before starting %s", live.role.value, role.value)
                self._terminate_session(live)

            for hook in self.before_start:
                hook(directory)

            session = Session(role=role, command=argv, working_directory=directory)
            buffer = self._buffers[role]
            with buffer.lock:
                self._sessions[role] = session
                self._decoder_states[role] = self.decoder.initial_state()
                self.sink.reset(buffer)
                self._matchers[role].reset()

            try:
                proc = spawn_process(
                    argv,
                    cwd=directory,
                    env=build_process_env(terminal=self.terminal, env_overrides=self.env_overrides),
                )
            except OSError as exc:
                logger.warning("Failed to spawn %s in %s: %s", argv, directory, exc)
                raise SpawnFailure(argv, exc) from exc

            session.process = proc
            session.pid = getattr(proc, "pid", None)
            session.started_at = time.time()
            session.status = SessionStatus.RUNNING
            reader = threading.Thread(
                target=self._read_output,
                args=(session,),
                daemon=True,
                name=f"buildwatch-{role.value}-reader",
            )
            self._threads[role] = reader
            reader.start()
            logger.debug("Started %s session pid=%s: %s", role.value, session.pid, argv)
        return session

    def terminate(self, role: Role | str) -> Session | None:
        """Interrupt the role's session; a no-op when it is not running."""
        role = Role.parse(role)
        with self._lock:
            session = self._sessions.get(role)
            if session is None or not session.is_live:
                return session
            self._terminate_session(session)
        return session

    def wait(self, role: Role | str, timeout: float | None = None) -> Session | None:
        """Block until the role's current session has been fully processed."""
        session = self._sessions.get(Role.parse(role))
        if session is None or session.process is None:
            return session
        session.finished.wait(timeout)
        return session

    def _terminate_session(self, session: Session) -> None:
        proc = session.process
        return_code = proc.poll() if proc is not None else None
        if return_code is not None:
            # Exited on its own; the reader has not reported it yet.
            session.exit_code = return_code
            session.status = SessionStatus.EXITED
        else:
            session.kill_requested = True
            if proc is not None:
                stop_process(proc, timeout_s=self.grace_period_s)
            session.status = SessionStatus.KILLED
        if session.ended_at is None:
            session.ended_at = time.time()
        reader = self._threads.get(session.role)
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=self.grace_period_s)

    def _read_output(self, session: Session) -> None:
        proc = session.process
        stream = getattr(proc, "stdout", None)
        try:
            if stream is None:
                logger.warning("Subprocess stdout unavailable for %s session", session.role.value)
            else:
                while True:
                    chunk = stream.read(_READ_CHUNK_BYTES)
                    if not chunk:
                        break
                    self._dispatch(lambda data=chunk: self._deliver(session, data))
        except (OSError, ValueError) as exc:
            logger.warning("Output stream error for %s session: %s", session.role.value, exc)
        finally:
            if stream is not None:
                with contextlib.suppress(Exception):
                    stream.close()
            try:
                return_code = proc.wait()
            except Exception as exc:
                logger.warning("Failed waiting for %s session: %s", session.role.value, exc)
                return_code = getattr(proc, "returncode", None)
            self._dispatch(lambda: self._handle_exit(session, return_code))

    def _deliver(self, session: Session, chunk: bytes) -> None:
        role = session.role
        buffer = self._buffers[role]
        with buffer.lock:
            if self._sessions.get(role) is not session:
                return
            state = self._decoder_states.get(role) or self.decoder.initial_state()
            runs, state = self.decoder.decode(state, chunk)
            self._decoder_states[role] = state
            if runs:
                self.sink.append(buffer, runs)

    def _handle_exit(self, session: Session, return_code: int | None) -> None:
        role = session.role
        buffer = self._buffers[role]
        with buffer.lock:
            current = self._sessions.get(role) is session
            if current:
                state = self._decoder_states.get(role) or self.decoder.initial_state()
                runs, state = self.decoder.flush(state)
                self._decoder_states[role] = state
                if runs:
                    self.sink.append(buffer, runs)
                self.sink.finish(buffer)
                self._matchers[role].finalize(buffer)

        if return_code is not None:
            session.exit_code = return_code
        if session.ended_at is None:
            session.ended_at = time.time()
        session.status = SessionStatus.KILLED if session.kill_requested else SessionStatus.EXITED
        session.finished.set()
        logger.debug("%s session finished: %s", role.value, session.describe())

        if not current:
            # Superseded by a newer run of the same role; its buffer and matcher are no longer ours.
            return
        for listener in list(self._exit_listeners):
            try:
                listener(session)
            except Exception:
                logger.exception("Exit listener failed for %s session", role.value)

    def _on_buffer_changed(self, buffer: LogBuffer, changed_from: int) -> None:
        for role, owned in self._buffers.items():
            if owned is buffer:
                self._matchers[role].on_buffer_changed(buffer, changed_from)
                return
