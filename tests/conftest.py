"""
Test configuration and fixtures for pytest
"""

from __future__ import annotations

import os
import subprocess
import threading
import time
from contextlib import suppress

import pytest

from buildwatch import supervisor as supervisor_mod


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch, tmp_path):
    """Keep unit tests deterministic: no user settings, no inherited overrides."""
    for name in list(os.environ):
        if name.startswith("BUILDWATCH_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("BUILDWATCH_STATE_DIR", str(tmp_path / "state"))


class PipeProc:
    """
    Stand-in for `subprocess.Popen` backed by a real pipe.

    Tests feed bytes with `feed()` and end the process with `exit()`; the supervisor's reader
    thread sees them exactly as it would see a child's stdout.
    """

    def __init__(self, pid: int = 424242) -> None:
        read_fd, write_fd = os.pipe()
        self.stdout = os.fdopen(read_fd, "rb", buffering=0)
        self._writer = os.fdopen(write_fd, "wb", buffering=0)
        self.pid = pid
        self.returncode: int | None = None
        self._exited = threading.Event()

    def feed(self, data: bytes) -> None:
        self._writer.write(data)

    def exit(self, code: int = 0) -> None:
        if self.returncode is None:
            self.returncode = code
        with suppress(OSError):
            self._writer.close()
        self._exited.set()

    def poll(self) -> int | None:
        return self.returncode

    def wait(self, timeout: float | None = None) -> int | None:
        if not self._exited.wait(timeout):
            raise subprocess.TimeoutExpired("fake", timeout)
        return self.returncode


@pytest.fixture
def pipe_procs(monkeypatch):
    """
    Patch process spawning so every start gets a fresh `PipeProc`.

    `stop_process` is replaced as well so no real signal is ever sent to the fake pid.
    """
    spawned: list[PipeProc] = []
    calls: list[dict] = []
    stopped: list[PipeProc] = []

    def _fake_popen(command, **kwargs):
        calls.append({"command": command, "kwargs": kwargs})
        proc = PipeProc(pid=424242 + len(spawned))
        spawned.append(proc)
        return proc

    def _fake_stop(proc, *, timeout_s=2.0):
        stopped.append(proc)
        proc.exit(-2)

    monkeypatch.setattr(supervisor_mod.subprocess, "Popen", _fake_popen)
    monkeypatch.setattr(supervisor_mod, "stop_process", _fake_stop)
    yield spawned, calls, stopped
    for proc in spawned:
        proc.exit(0)


@pytest.fixture
def wait_for():
    """Poll `predicate` until it holds; reader threads deliver output asynchronously."""

    def _wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait_for
