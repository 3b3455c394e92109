from __future__ import annotations

import sys
from pathlib import Path

import pytest

from buildwatch.cli.main import _exit_code_for, create_controller, main
from buildwatch.models import Role, Session, SessionStatus
from buildwatch.settings import BuildwatchSettings


@pytest.fixture(autouse=True)
def _in_tmp(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)


def test_main_returns_the_process_exit_code(capsys):
    code = main(["--display", "background", "--", sys.executable, "-c", "import sys; sys.exit(3)"])
    assert code == 3
    assert "exited with code 3" in capsys.readouterr().out


def test_main_streams_output_and_lists_locations(capsys):
    script = "print('error: oops'); print('  --> src/main.rs:2:1')"
    code = main(["-y", sys.executable, "-c", script])
    out = capsys.readouterr().out
    assert code == 0
    assert "error: oops" in out
    assert "finished" in out
    assert "src/main.rs:2:1" in out


def test_main_reports_spawn_failures(capsys):
    code = main(["--role", "test", "buildwatch-no-such-program-xyz"])
    assert code == 1
    assert "Failed to start buildwatch-no-such-program-xyz" in capsys.readouterr().out


def test_main_rejects_unknown_role():
    with pytest.raises(SystemExit) as excinfo:
        main(["--role", "deploy"])
    assert excinfo.value.code == 2


def test_configured_patterns_are_registered():
    settings = BuildwatchSettings(
        patterns=[{"id": "pytest", "pattern": r"^(\S+\.py):(\d+): ", "groups": {"1": "file", "2": "line"}}]
    )
    controller = create_controller(settings, confirm_kill=lambda _session: False)
    assert controller.supervisor.registry.ids() == ["arrow", "colon", "panic", "pytest"]


def test_exit_code_mapping():
    session = Session(role=Role.BUILD, command=["cargo", "build"], working_directory=Path("."))
    session.status = SessionStatus.EXITED
    session.exit_code = 0
    assert _exit_code_for(session) == 0
    session.exit_code = -9
    assert _exit_code_for(session) == 137
    session.status = SessionStatus.KILLED
    assert _exit_code_for(session) == 130
