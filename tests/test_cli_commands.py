from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

from rich.table import Table

from buildwatch.cli.builtin_commands import register_builtin_commands
from buildwatch.cli.commands import CLIContext, CommandRegistry
from buildwatch.cli.repl import run_repl
from buildwatch.errors import ProcessAlreadyRunning
from buildwatch.locations import LocationKind, LocationRecord
from buildwatch.models import Role, Session
from buildwatch.settings import default_settings_template


def _ctx():
    outputs: list[object] = []
    controller = MagicMock()
    ctx = CLIContext(controller=controller, settings=default_settings_template(), output=outputs.append)
    registry = CommandRegistry()
    register_builtin_commands(registry)
    return ctx, registry, controller, outputs


def _session(role: Role, command: list[str]) -> Session:
    return Session(role=role, command=command, working_directory=Path("/work/demo"))


def test_parse_handles_aliases_and_quoting():
    registry = CommandRegistry()
    register_builtin_commands(registry)
    invocation = registry.parse(':run test cargo test -- "name with space"')
    assert invocation.name == "run"
    assert invocation.args == ["test", "cargo", "test", "--", "name with space"]
    assert registry.parse(":n").name == "next"
    assert registry.parse("cargo build") is None


def test_run_with_role_and_command():
    ctx, registry, controller, outputs = _ctx()
    controller.run.return_value = _session(Role.TEST, ["cargo", "test"])

    result = registry.dispatch(ctx, ":run test cargo test")

    assert result.handled and not result.should_exit
    controller.run.assert_called_once_with(Role.TEST, ["cargo", "test"])
    assert ctx.default_role == Role.TEST
    assert outputs == ["Started test: cargo test (in /work/demo)"]


def test_run_without_role_uses_default_and_role_default_command():
    ctx, registry, controller, _outputs = _ctx()
    controller.run.return_value = _session(Role.BUILD, ["cargo", "build"])

    registry.dispatch(ctx, ":run")
    registry.dispatch(ctx, ":run cargo build --release")

    assert controller.run.call_args_list[0].args == (Role.BUILD, None)
    assert controller.run.call_args_list[1].args == (Role.BUILD, ["cargo", "build", "--release"])


def test_next_and_prev_report_locations():
    ctx, registry, controller, outputs = _ctx()
    record = LocationRecord("src/main.rs", 12, 5, LocationKind.ERROR, 0)
    controller.jump_to_next.return_value = record
    controller.jump_to_previous.return_value = None
    controller.resolve_location.return_value = Path("/work/demo/src/main.rs")

    registry.dispatch(ctx, ":next")
    registry.dispatch(ctx, ":p lint")

    controller.jump_to_next.assert_called_once_with(Role.BUILD)
    controller.jump_to_previous.assert_called_once_with(Role.LINT)
    assert outputs == [
        f"src/main.rs:12:5 (error) -> {Path('/work/demo/src/main.rs')}",
        "No previous location for lint.",
    ]


def test_errors_renders_a_table():
    ctx, registry, controller, outputs = _ctx()
    controller.locations.return_value = (LocationRecord("src/lib.rs", 3, 1, LocationKind.INFO, 4),)
    controller.supervisor.matcher.return_value.current = None

    registry.dispatch(ctx, ":errors")

    assert isinstance(outputs[0], Table)


def test_errors_without_locations():
    ctx, registry, controller, outputs = _ctx()
    controller.locations.return_value = ()
    registry.dispatch(ctx, ":errors test")
    assert outputs == ["No locations found in test output."]


def test_unknown_command_and_handler_errors_are_reported():
    ctx, registry, controller, outputs = _ctx()
    controller.rerun.side_effect = ProcessAlreadyRunning(_session(Role.BUILD, ["cargo", "build"]))

    registry.dispatch(ctx, ":frobnicate")
    registry.dispatch(ctx, ":rerun")
    registry.dispatch(ctx, ":kill nonsense-role")

    assert outputs[0] == "Unknown command: :frobnicate. Type :help for options."
    assert outputs[1] == "Error: A build process is already running"
    assert outputs[2].startswith("Error: Unknown role 'nonsense-role'")


def test_exit_and_help():
    ctx, registry, _controller, outputs = _ctx()
    assert registry.dispatch(ctx, ":q").should_exit
    registry.dispatch(ctx, ":help")
    assert outputs[0].startswith("# Commands")
    assert "- :run [role] [command...]:" in outputs[0]


def test_repl_runs_bare_lines_and_exits():
    ctx, registry, controller, outputs = _ctx()
    ctx.default_role = Role.LINT
    controller.run.return_value = _session(Role.LINT, ["cargo", "clippy"])
    lines = iter(["cargo clippy --all", "", ":status", "exit"])
    goodbyes: list[bool] = []
    controller.session.return_value = None

    run_repl(
        ctx=ctx,
        registry=registry,
        get_user_input=lambda _prompt: next(lines),
        render_goodbye_message=lambda: goodbyes.append(True),
    )

    controller.run.assert_called_once_with(Role.LINT, "cargo clippy --all")
    assert outputs == ["build: idle\ntest: idle\nformat: idle\nlint: idle"]
    assert goodbyes == [True]


def test_repl_reports_controller_errors_and_stops_on_eof():
    ctx, registry, controller, outputs = _ctx()
    controller.run.side_effect = ProcessAlreadyRunning(_session(Role.TEST, ["cargo", "test"]))

    def _input(_prompt, _lines=iter(["cargo build"])):
        try:
            return next(_lines)
        except StopIteration:
            raise EOFError from None

    run_repl(ctx=ctx, registry=registry, get_user_input=_input, render_goodbye_message=lambda: None)

    assert outputs == ["Error: A test process is already running"]
