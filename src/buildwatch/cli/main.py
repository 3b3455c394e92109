from __future__ import annotations

import argparse
import logging
import os
import sys
from collections.abc import Callable, Sequence

from rich.console import Console
from rich.markup import escape

from buildwatch.ansi import AnsiDecoder
from buildwatch.cli.builtin_commands import register_builtin_commands
from buildwatch.cli.commands import CLIContext, CommandRegistry
from buildwatch.cli.repl import run_repl
from buildwatch.display import ConsoleView, console_confirm_kill
from buildwatch.errors import BuildwatchError
from buildwatch.locations import default_registry, register_families_from_config
from buildwatch.models import DisplayPolicy, Role, Session, SessionStatus
from buildwatch.output import OutputSink
from buildwatch.session import SessionController, SessionRegistry
from buildwatch.settings import BuildwatchSettings, load_settings
from buildwatch.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

_INTERRUPTED_EXIT_CODE = 130


def _configure_logging() -> None:
    level_name = (os.getenv("BUILDWATCH_LOG_LEVEL") or "WARNING").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def create_controller(
    settings: BuildwatchSettings,
    *,
    confirm_kill: Callable[[Session], bool],
    sink: OutputSink | None = None,
) -> SessionController:
    """Wire decoder, sink, pattern registry and supervisor from settings."""
    registry = default_registry()
    register_families_from_config(registry, settings.patterns)
    supervisor = ProcessSupervisor(
        confirm_kill,
        sink=sink or OutputSink(collapse_carriage_returns=settings.carriage_return_collapse),
        registry=registry,
        decoder=AnsiDecoder(settings.color_palette.build()),
        terminal=settings.terminal,
        grace_period_s=settings.grace_period_s,
    )
    return SessionController(supervisor, SessionRegistry(), settings)


def _exit_code_for(session: Session) -> int:
    if session.status == SessionStatus.KILLED:
        return _INTERRUPTED_EXIT_CODE
    if session.exit_code is None:
        return 1
    if session.exit_code < 0:
        return 128 - session.exit_code
    return session.exit_code


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="buildwatch",
        description="Run a build/test command, stream its colored output and list the source locations it reports.",
    )
    parser.add_argument("command", nargs=argparse.REMAINDER, help="Command to run (default: the role's command)")
    parser.add_argument(
        "--role",
        "-r",
        default=Role.BUILD.value,
        help="Process role: build, test, format or lint (default: build)",
    )
    parser.add_argument(
        "--display",
        choices=[policy.value for policy in DisplayPolicy],
        default=None,
        help="How output is shown (overrides BUILDWATCH_DISPLAY / settings)",
    )
    parser.add_argument(
        "--no-cr-collapse",
        action="store_true",
        help="Keep carriage-return overwrites instead of collapsing them",
    )
    parser.add_argument("--yes", "-y", action="store_true", help="Kill a conflicting process without asking")
    parser.add_argument("--repl", action="store_true", help="Start an interactive :command prompt")
    args = parser.parse_args(argv)

    _configure_logging()

    try:
        role = Role.parse(args.role)
    except ValueError as e:
        parser.error(str(e))

    settings = load_settings()
    console = Console(highlight=False)
    policy = DisplayPolicy(args.display) if args.display else settings.display_policy
    sink = OutputSink(collapse_carriage_returns=settings.carriage_return_collapse and not args.no_cr_collapse)
    confirm_kill = (lambda _session: True) if args.yes else console_confirm_kill(console)
    controller = create_controller(settings, confirm_kill=confirm_kill, sink=sink)

    view = ConsoleView(console, policy=policy)
    view.attach(sink)

    if args.repl:
        ctx = CLIContext(
            controller=controller,
            settings=settings,
            output=lambda value: console.print(value, markup=False),
            view=view,
            default_role=role,
        )
        registry = CommandRegistry()
        register_builtin_commands(registry)
        controller.supervisor.on_exit(
            lambda session: view.summary(session, controller.supervisor.matcher(session.role).records)
        )
        try:
            run_repl(
                ctx=ctx,
                registry=registry,
                get_user_input=console.input,
                render_goodbye_message=lambda: console.print("Bye."),
            )
        finally:
            live = controller.supervisor.live_session()
            if live is not None:
                controller.terminate(live.role)
        return 0

    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    try:
        session = controller.run(role, command or None)
    except BuildwatchError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        return 1

    view.begin(session)
    try:
        controller.supervisor.wait(role)
    except KeyboardInterrupt:
        controller.terminate(role)
        controller.supervisor.wait(role, timeout=settings.grace_period_s)

    view.summary(session, controller.locations(role))
    return _exit_code_for(session)


if __name__ == "__main__":
    sys.exit(main())
