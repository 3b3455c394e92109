from __future__ import annotations

from buildwatch.cli.commands import (
    CLIContext,
    CommandDispatchResult,
    CommandInvocation,
    CommandRegistry,
)
from buildwatch.display import render_locations
from buildwatch.locations import LocationRecord
from buildwatch.models import Role, Session


def _split_role(args: list[str], default: Role) -> tuple[Role, list[str]]:
    if args:
        try:
            return Role.parse(args[0]), args[1:]
        except ValueError:
            pass
    return default, list(args)


def _started(ctx: CLIContext, session: Session) -> None:
    ctx.default_role = session.role
    if ctx.view is not None:
        ctx.view.begin(session)
    ctx.output(f"Started {session.role.value}: {' '.join(session.command)} (in {session.working_directory})")


def _describe_jump(ctx: CLIContext, role: Role, record: LocationRecord | None, direction: str) -> str:
    if record is None:
        return f"No {direction} location for {role.value}."
    path = ctx.controller.resolve_location(role, record)
    return f"{record} ({record.kind.value}) -> {path}"


def register_builtin_commands(registry: CommandRegistry) -> None:
    def _help(ctx: CLIContext, _inv: CommandInvocation) -> CommandDispatchResult:
        lines: list[str] = ["# Commands", ""]
        for spec in registry.list_commands():
            usage = f":{spec.name} {spec.usage}".strip() if spec.usage else f":{spec.name}"
            lines.append(f"- {usage}: {spec.help}")
        ctx.output("\n".join(lines))
        return CommandDispatchResult(handled=True)

    def _exit(_ctx: CLIContext, _inv: CommandInvocation) -> CommandDispatchResult:
        return CommandDispatchResult(handled=True, should_exit=True)

    def _run(ctx: CLIContext, inv: CommandInvocation) -> CommandDispatchResult:
        role, command = _split_role(inv.args, ctx.default_role)
        session = ctx.controller.run(role, command or None)
        _started(ctx, session)
        return CommandDispatchResult(handled=True)

    def _rerun(ctx: CLIContext, inv: CommandInvocation) -> CommandDispatchResult:
        session = ctx.controller.rerun(ctx.role_arg(inv.args))
        _started(ctx, session)
        return CommandDispatchResult(handled=True)

    def _kill(ctx: CLIContext, inv: CommandInvocation) -> CommandDispatchResult:
        role = ctx.role_arg(inv.args)
        session = ctx.controller.terminate(role)
        if session is None:
            ctx.output(f"No {role.value} session.")
        else:
            ctx.output(session.describe())
        return CommandDispatchResult(handled=True)

    def _next(ctx: CLIContext, inv: CommandInvocation) -> CommandDispatchResult:
        role = ctx.role_arg(inv.args)
        ctx.output(_describe_jump(ctx, role, ctx.controller.jump_to_next(role), "next"))
        return CommandDispatchResult(handled=True)

    def _prev(ctx: CLIContext, inv: CommandInvocation) -> CommandDispatchResult:
        role = ctx.role_arg(inv.args)
        ctx.output(_describe_jump(ctx, role, ctx.controller.jump_to_previous(role), "previous"))
        return CommandDispatchResult(handled=True)

    def _errors(ctx: CLIContext, inv: CommandInvocation) -> CommandDispatchResult:
        role = ctx.role_arg(inv.args)
        records = ctx.controller.locations(role)
        if not records:
            ctx.output(f"No locations found in {role.value} output.")
        else:
            current = ctx.controller.supervisor.matcher(role).current
            ctx.output(render_locations(records, current=current))
        return CommandDispatchResult(handled=True)

    def _log(ctx: CLIContext, inv: CommandInvocation) -> CommandDispatchResult:
        role = ctx.role_arg(inv.args)
        buffer = ctx.controller.supervisor.buffer(role)
        with buffer.lock:
            rendered = buffer.render()
        ctx.output(rendered if len(rendered) else f"({role.value} log is empty)")
        return CommandDispatchResult(handled=True)

    def _status(ctx: CLIContext, _inv: CommandInvocation) -> CommandDispatchResult:
        lines: list[str] = []
        for role in Role:
            session = ctx.controller.session(role)
            lines.append(session.describe() if session is not None else f"{role.value}: idle")
        ctx.output("\n".join(lines))
        return CommandDispatchResult(handled=True)

    registry.register("help", _help, help="Show this help")
    registry.register("exit", _exit, help="Exit the REPL", aliases=("quit", "q"))
    registry.register("run", _run, help="Run a role (default command when none given)", usage="[role] [command...]")
    registry.register("rerun", _rerun, help="Repeat the last run in its directory", usage="[role]")
    registry.register("kill", _kill, help="Interrupt the running process", usage="[role]")
    registry.register("next", _next, help="Jump to the next location", usage="[role]", aliases=("n",))
    registry.register("prev", _prev, help="Jump to the previous location", usage="[role]", aliases=("p",))
    registry.register("errors", _errors, help="List locations found in the output", usage="[role]")
    registry.register("log", _log, help="Print the captured log", usage="[role]")
    registry.register("status", _status, help="Show session status for every role")
