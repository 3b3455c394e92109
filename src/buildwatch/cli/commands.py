from __future__ import annotations

import logging
import shlex
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from buildwatch.models import Role
from buildwatch.settings import BuildwatchSettings
from buildwatch.session import SessionController

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandInvocation:
    name: str
    args: list[str]
    raw: str


@dataclass(frozen=True)
class CommandDispatchResult:
    handled: bool
    should_exit: bool = False


CommandHandler = Callable[["CLIContext", CommandInvocation], CommandDispatchResult]


@dataclass
class CLIContext:
    """Mutable runtime context shared across REPL commands."""

    controller: SessionController
    settings: BuildwatchSettings
    output: Callable[[Any], None]
    view: Any | None = None

    # Role used when a command omits one; updated by :run/:rerun.
    default_role: Role = Role.BUILD

    def role_arg(self, args: list[str]) -> Role:
        if args:
            return Role.parse(args[0])
        return self.default_role


@dataclass(frozen=True)
class CommandSpec:
    name: str
    handler: CommandHandler
    help: str
    usage: str | None = None


class CommandRegistry:
    def __init__(self) -> None:
        self._commands: dict[str, CommandSpec] = {}
        self._aliases: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        *,
        help: str,  # noqa: A002
        usage: str | None = None,
        aliases: tuple[str, ...] = (),
    ) -> None:
        key = (name or "").strip().lstrip(":").lower()
        if not key:
            raise ValueError("Command name is required")
        self._commands[key] = CommandSpec(name=key, handler=handler, help=help, usage=usage)
        for alias in aliases:
            self._aliases[alias.strip().lstrip(":").lower()] = key

    def list_commands(self) -> list[CommandSpec]:
        return sorted(self._commands.values(), key=lambda c: c.name)

    def parse(self, line: str) -> CommandInvocation | None:
        raw = (line or "").strip()
        if not raw.startswith(":"):
            return None

        try:
            parts = shlex.split(raw)
        except ValueError:
            parts = raw.split()

        if not parts:
            return None

        name = parts[0].lstrip(":").strip().lower()
        args = parts[1:]
        return CommandInvocation(name=self._aliases.get(name, name), args=args, raw=raw)

    def dispatch(self, ctx: CLIContext, line: str) -> CommandDispatchResult:
        invocation = self.parse(line)
        if invocation is None:
            return CommandDispatchResult(handled=False)

        if not invocation.name:
            return CommandDispatchResult(handled=True)

        spec = self._commands.get(invocation.name)
        if spec is None:
            ctx.output(f"Unknown command: :{invocation.name}. Type :help for options.")
            return CommandDispatchResult(handled=True)

        try:
            return spec.handler(ctx, invocation)
        except Exception as e:
            logger.debug("Command :%s failed", invocation.name, exc_info=True)
            ctx.output(f"Error: {e}")
            return CommandDispatchResult(handled=True)
