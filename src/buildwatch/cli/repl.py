from __future__ import annotations

from collections.abc import Callable

from buildwatch.cli.commands import CLIContext, CommandRegistry
from buildwatch.errors import BuildwatchError


def run_repl(
    *,
    ctx: CLIContext,
    registry: CommandRegistry,
    get_user_input: Callable[[str], str],
    render_goodbye_message: Callable[[], None],
) -> None:
    while True:
        try:
            user_input = get_user_input("\n~ ")

            if (user_input or "").strip().lower() in {"exit", "quit"}:
                render_goodbye_message()
                break

            dispatch = registry.dispatch(ctx, user_input)
            if dispatch.handled:
                if dispatch.should_exit:
                    render_goodbye_message()
                    break
                continue

            if not user_input.strip():
                continue

            # A bare line is a command for the current role.
            session = ctx.controller.run(ctx.default_role, user_input.strip())
            if ctx.view is not None:
                ctx.view.begin(session)
        except (KeyboardInterrupt, EOFError):
            render_goodbye_message()
            break
        except BuildwatchError as e:
            ctx.output(f"Error: {e}")
