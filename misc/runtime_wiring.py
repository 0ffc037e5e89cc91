from __future__ import annotations

from misc.commands.command_deps import CommandDeps
from misc.commands.command_deps import CommandGates
from misc.commands.commands_bottles import register as register_bottles
from misc.events_runtime import register_runtime_events
from misc.runtime_deps import RuntimeBootDeps
from misc.runtime_deps import RuntimeDeps


def wire_bot_runtime(
    bot,
    *,
    user_is_operator,
    send_chunked,
    make_confirm,
    bottle_service,
    command_prefix: str,
    prompt_timeout_seconds: float,
    broadcast_enabled: bool,
    broadcast_loop_func,
) -> None:
    command_deps = CommandDeps(
        send_chunked=send_chunked,
        command_prefix=command_prefix,
        prompt_timeout_seconds=prompt_timeout_seconds,
        bottle_service=bottle_service,
        make_confirm=make_confirm,
    )
    command_gates = CommandGates(
        user_is_operator=user_is_operator,
    )

    register_bottles(
        bot,
        deps=command_deps,
        gates=command_gates,
    )

    register_runtime_events(
        bot,
        deps=RuntimeDeps(
            bottle_service=bottle_service,
            command_prefix=command_prefix,
            prompt_timeout_seconds=prompt_timeout_seconds,
        ),
        boot=RuntimeBootDeps(
            backfill_comment_counts_func=bottle_service.backfill_comment_counts,
            broadcast_enabled=broadcast_enabled,
            broadcast_loop_func=broadcast_loop_func,
        ),
    )
