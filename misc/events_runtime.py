from __future__ import annotations

import asyncio

import discord
from discord.ext import commands

from bottles.errors import BottleError
from misc.discord_transport import actor_for
from misc.discord_transport import address_for
from misc.discord_transport import content_from_message
from misc.runtime_deps import RuntimeBootDeps
from misc.runtime_deps import RuntimeDeps


async def redirect_quoted_reply(bot: commands.Bot, message: discord.Message, *, deps: RuntimeDeps) -> bool:
    """Turn a reply to a delivered bottle into a comment unless the author cancels in time."""
    ref = message.reference
    if ref is None or ref.message_id is None:
        return False
    bottle_id = deps.bottle_service.bottle_for_message(ref.message_id)
    if bottle_id is None:
        return False

    timeout = deps.prompt_timeout_seconds
    prompt = await message.channel.send(
        f"This reply will be posted as a comment on bottle #{bottle_id}. "
        f"Send `cancel` within {int(timeout)}s to stop."
    )

    def _is_cancel(m: discord.Message) -> bool:
        return (
            m.author.id == message.author.id
            and m.channel.id == message.channel.id
            and (m.content or "").strip().lower() == "cancel"
        )

    try:
        try:
            await bot.wait_for("message", check=_is_cancel, timeout=timeout)
        except asyncio.TimeoutError:
            pass
        else:
            await message.channel.send("Comment cancelled.")
            return True

        try:
            comment, warnings = await deps.bottle_service.post_comment(
                actor_for(message),
                bottle_id=bottle_id,
                content=content_from_message(message),
                reply_address=address_for(message),
            )
        except BottleError as e:
            await message.channel.send(f"Error: {e}"[:1900])
            return True
        for warning in warnings:
            await message.channel.send(warning)
        if not deps.bottle_service.settings.preview:
            await message.channel.send(f"Comment #{comment.cid} posted on bottle #{comment.bid}.")
        return True
    finally:
        try:
            await prompt.delete()
        except discord.HTTPException as e:
            print(f"[Bottles] could not delete reply prompt: {e}")


def register_runtime_events(
    bot: commands.Bot,
    *,
    deps: RuntimeDeps,
    boot: RuntimeBootDeps,
) -> None:
    @bot.event
    async def on_ready():
        print(f"Drift bottle bot is online as {bot.user}")
        if not getattr(bot, "_counts_backfilled", False):
            await boot.backfill_comment_counts_func()
            bot._counts_backfilled = True

        if boot.broadcast_enabled and not getattr(bot, "_broadcast_task", None):
            bot._broadcast_task = asyncio.create_task(boot.broadcast_loop_func())
            print("[Broadcast] loop task started")

    @bot.event
    async def on_message(message: discord.Message):
        if message.author.bot:
            return

        if (message.content or "").lstrip().startswith(deps.command_prefix):
            await bot.process_commands(message)
            return

        if message.reference is not None:
            await redirect_quoted_reply(bot, message, deps=deps)
