from __future__ import annotations

import asyncio

import discord
from discord.ext import commands


def make_confirm(bot: commands.Bot, ctx: commands.Context, *, timeout: float = 30):
    """Returns an async prompt(text) -> reply text, or None on timeout."""

    def _check(message: discord.Message) -> bool:
        return message.author.id == ctx.author.id and message.channel.id == ctx.channel.id

    async def confirm(text: str) -> str | None:
        await ctx.send(f"{text} (waiting {int(timeout)}s)")
        try:
            reply = await bot.wait_for("message", check=_check, timeout=timeout)
        except asyncio.TimeoutError:
            await ctx.send("No answer; cancelled.")
            return None
        return reply.content

    return confirm
