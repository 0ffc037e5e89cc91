from __future__ import annotations

import io
from typing import AsyncIterator

import discord

from bottles.assets import extension_for
from bottles.assets import split_data_uri
from bottles.assets import local_path
from bottles.content import MediaSpan
from bottles.content import TextSpan
from bottles.content import from_plain
from bottles.content import parse
from bottles.delivery import PRIVATE_PREFIX
from bottles.models import Actor


DISCORD_HARD_LIMIT = 2000


def address_for(message: discord.Message) -> str:
    if message.guild is None:
        return f"{PRIVATE_PREFIX}{message.author.id}"
    return str(message.channel.id)


def actor_for(message: discord.Message) -> Actor:
    return Actor(
        user_id=str(message.author.id),
        display_name=str(getattr(message.author, "display_name", "") or message.author.name),
        guild_id=str(message.guild.id) if message.guild else "",
        channel_id=address_for(message),
    )


def _attachment_kind(attachment: discord.Attachment) -> str | None:
    ctype = (attachment.content_type or "").split(";", 1)[0].strip().lower()
    major = ctype.split("/", 1)[0]
    if major in ("image", "audio", "video"):
        return major
    return None


def content_from_message(message: discord.Message, text: str | None = None) -> str:
    """Stored rich-text form of a chat message: its text plus image/audio/video attachments."""
    media = []
    for attachment in message.attachments:
        kind = _attachment_kind(attachment)
        if kind:
            media.append(MediaSpan(kind, attachment.url))
    body = message.content if text is None else text
    return from_plain((body or "").strip(), media)


def render_for_discord(content: str) -> tuple[str, list[discord.File]]:
    parts: list[str] = []
    files: list[discord.File] = []
    for idx, span in enumerate(parse(content)):
        if isinstance(span, TextSpan):
            parts.append(span.text)
            continue
        rep = span.representation
        if rep == "remote":
            parts.append(f"\n{span.src}\n")
        elif rep == "inline":
            mime, data = split_data_uri(span.src)
            files.append(discord.File(io.BytesIO(data), filename=f"{span.kind}-{idx}{extension_for(mime)}"))
        else:
            files.append(discord.File(str(local_path(span.src))))
    text = "".join(parts).strip()
    if len(text) > DISCORD_HARD_LIMIT:
        raise ValueError(f"message is {len(text)} characters; Discord accepts {DISCORD_HARD_LIMIT}")
    return text, files


class DiscordTransport:
    platform = "discord"

    def __init__(self, bot: discord.Client) -> None:
        self.bot = bot

    async def _resolve(self, address: str) -> discord.abc.Messageable:
        address = str(address)
        if address.startswith(PRIVATE_PREFIX):
            uid = int(address[len(PRIVATE_PREFIX):])
            return self.bot.get_user(uid) or await self.bot.fetch_user(uid)
        cid = int(address)
        channel = self.bot.get_channel(cid)
        if channel is None:
            channel = await self.bot.fetch_channel(cid)
        if not isinstance(channel, discord.abc.Messageable):
            raise TypeError(f"channel {address} cannot receive messages")
        return channel

    async def send_message(self, address: str, content: str) -> discord.Message:
        channel = await self._resolve(address)
        text, files = render_for_discord(content)
        kwargs = {}
        if text:
            kwargs["content"] = text
        if files:
            kwargs["files"] = files
        if not kwargs:
            raise ValueError("nothing to send")
        return await channel.send(**kwargs)

    async def delete_message(self, channel_address: str, handle) -> None:
        if isinstance(handle, discord.Message):
            await handle.delete()
            return
        channel = await self._resolve(channel_address)
        await channel.get_partial_message(int(getattr(handle, "id", handle))).delete()

    async def iter_guilds(self) -> AsyncIterator[discord.Guild]:
        for guild in list(self.bot.guilds):
            yield guild

    async def iter_channels(self, guild_id: str, text_only: bool = True) -> AsyncIterator[discord.abc.GuildChannel]:
        try:
            guild = self.bot.get_guild(int(guild_id))
        except (TypeError, ValueError):
            guild = None
        if guild is None:
            return
        channels = guild.text_channels if text_only else guild.channels
        for channel in channels:
            if text_only and guild.me is not None and not channel.permissions_for(guild.me).send_messages:
                continue
            yield channel

    async def iter_friends(self) -> AsyncIterator[discord.User]:
        # Bot accounts have no friend list; any cached user is reachable by DM.
        for user in list(self.bot.users):
            yield user
