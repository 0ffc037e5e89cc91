from __future__ import annotations

import re

import discord
from discord.ext import commands

from bottles import render
from bottles.errors import AssetFetchFailure
from bottles.errors import BottleError
from bottles.errors import DeliveryFailure
from bottles.errors import ValidationError
from bottles.service import Quote
from misc.commands.command_deps import CommandDeps
from misc.commands.command_deps import CommandGates
from misc.discord_transport import actor_for
from misc.discord_transport import address_for
from misc.discord_transport import content_from_message


_FLAG_ALIASES = {
    "-t": "--title",
    "-r": "--reply-to",
    "-d": "--delay",
    "-i": "--ids-only",
}


def parse_flags(raw: str, *, valued: set[str], switches: set[str] = frozenset()) -> tuple[dict[str, str | bool], str]:
    """Pull leading --flags off ``raw``; the remainder keeps its original spacing."""
    text = (raw or "").lstrip()
    found: dict[str, str | bool] = {}
    while text.startswith("-"):
        m = re.match(r"(\S+)\s*", text)
        flag = _FLAG_ALIASES.get(m.group(1), m.group(1))
        if flag in switches:
            found[flag] = True
            text = text[m.end():]
            continue
        if flag not in valued:
            break
        text = text[m.end():]
        v = re.match(r"(\S+)\s*", text)
        if not v:
            raise ValidationError(f"{flag} needs a value")
        found[flag] = v.group(1)
        text = text[v.end():]
    # switches may also trail the arguments
    for flag in switches:
        for spelled in [flag] + [k for k, v in _FLAG_ALIASES.items() if v == flag]:
            pattern = rf"(?:^|\s){re.escape(spelled)}(?=\s|$)"
            if re.search(pattern, text):
                found[flag] = True
                text = re.sub(pattern, " ", text)
    return found, text.strip()


def _int_arg(token: str | None, name: str, default: int | None = None, *, required: bool = False) -> int | None:
    if token is None or token == "":
        if required:
            raise ValidationError(f"{name} is required")
        return default
    if not re.fullmatch(r"-?\d+", str(token).strip()):
        raise ValidationError(f"{name} must be a number")
    return int(token)


def _user_id(token: str) -> str:
    m = re.fullmatch(r"<@!?(\d+)>|(\d+)", (token or "").strip())
    if not m:
        raise ValidationError("user must be a mention or an id")
    return m.group(1) or m.group(2)


async def _quoted(ctx: commands.Context) -> discord.Message | None:
    ref = ctx.message.reference
    if ref is None or ref.message_id is None:
        return None
    if isinstance(ref.resolved, discord.Message):
        return ref.resolved
    try:
        return await ctx.channel.fetch_message(ref.message_id)
    except discord.HTTPException:
        return None


def _quote_of(message: discord.Message | None) -> Quote | None:
    if message is None:
        return None
    return Quote(
        author_id=str(message.author.id),
        author_name=str(getattr(message.author, "display_name", "") or message.author.name),
        content=content_from_message(message),
    )


async def report_error(ctx: commands.Context, e: BottleError, *, rolled_back: bool = False) -> None:
    """Reply with the error; rolled_back marks failures after which the new post was deleted again."""
    msg = f"Error: {e}"
    if isinstance(e, AssetFetchFailure):
        msg += f"\nIt was removed. {render.ASSET_REMEDIATION}"
    elif isinstance(e, DeliveryFailure) and rolled_back:
        msg += "\nIt was removed. Try again later, shorten it or leave out the media."
    await ctx.send(msg[:1900])


def register(
    bot: commands.Bot,
    *,
    deps: CommandDeps,
    gates: CommandGates,
) -> None:
    svc = deps.bottle_service
    prefix = deps.command_prefix

    async def require_operator(ctx: commands.Context) -> bool:
        if gates.user_is_operator(ctx.author):
            return True
        await ctx.send("This command is operator-only.")
        return False

    def confirm_for(ctx: commands.Context):
        return deps.make_confirm(bot, ctx, timeout=deps.prompt_timeout_seconds)

    @bot.command(name="bottle.post")
    async def bottle_post(ctx: commands.Context, *, raw: str = ""):
        try:
            flags, text = parse_flags(raw, valued={"--title"})
            quote = _quote_of(await _quoted(ctx))
            content = content_from_message(ctx.message, text=text)
            bottle = await svc.post_bottle(
                actor_for(ctx.message),
                content=content,
                title=flags.get("--title"),
                quote=None if content else quote,
                reply_address=address_for(ctx.message),
            )
        except BottleError as e:
            await report_error(ctx, e, rolled_back=True)
            return
        if not svc.settings.preview:
            await ctx.send(render.post_receipt(bottle, prefix))

    @bot.command(name="bottle.draw")
    async def bottle_draw(ctx: commands.Context, *, raw: str = ""):
        tokens = raw.split()
        page = 1
        if len(tokens) > 1 and tokens[-1].isdigit():
            page = int(tokens.pop())
        try:
            await svc.draw_bottle(query=" ".join(tokens), page=page, reply_address=address_for(ctx.message))
        except BottleError as e:
            await report_error(ctx, e)

    @bot.command(name="bottle.comment")
    async def bottle_comment(ctx: commands.Context, *, raw: str = ""):
        try:
            flags, rest = parse_flags(raw, valued={"--reply-to"})
            m = re.match(r"(\S+)\s*", rest)
            if not m:
                await ctx.send(f"Usage: `{prefix}bottle.comment [--reply-to <comment>] <bottle id> <text>`")
                return
            bottle_id = _int_arg(m.group(1), "bottle id")
            text = rest[m.end():]
            content = content_from_message(ctx.message, text=text)
            quote = None if content else _quote_of(await _quoted(ctx))
            comment, warnings = await svc.post_comment(
                actor_for(ctx.message),
                bottle_id=bottle_id,
                content=content,
                reply_cid=_int_arg(flags.get("--reply-to"), "comment number", 0),
                quote=quote,
                reply_address=address_for(ctx.message),
            )
        except BottleError as e:
            await report_error(ctx, e, rolled_back=True)
            return
        for warning in warnings:
            await ctx.send(warning)
        if not svc.settings.preview:
            await ctx.send(f"Comment #{comment.cid} posted on bottle #{comment.bid}.")

    @bot.command(name="bottle.delete")
    async def bottle_delete(ctx: commands.Context, bottle_id: str = ""):
        try:
            bottle = await svc.delete_bottle(actor_for(ctx.message), _int_arg(bottle_id, "bottle id", required=True))
        except BottleError as e:
            await report_error(ctx, e)
            return
        await ctx.send(f"Bottle #{bottle.id} and its comments were deleted.")

    @bot.command(name="bottle.delete_comment")
    async def bottle_delete_comment(ctx: commands.Context, bottle_id: str = "", cid: str = ""):
        try:
            comment = await svc.delete_comment(
                actor_for(ctx.message), _int_arg(bottle_id, "bottle id", required=True), _int_arg(cid, "comment number", required=True)
            )
        except BottleError as e:
            await report_error(ctx, e)
            return
        await ctx.send(f"Comment #{comment.cid} on bottle #{comment.bid} was deleted.")

    async def _send_listing(ctx: commands.Context, produce) -> None:
        try:
            out = await produce()
        except BottleError as e:
            await report_error(ctx, e)
            return
        await deps.send_chunked(ctx.channel, out)

    @bot.command(name="bottle.mine")
    async def bottle_mine(ctx: commands.Context, *, raw: str = ""):
        flags, rest = parse_flags(raw, valued=set(), switches={"--ids-only"})
        await _send_listing(
            ctx,
            lambda: svc.list_mine(
                actor_for(ctx.message), page=_int_arg(rest or None, "page", 1), ids_only=bool(flags.get("--ids-only"))
            ),
        )

    @bot.command(name="bottle.user")
    async def bottle_user(ctx: commands.Context, *, raw: str = ""):
        if not await require_operator(ctx):
            return
        flags, rest = parse_flags(raw, valued=set(), switches={"--ids-only"})
        tokens = rest.split()
        if not tokens:
            await ctx.send(f"Usage: `{prefix}bottle.user <user> [page] [--ids-only]`")
            return
        await _send_listing(
            ctx,
            lambda: svc.list_user(
                _user_id(tokens[0]),
                page=_int_arg(tokens[1] if len(tokens) > 1 else None, "page", 1),
                ids_only=bool(flags.get("--ids-only")),
            ),
        )

    @bot.command(name="bottle.directory")
    async def bottle_directory(ctx: commands.Context, page: str = ""):
        await _send_listing(ctx, lambda: svc.directory(page=_int_arg(page, "page", 1)))

    @bot.command(name="bottle.featured")
    async def bottle_featured(ctx: commands.Context, page: str = ""):
        await _send_listing(ctx, lambda: svc.featured(page=_int_arg(page, "page", 1)))

    @bot.command(name="bottle.rename")
    async def bottle_rename(ctx: commands.Context, bottle_id: str = "", *, name: str = ""):
        try:
            bottle = await svc.rename_bottle(actor_for(ctx.message), _int_arg(bottle_id, "bottle id", required=True), name)
        except BottleError as e:
            await report_error(ctx, e)
            return
        await ctx.send(f"Bottle #{bottle.id} is now called “{bottle.name}”.")

    @bot.command(name="bottle.feature")
    async def bottle_feature(ctx: commands.Context, bottle_id: str = "", mode: str = ""):
        if not await require_operator(ctx):
            return
        featured = mode.strip().lower() not in {"off", "no", "0", "false"}
        try:
            bottle = await svc.set_featured(actor_for(ctx.message), _int_arg(bottle_id, "bottle id", required=True), featured)
        except BottleError as e:
            await report_error(ctx, e)
            return
        await ctx.send(f"Bottle #{bottle.id} is {'now' if bottle.is_featured else 'no longer'} featured.")

    @bot.command(name="bottle.expire")
    async def bottle_expire(ctx: commands.Context, days: str = ""):
        if not await require_operator(ctx):
            return
        try:
            bottles, comments = await svc.expire_bottles(actor_for(ctx.message), _int_arg(days, "days", required=True))
        except BottleError as e:
            await report_error(ctx, e)
            return
        await ctx.send(f"Removed {bottles} bottles and {comments} comments older than {days} days.")

    async def _audit(ctx: commands.Context, raw: str, *, comments: bool) -> None:
        if not await require_operator(ctx):
            return
        try:
            flags, rest = parse_flags(raw, valued={"--delay"})
            tokens = rest.split()
            start = _int_arg(tokens[0] if tokens else None, "start")
            end = _int_arg(tokens[1] if len(tokens) > 1 else None, "end")
            if (start is None) != (end is None):
                raise ValidationError("Give both a start and an end id, or neither.")
            if start is not None and start > end:
                raise ValidationError("start must not be greater than end")
            report = await svc.audit(
                actor_for(ctx.message),
                comments=comments,
                start=start,
                end=end,
                delay_ms=_int_arg(flags.get("--delay"), "delay", 0),
                reply_address=address_for(ctx.message),
                confirm=confirm_for(ctx),
            )
        except BottleError as e:
            await report_error(ctx, e)
            return
        if report.cancelled and not report.checked:
            await ctx.send("Audit cancelled.")
        elif not report.failed:
            await ctx.send(f"Audit finished: all {report.checked} delivered.")
        elif report.cancelled:
            await ctx.send(f"Audit finished: {len(report.failed)} of {report.checked} failed; nothing deleted.")
        else:
            await ctx.send(f"Audit finished: deleted {report.deleted} of {report.checked}.")

    @bot.command(name="bottle.audit")
    async def bottle_audit(ctx: commands.Context, *, raw: str = ""):
        await _audit(ctx, raw, comments=False)

    @bot.command(name="bottle.audit_comments")
    async def bottle_audit_comments(ctx: commands.Context, *, raw: str = ""):
        await _audit(ctx, raw, comments=True)

    async def _migrate(ctx: commands.Context, target: str) -> None:
        if not await require_operator(ctx):
            return
        try:
            report = await svc.migrate_assets(actor_for(ctx.message), target, confirm=confirm_for(ctx))
        except BottleError as e:
            await report_error(ctx, e)
            return
        if report is None:
            await ctx.send("Migration cancelled.")
            return
        lines = [
            f"Media moved to {target} storage.",
            f"Bottles converted: {report.bottles_converted}, failed: {len(report.bottles_failed)}"
            + (f" ({', '.join(map(str, report.bottles_failed))})" if report.bottles_failed else ""),
            f"Comments converted: {report.comments_converted}, failed: {len(report.comments_failed)}"
            + (f" ({', '.join(map(str, report.comments_failed))})" if report.comments_failed else ""),
        ]
        await deps.send_chunked(ctx.channel, "\n".join(lines))

    @bot.command(name="bottle.migrate_local")
    async def bottle_migrate_local(ctx: commands.Context):
        await _migrate(ctx, "local")

    @bot.command(name="bottle.migrate_inline")
    async def bottle_migrate_inline(ctx: commands.Context):
        await _migrate(ctx, "inline")
