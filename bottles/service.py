from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from dataclasses import field
from typing import Any, Awaitable, Callable

from bottles import render
from bottles import store
from bottles.assets import AssetExternalizer
from bottles.content import has_av
from bottles.content import measured_length
from bottles.content import strip_media
from bottles.delivery import DeliveryEngine
from bottles.delivery import broadcast_chain
from bottles.delivery import owner_notification_chain
from bottles.delivery import reply_chain
from bottles.errors import AssetFetchFailure
from bottles.errors import DeliveryFailure
from bottles.errors import NotFoundError
from bottles.errors import PermissionDenied
from bottles.errors import ValidationError
from bottles.models import Actor
from bottles.models import Bottle
from bottles.models import Comment
from bottles.models import day_number
from misc.message_cache import BoundedMessageMap


Confirm = Callable[[str], Awaitable[str | None]]


@dataclass(frozen=True)
class BottleSettings:
    max_length: int = 500
    allow_media: bool = True
    allow_drop_others: bool = False
    self_drop: bool = False
    preview: bool = True
    show_instructions: bool = True
    featured_threshold: int = 10
    comment_page_size: int = 0
    bottle_page_size: int = 0
    featured_page_size: int = 0
    name_page_size: int = 0
    directory_page_size: int = 0
    command_prefix: str = "!"


@dataclass(slots=True)
class Quote:
    """A message the requester replied to; its content is already in stored form."""

    author_id: str
    author_name: str
    content: str


@dataclass(slots=True)
class AuditReport:
    checked: int = 0
    failed: list[str] = field(default_factory=list)
    deleted: int = 0
    cancelled: bool = False


@dataclass(slots=True)
class MigrationReport:
    target: str
    bottles_converted: int = 0
    bottles_failed: list[int] = field(default_factory=list)
    comments_converted: int = 0
    comments_failed: list[int] = field(default_factory=list)


def is_numeric_title(title: str) -> bool:
    text = (title or "").strip()
    if not text:
        return False
    try:
        value = float(text)
    except ValueError:
        return False
    return not math.isnan(value)


def _page_window(page: int, page_size: int) -> tuple[int | None, int]:
    page = max(1, int(page or 1))
    if page_size <= 0:
        return (None, 0)
    return (page_size, (page - 1) * page_size)


class BottleService:
    def __init__(
        self,
        *,
        db_lock,
        db_conn,
        transport,
        engine: DeliveryEngine,
        assets: AssetExternalizer,
        message_cache: BoundedMessageMap,
        operator_ids: set[str],
        settings: BottleSettings,
        today: Callable[[], int] = day_number,
    ) -> None:
        self.db_lock = db_lock
        self.db_conn = db_conn
        self.transport = transport
        self.engine = engine
        self.assets = assets
        self.message_cache = message_cache
        self.operator_ids = {str(x) for x in operator_ids}
        self.settings = settings
        self.today = today

    async def _db(self, fn, *args, **kwargs):
        async with self.db_lock:
            return await asyncio.to_thread(fn, self.db_conn, *args, **kwargs)

    def is_operator(self, user_id: str) -> bool:
        return str(user_id) in self.operator_ids

    def _require_operator(self, actor: Actor) -> None:
        if not self.is_operator(actor.user_id):
            raise PermissionDenied("This command is operator-only.")

    def _check_title(self, title: str | None) -> str:
        name = (title or "").strip()
        if is_numeric_title(name):
            raise ValidationError("Titles cannot be purely numeric.")
        return name

    def _check_length(self, content: str) -> None:
        n = measured_length(content)
        if n < 1:
            raise ValidationError("The content is too short.")
        if n > int(self.settings.max_length):
            raise ValidationError(f"The content is too long ({n}/{self.settings.max_length}).")

    async def _get_bottle(self, bottle_id: int) -> Bottle:
        bottle = await self._db(store.fetch_bottle_sync, int(bottle_id))
        if bottle is None:
            raise NotFoundError(f"Bottle #{bottle_id} does not exist.")
        return bottle

    async def _discard_bottle(self, bottle: Bottle, contents: list[str]) -> None:
        await self._db(store.remove_bottles_sync, [bottle.id])
        for text in contents:
            self.assets.unlink_local_files(text)
        self.message_cache.forget_bottle(bottle.id)
        print(f"[Bottles] bottle {bottle.id} deleted")

    async def _discard_comment(self, comment: Comment, contents: list[str]) -> None:
        await self._db(store.remove_comment_sync, comment.bid, comment.cid)
        for text in contents:
            self.assets.unlink_local_files(text)
        print(f"[Bottles] comment {comment.bid}/{comment.cid} deleted")

    async def backfill_comment_counts(self) -> int:
        updated = await self._db(store.backfill_comment_counts_sync)
        if updated:
            print(f"[DB] comment counts backfilled for {updated} bottles")
        return int(updated)

    def bottle_for_message(self, handle) -> int | None:
        return self.message_cache.lookup(handle)

    # =========================
    # POST / DRAW
    # =========================
    async def post_bottle(
        self,
        actor: Actor,
        *,
        content: str = "",
        title: str | None = None,
        quote: Quote | None = None,
        reply_address: str,
    ) -> Bottle:
        name = self._check_title(title)
        if not content and quote is None:
            raise ValidationError("Write some content or reply to a message.")
        if (
            quote is not None
            and quote.author_id != actor.user_id
            and not self.is_operator(actor.user_id)
            and not self.settings.allow_drop_others
        ):
            raise PermissionDenied("You cannot throw someone else's message into the sea.")

        author_id, author_name = actor.user_id, actor.display_name
        if quote is not None and not self.settings.self_drop:
            author_id, author_name = quote.author_id, quote.author_name
        body = quote.content if quote is not None else content
        if not self.settings.allow_media:
            body = strip_media(body)
        self._check_length(body)

        bottle = await self._db(
            store.create_bottle_sync,
            name=name,
            author_id=author_id,
            guild_id=actor.guild_id,
            channel_id=actor.channel_id,
            author_name=author_name,
            content=body,
            created_day=self.today(),
        )

        try:
            stored, converted = await self.assets.externalize("bottle", bottle.id, bottle.content)
        except AssetFetchFailure:
            await self._discard_bottle(bottle, [bottle.content])
            raise
        if converted:
            bottle = await self._db(store.update_bottle_fields_sync, bottle.id, {"content": stored})

        try:
            self._check_length(bottle.content)
        except ValidationError:
            await self._discard_bottle(bottle, [bottle.content])
            raise

        if self.settings.preview:
            try:
                await self.engine.deliver(
                    self.transport,
                    render.post_preview(bottle, self.settings.command_prefix),
                    reply_chain(reply_address),
                    label=f"preview of bottle {bottle.id}",
                )
            except DeliveryFailure:
                await self._discard_bottle(bottle, [bottle.content])
                raise
        return bottle

    async def _draw_envelopes(self, bottle: Bottle, page: int) -> list[str]:
        size = int(self.settings.comment_page_size)
        limit, offset = _page_window(page, size)
        async with self.db_lock:
            total = await asyncio.to_thread(store.count_comments_sync, self.db_conn, bottle.id)
            comments = await asyncio.to_thread(
                store.fetch_comments_sync, self.db_conn, bottle.id, limit=limit, offset=offset
            )
        return render.draw_envelopes(
            bottle,
            comments,
            total_comments=total,
            page=max(1, int(page or 1)),
            page_size=size,
            show_instructions=self.settings.show_instructions,
            prefix=self.settings.command_prefix,
        )

    async def draw_bottle(self, *, query: str | None = None, page: int = 1, reply_address: str) -> Bottle | None:
        """Delivers one bottle and returns it, or delivers a pick-list and returns None."""
        query = (query or "").strip()
        resample = None
        if not query:
            bottle = await self._db(store.fetch_random_bottle_sync)
            if bottle is None:
                raise NotFoundError("There are no bottles left at sea.")
        elif query.isdigit():
            bottle = await self._get_bottle(int(query))
        else:
            size = int(self.settings.name_page_size)
            limit, offset = _page_window(page, size)
            async with self.db_lock:
                total = await asyncio.to_thread(store.count_bottles_sync, self.db_conn, name_contains=query)
                matches = await asyncio.to_thread(
                    store.query_bottles_sync, self.db_conn, name_contains=query, limit=limit, offset=offset
                )
            if total < 1 or not matches:
                raise NotFoundError(f"No bottle is named like “{query}”.")
            if total > 1:
                listing = render.disambiguation(
                    query,
                    matches,
                    page=max(1, int(page or 1)),
                    total=total,
                    page_size=size,
                    prefix=self.settings.command_prefix,
                )
                await self.engine.deliver(
                    self.transport, [listing], reply_chain(reply_address), label=f"bottle list for “{query}”"
                )
                return None
            bottle = matches[0]
            page = 1

        current = {"bottle": bottle}
        if not query:

            async def resample():
                fresh = await self._db(store.fetch_random_bottle_sync)
                if fresh is not None:
                    current["bottle"] = fresh
                b = current["bottle"]
                return (await self._draw_envelopes(b, 1), reply_chain(reply_address), f"bottle {b.id}")

        receipt = await self.engine.deliver(
            self.transport,
            await self._draw_envelopes(bottle, page),
            reply_chain(reply_address),
            label=f"bottle {bottle.id}",
            resample=resample,
        )
        drawn = current["bottle"]
        for handle in receipt.handles:
            self.message_cache.remember(handle, drawn.id)
        return drawn

    # =========================
    # COMMENTS
    # =========================
    async def _notify(self, *, owner, bottle_id: int, body: str, reply_cid: int) -> str | None:
        chain = owner_notification_chain(self.transport, guild_id=owner.guild_id, channel_id=owner.channel_id)
        if not chain:
            return "The owner could not be notified (no known location)."
        envelopes = render.comment_notification(
            bottle_id=bottle_id,
            owner_id=owner.author_id,
            body=body,
            reply_cid=reply_cid,
            prefix=self.settings.command_prefix,
            direct=not owner.guild_id,
        )
        try:
            await self.engine.deliver(
                self.transport, envelopes, chain, label=f"comment notification for bottle {bottle_id}"
            )
        except DeliveryFailure:
            return "The comment notification could not be delivered."
        return None

    async def post_comment(
        self,
        actor: Actor,
        *,
        bottle_id: int,
        content: str = "",
        reply_cid: int = 0,
        quote: Quote | None = None,
        reply_address: str,
    ) -> tuple[Comment, list[str]]:
        """Returns the stored comment and any notification warnings for the commenter."""
        bottle = await self._get_bottle(bottle_id)
        parent: Comment | None = None
        if reply_cid and int(reply_cid) > 0:
            parent = await self._db(store.fetch_comment_sync, bottle.id, int(reply_cid))
            if parent is None:
                raise NotFoundError(f"Comment #{reply_cid} does not exist under bottle #{bottle.id}.")

        if not content and quote is None:
            raise ValidationError("Write some content or reply to a message.")
        body = content or (quote.content if quote is not None else "")
        if not self.settings.allow_media:
            body = strip_media(body)
        if has_av(body):
            raise ValidationError("Comments cannot contain audio or video.")
        if measured_length(body) < 1:
            raise ValidationError("The content is too short.")
        if parent is not None:
            body = render.reply_prefix(parent) + body
        self._check_length(body)

        warnings: list[str] = []
        owner = parent if parent is not None else bottle
        if owner.author_id != actor.user_id:
            warning = await self._notify(
                owner=owner, bottle_id=bottle.id, body=body, reply_cid=parent.cid if parent else 0
            )
            if warning:
                warnings.append(warning)

        async with self.db_lock:
            comment = await asyncio.to_thread(
                store.insert_comment_sync,
                self.db_conn,
                bid=bottle.id,
                author_id=actor.user_id,
                guild_id=actor.guild_id,
                channel_id=actor.channel_id,
                author_name=actor.display_name,
                content=body,
                created_day=self.today(),
            )
            await asyncio.to_thread(store.adjust_comment_count_sync, self.db_conn, bottle.id, 1)

        try:
            stored, converted = await self.assets.externalize("comment", comment.id, comment.content)
        except AssetFetchFailure:
            await self._discard_comment(comment, [comment.content])
            raise
        if converted:
            await self._db(store.update_comment_fields_sync, comment.id, {"content": stored})
            comment.content = stored

        try:
            self._check_length(comment.content)
        except ValidationError:
            await self._discard_comment(comment, [comment.content])
            raise

        if self.settings.preview:
            try:
                await self.engine.deliver(
                    self.transport,
                    render.comment_preview(comment),
                    reply_chain(reply_address),
                    label=f"preview of comment {bottle.id}/{comment.cid}",
                )
            except DeliveryFailure:
                await self._discard_comment(comment, [comment.content])
                raise
        return comment, warnings

    # =========================
    # DELETE / EXPIRE
    # =========================
    async def delete_bottle(self, actor: Actor, bottle_id: int) -> Bottle:
        bottle = await self._get_bottle(bottle_id)
        if bottle.author_id != actor.user_id and not self.is_operator(actor.user_id):
            raise PermissionDenied("You can only delete your own bottles.")
        comments = await self._db(store.fetch_comments_for_bottles_sync, [bottle.id])
        await self._discard_bottle(bottle, [bottle.content, *(c.content for c in comments)])
        return bottle

    async def delete_comment(self, actor: Actor, bottle_id: int, cid: int) -> Comment:
        comment = await self._db(store.fetch_comment_sync, int(bottle_id), int(cid))
        if comment is None:
            raise NotFoundError(f"Comment #{cid} does not exist under bottle #{bottle_id}.")
        if comment.author_id != actor.user_id and not self.is_operator(actor.user_id):
            raise PermissionDenied("You can only delete your own comments.")
        await self._discard_comment(comment, [comment.content])
        return comment

    async def expire_bottles(self, actor: Actor, days: int) -> tuple[int, int]:
        """Removes bottles older than ``days`` whole days plus old comments; returns (bottles, comments)."""
        self._require_operator(actor)
        if int(days) < 0:
            raise ValidationError("Days must not be negative.")
        cutoff = self.today() - int(days)
        async with self.db_lock:
            expired = await asyncio.to_thread(store.fetch_expired_bottles_sync, self.db_conn, cutoff)
            ids = [b.id for b in expired]
            doomed = await asyncio.to_thread(store.fetch_comments_for_bottles_sync, self.db_conn, ids)
            old = await asyncio.to_thread(store.fetch_comments_older_than_sync, self.db_conn, cutoff)
            removed = await asyncio.to_thread(store.remove_bottles_sync, self.db_conn, ids)
            await asyncio.to_thread(store.remove_comments_older_than_sync, self.db_conn, cutoff)
        gone = {c.id: c for c in doomed + old}
        for text in [b.content for b in expired] + [c.content for c in gone.values()]:
            self.assets.unlink_local_files(text)
        for bid in ids:
            self.message_cache.forget_bottle(bid)
        print(f"[Bottles] expired bottles={removed} comments={len(gone)} older than {days} days")
        return int(removed), len(gone)

    # =========================
    # AUDIT
    # =========================
    async def audit(
        self,
        actor: Actor,
        *,
        comments: bool = False,
        start: int | None = None,
        end: int | None = None,
        delay_ms: int = 0,
        reply_address: str,
        confirm: Confirm,
    ) -> AuditReport:
        self._require_operator(actor)
        report = AuditReport()
        what = "comment under every bottle" if comments else "bottle"
        answer = await confirm(
            f"This re-sends every {what} in the range here and records the ones that fail. "
            "Reply `yes` to continue."
        )
        if (answer or "").strip().lower() != "yes":
            report.cancelled = True
            return report

        bottles = await self._db(store.fetch_bottles_in_range_sync, start, end)
        failed_bottles: list[Bottle] = []
        failed_comments: list[Comment] = []
        for bottle in bottles:
            if comments:
                rows = await self._db(store.fetch_comments_sync, bottle.id)
                targets = [(c, [render.comment_line(c)], f"comment {bottle.id}/{c.cid}") for c in rows]
            else:
                envelopes = render.draw_envelopes(
                    bottle,
                    [],
                    total_comments=0,
                    page=1,
                    page_size=0,
                    show_instructions=False,
                    prefix=self.settings.command_prefix,
                )
                targets = [(bottle, envelopes, f"bottle {bottle.id}")]
            for item, envelopes, label in targets:
                report.checked += 1
                try:
                    await self.engine.deliver(self.transport, envelopes, reply_chain(reply_address), label=label)
                except DeliveryFailure:
                    report.failed.append(label)
                    if comments:
                        failed_comments.append(item)
                    else:
                        failed_bottles.append(item)
                if delay_ms and int(delay_ms) > 0:
                    await asyncio.sleep(int(delay_ms) / 1000.0)

        if not report.failed:
            return report
        answer = await confirm(
            f"{len(report.failed)} failed: {', '.join(report.failed)}. Reply `delete` to remove them."
        )
        if (answer or "").strip().lower() != "delete":
            report.cancelled = True
            return report

        for bottle in failed_bottles:
            rows = await self._db(store.fetch_comments_for_bottles_sync, [bottle.id])
            await self._discard_bottle(bottle, [bottle.content, *(c.content for c in rows)])
            report.deleted += 1
        for comment in failed_comments:
            await self._discard_comment(comment, [comment.content])
            report.deleted += 1
        return report

    # =========================
    # LISTINGS
    # =========================
    async def _listing(self, title: str, *, page: int, page_size: int, ids_only: bool = False, **where: Any) -> str:
        if ids_only:
            rows = await self._db(store.query_bottles_sync, **where)
            return render.id_listing(title, [b.id for b in rows])
        limit, offset = _page_window(page, page_size)
        async with self.db_lock:
            total = await asyncio.to_thread(store.count_bottles_sync, self.db_conn, **where)
            rows = await asyncio.to_thread(store.query_bottles_sync, self.db_conn, limit=limit, offset=offset, **where)
        return render.bottle_listing(title, rows, page=max(1, int(page or 1)), total=total, page_size=page_size)

    async def list_user(self, user_id: str, *, page: int = 1, ids_only: bool = False, title: str | None = None) -> str:
        return await self._listing(
            title or f"Bottles thrown by <@{user_id}>:",
            page=page,
            page_size=int(self.settings.bottle_page_size),
            ids_only=ids_only,
            author_id=str(user_id),
        )

    async def list_mine(self, actor: Actor, *, page: int = 1, ids_only: bool = False) -> str:
        return await self.list_user(actor.user_id, page=page, ids_only=ids_only, title="Your bottles:")

    async def directory(self, *, page: int = 1) -> str:
        return await self._listing("All bottles:", page=page, page_size=int(self.settings.directory_page_size))

    async def featured(self, *, page: int = 1) -> str:
        return await self._listing(
            "Featured bottles:",
            page=page,
            page_size=int(self.settings.featured_page_size),
            featured_threshold=int(self.settings.featured_threshold),
        )

    # =========================
    # RENAME / FEATURE
    # =========================
    async def rename_bottle(self, actor: Actor, bottle_id: int, name: str) -> Bottle:
        name = self._check_title(name)
        if not name:
            raise ValidationError("Give the bottle a name.")
        bottle = await self._get_bottle(bottle_id)
        if bottle.author_id != actor.user_id and not self.is_operator(actor.user_id):
            raise PermissionDenied("You can only rename your own bottles.")
        return await self._db(store.update_bottle_fields_sync, bottle.id, {"name": name})

    async def set_featured(self, actor: Actor, bottle_id: int, featured: bool = True) -> Bottle:
        self._require_operator(actor)
        bottle = await self._get_bottle(bottle_id)
        return await self._db(store.update_bottle_fields_sync, bottle.id, {"is_featured": 1 if featured else 0})

    # =========================
    # ASSET MIGRATION
    # =========================
    async def migrate_assets(self, actor: Actor, target: str, *, confirm: Confirm | None = None) -> MigrationReport | None:
        """Converts every stored media reference to ``target``; returns None when not confirmed."""
        self._require_operator(actor)
        if confirm is not None:
            answer = await confirm(
                f"This converts the media of every bottle and comment to {target} storage. Reply `yes` to continue."
            )
            if (answer or "").strip().lower() != "yes":
                return None

        report = MigrationReport(target=target)
        for bottle in await self._db(store.fetch_all_bottles_sync):
            try:
                stored, converted = await self.assets.externalize("bottle", bottle.id, bottle.content, target)
            except AssetFetchFailure:
                report.bottles_failed.append(bottle.id)
                continue
            if converted:
                await self._db(store.update_bottle_fields_sync, bottle.id, {"content": stored})
                report.bottles_converted += 1
        for comment in await self._db(store.fetch_all_comments_sync):
            try:
                stored, converted = await self.assets.externalize("comment", comment.id, comment.content, target)
            except AssetFetchFailure:
                report.comments_failed.append(comment.id)
                continue
            if converted:
                await self._db(store.update_comment_fields_sync, comment.id, {"content": stored})
                report.comments_converted += 1
        print(
            f"[Bottles] migrated media to {target}: bottles ok={report.bottles_converted} "
            f"failed={len(report.bottles_failed)} comments ok={report.comments_converted} "
            f"failed={len(report.comments_failed)}"
        )
        return report

    # =========================
    # BROADCAST
    # =========================
    async def broadcast_random(self, transport, target: str, *, sleep=None) -> Bottle | None:
        """Deliver a random bottle to ``target``; a fresh bottle is drawn for every retry."""
        bottle = await self._db(store.fetch_random_bottle_sync)
        if bottle is None:
            return None
        current = {"bottle": bottle}
        prefix = self.settings.command_prefix

        async def resample():
            fresh = await self._db(store.fetch_random_bottle_sync)
            if fresh is not None:
                current["bottle"] = fresh
            b = current["bottle"]
            return (render.broadcast_envelopes(b, prefix), broadcast_chain(transport, target), f"broadcast of bottle {b.id}")

        receipt = await self.engine.deliver(
            transport,
            render.broadcast_envelopes(bottle, prefix),
            broadcast_chain(transport, target),
            label=f"broadcast of bottle {bottle.id}",
            resample=resample,
            sleep=sleep,
        )
        drawn = current["bottle"]
        for handle in receipt.handles:
            self.message_cache.remember(handle, drawn.id)
        return drawn
