from __future__ import annotations

import math

from bottles.content import TextSpan
from bottles.content import has_av
from bottles.content import parse
from bottles.content import serialize
from bottles.content import summary
from bottles.delivery import split_envelopes
from bottles.models import Bottle
from bottles.models import Comment
from bottles.models import day_to_iso


ASSET_REMEDIATION = (
    "You can try:\n"
    "- saving the image and attaching it directly\n"
    "- shortening the content\n"
    "- trying again later"
)

# Discord rejects messages over 2000 characters
ENVELOPE_LIMIT = 1900


def _t(text: str) -> str:
    """Plain text in stored form."""
    return serialize([TextSpan(text)])


def mention(user_id: str) -> str:
    return _t(f"<@{user_id}>")


def page_count(total: int, page_size: int) -> int:
    if page_size <= 0:
        return 1
    return max(1, math.ceil(int(total) / int(page_size)))


def page_footer(page: int, total: int, page_size: int) -> str:
    if page_size <= 0:
        return ""
    return _t(f"\nPage {page}/{page_count(total, page_size)}")


def instructions(bottle_id: int, prefix: str) -> str:
    return (
        f"Send `{prefix}bottle.draw {bottle_id} [page]` to see other comment pages.\n"
        f"Send `{prefix}bottle.comment {bottle_id} <text>` or reply to this message to comment.\n"
        f"Send `{prefix}bottle.comment --reply-to <comment number> {bottle_id} <text>` to answer a comment.\n"
    )


def comment_line(comment: Comment) -> str:
    return _t(f"{comment.cid}.{comment.author_name}: ") + comment.content


def rendered_length(content: str) -> int:
    """Characters a stored body takes up once sent: its text plus remote links on their own lines."""
    total = 0
    for span in parse(content):
        if isinstance(span, TextSpan):
            total += len(span.text)
        elif span.representation == "remote":
            total += len(span.src) + 2
    return total


def _pack_lines(lines: list[str], limit: int) -> list[str]:
    packs: list[str] = []
    current = ""
    for line in lines:
        candidate = f"{current}\n{line}" if current else line
        if current and rendered_length(candidate) > limit:
            packs.append(current)
            candidate = line
        current = candidate
    if current:
        packs.append(current)
    return packs


def draw_envelopes(
    bottle: Bottle,
    comments: list[Comment],
    *,
    total_comments: int,
    page: int,
    page_size: int,
    show_instructions: bool,
    prefix: str,
    limit: int = ENVELOPE_LIMIT,
) -> list[str]:
    """The bottle with one page of comments; comments move to extra messages when one would be too long."""
    header = (
        f"You found bottle #{bottle.id} from “{bottle.author_name}”!\n"
        f"Title: {bottle.name}\n"
        f"Date: {day_to_iso(bottle.created_day)}\n"
    )
    if show_instructions:
        header += instructions(bottle.id, prefix)
    caption = _t(header + ("Content:" if has_av(bottle.content) else "Content:\n"))
    if not comments:
        return split_envelopes(caption, bottle.content)

    heading = "----Comments (number and name first)----"
    lines = [comment_line(c) for c in comments]
    footer = page_footer(page, total_comments, page_size)
    tail = _t(f"\n\n{heading}\n") + "\n".join(lines) + footer
    envelopes = split_envelopes(caption, bottle.content, tail)
    if all(rendered_length(e) <= limit for e in envelopes):
        return envelopes
    packed = _pack_lines([_t(heading), *lines], limit)
    packed[-1] += footer
    return split_envelopes(caption, bottle.content) + packed


def post_preview(bottle: Bottle, prefix: str) -> list[str]:
    caption = _t(
        f"Your bottle #{bottle.id} is out at sea!\n"
        f"Send `{prefix}bottle.rename {bottle.id} <name>` to give it a name (names may repeat).\n"
        f"Named bottles can be drawn with `{prefix}bottle.draw <name>`; any bottle whose name contains it matches.\n\n"
        "Preview:\n"
    )
    return split_envelopes(caption, bottle.content)


def post_receipt(bottle: Bottle, prefix: str) -> str:
    return (
        f"Your bottle #{bottle.id} is out at sea!\n"
        f"Send `{prefix}bottle.rename {bottle.id} <name>` to give it a name (names may repeat)."
    )


def comment_preview(comment: Comment) -> list[str]:
    return [_t("Your comment is posted!\nPreview:\n") + comment_line(comment)]


def reply_prefix(parent: Comment) -> str:
    return _t(f"Reply to {parent.cid}. {parent.author_name}: ")


def comment_notification(*, bottle_id: int, owner_id: str, body: str, reply_cid: int, prefix: str, direct: bool) -> list[str]:
    who = "" if direct else mention(owner_id) + " "
    if reply_cid:
        head = _t(f"Your comment #{reply_cid} on bottle #{bottle_id} has a new reply!\n\n")
    else:
        head = _t(f"Your bottle #{bottle_id} has a new comment!\n\n")
    return [who + head + body + _t(f"\n\nSend `{prefix}bottle.draw {bottle_id}` to see it.")]


def broadcast_envelopes(bottle: Bottle, prefix: str) -> list[str]:
    caption = _t(
        f"A bottle washed ashore! Bottle #{bottle.id} from “{bottle.author_name}”, "
        f"{day_to_iso(bottle.created_day)}.\n"
        f"Send `{prefix}bottle.draw {bottle.id}` to read its comments.\n\n"
    )
    return split_envelopes(caption, bottle.content)


def disambiguation(query: str, bottles: list[Bottle], *, page: int, total: int, page_size: int, prefix: str) -> str:
    lines = [
        f"Send `{prefix}bottle.draw <id>` to draw a specific bottle.",
        f"Send `{prefix}bottle.draw {query} <page>` to switch pages.",
        "Pick the bottle you want (id: title):",
    ]
    lines.extend(f"{b.id}: {b.name}" for b in bottles)
    text = _t("\n".join(lines))
    return text + page_footer(page, total, page_size)


def bottle_listing(title: str, bottles: list[Bottle], *, page: int, total: int, page_size: int) -> str:
    if not bottles:
        return f"{title}\n(no bottles)"
    lines = [title]
    for b in bottles:
        name = b.name or "(untitled)"
        extra = " [featured]" if b.is_featured else ""
        lines.append(f"#{b.id} {name}{extra} | {b.comment_count} comments | {summary(b.content)[:80]}")
    footer = f"\nPage {page}/{page_count(total, page_size)}" if page_size > 0 else ""
    return "\n".join(lines) + footer


def id_listing(title: str, ids: list[int]) -> str:
    if not ids:
        return f"{title}\n(no bottles)"
    return f"{title}\n" + ", ".join(str(i) for i in ids)
