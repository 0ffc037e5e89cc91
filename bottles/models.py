from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any


# comment_count value written by schemas that predate the counter column.
COMMENT_COUNT_UNSET = -1

_EPOCH = date(1970, 1, 1)


def day_number(now: datetime | None = None) -> int:
    """Whole days since the Unix epoch (UTC). Bottles are dated with this."""
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    return (current.astimezone(timezone.utc).date() - _EPOCH).days


def day_to_iso(day: int) -> str:
    return (_EPOCH + timedelta(days=int(day))).isoformat()


@dataclass(slots=True)
class Actor:
    user_id: str
    display_name: str
    guild_id: str = ""
    channel_id: str = ""


@dataclass(slots=True)
class Bottle:
    id: int
    name: str
    author_id: str
    guild_id: str
    channel_id: str
    author_name: str
    content: str
    is_featured: bool
    comment_count: int
    created_day: int


@dataclass(slots=True)
class Comment:
    id: int
    cid: int
    bid: int
    author_id: str
    guild_id: str
    channel_id: str
    author_name: str
    content: str
    created_day: int


BOTTLE_COLUMNS = (
    "id",
    "name",
    "author_id",
    "guild_id",
    "channel_id",
    "author_name",
    "content",
    "is_featured",
    "comment_count",
    "created_day",
)

COMMENT_COLUMNS = (
    "id",
    "cid",
    "bid",
    "author_id",
    "guild_id",
    "channel_id",
    "author_name",
    "content",
    "created_day",
)


def row_to_bottle(row: sqlite3.Row | tuple[Any, ...] | None) -> Bottle | None:
    if row is None:
        return None
    return Bottle(
        id=int(row[0]),
        name=str(row[1] or ""),
        author_id=str(row[2] or ""),
        guild_id=str(row[3] or ""),
        channel_id=str(row[4] or ""),
        author_name=str(row[5] or ""),
        content=str(row[6] or ""),
        is_featured=bool(row[7]),
        comment_count=int(row[8]) if row[8] is not None else COMMENT_COUNT_UNSET,
        created_day=int(row[9] or 0),
    )


def row_to_comment(row: sqlite3.Row | tuple[Any, ...] | None) -> Comment | None:
    if row is None:
        return None
    return Comment(
        id=int(row[0]),
        cid=int(row[1]),
        bid=int(row[2]),
        author_id=str(row[3] or ""),
        guild_id=str(row[4] or ""),
        channel_id=str(row[5] or ""),
        author_name=str(row[6] or ""),
        content=str(row[7] or ""),
        created_day=int(row[8] or 0),
    )
