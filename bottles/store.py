from __future__ import annotations

import sqlite3
from typing import Any, Iterable

from bottles.models import BOTTLE_COLUMNS
from bottles.models import COMMENT_COLUMNS
from bottles.models import COMMENT_COUNT_UNSET
from bottles.models import Bottle
from bottles.models import Comment
from bottles.models import row_to_bottle
from bottles.models import row_to_comment


_BOTTLE_SELECT = f"SELECT {', '.join(BOTTLE_COLUMNS)} FROM bottles"
_COMMENT_SELECT = f"SELECT {', '.join(COMMENT_COLUMNS)} FROM comments"
_BOTTLE_IMMUTABLE = {"id", "author_id", "created_day"}
_COMMENT_IMMUTABLE = {"id", "cid", "bid", "author_id", "created_day"}


def _limit_args(limit: int | None, offset: int) -> tuple[int, int]:
    # sqlite treats a negative LIMIT as "no limit"
    return (int(limit) if limit else -1, max(0, int(offset or 0)))


def _placeholders(values: list[Any]) -> str:
    return ", ".join("?" for _ in values)


def _bottle_where(
    *,
    author_id: str | None = None,
    name_contains: str | None = None,
    featured_threshold: int | None = None,
) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if author_id is not None:
        clauses.append("author_id = ?")
        params.append(str(author_id))
    if name_contains is not None:
        clauses.append("name != '' AND instr(name, ?) > 0")
        params.append(str(name_contains))
    if featured_threshold is not None:
        clauses.append("(is_featured = 1 OR comment_count >= ?)")
        params.append(int(featured_threshold))
    if not clauses:
        return ("", params)
    return (" WHERE " + " AND ".join(clauses), params)


# =========================
# BOTTLES
# =========================
def create_bottle_sync(
    conn: sqlite3.Connection,
    *,
    name: str,
    author_id: str,
    guild_id: str,
    channel_id: str,
    author_name: str,
    content: str,
    created_day: int,
) -> Bottle:
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO bottles (
            name, author_id, guild_id, channel_id, author_name,
            content, is_featured, comment_count, created_day
        )
        VALUES (?, ?, ?, ?, ?, ?, 0, 0, ?)
        """,
        (
            (name or "").strip(),
            str(author_id),
            str(guild_id or ""),
            str(channel_id or ""),
            str(author_name or ""),
            content or "",
            int(created_day),
        ),
    )
    conn.commit()
    bottle = fetch_bottle_sync(conn, int(cur.lastrowid))
    if bottle is None:
        raise RuntimeError("Failed to create/fetch bottle")
    return bottle


def fetch_bottle_sync(conn: sqlite3.Connection, bottle_id: int) -> Bottle | None:
    cur = conn.cursor()
    cur.execute(f"{_BOTTLE_SELECT} WHERE id = ? LIMIT 1", (int(bottle_id),))
    return row_to_bottle(cur.fetchone())


def fetch_all_bottles_sync(conn: sqlite3.Connection) -> list[Bottle]:
    cur = conn.cursor()
    cur.execute(f"{_BOTTLE_SELECT} ORDER BY id ASC")
    return [row_to_bottle(row) for row in cur.fetchall()]


def fetch_random_bottle_sync(conn: sqlite3.Connection) -> Bottle | None:
    cur = conn.cursor()
    cur.execute(f"{_BOTTLE_SELECT} ORDER BY RANDOM() LIMIT 1")
    return row_to_bottle(cur.fetchone())


def fetch_bottles_in_range_sync(conn: sqlite3.Connection, start: int | None, end: int | None) -> list[Bottle]:
    cur = conn.cursor()
    if start is None or end is None:
        cur.execute(f"{_BOTTLE_SELECT} ORDER BY id ASC")
    else:
        cur.execute(f"{_BOTTLE_SELECT} WHERE id >= ? AND id <= ? ORDER BY id ASC", (int(start), int(end)))
    return [row_to_bottle(row) for row in cur.fetchall()]


def query_bottles_sync(
    conn: sqlite3.Connection,
    *,
    author_id: str | None = None,
    name_contains: str | None = None,
    featured_threshold: int | None = None,
    limit: int | None = None,
    offset: int = 0,
) -> list[Bottle]:
    where, params = _bottle_where(
        author_id=author_id,
        name_contains=name_contains,
        featured_threshold=featured_threshold,
    )
    cur = conn.cursor()
    cur.execute(
        f"{_BOTTLE_SELECT}{where} ORDER BY id ASC LIMIT ? OFFSET ?",
        (*params, *_limit_args(limit, offset)),
    )
    return [row_to_bottle(row) for row in cur.fetchall()]


def count_bottles_sync(
    conn: sqlite3.Connection,
    *,
    author_id: str | None = None,
    name_contains: str | None = None,
    featured_threshold: int | None = None,
) -> int:
    where, params = _bottle_where(
        author_id=author_id,
        name_contains=name_contains,
        featured_threshold=featured_threshold,
    )
    cur = conn.cursor()
    cur.execute(f"SELECT COUNT(*) FROM bottles{where}", tuple(params))
    row = cur.fetchone()
    return int(row[0]) if row else 0


def update_bottle_fields_sync(conn: sqlite3.Connection, bottle_id: int, fields: dict[str, Any]) -> Bottle | None:
    if not fields:
        return fetch_bottle_sync(conn, bottle_id)
    if any(key in _BOTTLE_IMMUTABLE for key in fields):
        raise ValueError("Immutable bottle fields cannot be updated")
    assignments = ", ".join(f"{key} = ?" for key in fields)
    conn.execute(
        f"UPDATE bottles SET {assignments} WHERE id = ?",
        (*fields.values(), int(bottle_id)),
    )
    conn.commit()
    return fetch_bottle_sync(conn, bottle_id)


def remove_bottles_sync(conn: sqlite3.Connection, bottle_ids: Iterable[int]) -> int:
    """Delete bottles together with every comment under them."""
    ids = [int(i) for i in bottle_ids]
    if not ids:
        return 0
    cur = conn.cursor()
    cur.execute(f"DELETE FROM comments WHERE bid IN ({_placeholders(ids)})", tuple(ids))
    cur.execute(f"DELETE FROM bottles WHERE id IN ({_placeholders(ids)})", tuple(ids))
    removed = cur.rowcount
    conn.commit()
    return int(removed)


def fetch_expired_bottles_sync(conn: sqlite3.Connection, cutoff_day: int) -> list[Bottle]:
    cur = conn.cursor()
    cur.execute(f"{_BOTTLE_SELECT} WHERE created_day < ? ORDER BY id ASC", (int(cutoff_day),))
    return [row_to_bottle(row) for row in cur.fetchall()]


# =========================
# COMMENT COUNTER
# =========================
def backfill_comment_counts_sync(conn: sqlite3.Connection) -> int:
    """Recount every bottle when rows still carry the legacy unset sentinel."""
    cur = conn.cursor()
    cur.execute(
        "SELECT 1 FROM bottles WHERE comment_count IS NULL OR comment_count = ? LIMIT 1",
        (COMMENT_COUNT_UNSET,),
    )
    if cur.fetchone() is None:
        return 0
    cur.execute(
        """
        SELECT b.id, COUNT(c.id)
        FROM bottles b
        LEFT JOIN comments c ON c.bid = b.id
        GROUP BY b.id
        """
    )
    counts = [(int(n), int(bid)) for bid, n in cur.fetchall()]
    cur.executemany("UPDATE bottles SET comment_count = ? WHERE id = ?", counts)
    conn.commit()
    return len(counts)


def adjust_comment_count_sync(conn: sqlite3.Connection, bottle_id: int, delta: int) -> None:
    conn.execute(
        "UPDATE bottles SET comment_count = MAX(0, COALESCE(comment_count, 0) + ?) WHERE id = ?",
        (int(delta), int(bottle_id)),
    )
    conn.commit()


def refresh_comment_counts_sync(conn: sqlite3.Connection, bottle_ids: Iterable[int]) -> None:
    ids = sorted({int(i) for i in bottle_ids})
    if not ids:
        return
    conn.execute(
        f"""
        UPDATE bottles
        SET comment_count = (SELECT COUNT(*) FROM comments WHERE comments.bid = bottles.id)
        WHERE id IN ({_placeholders(ids)})
        """,
        tuple(ids),
    )
    conn.commit()


# =========================
# COMMENTS
# =========================
def insert_comment_sync(
    conn: sqlite3.Connection,
    *,
    bid: int,
    author_id: str,
    guild_id: str,
    channel_id: str,
    author_name: str,
    content: str,
    created_day: int,
) -> Comment:
    """Insert a comment with cid = max(cid for this bottle) + 1, or 1 for the first one."""
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO comments (
            cid, bid, author_id, guild_id, channel_id, author_name, content, created_day
        )
        SELECT COALESCE(MAX(cid), 0) + 1, ?, ?, ?, ?, ?, ?, ?
        FROM comments
        WHERE bid = ?
        """,
        (
            int(bid),
            str(author_id),
            str(guild_id or ""),
            str(channel_id or ""),
            str(author_name or ""),
            content or "",
            int(created_day),
            int(bid),
        ),
    )
    conn.commit()
    cur.execute(f"{_COMMENT_SELECT} WHERE id = ? LIMIT 1", (int(cur.lastrowid),))
    comment = row_to_comment(cur.fetchone())
    if comment is None:
        raise RuntimeError("Failed to create/fetch comment")
    return comment


def fetch_comment_sync(conn: sqlite3.Connection, bid: int, cid: int) -> Comment | None:
    cur = conn.cursor()
    cur.execute(f"{_COMMENT_SELECT} WHERE bid = ? AND cid = ? LIMIT 1", (int(bid), int(cid)))
    return row_to_comment(cur.fetchone())


def fetch_comments_sync(
    conn: sqlite3.Connection,
    bid: int,
    *,
    limit: int | None = None,
    offset: int = 0,
) -> list[Comment]:
    cur = conn.cursor()
    cur.execute(
        f"{_COMMENT_SELECT} WHERE bid = ? ORDER BY cid ASC LIMIT ? OFFSET ?",
        (int(bid), *_limit_args(limit, offset)),
    )
    return [row_to_comment(row) for row in cur.fetchall()]


def count_comments_sync(conn: sqlite3.Connection, bid: int) -> int:
    cur = conn.cursor()
    cur.execute("SELECT COUNT(*) FROM comments WHERE bid = ?", (int(bid),))
    row = cur.fetchone()
    return int(row[0]) if row else 0


def fetch_all_comments_sync(conn: sqlite3.Connection) -> list[Comment]:
    cur = conn.cursor()
    cur.execute(f"{_COMMENT_SELECT} ORDER BY bid ASC, cid ASC")
    return [row_to_comment(row) for row in cur.fetchall()]


def fetch_comments_for_bottles_sync(conn: sqlite3.Connection, bottle_ids: Iterable[int]) -> list[Comment]:
    ids = [int(i) for i in bottle_ids]
    if not ids:
        return []
    cur = conn.cursor()
    cur.execute(
        f"{_COMMENT_SELECT} WHERE bid IN ({_placeholders(ids)}) ORDER BY bid ASC, cid ASC",
        tuple(ids),
    )
    return [row_to_comment(row) for row in cur.fetchall()]


def fetch_comments_older_than_sync(conn: sqlite3.Connection, cutoff_day: int) -> list[Comment]:
    cur = conn.cursor()
    cur.execute(f"{_COMMENT_SELECT} WHERE created_day < ? ORDER BY bid ASC, cid ASC", (int(cutoff_day),))
    return [row_to_comment(row) for row in cur.fetchall()]


def update_comment_fields_sync(conn: sqlite3.Connection, comment_id: int, fields: dict[str, Any]) -> None:
    if not fields:
        return
    if any(key in _COMMENT_IMMUTABLE for key in fields):
        raise ValueError("Immutable comment fields cannot be updated")
    assignments = ", ".join(f"{key} = ?" for key in fields)
    conn.execute(
        f"UPDATE comments SET {assignments} WHERE id = ?",
        (*fields.values(), int(comment_id)),
    )
    conn.commit()


def remove_comments_sync(conn: sqlite3.Connection, comment_ids: Iterable[int]) -> list[int]:
    """Delete comments by row id; returns the owning bottle ids, counters refreshed."""
    ids = [int(i) for i in comment_ids]
    if not ids:
        return []
    cur = conn.cursor()
    cur.execute(f"SELECT DISTINCT bid FROM comments WHERE id IN ({_placeholders(ids)})", tuple(ids))
    bids = [int(row[0]) for row in cur.fetchall()]
    cur.execute(f"DELETE FROM comments WHERE id IN ({_placeholders(ids)})", tuple(ids))
    conn.commit()
    refresh_comment_counts_sync(conn, bids)
    return bids


def remove_comment_sync(conn: sqlite3.Connection, bid: int, cid: int) -> bool:
    cur = conn.cursor()
    cur.execute("DELETE FROM comments WHERE bid = ? AND cid = ?", (int(bid), int(cid)))
    removed = cur.rowcount > 0
    conn.commit()
    if removed:
        adjust_comment_count_sync(conn, bid, -1)
    return removed


def remove_comments_older_than_sync(conn: sqlite3.Connection, cutoff_day: int) -> list[int]:
    """Delete comments dated before cutoff_day; returns the affected bottle ids, counters refreshed."""
    rows = fetch_comments_older_than_sync(conn, cutoff_day)
    return remove_comments_sync(conn, [c.id for c in rows])
