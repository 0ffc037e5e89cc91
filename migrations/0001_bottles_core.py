from __future__ import annotations

import sqlite3


def upgrade(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS bottles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL DEFAULT '',
            author_id TEXT NOT NULL,
            guild_id TEXT NOT NULL DEFAULT '',
            channel_id TEXT NOT NULL DEFAULT '',
            author_name TEXT NOT NULL DEFAULT '',
            content TEXT NOT NULL DEFAULT '',
            is_featured INTEGER NOT NULL DEFAULT 0,
            comment_count INTEGER DEFAULT -1,
            created_day INTEGER NOT NULL
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS comments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            cid INTEGER NOT NULL,
            bid INTEGER NOT NULL,
            author_id TEXT NOT NULL,
            guild_id TEXT NOT NULL DEFAULT '',
            channel_id TEXT NOT NULL DEFAULT '',
            author_name TEXT NOT NULL DEFAULT '',
            content TEXT NOT NULL DEFAULT '',
            created_day INTEGER NOT NULL
        )
        """
    )
    cur.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_comments_bid_cid ON comments(bid, cid)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_bottles_author ON bottles(author_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_bottles_created_day ON bottles(created_day)")
    conn.commit()
