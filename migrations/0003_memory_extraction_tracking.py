from __future__ import annotations

import sqlite3


def upgrade(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS memory_extraction_tracking (
            user_id TEXT NOT NULL,
            guild_id TEXT NOT NULL DEFAULT '',
            last_extraction_time TEXT,
            last_extracted_message_count INTEGER NOT NULL DEFAULT 0,
            last_extracted_message_id TEXT,
            PRIMARY KEY (user_id, guild_id)
        )
        """
    )
    conn.commit()
