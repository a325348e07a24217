from __future__ import annotations

import sqlite3


def upgrade(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS memory_records (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            guild_id TEXT NOT NULL DEFAULT '',
            text TEXT NOT NULL,
            embedding_json TEXT,
            memory_type TEXT NOT NULL DEFAULT 'intuited',
            category TEXT NOT NULL DEFAULT 'other',
            confidence REAL NOT NULL DEFAULT 0.75,
            source TEXT,
            verified INTEGER NOT NULL DEFAULT 0,
            verification_date TEXT,
            verification_source TEXT,
            contradiction_count INTEGER NOT NULL DEFAULT 0,
            access_count INTEGER NOT NULL DEFAULT 0,
            last_accessed TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            active INTEGER NOT NULL DEFAULT 1,
            CHECK (confidence >= 0.1 AND confidence <= 1.0)
        )
        """
    )
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_memory_records_scope ON memory_records(user_id, guild_id, active)"
    )
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_memory_records_updated ON memory_records(updated_at)"
    )
    conn.commit()
