from __future__ import annotations

import sqlite3


def upgrade(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS memory_connections (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            guild_id TEXT NOT NULL DEFAULT '',
            source_id INTEGER NOT NULL,
            target_id INTEGER NOT NULL,
            relationship_type TEXT NOT NULL,
            confidence REAL NOT NULL DEFAULT 0.5,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (source_id, target_id, relationship_type),
            CHECK (source_id != target_id)
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_memory_connections_source ON memory_connections(source_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_memory_connections_target ON memory_connections(target_id)")
    conn.commit()
