from __future__ import annotations

import sqlite3


def upgrade(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    try:
        cur.execute("ALTER TABLE memory_records ADD COLUMN temporal_analysis_json TEXT")
    except sqlite3.OperationalError:
        # Column already present on databases created by hand.
        pass
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_memory_records_temporal_pending "
        "ON memory_records(user_id, guild_id) WHERE temporal_analysis_json IS NULL"
    )
    conn.commit()
