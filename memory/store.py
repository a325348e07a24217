from __future__ import annotations

import json
import sqlite3
from typing import Any

from memory.embeddings import cosine_similarity


_RECORD_COLUMNS = (
    "id",
    "user_id",
    "guild_id",
    "text",
    "embedding_json",
    "memory_type",
    "category",
    "confidence",
    "source",
    "verified",
    "verification_date",
    "verification_source",
    "contradiction_count",
    "access_count",
    "last_accessed",
    "temporal_analysis_json",
    "created_at",
    "updated_at",
    "active",
)

_UPDATABLE_COLUMNS = {
    "text",
    "embedding",
    "memory_type",
    "category",
    "confidence",
    "source",
    "verified",
    "verification_date",
    "verification_source",
    "contradiction_count",
    "access_count",
    "last_accessed",
    "temporal_analysis",
    "updated_at",
    "active",
}

_SELECT_RECORD = f"SELECT {', '.join(_RECORD_COLUMNS)} FROM memory_records"


def _loads_embedding(raw: Any, memory_id: Any = None) -> list[float] | None:
    if raw is None or raw == "":
        return None
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        print(f"[Memory] skipping malformed embedding on memory id={memory_id}")
        return None
    if not isinstance(data, list) or not data:
        return None
    try:
        return [float(x) for x in data]
    except (TypeError, ValueError):
        print(f"[Memory] skipping non-numeric embedding on memory id={memory_id}")
        return None


def _loads_obj(raw: Any) -> dict | None:
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def _row_to_record(row: tuple) -> dict[str, Any]:
    raw = {_RECORD_COLUMNS[i]: row[i] for i in range(len(_RECORD_COLUMNS))}
    return {
        "id": int(raw["id"]),
        "user_id": str(raw["user_id"]),
        "guild_id": str(raw["guild_id"] or ""),
        "text": str(raw["text"] or ""),
        "embedding": _loads_embedding(raw["embedding_json"], raw["id"]),
        "memory_type": str(raw["memory_type"] or "intuited"),
        "category": str(raw["category"] or "other"),
        "confidence": float(raw["confidence"] if raw["confidence"] is not None else 0.1),
        "source": raw["source"],
        "verified": bool(raw["verified"]),
        "verification_date": raw["verification_date"],
        "verification_source": raw["verification_source"],
        "contradiction_count": int(raw["contradiction_count"] or 0),
        "access_count": int(raw["access_count"] or 0),
        "last_accessed": raw["last_accessed"],
        "temporal_analysis": _loads_obj(raw["temporal_analysis_json"]),
        "created_at": raw["created_at"],
        "updated_at": raw["updated_at"],
        "active": bool(raw["active"]),
    }


def _dumps_embedding(vector: list[float] | None) -> str | None:
    if not vector:
        return None
    return json.dumps([float(x) for x in vector])


def _insert_record(cur: sqlite3.Cursor, payload: dict[str, Any]) -> int:
    cur.execute(
        """
        INSERT INTO memory_records (
            user_id, guild_id, text, embedding_json,
            memory_type, category, confidence, source,
            verified, verification_date, verification_source,
            contradiction_count, access_count, last_accessed,
            temporal_analysis_json, created_at, updated_at, active
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            str(payload["user_id"]),
            str(payload.get("guild_id") or ""),
            payload["text"],
            _dumps_embedding(payload.get("embedding")),
            payload.get("memory_type", "intuited"),
            payload.get("category", "other"),
            float(payload.get("confidence", 0.75)),
            payload.get("source"),
            1 if payload.get("verified") else 0,
            payload.get("verification_date"),
            payload.get("verification_source"),
            int(payload.get("contradiction_count", 0)),
            int(payload.get("access_count", 0)),
            payload.get("last_accessed"),
            json.dumps(payload["temporal_analysis"]) if payload.get("temporal_analysis") else None,
            payload["created_at"],
            payload.get("updated_at") or payload["created_at"],
            0 if payload.get("active") is False else 1,
        ),
    )
    return int(cur.lastrowid)


def insert_memory_record_sync(conn: sqlite3.Connection, payload: dict[str, Any]) -> dict[str, Any]:
    cur = conn.cursor()
    memory_id = _insert_record(cur, payload)
    conn.commit()
    return get_memory_record_sync(conn, memory_id) or {}


def insert_memory_records_sync(conn: sqlite3.Connection, payloads: list[dict[str, Any]]) -> list[dict[str, Any]]:
    if not payloads:
        return []
    cur = conn.cursor()
    ids: list[int] = []
    try:
        for payload in payloads:
            ids.append(_insert_record(cur, payload))
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return get_memory_records_by_ids_sync(conn, ids)


def get_memory_record_sync(conn: sqlite3.Connection, memory_id: int) -> dict[str, Any] | None:
    cur = conn.cursor()
    cur.execute(f"{_SELECT_RECORD} WHERE id = ? LIMIT 1", (int(memory_id),))
    row = cur.fetchone()
    return _row_to_record(row) if row else None


def get_memory_records_by_ids_sync(conn: sqlite3.Connection, memory_ids: list[int]) -> list[dict[str, Any]]:
    ids = [int(x) for x in memory_ids]
    if not ids:
        return []
    cur = conn.cursor()
    cur.execute(
        f"{_SELECT_RECORD} WHERE id IN ({','.join(['?'] * len(ids))})",
        tuple(ids),
    )
    by_id = {int(r[0]): _row_to_record(r) for r in cur.fetchall()}
    return [by_id[i] for i in ids if i in by_id]


def update_memory_record_sync(
    conn: sqlite3.Connection,
    memory_id: int,
    patch: dict[str, Any],
) -> dict[str, Any] | None:
    unknown = set(patch) - _UPDATABLE_COLUMNS
    if unknown:
        raise ValueError(f"unsupported memory_records fields: {sorted(unknown)}")

    sets: list[str] = []
    params: list[Any] = []
    for key, value in patch.items():
        if key == "embedding":
            sets.append("embedding_json = ?")
            params.append(_dumps_embedding(value))
        elif key == "temporal_analysis":
            sets.append("temporal_analysis_json = ?")
            params.append(json.dumps(value) if value else None)
        elif key in ("verified", "active"):
            sets.append(f"{key} = ?")
            params.append(1 if value else 0)
        else:
            sets.append(f"{key} = ?")
            params.append(value)
    if not sets:
        return get_memory_record_sync(conn, memory_id)

    cur = conn.cursor()
    cur.execute(
        f"UPDATE memory_records SET {', '.join(sets)} WHERE id = ?",
        (*params, int(memory_id)),
    )
    conn.commit()
    if cur.rowcount <= 0:
        return None
    return get_memory_record_sync(conn, memory_id)


def list_memory_records_sync(
    conn: sqlite3.Connection,
    user_id: str,
    guild_id: str = "",
    *,
    active_only: bool = True,
    memory_type: str | None = None,
    category: str | None = None,
    verified: bool | None = None,
    limit: int | None = None,
    order_by: str = "updated_at DESC",
) -> list[dict[str, Any]]:
    if order_by not in {"updated_at DESC", "created_at DESC", "created_at ASC", "confidence DESC"}:
        order_by = "updated_at DESC"
    where = ["user_id = ?", "guild_id = ?"]
    params: list[Any] = [str(user_id), str(guild_id or "")]
    if active_only:
        where.append("active = 1")
    if memory_type:
        where.append("memory_type = ?")
        params.append(memory_type)
    if category:
        where.append("category = ?")
        params.append(category)
    if verified is not None:
        where.append("verified = ?")
        params.append(1 if verified else 0)
    sql = f"{_SELECT_RECORD} WHERE {' AND '.join(where)} ORDER BY {order_by}, id DESC"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(int(limit))
    cur = conn.cursor()
    cur.execute(sql, tuple(params))
    return [_row_to_record(r) for r in cur.fetchall()]


def top_k_similar_sync(
    conn: sqlite3.Connection,
    user_id: str,
    guild_id: str,
    query_vector: list[float],
    k: int,
    *,
    threshold: float = 0.0,
    memory_type: str | None = None,
    category: str | None = None,
    exclude_ids: set[int] | None = None,
) -> list[dict[str, Any]]:
    """
    Brute-force cosine similarity over the scope's active records.
    Returns [{"record": ..., "similarity": float}] sorted by similarity desc, similarity clamped to [0, 1].
    """
    if not query_vector or int(k) <= 0:
        return []
    excluded = {int(x) for x in (exclude_ids or set())}
    records = list_memory_records_sync(
        conn,
        user_id,
        guild_id,
        active_only=True,
        memory_type=memory_type,
        category=category,
    )
    scored: list[dict[str, Any]] = []
    for record in records:
        if record["id"] in excluded:
            continue
        vector = record.get("embedding")
        if not vector:
            continue
        if len(vector) != len(query_vector):
            print(f"[Memory] skipping memory id={record['id']} with embedding size {len(vector)}")
            continue
        similarity = max(0.0, min(1.0, cosine_similarity(query_vector, vector)))
        if similarity < float(threshold):
            continue
        scored.append({"record": record, "similarity": similarity})
    scored.sort(key=lambda item: item["similarity"], reverse=True)
    return scored[: int(k)]


def search_memory_records_by_keywords_sync(
    conn: sqlite3.Connection,
    user_id: str,
    guild_id: str,
    terms: list[str],
    limit: int = 5,
) -> list[dict[str, Any]]:
    if not terms:
        return []
    clauses = " OR ".join(["LOWER(text) LIKE ?"] * len(terms))
    params: list[Any] = [str(user_id), str(guild_id or "")]
    params.extend(f"%{t.lower()}%" for t in terms)
    params.append(int(limit))
    cur = conn.cursor()
    cur.execute(
        f"{_SELECT_RECORD} WHERE user_id = ? AND guild_id = ? AND active = 1 AND ({clauses}) "
        "ORDER BY confidence DESC, id DESC LIMIT ?",
        tuple(params),
    )
    return [_row_to_record(r) for r in cur.fetchall()]


def deactivate_memory_record_sync(conn: sqlite3.Connection, memory_id: int, updated_at: str) -> bool:
    cur = conn.cursor()
    cur.execute(
        "UPDATE memory_records SET active = 0, updated_at = ? WHERE id = ? AND active = 1",
        (updated_at, int(memory_id)),
    )
    conn.commit()
    return cur.rowcount > 0


def delete_scope_memories_sync(conn: sqlite3.Connection, user_id: str, guild_id: str = "") -> dict[str, int]:
    cur = conn.cursor()
    params = (str(user_id), str(guild_id or ""))
    cur.execute("DELETE FROM memory_connections WHERE user_id = ? AND guild_id = ?", params)
    connections = int(cur.rowcount or 0)
    cur.execute("DELETE FROM memory_records WHERE user_id = ? AND guild_id = ?", params)
    records = int(cur.rowcount or 0)
    cur.execute("DELETE FROM memory_extraction_tracking WHERE user_id = ? AND guild_id = ?", params)
    tracking = int(cur.rowcount or 0)
    conn.commit()
    return {"records": records, "connections": connections, "tracking": tracking}


def list_memory_scopes_sync(
    conn: sqlite3.Connection,
    *,
    updated_since: str | None = None,
    limit: int | None = None,
) -> list[tuple[str, str]]:
    sql = "SELECT user_id, guild_id, MAX(updated_at) AS last_update FROM memory_records WHERE active = 1"
    params: list[Any] = []
    if updated_since:
        sql += " AND updated_at >= ?"
        params.append(updated_since)
    sql += " GROUP BY user_id, guild_id ORDER BY last_update DESC"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(int(limit))
    cur = conn.cursor()
    cur.execute(sql, tuple(params))
    return [(str(r[0]), str(r[1] or "")) for r in cur.fetchall()]


def list_records_missing_temporal_sync(
    conn: sqlite3.Connection,
    user_id: str,
    guild_id: str,
    limit: int,
) -> list[dict[str, Any]]:
    cur = conn.cursor()
    cur.execute(
        f"{_SELECT_RECORD} WHERE user_id = ? AND guild_id = ? AND active = 1 "
        "AND temporal_analysis_json IS NULL ORDER BY created_at DESC LIMIT ?",
        (str(user_id), str(guild_id or ""), int(limit)),
    )
    return [_row_to_record(r) for r in cur.fetchall()]


def memory_stats_sync(conn: sqlite3.Connection, user_id: str, guild_id: str = "") -> dict[str, Any]:
    cur = conn.cursor()
    params = (str(user_id), str(guild_id or ""))
    cur.execute(
        "SELECT memory_type, category, COUNT(*), AVG(confidence), SUM(verified) "
        "FROM memory_records WHERE user_id = ? AND guild_id = ? AND active = 1 "
        "GROUP BY memory_type, category",
        params,
    )
    by_type: dict[str, int] = {}
    by_category: dict[str, int] = {}
    total = 0
    verified = 0
    confidence_sum = 0.0
    for memory_type, category, n, avg_conf, n_verified in cur.fetchall():
        n = int(n or 0)
        total += n
        verified += int(n_verified or 0)
        confidence_sum += float(avg_conf or 0.0) * n
        by_type[str(memory_type)] = by_type.get(str(memory_type), 0) + n
        by_category[str(category)] = by_category.get(str(category), 0) + n
    cur.execute(
        "SELECT COUNT(*) FROM memory_connections WHERE user_id = ? AND guild_id = ?",
        params,
    )
    connections = int((cur.fetchone() or [0])[0] or 0)
    return {
        "total": total,
        "verified": verified,
        "avg_confidence": (confidence_sum / total) if total else 0.0,
        "by_type": by_type,
        "by_category": by_category,
        "connections": connections,
    }


# --- connections ---

_CONNECTION_COLUMNS = (
    "id",
    "user_id",
    "guild_id",
    "source_id",
    "target_id",
    "relationship_type",
    "confidence",
    "created_at",
    "updated_at",
)


def _row_to_connection(row: tuple) -> dict[str, Any]:
    out = {_CONNECTION_COLUMNS[i]: row[i] for i in range(len(_CONNECTION_COLUMNS))}
    out["id"] = int(out["id"])
    out["source_id"] = int(out["source_id"])
    out["target_id"] = int(out["target_id"])
    out["confidence"] = float(out["confidence"] or 0.0)
    out["guild_id"] = str(out["guild_id"] or "")
    return out


def upsert_connection_sync(conn: sqlite3.Connection, payload: dict[str, Any]) -> dict[str, Any]:
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO memory_connections (
            user_id, guild_id, source_id, target_id, relationship_type, confidence, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(source_id, target_id, relationship_type)
        DO UPDATE SET confidence = excluded.confidence, updated_at = excluded.updated_at
        """,
        (
            str(payload["user_id"]),
            str(payload.get("guild_id") or ""),
            int(payload["source_id"]),
            int(payload["target_id"]),
            payload["relationship_type"],
            float(payload["confidence"]),
            payload["created_at"],
            payload.get("updated_at") or payload["created_at"],
        ),
    )
    conn.commit()
    cur.execute(
        f"SELECT {', '.join(_CONNECTION_COLUMNS)} FROM memory_connections "
        "WHERE source_id = ? AND target_id = ? AND relationship_type = ?",
        (int(payload["source_id"]), int(payload["target_id"]), payload["relationship_type"]),
    )
    return _row_to_connection(cur.fetchone())


def get_connections_for_memory_sync(
    conn: sqlite3.Connection,
    memory_id: int,
    *,
    min_confidence: float = 0.0,
) -> list[dict[str, Any]]:
    """Edges touching memory_id in either direction, joined to active endpoints only."""
    cur = conn.cursor()
    cols = ", ".join(f"c.{c}" for c in _CONNECTION_COLUMNS)
    cur.execute(
        f"""
        SELECT {cols}
        FROM memory_connections c
        JOIN memory_records s ON s.id = c.source_id AND s.active = 1
        JOIN memory_records t ON t.id = c.target_id AND t.active = 1
        WHERE (c.source_id = ? OR c.target_id = ?) AND c.confidence >= ?
        ORDER BY c.confidence DESC, c.id ASC
        """,
        (int(memory_id), int(memory_id), float(min_confidence)),
    )
    return [_row_to_connection(r) for r in cur.fetchall()]


def connection_exists_sync(conn: sqlite3.Connection, memory_a: int, memory_b: int) -> bool:
    cur = conn.cursor()
    cur.execute(
        "SELECT 1 FROM memory_connections "
        "WHERE (source_id = ? AND target_id = ?) OR (source_id = ? AND target_id = ?) LIMIT 1",
        (int(memory_a), int(memory_b), int(memory_b), int(memory_a)),
    )
    return cur.fetchone() is not None


def list_scope_connections_sync(conn: sqlite3.Connection, user_id: str, guild_id: str = "") -> list[dict[str, Any]]:
    cur = conn.cursor()
    cur.execute(
        f"SELECT {', '.join(_CONNECTION_COLUMNS)} FROM memory_connections "
        "WHERE user_id = ? AND guild_id = ? ORDER BY id ASC",
        (str(user_id), str(guild_id or "")),
    )
    return [_row_to_connection(r) for r in cur.fetchall()]


# --- extraction tracking ---


def get_extraction_tracking_sync(conn: sqlite3.Connection, user_id: str, guild_id: str = "") -> dict[str, Any] | None:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT last_extraction_time, last_extracted_message_count, last_extracted_message_id
        FROM memory_extraction_tracking
        WHERE user_id = ? AND guild_id = ?
        LIMIT 1
        """,
        (str(user_id), str(guild_id or "")),
    )
    row = cur.fetchone()
    if not row:
        return None
    return {
        "user_id": str(user_id),
        "guild_id": str(guild_id or ""),
        "last_extraction_time": row[0],
        "last_extracted_message_count": int(row[1] or 0),
        "last_extracted_message_id": row[2],
    }


def upsert_extraction_tracking_sync(conn: sqlite3.Connection, payload: dict[str, Any]) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO memory_extraction_tracking (
            user_id, guild_id, last_extraction_time, last_extracted_message_count, last_extracted_message_id
        ) VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(user_id, guild_id) DO UPDATE SET
            last_extraction_time = excluded.last_extraction_time,
            last_extracted_message_count = excluded.last_extracted_message_count,
            last_extracted_message_id = excluded.last_extracted_message_id
        """,
        (
            str(payload["user_id"]),
            str(payload.get("guild_id") or ""),
            payload.get("last_extraction_time"),
            int(payload.get("last_extracted_message_count") or 0),
            payload.get("last_extracted_message_id"),
        ),
    )
    conn.commit()


def get_connection_sync(
    conn: sqlite3.Connection,
    source_id: int,
    target_id: int,
    relationship_type: str,
) -> dict[str, Any] | None:
    cur = conn.cursor()
    cur.execute(
        f"SELECT {', '.join(_CONNECTION_COLUMNS)} FROM memory_connections "
        "WHERE source_id = ? AND target_id = ? AND relationship_type = ? LIMIT 1",
        (int(source_id), int(target_id), relationship_type),
    )
    row = cur.fetchone()
    return _row_to_connection(row) if row else None
