from __future__ import annotations

import sqlite3
from typing import Any

from rapidfuzz.distance import JaroWinkler
from memory.confidence import mark_record_contradicted
from memory.confidence import verify_record
from memory.models import MEMORY_TYPE_INTUITED
from memory.models import MemoryScope
from memory.models import parse_utc
from memory.models import utc_iso
from memory.results import guarded_call
from memory.store import deactivate_memory_record_sync
from memory.store import delete_scope_memories_sync
from memory.store import get_memory_record_sync
from memory.store import list_memory_records_sync
from memory.store import update_memory_record_sync


NON_FACT_PHRASES = (
    "not provided",
    "unknown",
    "doesn't mention",
    "does not mention",
    "did not mention",
    "didn't mention",
    "no information",
    "not specified",
    "not mentioned",
)

MERGE_SIMILARITY_THRESHOLD = 0.85


class MemoryLifecycleError(RuntimeError):
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = str(code)


def _fetch_scoped_record(
    conn: sqlite3.Connection,
    memory_id: int,
    scope: MemoryScope | None,
    *,
    require_active: bool = True,
) -> dict[str, Any]:
    record = get_memory_record_sync(conn, memory_id)
    if record is None:
        raise MemoryLifecycleError("not_found", f"memory #{int(memory_id)} not found")
    if scope is not None and (record["user_id"] != scope.user_id or record["guild_id"] != scope.guild_id):
        raise MemoryLifecycleError("scope_mismatch", f"memory #{int(memory_id)} belongs to another user")
    if require_active and not record["active"]:
        raise MemoryLifecycleError("already_inactive", f"memory #{int(memory_id)} is not active")
    return record


def verify_memory_sync(
    conn: sqlite3.Connection,
    *,
    memory_id: int,
    scope: MemoryScope | None,
    source: str,
    now_iso: str,
) -> dict[str, Any]:
    record = _fetch_scoped_record(conn, memory_id, scope)
    verified = verify_record(record, source, now=parse_utc(now_iso))
    after = update_memory_record_sync(
        conn,
        memory_id,
        {
            "verified": True,
            "confidence": verified["confidence"],
            "verification_date": verified["verification_date"],
            "verification_source": verified["verification_source"],
            "updated_at": now_iso,
        },
    )
    if after is None:
        raise MemoryLifecycleError("not_found", f"memory #{int(memory_id)} not found after update")
    return after


def mark_memory_contradicted_sync(
    conn: sqlite3.Connection,
    *,
    memory_id: int,
    scope: MemoryScope | None,
    now_iso: str,
) -> dict[str, Any]:
    record = _fetch_scoped_record(conn, memory_id, scope)
    contradicted = mark_record_contradicted(record, now=parse_utc(now_iso))
    after = update_memory_record_sync(
        conn,
        memory_id,
        {
            "verified": False,
            "confidence": contradicted["confidence"],
            "contradiction_count": contradicted["contradiction_count"],
            "updated_at": now_iso,
        },
    )
    if after is None:
        raise MemoryLifecycleError("not_found", f"memory #{int(memory_id)} not found after update")
    return after


def deactivate_memory_sync(
    conn: sqlite3.Connection,
    *,
    memory_id: int,
    scope: MemoryScope | None,
    now_iso: str,
) -> dict[str, Any]:
    record = _fetch_scoped_record(conn, memory_id, scope)
    if not deactivate_memory_record_sync(conn, memory_id, now_iso):
        raise MemoryLifecycleError("already_inactive", f"memory #{int(memory_id)} is not active")
    record["active"] = False
    record["updated_at"] = now_iso
    return record


def is_non_fact(text: str) -> bool:
    lowered = (text or "").lower()
    return any(phrase in lowered for phrase in NON_FACT_PHRASES)


def find_merge_candidates(records: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Pairs of near-identical texts within the same category.
    The higher-confidence record of each pair is kept; each record is dropped at most once.
    """
    by_category: dict[str, list[dict[str, Any]]] = {}
    for record in records:
        by_category.setdefault(record.get("category") or "other", []).append(record)

    merges: list[dict[str, Any]] = []
    dropped: set[int] = set()
    for group in by_category.values():
        group = sorted(group, key=lambda r: float(r["confidence"]), reverse=True)
        for i in range(len(group)):
            if group[i]["id"] in dropped:
                continue
            for j in range(i + 1, len(group)):
                if group[j]["id"] in dropped:
                    continue
                similarity = JaroWinkler.similarity(group[i]["text"].lower(), group[j]["text"].lower())
                if similarity > MERGE_SIMILARITY_THRESHOLD:
                    merges.append({"keep": group[i], "drop": group[j], "similarity": similarity})
                    dropped.add(group[j]["id"])
    return merges


async def verify_memory(memory_id: int, *, deps, scope: MemoryScope | None = None, source: str = "user_confirmation"):
    """Raises MemoryLifecycleError for unknown, foreign or inactive ids."""
    result = await guarded_call(
        verify_memory_sync,
        memory_id=memory_id,
        scope=scope,
        source=source,
        now_iso=utc_iso(deps.clock()),
        db_lock=deps.db_lock,
        db_conn=deps.db_conn,
        timeout=deps.timeout,
        label="verify memory",
    )
    return _unwrap(result)


async def mark_memory_contradicted(memory_id: int, *, deps, scope: MemoryScope | None = None):
    result = await guarded_call(
        mark_memory_contradicted_sync,
        memory_id=memory_id,
        scope=scope,
        now_iso=utc_iso(deps.clock()),
        db_lock=deps.db_lock,
        db_conn=deps.db_conn,
        timeout=deps.timeout,
        label="mark contradicted",
    )
    return _unwrap(result)


async def deactivate_memory(memory_id: int, *, deps, scope: MemoryScope | None = None):
    result = await guarded_call(
        deactivate_memory_sync,
        memory_id=memory_id,
        scope=scope,
        now_iso=utc_iso(deps.clock()),
        db_lock=deps.db_lock,
        db_conn=deps.db_conn,
        timeout=deps.timeout,
        label="deactivate memory",
    )
    return _unwrap(result)


def _unwrap(result) -> dict[str, Any]:
    if result.ok:
        return result.data
    code = result.kind or "error"
    raise MemoryLifecycleError(code, result.error or "memory update failed")


async def clear_memories(scope: MemoryScope, *, deps, conversations=None) -> dict[str, int]:
    """Hard-delete every record, edge and tracking row for the scope, plus its conversation history."""
    result = await guarded_call(
        delete_scope_memories_sync,
        scope.user_id,
        scope.guild_id,
        db_lock=deps.db_lock,
        db_conn=deps.db_conn,
        timeout=deps.timeout,
        label="clear memories",
    )
    if not result.ok:
        raise MemoryLifecycleError(result.kind or "error", result.error or "clear failed")
    if conversations is not None:
        conversations.clear(scope)
    print(
        f"[Memory] cleared records={result.data['records']} connections={result.data['connections']} "
        f"({scope.label()})"
    )
    return result.data


async def cleanup_problematic_memories(scope: MemoryScope, *, deps) -> dict[str, int]:
    """Deactivate intuited non-facts, then fold near-identical intuited texts into the stronger one."""
    stats = {"non_facts": 0, "merged": 0, "errors": 0}
    listed = await guarded_call(
        list_memory_records_sync,
        scope.user_id,
        scope.guild_id,
        memory_type=MEMORY_TYPE_INTUITED,
        db_lock=deps.db_lock,
        db_conn=deps.db_conn,
        timeout=deps.timeout,
        label="cleanup list",
    )
    if not listed.ok:
        stats["errors"] += 1
        return stats

    now_iso = utc_iso(deps.clock())
    remaining = []
    for record in listed.data:
        if not is_non_fact(record["text"]):
            remaining.append(record)
            continue
        done = await guarded_call(
            deactivate_memory_record_sync,
            record["id"],
            now_iso,
            db_lock=deps.db_lock,
            db_conn=deps.db_conn,
            timeout=deps.timeout,
            label="cleanup non-fact",
        )
        if done.ok:
            stats["non_facts"] += 1
        else:
            stats["errors"] += 1

    for merge in find_merge_candidates(remaining):
        done = await guarded_call(
            deactivate_memory_record_sync,
            merge["drop"]["id"],
            now_iso,
            db_lock=deps.db_lock,
            db_conn=deps.db_conn,
            timeout=deps.timeout,
            label="cleanup merge",
        )
        if done.ok:
            stats["merged"] += 1
        else:
            stats["errors"] += 1

    if stats["non_facts"] or stats["merged"]:
        print(f"[Memory] cleanup non_facts={stats['non_facts']} merged={stats['merged']} ({scope.label()})")
    return stats
