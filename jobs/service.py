from __future__ import annotations

import asyncio
import sqlite3
from datetime import timedelta
from typing import Any

from memory.confidence import decay_record
from memory.graph import build_memory_graph
from memory.graph import create_connection
from memory.lifecycle_service import cleanup_problematic_memories
from memory.lifecycle_service import mark_memory_contradicted
from memory.models import MemoryScope
from memory.models import parse_utc
from memory.models import utc_iso
from memory.results import guarded_call
from memory.service import chat_complete
from memory.service import safe_extract_json_obj
from memory.store import list_memory_records_sync
from memory.store import list_memory_scopes_sync
from memory.store import update_memory_record_sync
from memory.temporal import detect_temporal_contradictions
from memory.temporal import reanalyze_temporal_batch


def decay_scope_sync(conn: sqlite3.Connection, user_id: str, guild_id: str, now_iso: str) -> dict[str, int]:
    """Decay every unverified active record in the scope; only deltas above the write epsilon are saved."""
    now = parse_utc(now_iso)
    records = list_memory_records_sync(conn, user_id, guild_id, verified=False)
    updated = 0
    for record in records:
        decayed, changed = decay_record(record, now=now)
        if not changed:
            continue
        # updated_at is left alone so decay does not count as scope activity
        update_memory_record_sync(conn, record["id"], {"confidence": decayed["confidence"]})
        updated += 1
    return {"checked": len(records), "decayed": updated}


async def _list_scopes(*, deps, recent_only: bool, limit: int | None = None) -> list[MemoryScope]:
    since = None
    if recent_only:
        since = utc_iso(deps.clock() - timedelta(days=int(deps.tuning.active_window_days)))
    result = await guarded_call(
        list_memory_scopes_sync,
        updated_since=since,
        limit=limit,
        db_lock=deps.db_lock,
        db_conn=deps.db_conn,
        timeout=deps.timeout,
        label="list scopes",
    )
    if not result.ok:
        return []
    return [MemoryScope.of(user_id, guild_id) for user_id, guild_id in result.data]


async def _list_active_records(scope: MemoryScope, *, deps) -> list[dict[str, Any]]:
    result = await guarded_call(
        list_memory_records_sync,
        scope.user_id,
        scope.guild_id,
        order_by="created_at DESC",
        db_lock=deps.db_lock,
        db_conn=deps.db_conn,
        timeout=deps.timeout,
        label="temporal records",
    )
    return result.unwrap_or([])


async def decay_scope(scope: MemoryScope, *, deps) -> dict[str, int]:
    result = await guarded_call(
        decay_scope_sync,
        scope.user_id,
        scope.guild_id,
        utc_iso(deps.clock()),
        db_lock=deps.db_lock,
        db_conn=deps.db_conn,
        timeout=max(deps.timeout, 30.0),
        label="decay scope",
    )
    if not result.ok:
        raise RuntimeError(result.error or "decay failed")
    return result.data


async def _sweep(name: str, scopes: list[MemoryScope], work, *, deps) -> dict[str, int]:
    """Run work(scope) over scopes, pausing between them; one scope failing never stops the sweep."""
    summary = {"scopes": 0, "failed": 0}
    for scope in scopes:
        try:
            stats = await work(scope)
            summary["scopes"] += 1
            for key, value in (stats or {}).items():
                if isinstance(value, int):
                    summary[key] = summary.get(key, 0) + value
        except Exception as e:
            summary["failed"] += 1
            print(f"[Maintenance] {name} failed ({scope.label()}): {e}")
        await asyncio.sleep(float(deps.tuning.scope_pause_seconds))
    print(f"[Maintenance] {name} sweep done: {summary}")
    return summary


async def run_decay_sweep(*, deps) -> dict[str, int]:
    scopes = await _list_scopes(deps=deps, recent_only=False)
    return await _sweep("decay", scopes, lambda scope: decay_scope(scope, deps=deps), deps=deps)


async def run_graph_sweep(*, deps) -> dict[str, int]:
    scopes = await _list_scopes(deps=deps, recent_only=True, limit=int(deps.tuning.max_graph_scopes))
    return await _sweep(
        "graph",
        scopes,
        lambda scope: build_memory_graph(
            scope,
            deps=deps,
            chat_complete=chat_complete,
            safe_extract_json_obj=safe_extract_json_obj,
        ),
        deps=deps,
    )


async def _temporal_scope(scope: MemoryScope, *, deps) -> dict[str, int]:
    stats = await reanalyze_temporal_batch(
        scope,
        deps=deps,
        chat_complete=chat_complete,
        safe_extract_json_obj=safe_extract_json_obj,
    )
    contradictions = await detect_temporal_contradictions(
        scope,
        deps=deps,
        list_records=lambda s: _list_active_records(s, deps=deps),
        create_connection=create_connection,
        mark_contradicted=mark_memory_contradicted,
    )
    stats["contradictions"] = len(contradictions)
    return stats


async def run_temporal_sweep(*, deps) -> dict[str, int]:
    scopes = await _list_scopes(deps=deps, recent_only=True, limit=int(deps.tuning.max_graph_scopes))
    return await _sweep("temporal", scopes, lambda scope: _temporal_scope(scope, deps=deps), deps=deps)


async def run_maintenance(scope: MemoryScope, *, deps) -> dict[str, Any]:
    """Every maintenance step for one scope. Each step is isolated; a failure is recorded and the rest still run."""
    report: dict[str, Any] = {}
    steps = (
        ("decay", lambda: decay_scope(scope, deps=deps)),
        ("cleanup", lambda: cleanup_problematic_memories(scope, deps=deps)),
        (
            "graph",
            lambda: build_memory_graph(
                scope,
                deps=deps,
                chat_complete=chat_complete,
                safe_extract_json_obj=safe_extract_json_obj,
            ),
        ),
        ("temporal", lambda: _temporal_scope(scope, deps=deps)),
    )
    for name, step in steps:
        try:
            report[name] = await step()
        except Exception as e:
            print(f"[Maintenance] {name} failed ({scope.label()}): {e}")
            report[name] = {"error": str(e)}
    return report


async def maintenance_loop(
    *,
    deps,
    decay_interval_hours: float | None = None,
    graph_interval_hours: float | None = None,
    temporal_interval_hours: float | None = None,
    tick_seconds: int = 300,
) -> None:
    """Run each sweep whenever its interval has elapsed. The first run of each comes one interval after start."""
    tuning = deps.tuning
    intervals = {
        "decay": float(decay_interval_hours or tuning.decay_interval_hours),
        "graph": float(graph_interval_hours or tuning.graph_interval_hours),
        "temporal": float(temporal_interval_hours or tuning.temporal_interval_hours),
    }
    sweeps = {
        "decay": run_decay_sweep,
        "graph": run_graph_sweep,
        "temporal": run_temporal_sweep,
    }
    started = deps.clock()
    next_due = {name: started + timedelta(hours=hours) for name, hours in intervals.items()}

    while True:
        now = deps.clock()
        for name, due in next_due.items():
            if now < due:
                continue
            try:
                await sweeps[name](deps=deps)
            except Exception as e:
                print(f"[Maintenance] {name} sweep error: {e}")
            next_due[name] = deps.clock() + timedelta(hours=intervals[name])
        await asyncio.sleep(max(1, int(tick_seconds)))


def schedule_maintenance(interval_hours: float | None = None, *, deps) -> asyncio.Task:
    """Start the maintenance loop as a task; interval_hours overrides the decay and graph intervals."""
    task = asyncio.create_task(
        maintenance_loop(
            deps=deps,
            decay_interval_hours=interval_hours,
            graph_interval_hours=interval_hours,
        ),
        name="memory-maintenance",
    )
    print(f"[Maintenance] scheduled (decay/graph every {interval_hours or deps.tuning.decay_interval_hours}h)")
    return task
