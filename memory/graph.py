from __future__ import annotations

import asyncio
from typing import Any

from memory.models import RELATIONSHIP_TYPES
from memory.models import REL_CAUSES
from memory.models import REL_CONTRADICTS
from memory.models import REL_ELABORATES
from memory.models import REL_FOLLOWS
from memory.models import REL_PART_OF
from memory.models import REL_PRECEDES
from memory.models import REL_RELATED_TO
from memory.models import MemoryScope
from memory.models import clamp_confidence
from memory.models import utc_iso
from memory.results import guarded_call
from memory.store import connection_exists_sync
from memory.store import get_connection_sync
from memory.store import get_connections_for_memory_sync
from memory.store import get_memory_records_by_ids_sync
from memory.store import list_memory_records_sync
from memory.store import top_k_similar_sync
from memory.store import upsert_connection_sync


# Edge type -> the type auto-inserted in the reverse direction.
INVERSE_RELATIONSHIPS = {
    REL_RELATED_TO: REL_RELATED_TO,
    REL_FOLLOWS: REL_PRECEDES,
    REL_PRECEDES: REL_FOLLOWS,
}

RELATIONSHIP_WEIGHTS = {
    REL_ELABORATES: 3.0,
    REL_CAUSES: 2.0,
    REL_FOLLOWS: 2.0,
}

RELATIONSHIP_PHRASES = {
    REL_ELABORATES: "which elaborates on another memory",
    REL_CONTRADICTS: "which contradicts something else you remember",
    REL_FOLLOWS: "which happened after something else",
    REL_PRECEDES: "which happened before something else",
    REL_CAUSES: "which led to something else",
    REL_PART_OF: "which is part of a larger concept",
}
DEFAULT_RELATIONSHIP_PHRASE = "which relates to other memories"

ANALYZE_MIN_CONFIDENCE = 0.5
ANALYZE_DEFAULT_CONFIDENCE = 0.6
CANDIDATES_PER_MEMORY = 5
EXPANSION_EDGES_PER_MEMORY = 2


def relationship_weight(relationship_type: str) -> float:
    return RELATIONSHIP_WEIGHTS.get(relationship_type, 1.0)


def relationship_phrase(relationship_type: str | None) -> str:
    return RELATIONSHIP_PHRASES.get(relationship_type or "", DEFAULT_RELATIONSHIP_PHRASE)


def normalize_relationship_type(value: str | None) -> str:
    cleaned = str(value or "").strip().lower()
    if cleaned in RELATIONSHIP_TYPES:
        return cleaned
    return REL_RELATED_TO


def _create_connection_sync(conn, payload: dict[str, Any]) -> dict[str, Any]:
    existed = get_connection_sync(conn, payload["source_id"], payload["target_id"], payload["relationship_type"])
    edge = upsert_connection_sync(conn, payload)
    edge["created"] = existed is None

    inverse_type = INVERSE_RELATIONSHIPS.get(payload["relationship_type"])
    if inverse_type:
        inverse = dict(payload)
        inverse["source_id"] = payload["target_id"]
        inverse["target_id"] = payload["source_id"]
        inverse["relationship_type"] = inverse_type
        upsert_connection_sync(conn, inverse)
    return edge


async def create_connection(
    scope: MemoryScope,
    source_id: int,
    target_id: int,
    relationship_type: str,
    confidence: float = 0.8,
    *,
    deps,
) -> dict[str, Any] | None:
    """
    Upsert an edge (and its inverse where one is defined).
    Returns the edge dict with "created" set when it did not exist before, or None on rejection/failure.
    """
    if int(source_id) == int(target_id):
        return None
    if relationship_type not in RELATIONSHIP_TYPES:
        print(f"[Graph] rejected unknown relationship type={relationship_type!r}")
        return None

    now_iso = utc_iso(deps.clock())
    payload = {
        "user_id": scope.user_id,
        "guild_id": scope.guild_id,
        "source_id": int(source_id),
        "target_id": int(target_id),
        "relationship_type": relationship_type,
        "confidence": clamp_confidence(confidence),
        "created_at": now_iso,
        "updated_at": now_iso,
    }
    result = await guarded_call(
        _create_connection_sync,
        payload,
        db_lock=deps.db_lock,
        db_conn=deps.db_conn,
        timeout=deps.timeout,
        label="create connection",
    )
    if not result.ok:
        return None
    return result.data


async def get_connected_memories(
    memory_id: int,
    *,
    deps,
    min_confidence: float = 0.5,
) -> list[dict[str, Any]]:
    """Neighbours of memory_id in both directions: [{"memory", "relationship", "confidence", "direction"}]."""
    edges = await guarded_call(
        get_connections_for_memory_sync,
        memory_id,
        min_confidence=min_confidence,
        db_lock=deps.db_lock,
        db_conn=deps.db_conn,
        timeout=deps.timeout,
        label="connected memories",
    )
    if not edges.ok or not edges.data:
        return []

    neighbours: list[tuple[int, dict[str, Any]]] = []
    for edge in edges.data:
        if edge["source_id"] == int(memory_id):
            neighbours.append((edge["target_id"], {**edge, "direction": "outgoing"}))
        else:
            neighbours.append((edge["source_id"], {**edge, "direction": "incoming"}))

    records = await guarded_call(
        get_memory_records_by_ids_sync,
        list({other_id for other_id, _ in neighbours}),
        db_lock=deps.db_lock,
        db_conn=deps.db_conn,
        timeout=deps.timeout,
        label="connected memory records",
    )
    if not records.ok:
        return []
    by_id = {r["id"]: r for r in records.data}

    out = []
    for other_id, edge in neighbours:
        record = by_id.get(other_id)
        if record is None:
            continue
        out.append(
            {
                "memory": record,
                "relationship": edge["relationship_type"],
                "confidence": edge["confidence"],
                "direction": edge["direction"],
            }
        )
    out.sort(key=lambda item: item["confidence"], reverse=True)
    return out


async def analyze_relationship(
    memory_a: dict[str, Any],
    memory_b: dict[str, Any],
    *,
    deps,
    chat_complete,
    safe_extract_json_obj,
) -> list[dict[str, Any]]:
    """
    Ask the chat model how two memories relate.
    Returns [{"relationship_type", "confidence", "explanation"}] with confidence > 0.5; [] on any failure.
    """
    if deps.client is None:
        return []

    system = (
        "You analyze how two facts about the same user relate.\n"
        "Possible relationship types:\n"
        "1. related_to: generally related\n"
        "2. elaborates: the first adds detail to the second\n"
        "3. contradicts: the two cannot both be true\n"
        "4. follows: the first happened after the second\n"
        "5. precedes: the first happened before the second\n"
        "6. causes: the first led to the second\n"
        "7. part_of: the first is part of the second\n"
        'Return JSON only: {"relationships": [{"relationship_type": "...", "confidence": 0.0-1.0, '
        '"explanation": "..."}]}. Return an empty list if they are unrelated.'
    )
    user = f"Memory 1: {memory_a.get('text') or ''}\nMemory 2: {memory_b.get('text') or ''}"
    try:
        raw = await chat_complete(client=deps.client, openai_model=deps.openai_model, system=system, user=user)
    except Exception as e:
        print(f"[Graph] relationship analysis failed ids={memory_a.get('id')},{memory_b.get('id')}: {e}")
        return []

    obj = safe_extract_json_obj(raw)
    if not isinstance(obj, dict):
        return []
    items = obj.get("relationships")
    if not isinstance(items, list):
        return []

    out: list[dict[str, Any]] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            confidence = float(item.get("confidence", ANALYZE_DEFAULT_CONFIDENCE))
        except (TypeError, ValueError):
            confidence = ANALYZE_DEFAULT_CONFIDENCE
        if confidence <= ANALYZE_MIN_CONFIDENCE:
            continue
        out.append(
            {
                "relationship_type": normalize_relationship_type(item.get("relationship_type")),
                "confidence": confidence,
                "explanation": str(item.get("explanation") or ""),
            }
        )
    return out


async def build_memory_graph(
    scope: MemoryScope,
    *,
    deps,
    chat_complete,
    safe_extract_json_obj,
    batch_size: int | None = None,
) -> dict[str, int]:
    """
    Link the scope's most recent memories to their nearest neighbours.
    Pairs that already share any edge are not re-analyzed.
    """
    tuning = deps.tuning
    batch_size = int(batch_size or tuning.graph_batch_size)
    stats = {"processed": 0, "connections_created": 0, "errors": 0}

    recent = await guarded_call(
        list_memory_records_sync,
        scope.user_id,
        scope.guild_id,
        limit=batch_size,
        order_by="created_at DESC",
        db_lock=deps.db_lock,
        db_conn=deps.db_conn,
        timeout=deps.timeout,
        label="graph batch",
    )
    if not recent.ok:
        stats["errors"] += 1
        return stats

    for record in recent.data:
        stats["processed"] += 1
        if not record.get("embedding"):
            continue
        neighbours = await guarded_call(
            top_k_similar_sync,
            scope.user_id,
            scope.guild_id,
            record["embedding"],
            CANDIDATES_PER_MEMORY,
            threshold=tuning.graph_candidate_threshold,
            exclude_ids={record["id"]},
            db_lock=deps.db_lock,
            db_conn=deps.db_conn,
            timeout=deps.timeout,
            label="graph candidates",
        )
        if not neighbours.ok:
            stats["errors"] += 1
            continue

        for item in neighbours.data:
            other = item["record"]
            exists = await guarded_call(
                connection_exists_sync,
                record["id"],
                other["id"],
                db_lock=deps.db_lock,
                db_conn=deps.db_conn,
                timeout=deps.timeout,
                label="graph edge check",
            )
            if not exists.ok:
                stats["errors"] += 1
                continue
            if exists.data:
                continue

            relationships = await analyze_relationship(
                record,
                other,
                deps=deps,
                chat_complete=chat_complete,
                safe_extract_json_obj=safe_extract_json_obj,
            )
            for rel in relationships:
                edge = await create_connection(
                    scope,
                    record["id"],
                    other["id"],
                    rel["relationship_type"],
                    rel["confidence"],
                    deps=deps,
                )
                if edge is None:
                    stats["errors"] += 1
                elif edge.get("created"):
                    stats["connections_created"] += 1
        await asyncio.sleep(0)

    if stats["connections_created"]:
        print(
            f"[Graph] processed={stats['processed']} created={stats['connections_created']} "
            f"errors={stats['errors']} ({scope.label()})"
        )
    return stats


async def traverse_memory_graph(
    memory_id: int,
    *,
    deps,
    max_depth: int = 2,
    max_results: int = 10,
    min_confidence: float = 0.6,
) -> list[dict[str, Any]]:
    """Breadth-first walk from memory_id. Each hit carries its depth and the edge path that reached it."""
    visited = {int(memory_id)}
    queue: list[tuple[int, int, list[dict[str, Any]]]] = [(int(memory_id), 0, [])]
    results: list[dict[str, Any]] = []

    while queue and len(results) < max_results:
        current_id, depth, path = queue.pop(0)
        if depth >= max_depth:
            continue
        for item in await get_connected_memories(current_id, deps=deps, min_confidence=min_confidence):
            other = item["memory"]
            if other["id"] in visited:
                continue
            visited.add(other["id"])
            step = {
                "from_id": current_id,
                "to_id": other["id"],
                "relationship": item["relationship"],
                "confidence": item["confidence"],
                "direction": item["direction"],
            }
            results.append({"memory": other, "depth": depth + 1, "path": path + [step]})
            if len(results) >= max_results:
                break
            queue.append((other["id"], depth + 1, path + [step]))
    return results


async def expand_with_graph(
    memories: list[dict[str, Any]],
    limit: int,
    *,
    deps,
) -> list[dict[str, Any]]:
    """
    Splice up to max(2, limit // 2) strongly-connected neighbours into a ranked memory list.
    Added memories carry graph_relationship and graph_source_id; originals are returned first.
    """
    if not memories:
        return []
    max_additional = max(2, int(limit) // 2)
    threshold = deps.tuning.graph_strong_edge_threshold
    present = {m["id"] for m in memories}
    added: list[dict[str, Any]] = []

    for memory in memories:
        if len(added) >= max_additional:
            break
        connected = await get_connected_memories(memory["id"], deps=deps, min_confidence=threshold)
        connected = [c for c in connected if c["confidence"] > threshold]
        connected.sort(key=lambda c: relationship_weight(c["relationship"]) * c["confidence"], reverse=True)
        for item in connected[:EXPANSION_EDGES_PER_MEMORY]:
            other = item["memory"]
            if other["id"] in present:
                continue
            present.add(other["id"])
            added.append(
                {
                    **other,
                    "similarity": None,
                    "graph_relationship": item["relationship"],
                    "graph_source_id": memory["id"],
                    "graph_confidence": item["confidence"],
                }
            )
            if len(added) >= max_additional:
                break

    return list(memories) + added
