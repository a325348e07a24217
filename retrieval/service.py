from __future__ import annotations

import sqlite3
from typing import Any

from memory.confidence import track_access
from memory.graph import expand_with_graph
from memory.models import MemoryScope
from memory.models import parse_utc
from memory.models import utc_iso
from memory.results import ErrorKind
from memory.results import MemoryEngineError
from memory.results import guarded_call
from memory.results import guarded_embed
from memory.store import get_memory_record_sync
from memory.store import search_memory_records_by_keywords_sync
from memory.store import top_k_similar_sync
from memory.store import update_memory_record_sync
from memory.temporal import analyze_query_time_context
from memory.temporal import enhance_memories_with_temporal_context
from retrieval.formatting import format_plain
from retrieval.formatting import format_with_relationships
from retrieval.formatting import format_with_temporal
from retrieval.keyword_query import build_keyword_terms


SIMILARITY_WEIGHT = 0.7
CONFIDENCE_WEIGHT = 0.3
CONTEXT_MESSAGES = 3
CONTEXT_AWARE_LIMIT = 6


def effective_relevance(similarity: float, confidence: float) -> float:
    return float(similarity) * SIMILARITY_WEIGHT + float(confidence) * CONFIDENCE_WEIGHT


def rank_candidates(candidates: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Flatten [{"record", "similarity"}] into memory dicts and order them by blended relevance.
    A very similar but weakly trusted memory sorts below a moderately similar trusted one.
    """
    ranked = []
    for item in candidates:
        memory = dict(item["record"])
        memory["similarity"] = float(item["similarity"])
        memory["effective_relevance"] = effective_relevance(memory["similarity"], memory["confidence"])
        ranked.append(memory)
    ranked.sort(key=lambda m: m["effective_relevance"], reverse=True)
    return ranked


def track_access_sync(conn: sqlite3.Connection, memory_id: int, now_iso: str) -> dict[str, Any] | None:
    record = get_memory_record_sync(conn, memory_id)
    if record is None or not record["active"]:
        return None
    touched = track_access(record, now=parse_utc(now_iso))
    return update_memory_record_sync(
        conn,
        memory_id,
        {
            "access_count": touched["access_count"],
            "confidence": touched["confidence"],
            "last_accessed": touched["last_accessed"],
        },
    )


def _queue_access_tracking(memories: list[dict[str, Any]], *, deps) -> None:
    now_iso = utc_iso(deps.clock())
    for memory in memories:
        memory_id = memory["id"]

        async def _track(memory_id=memory_id):
            result = await guarded_call(
                track_access_sync,
                memory_id,
                now_iso,
                db_lock=deps.db_lock,
                db_conn=deps.db_conn,
                timeout=deps.timeout,
                label="track access",
            )
            if not result.ok:
                raise MemoryEngineError(result.kind or ErrorKind.TRANSIENT, result.error or "track access failed")

        deps.tasks.submit(f"track_access:{memory_id}", _track)


async def _retrieve_formatted(
    scope: MemoryScope,
    query: str,
    limit: int,
    *,
    deps,
    memory_type: str | None,
    category: str | None,
) -> str:
    embedded = await guarded_embed(deps.embedder.embed(query), timeout=deps.timeout, label="retrieval embed")
    if not embedded.ok:
        raise MemoryEngineError(embedded.kind or ErrorKind.TRANSIENT, embedded.error or "embed failed")

    candidates = await guarded_call(
        top_k_similar_sync,
        scope.user_id,
        scope.guild_id,
        embedded.data,
        limit * 2,
        threshold=deps.tuning.retrieval_similarity_threshold,
        memory_type=memory_type,
        category=category,
        db_lock=deps.db_lock,
        db_conn=deps.db_conn,
        timeout=deps.timeout,
        label="retrieval similarity",
    )
    if not candidates.ok:
        raise MemoryEngineError(candidates.kind or ErrorKind.TRANSIENT, candidates.error or "similarity failed")
    if not candidates.data:
        return ""

    ranked = rank_candidates(candidates.data)
    _queue_access_tracking(ranked, deps=deps)

    expanded = await expand_with_graph(ranked[:limit], limit, deps=deps)
    time_context = analyze_query_time_context(query)
    enhanced = enhance_memories_with_temporal_context(expanded, time_context, now=deps.clock())

    if time_context["includes_time_reference"]:
        return format_with_temporal(enhanced)
    if any(m.get("graph_relationship") for m in expanded):
        return format_with_relationships(enhanced)
    return format_plain(enhanced[:limit])


async def keyword_fallback(
    scope: MemoryScope,
    query: str,
    limit: int,
    *,
    deps,
) -> str:
    terms = build_keyword_terms(query)
    if not terms:
        return ""
    result = await guarded_call(
        search_memory_records_by_keywords_sync,
        scope.user_id,
        scope.guild_id,
        terms,
        limit,
        db_lock=deps.db_lock,
        db_conn=deps.db_conn,
        timeout=deps.timeout,
        label="keyword fallback",
    )
    if not result.ok or not result.data:
        return ""
    return "\n".join(f"- {m['text']}" for m in result.data)


async def retrieve(
    scope: MemoryScope,
    query: str,
    limit: int = 5,
    *,
    deps,
    memory_type: str | None = None,
    category: str | None = None,
) -> str:
    """
    Formatted memory block for the query, or "" when nothing relevant is stored.
    Embedding or storage failures degrade to a keyword match; never raises.
    """
    limit = max(1, int(limit))
    try:
        return await _retrieve_formatted(
            scope,
            query,
            limit,
            deps=deps,
            memory_type=memory_type,
            category=category,
        )
    except Exception as e:
        print(f"[Retrieval] vector retrieval failed ({scope.label()}): {e}; using keyword fallback")

    try:
        return await keyword_fallback(scope, query, limit, deps=deps)
    except Exception as e:
        print(f"[Retrieval] keyword fallback failed ({scope.label()}): {e}")
        return ""


async def context_aware_retrieve(
    scope: MemoryScope,
    current_query: str,
    recent_messages: list[dict[str, Any]],
    *,
    deps,
) -> str:
    try:
        recent_user_text = " ".join(
            str(m.get("content") or "") for m in recent_messages[-CONTEXT_MESSAGES:] if m.get("role") == "user"
        )
        contextual_query = f"{current_query} {recent_user_text}".strip()
        return await retrieve(scope, contextual_query, CONTEXT_AWARE_LIMIT, deps=deps)
    except Exception as e:
        print(f"[Retrieval] context-aware retrieval failed ({scope.label()}): {e}")
        return await retrieve(scope, current_query, 5, deps=deps)


async def retrieve_for_prompt(scope: MemoryScope, query: str, limit: int = 5, *, deps) -> str:
    return await retrieve(scope, query, limit, deps=deps)
