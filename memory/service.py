from __future__ import annotations

import asyncio
import json
import re
from typing import Any

from memory.categorizer import categorize
from memory.confidence import corroborated_confidence
from memory.confidence import initial_confidence
from memory.dedup import dedupe_against_store
from memory.dedup import dedupe_within_batch
from memory.dedup import find_similar_memory
from memory.models import MEMORY_TYPE_EXPLICIT
from memory.models import MEMORY_TYPE_INTUITED
from memory.models import SOURCE_CONVERSATION_EXTRACTION
from memory.models import SOURCE_MEMORY_COMMAND
from memory.models import MemoryScope
from memory.models import clamp_confidence
from memory.models import normalize_memory_type
from memory.models import utc_iso
from memory.results import guarded_call
from memory.results import guarded_embed
from memory.store import insert_memory_record_sync
from memory.store import insert_memory_records_sync
from memory.store import list_memory_records_sync
from memory.store import memory_stats_sync
from memory.store import top_k_similar_sync
from memory.store import update_memory_record_sync
from memory.temporal import analyze_memory_temporal


def safe_extract_json_obj(text: str) -> dict | None:
    if not text:
        return None
    m = re.search(r"\{.*\}", text, flags=re.S)
    if not m:
        return None
    try:
        return json.loads(m.group(0))
    except Exception:
        return None


def extract_json_array(text: str) -> list:
    """
    Strict-ish: tries json.loads; if it fails, extracts the first [...] block and loads that.
    """
    if not text:
        return []
    text = text.strip()

    try:
        data = json.loads(text)
        return data if isinstance(data, list) else []
    except Exception:
        pass

    start = text.find("[")
    end = text.rfind("]")
    if start != -1 and end != -1 and end > start:
        blob = text[start : end + 1]
        try:
            data = json.loads(blob)
            return data if isinstance(data, list) else []
        except Exception:
            return []

    return []


def shorten(text: str, limit: int = 60) -> str:
    clean = " ".join((text or "").split())
    if len(clean) <= limit:
        return clean
    return clean[: max(0, limit - 3)] + "..."


async def chat_complete(
    *,
    client,
    openai_model: str,
    system: str,
    user: str,
    max_system_chars: int = 1900,
    max_user_chars: int = 6000,
) -> str:
    """One chat completion off the event loop. Raises on SDK errors; callers decide the fallback."""

    def _call():
        return client.chat.completions.create(
            model=openai_model,
            messages=[
                {"role": "system", "content": system[:max_system_chars]},
                {"role": "user", "content": user[:max_user_chars]},
            ],
        )

    resp = await asyncio.to_thread(_call)
    return (resp.choices[0].message.content or "").strip()


def _record_payload(
    scope: MemoryScope,
    text: str,
    vector: list[float],
    *,
    memory_type: str,
    category: str,
    confidence: float,
    source: str,
    now_iso: str,
) -> dict[str, Any]:
    explicit = memory_type == MEMORY_TYPE_EXPLICIT
    return {
        "user_id": scope.user_id,
        "guild_id": scope.guild_id,
        "text": text,
        "embedding": vector,
        "memory_type": memory_type,
        "category": category,
        "confidence": clamp_confidence(confidence),
        "source": source,
        "verified": explicit,
        "verification_date": now_iso if explicit else None,
        "verification_source": source if explicit else None,
        "contradiction_count": 0,
        "access_count": 0,
        "last_accessed": None,
        "temporal_analysis": analyze_memory_temporal(text),
        "created_at": now_iso,
        "updated_at": now_iso,
        "active": True,
    }


async def corroborate_similar_memories(
    scope: MemoryScope,
    record: dict[str, Any],
    *,
    triggering_type: str,
    deps,
) -> int:
    """Raise confidence on existing memories that closely match a newly stored one."""
    vector = record.get("embedding")
    if not vector:
        return 0
    similar = await guarded_call(
        top_k_similar_sync,
        scope.user_id,
        scope.guild_id,
        vector,
        5,
        threshold=deps.tuning.corroboration_threshold,
        exclude_ids={int(record["id"])},
        db_lock=deps.db_lock,
        db_conn=deps.db_conn,
        timeout=deps.timeout,
        label="corroboration lookup",
    )
    if not similar.ok:
        return 0

    boosted = 0
    for item in similar.data:
        existing = item["record"]
        if item["similarity"] <= deps.tuning.corroboration_threshold:
            continue
        new_confidence = corroborated_confidence(existing["confidence"], triggering_type)
        if new_confidence <= existing["confidence"]:
            continue
        updated = await guarded_call(
            update_memory_record_sync,
            existing["id"],
            {"confidence": new_confidence, "updated_at": utc_iso(deps.clock())},
            db_lock=deps.db_lock,
            db_conn=deps.db_conn,
            timeout=deps.timeout,
            label="corroboration update",
        )
        if updated.ok:
            boosted += 1
    if boosted:
        print(f"[Memory] corroborated {boosted} memories ({scope.label()}) from id={record['id']}")
    return boosted


async def create_memory(
    scope: MemoryScope,
    text: str,
    *,
    memory_type: str,
    source: str,
    deps,
    category: str | None = None,
    vector: list[float] | None = None,
) -> dict[str, Any] | None:
    memory_type = normalize_memory_type(memory_type)
    text = (text or "").strip()
    if not text:
        return None
    category = category or categorize(text)
    confidence = initial_confidence(memory_type, source, category, text)

    if vector is None:
        embedded = await guarded_embed(
            deps.embedder.embed(text, retries=1),
            timeout=deps.timeout,
            label="create embed",
        )
        if not embedded.ok:
            print(f"[Memory] create failed ({scope.label()}): {embedded.error}")
            return None
        vector = embedded.data

    payload = _record_payload(
        scope,
        text,
        vector,
        memory_type=memory_type,
        category=category,
        confidence=confidence,
        source=source,
        now_iso=utc_iso(deps.clock()),
    )
    inserted = await guarded_call(
        insert_memory_record_sync,
        payload,
        db_lock=deps.db_lock,
        db_conn=deps.db_conn,
        timeout=deps.timeout,
        label="create insert",
    )
    if not inserted.ok:
        return None

    record = inserted.data
    deps.tasks.submit(
        f"corroborate:{record['id']}",
        lambda: corroborate_similar_memories(scope, record, triggering_type=memory_type, deps=deps),
    )
    print(
        f"[Memory] created id={record['id']} type={memory_type} category={category} "
        f"conf={record['confidence']:.2f} ({scope.label()})"
    )
    return record


async def _update_in_place(
    scope: MemoryScope,
    existing: dict[str, Any],
    text: str,
    vector: list[float],
    *,
    memory_type: str,
    deps,
    extra: dict[str, Any] | None = None,
) -> dict[str, Any] | None:
    patch: dict[str, Any] = {
        "text": text,
        "embedding": vector,
        "memory_type": memory_type,
        "category": categorize(text),
        "temporal_analysis": analyze_memory_temporal(text),
        "updated_at": utc_iso(deps.clock()),
    }
    patch.update(extra or {})
    updated = await guarded_call(
        update_memory_record_sync,
        existing["id"],
        patch,
        db_lock=deps.db_lock,
        db_conn=deps.db_conn,
        timeout=deps.timeout,
        label="update in place",
    )
    if not updated.ok or not updated.data:
        return None
    print(f"[Memory] updated id={existing['id']} ({scope.label()}): {shorten(text)}")
    return updated.data


async def remember(scope: MemoryScope, text: str, *, deps) -> dict[str, Any]:
    """Explicit memory command: overwrite the closest explicit memory or create a new one."""
    text = (text or "").strip()
    if not text:
        return {"success": False, "error": "There's nothing to remember there."}

    try:
        existing, vector = await find_similar_memory(scope, text, deps=deps, memory_type=MEMORY_TYPE_EXPLICIT)
        if vector is None:
            return {"success": False, "error": "I couldn't process that memory right now."}

        if existing:
            updated = await _update_in_place(
                scope,
                existing,
                text,
                vector,
                memory_type=MEMORY_TYPE_EXPLICIT,
                deps=deps,
            )
            if not updated:
                return {"success": False, "error": "Error updating memory."}
            return {
                "success": True,
                "action": "updated",
                "memory_id": updated["id"],
                "message": "Got it! I've updated my memory. :)",
            }

        created = await create_memory(
            scope,
            text,
            memory_type=MEMORY_TYPE_EXPLICIT,
            source=SOURCE_MEMORY_COMMAND,
            deps=deps,
            vector=vector,
        )
        if not created:
            return {"success": False, "error": "Error inserting memory."}
        return {
            "success": True,
            "action": "created",
            "memory_id": created["id"],
            "message": "Got it! I'll remember that. :)",
        }
    except Exception as e:
        print(f"[Memory] remember failed ({scope.label()}): {e}")
        return {"success": False, "error": "Error storing memory."}


async def insert_intuited(
    scope: MemoryScope,
    text: str,
    proposed_confidence: float,
    *,
    deps,
) -> dict[str, Any] | None:
    """Store an inferred fact without ever downgrading a more-trusted existing one."""
    text = (text or "").strip()
    if not text:
        return None
    try:
        existing, vector = await find_similar_memory(scope, text, deps=deps, memory_type=None)
        if vector is None:
            return None

        if existing:
            if float(existing["confidence"]) >= float(proposed_confidence):
                return existing
            return await _update_in_place(
                scope,
                existing,
                text,
                vector,
                memory_type=existing.get("memory_type") or MEMORY_TYPE_INTUITED,
                deps=deps,
                extra={"confidence": clamp_confidence(proposed_confidence)},
            )

        return await create_memory(
            scope,
            text,
            memory_type=MEMORY_TYPE_INTUITED,
            source=SOURCE_CONVERSATION_EXTRACTION,
            deps=deps,
            vector=vector,
        )
    except Exception as e:
        print(f"[Memory] insert_intuited failed ({scope.label()}): {e}")
        return None


async def bulk_store(
    scope: MemoryScope,
    candidate_texts: list[str],
    *,
    deps,
    memory_type: str = MEMORY_TYPE_INTUITED,
    source: str = SOURCE_CONVERSATION_EXTRACTION,
) -> dict[str, Any]:
    cleaned = [t.strip() for t in candidate_texts if isinstance(t, str) and t.strip()]
    if not cleaned:
        return {"stored": 0, "success": True}

    try:
        batch_unique = dedupe_within_batch(cleaned)
        unique = await dedupe_against_store(scope, batch_unique, deps=deps)
        if not unique:
            print(f"[Memory] bulk store: all {len(cleaned)} candidates were duplicates ({scope.label()})")
            return {"stored": 0, "success": True}

        embedded = await guarded_embed(
            deps.embedder.embed_batch(unique, retries=1),
            timeout=deps.timeout,
            label="bulk embed",
        )
        if not embedded.ok:
            return {"stored": 0, "success": False, "error": embedded.error}

        now_iso = utc_iso(deps.clock())
        payloads = []
        for text, vector in zip(unique, embedded.data):
            category = categorize(text)
            payloads.append(
                _record_payload(
                    scope,
                    text,
                    vector,
                    memory_type=memory_type,
                    category=category,
                    confidence=initial_confidence(memory_type, source, category, text),
                    source=source,
                    now_iso=now_iso,
                )
            )

        inserted = await guarded_call(
            insert_memory_records_sync,
            payloads,
            db_lock=deps.db_lock,
            db_conn=deps.db_conn,
            timeout=deps.timeout,
            label="bulk insert",
        )
        if not inserted.ok:
            return {"stored": 0, "success": False, "error": inserted.error}

        for record in inserted.data:
            deps.tasks.submit(
                f"corroborate:{record['id']}",
                lambda record=record: corroborate_similar_memories(
                    scope, record, triggering_type=memory_type, deps=deps
                ),
            )
        print(f"[Memory] bulk stored {len(inserted.data)}/{len(cleaned)} memories ({scope.label()})")
        return {"stored": len(inserted.data), "success": True}
    except Exception as e:
        print(f"[Memory] bulk store failed ({scope.label()}): {e}")
        return {"stored": 0, "success": False, "error": str(e)}


async def list_memories(
    scope: MemoryScope,
    *,
    deps,
    category: str | None = None,
    limit: int = 20,
) -> list[dict[str, Any]]:
    result = await guarded_call(
        list_memory_records_sync,
        scope.user_id,
        scope.guild_id,
        category=category,
        limit=limit,
        order_by="confidence DESC",
        db_lock=deps.db_lock,
        db_conn=deps.db_conn,
        timeout=deps.timeout,
        label="list memories",
    )
    return result.unwrap_or([])


async def memory_stats(scope: MemoryScope, *, deps) -> dict[str, Any]:
    result = await guarded_call(
        memory_stats_sync,
        scope.user_id,
        scope.guild_id,
        db_lock=deps.db_lock,
        db_conn=deps.db_conn,
        timeout=deps.timeout,
        label="memory stats",
    )
    return result.unwrap_or({})
