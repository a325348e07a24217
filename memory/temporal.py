from __future__ import annotations

import re
from datetime import datetime
from typing import Any

from memory.models import MEMORY_TYPE_EXPLICIT
from memory.models import REL_CONTRADICTS
from memory.models import MemoryScope
from memory.models import age_days
from memory.models import utc_iso
from memory.results import guarded_call
from memory.store import list_records_missing_temporal_sync
from memory.store import update_memory_record_sync


TIME_VERY_RECENT = "very_recent"
TIME_RECENT = "recent"
TIME_MODERATE = "moderate"
TIME_OLDER = "older"
TIME_HISTORICAL = "historical"
TIME_PERIODS = (TIME_VERY_RECENT, TIME_RECENT, TIME_MODERATE, TIME_OLDER, TIME_HISTORICAL)

TEMPORAL_MARKERS: tuple[tuple[re.Pattern, str], ...] = (
    (re.compile(r"\b(now|currently|lately|these days|at the moment|presently)\b", re.I), "present"),
    (
        re.compile(r"\b(yesterday|last (week|month|year)|previously|formerly|used to|before|ago|in the past)\b", re.I),
        "past",
    ),
    (
        re.compile(r"\b(tomorrow|next (week|month|year)|soon|planning to|going to|will|intends to|wants to)\b", re.I),
        "future",
    ),
    (re.compile(r"\b(changed|switched|upgraded|started|stopped|no longer|now)\b", re.I), "change"),
    (
        re.compile(r"\b(always|never|sometimes|occasionally|rarely|frequently|often|every (day|week|month|year))\b", re.I),
        "frequency",
    ),
)

_FREQUENCY_WORDS = {
    "always": "constant",
    "never": "never",
    "sometimes": "occasional",
    "occasionally": "occasional",
    "rarely": "occasional",
    "frequently": "regular",
    "often": "regular",
}

_KEY_TERM_STOPWORDS = {
    "the", "a", "an", "and", "or", "but", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "to", "at", "in", "on", "for", "with", "about",
    "user", "that", "this", "these", "those", "i", "you", "he", "she", "it", "we", "they", "my",
    "your", "his", "her", "its", "our", "their",
}


def _frequency_from_term(term: str) -> str | None:
    lowered = term.lower()
    if lowered.startswith("every"):
        return "regular"
    return _FREQUENCY_WORDS.get(lowered)


def analyze_memory_temporal(text: str, *, analyzed_at: str | None = None) -> dict[str, Any]:
    """Marker-based temporal analysis of a memory text."""
    text = text or ""
    analysis: dict[str, Any] = {
        "tense": "present",
        "time_references": [],
        "is_current": True,
        "stability": "medium",
        "frequency": None,
        "complexity": 0.0,
    }

    matches: list[tuple[str, str]] = []
    for pattern, tense in TEMPORAL_MARKERS:
        m = pattern.search(text)
        if not m:
            continue
        term = m.group(0)
        matches.append((term, tense))
        if term not in analysis["time_references"]:
            analysis["time_references"].append(term)
        if tense == "frequency":
            analysis["frequency"] = _frequency_from_term(term)

    if matches:
        counts: dict[str, int] = {}
        for _term, tense in matches:
            counts[tense] = counts.get(tense, 0) + 1
        dominant = max(counts, key=lambda t: counts[t])
        analysis["tense"] = dominant
        if dominant == "past":
            analysis["is_current"] = False
        if dominant == "change":
            analysis["stability"] = "low"
        elif analysis["frequency"] in ("constant", "never"):
            analysis["stability"] = "high"
        analysis["complexity"] = min(1.0, len(matches) / 2)

    analysis["analyzed_at"] = analyzed_at or utc_iso()
    return analysis


async def analyze_memory_temporal_llm(
    record: dict[str, Any],
    *,
    client,
    openai_model: str,
    chat_complete,
    safe_extract_json_obj,
) -> dict[str, Any]:
    """Marker analysis, refined by the chat model for explicit or multi-marker memories."""
    base = analyze_memory_temporal(record.get("text") or "")
    needs_model = (
        record.get("memory_type") == MEMORY_TYPE_EXPLICIT
        or record.get("category") in ("personal", "professional")
        or base["complexity"] > 0
    )
    if not needs_model or client is None:
        return base

    system = (
        "You analyze temporal aspects of short statements about a user.\n"
        "Return JSON only with keys: tense (past|present|future|mixed|change), time_references (list), "
        "is_current (bool), stability (high|medium|low), frequency (one_time|occasional|regular|constant|never|null)."
    )
    try:
        raw = await chat_complete(client=client, openai_model=openai_model, system=system, user=record.get("text") or "")
    except Exception as e:
        print(f"[Temporal] model analysis failed for memory id={record.get('id')}: {e}")
        return base

    obj = safe_extract_json_obj(raw)
    if not isinstance(obj, dict):
        return base
    merged = dict(base)
    for key in ("tense", "time_references", "is_current", "stability", "frequency"):
        if key in obj:
            merged[key] = obj[key]
    return merged


def time_period_for(record: dict[str, Any], now: datetime | None = None) -> str:
    days = age_days(record.get("created_at"), now)
    if days <= 1:
        return TIME_VERY_RECENT
    if days <= 7:
        return TIME_RECENT
    if days <= 30:
        return TIME_MODERATE
    if days <= 365:
        return TIME_OLDER
    return TIME_HISTORICAL


def analyze_query_time_context(query: str) -> dict[str, Any]:
    context: dict[str, Any] = {
        "time_focus": "present",
        "includes_time_reference": False,
        "prioritize_recent": False,
        "explicit_time_references": [],
    }
    for pattern, tense in TEMPORAL_MARKERS:
        m = pattern.search(query or "")
        if not m:
            continue
        context["includes_time_reference"] = True
        if tense == "past":
            context["time_focus"] = "past"
            context["prioritize_recent"] = False
        elif tense == "future":
            context["time_focus"] = "future"
            context["prioritize_recent"] = True
        elif tense == "change":
            context["time_focus"] = "changes"
            context["prioritize_recent"] = True
        if m.group(0) not in context["explicit_time_references"]:
            context["explicit_time_references"].append(m.group(0))
    return context


def enhance_memories_with_temporal_context(
    memories: list[dict[str, Any]],
    time_context: dict[str, Any],
    *,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    enhanced = []
    for memory in memories:
        out = dict(memory)
        out["time_period"] = time_period_for(memory, now)
        out["temporal_context"] = memory.get("temporal_analysis")
        enhanced.append(out)

    if not time_context.get("includes_time_reference"):
        return enhanced

    focus = time_context.get("time_focus")
    for memory in enhanced:
        relevance = 1.0
        tc = memory.get("temporal_context") or {}
        if tc:
            if focus == "past" and tc.get("tense") == "past":
                relevance *= 1.3
            elif focus == "present" and tc.get("is_current") is True:
                relevance *= 1.2
            elif focus == "changes" and tc.get("tense") == "change":
                relevance *= 1.5
            elif focus == "future" and tc.get("is_current") is True and tc.get("stability") == "high":
                relevance *= 1.2
        if time_context.get("prioritize_recent"):
            period = memory["time_period"]
            if period == TIME_VERY_RECENT:
                relevance *= 1.5
            elif period == TIME_RECENT:
                relevance *= 1.3
            elif period == TIME_MODERATE:
                relevance *= 1.1
        memory["temporal_relevance"] = relevance

    enhanced.sort(
        key=lambda m: (m.get("similarity") or 0.5) * m.get("temporal_relevance", 1.0),
        reverse=True,
    )
    return enhanced


def extract_key_terms(text: str) -> list[str]:
    clean = re.sub(r"[.,/#!$%^&*;:{}=\-_`~()]", "", (text or "").lower())
    return [w for w in clean.split() if len(w) > 2 and w not in _KEY_TERM_STOPWORDS]


def group_related_memories(memories: list[dict[str, Any]]) -> list[list[dict[str, Any]]]:
    groups: list[list[dict[str, Any]]] = []
    seen: set[int] = set()
    terms_by_id = {m["id"]: set(extract_key_terms(m.get("text") or "")) for m in memories}
    for memory in memories:
        if memory["id"] in seen:
            continue
        group = [memory]
        seen.add(memory["id"])
        terms = terms_by_id[memory["id"]]
        for other in memories:
            if other["id"] in seen:
                continue
            overlap = terms & terms_by_id[other["id"]]
            if len(overlap) >= 2 or (len(overlap) == 1 and len(next(iter(overlap))) > 5):
                group.append(other)
                seen.add(other["id"])
        if len(group) > 1:
            groups.append(group)
    return groups


def check_temporal_contradiction(newer: dict[str, Any], older: dict[str, Any]) -> dict[str, Any] | None:
    a = newer.get("temporal_analysis") or {}
    b = older.get("temporal_analysis") or {}
    if not a or not b:
        return None

    if b.get("is_current") is True and b.get("stability") == "high" and a.get("tense") == "change":
        return {"type": "stability_change", "newer": newer, "older": older, "confidence": 0.85}

    if a.get("is_current") is True and b.get("is_current") is False and b.get("tense") == "present":
        return {"type": "tense_contradiction", "newer": newer, "older": older, "confidence": 0.8}

    strong = ("constant", "never")
    fa = a.get("frequency")
    fb = b.get("frequency")
    if fa and fb and fa != fb and fa in strong and fb in strong:
        return {"type": "frequency_contradiction", "newer": newer, "older": older, "confidence": 0.75}

    return None


def find_temporal_contradictions(memories: list[dict[str, Any]]) -> list[dict[str, Any]]:
    found: list[dict[str, Any]] = []
    with_analysis = [m for m in memories if m.get("temporal_analysis")]
    for group in group_related_memories(with_analysis):
        group = sorted(group, key=lambda m: str(m.get("created_at") or ""), reverse=True)
        for i in range(len(group)):
            for j in range(i + 1, len(group)):
                contradiction = check_temporal_contradiction(group[i], group[j])
                if contradiction:
                    found.append(contradiction)
    return found


async def detect_temporal_contradictions(
    scope: MemoryScope,
    *,
    deps,
    list_records,
    create_connection,
    mark_contradicted,
) -> list[dict[str, Any]]:
    """Link contradicting memory pairs; the older one loses confidence only against an explicit newer one."""
    records = await list_records(scope)
    if len(records) < 2:
        return []
    contradictions = find_temporal_contradictions(records)
    for c in contradictions:
        newer = c["newer"]
        older = c["older"]
        edge = await create_connection(scope, newer["id"], older["id"], REL_CONTRADICTS, c["confidence"], deps=deps)
        if not edge or not edge.get("created"):
            continue
        if newer.get("memory_type") == MEMORY_TYPE_EXPLICIT and not older.get("verified"):
            await mark_contradicted(older["id"], deps=deps)
    if contradictions:
        print(f"[Temporal] {len(contradictions)} contradictions linked ({scope.label()})")
    return contradictions


async def reanalyze_temporal_batch(
    scope: MemoryScope,
    *,
    deps,
    chat_complete,
    safe_extract_json_obj,
    batch_size: int | None = None,
) -> dict[str, int]:
    """Fill in temporal_analysis for records stored without one."""
    stats = {"processed": 0, "updated": 0, "errors": 0}
    pending = await guarded_call(
        list_records_missing_temporal_sync,
        scope.user_id,
        scope.guild_id,
        int(batch_size or deps.tuning.temporal_batch_size),
        db_lock=deps.db_lock,
        db_conn=deps.db_conn,
        timeout=deps.timeout,
        label="temporal batch",
    )
    if not pending.ok:
        stats["errors"] += 1
        return stats

    for record in pending.data:
        stats["processed"] += 1
        analysis = await analyze_memory_temporal_llm(
            record,
            client=deps.client,
            openai_model=deps.openai_model,
            chat_complete=chat_complete,
            safe_extract_json_obj=safe_extract_json_obj,
        )
        analysis["analyzed_at"] = utc_iso(deps.clock())
        saved = await guarded_call(
            update_memory_record_sync,
            record["id"],
            {"temporal_analysis": analysis},
            db_lock=deps.db_lock,
            db_conn=deps.db_conn,
            timeout=deps.timeout,
            label="temporal save",
        )
        if saved.ok:
            stats["updated"] += 1
        else:
            stats["errors"] += 1

    if stats["updated"]:
        print(f"[Temporal] analyzed {stats['updated']}/{stats['processed']} memories ({scope.label()})")
    return stats
