from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from memory.embeddings import cosine_similarity
from memory.models import MEMORY_TYPE_EXPLICIT
from memory.models import MemoryScope
from memory.results import guarded_call
from memory.results import guarded_embed
from memory.store import top_k_similar_sync


BATCH_OVERLAP_THRESHOLD = 0.7

PREDICATE_PATTERNS: tuple[tuple[re.Pattern, str], ...] = (
    (re.compile(r"(likes|loves|enjoys|prefers)\s+(\w+)"), "preference"),
    (re.compile(r"(lives|resides)\s+in\s+(\w+)"), "location"),
    (re.compile(r"(works|employed)\s+as\s+(\w+)"), "occupation"),
    (re.compile(r"(has|owns)\s+(\w+)"), "possession"),
    (re.compile(r"(is|was)\s+(\w+)"), "state"),
)

VERB_GROUPS: tuple[frozenset[str], ...] = (
    frozenset({"like", "love", "enjoy", "prefer", "adore", "appreciate"}),
    frozenset({"dislike", "hate", "despise", "detest"}),
    frozenset({"have", "own", "possess"}),
    frozenset({"work", "employed", "job"}),
    frozenset({"live", "reside", "stay", "dwell"}),
)

# Inflected forms captured by the patterns, mapped onto the base forms used in VERB_GROUPS.
_VERB_LEMMAS = {
    "likes": "like",
    "loves": "love",
    "enjoys": "enjoy",
    "prefers": "prefer",
    "lives": "live",
    "resides": "reside",
    "works": "work",
    "has": "have",
    "owns": "own",
    "is": "be",
    "was": "be",
}

_TOPIC_STOPWORDS = {"the", "and", "but", "or", "a", "an"}
_DETERMINERS = {"the", "a", "an", "their", "his", "her", "its"}


@dataclass(slots=True)
class Predicate:
    verb: str
    object: str
    type: str


@dataclass(slots=True)
class Concepts:
    predicates: list[Predicate] = field(default_factory=list)
    topics: set[str] = field(default_factory=set)


def extract_concepts(text: str) -> Concepts:
    body = re.sub(r"^user\s+", "", (text or "").strip(), flags=re.I).lower()
    concepts = Concepts()

    for pattern, kind in PREDICATE_PATTERNS:
        for m in pattern.finditer(body):
            verb = _VERB_LEMMAS.get(m.group(1), m.group(1))
            concepts.predicates.append(Predicate(verb=verb, object=m.group(2), type=kind))

    words = [re.sub(r"^\W+|\W+$", "", w) for w in body.split()]
    for i, word in enumerate(words):
        if len(word) <= 2 or word in _TOPIC_STOPWORDS:
            continue
        if i > 0 and words[i - 1] in _DETERMINERS:
            concepts.topics.add(word)
    for pred in concepts.predicates:
        concepts.topics.add(pred.object)
    return concepts


def verb_similarity(verbs_a: set[str], verbs_b: set[str]) -> float:
    checks = 0
    matches = 0
    for a in verbs_a:
        for b in verbs_b:
            checks += 1
            if a == b or any(a in group and b in group for group in VERB_GROUPS):
                matches += 1
    return matches / checks if checks else 0.0


def concept_overlap(a: Concepts, b: Concepts) -> float:
    by_type_a: dict[str, list[Predicate]] = {}
    by_type_b: dict[str, list[Predicate]] = {}
    for pred in a.predicates:
        by_type_a.setdefault(pred.type, []).append(pred)
    for pred in b.predicates:
        by_type_b.setdefault(pred.type, []).append(pred)

    all_types = set(by_type_a) | set(by_type_b)
    predicate_score = 0.0
    for kind in all_types:
        preds_a = by_type_a.get(kind) or []
        preds_b = by_type_b.get(kind) or []
        if not preds_a or not preds_b:
            continue
        verbs = verb_similarity({p.verb for p in preds_a}, {p.verb for p in preds_b})
        objects_a = {p.object for p in preds_a}
        objects_b = {p.object for p in preds_b}
        object_score = len(objects_a & objects_b) / max(1, min(len(objects_a), len(objects_b)))
        predicate_score += verbs * 0.4 + object_score * 0.6
    predicate_score = predicate_score / len(all_types) if all_types else 0.0

    if a.topics and b.topics:
        topic_score = len(a.topics & b.topics) / max(1, min(len(a.topics), len(b.topics)))
    else:
        topic_score = 0.0

    return predicate_score * 0.7 + topic_score * 0.3


def dedupe_within_batch(candidates: list[str], *, threshold: float = BATCH_OVERLAP_THRESHOLD) -> list[str]:
    """Drop candidates whose concept overlap with an earlier kept candidate exceeds threshold."""
    if len(candidates) <= 1:
        return list(candidates)
    concepts = [extract_concepts(c) for c in candidates]
    kept: list[int] = []
    for i in range(len(candidates)):
        if any(concept_overlap(concepts[j], concepts[i]) > threshold for j in kept):
            continue
        kept.append(i)
    return [candidates[i] for i in kept]


async def dedupe_against_store(
    scope: MemoryScope,
    candidates: list[str],
    *,
    deps,
) -> list[str]:
    """
    Keep candidates with no existing (or already-kept) memory above the duplicate threshold.
    Candidates that cannot be embedded or checked are skipped.
    """
    tuning = deps.tuning
    kept: list[str] = []
    kept_vectors: list[list[float]] = []
    for text in candidates:
        embedded = await guarded_embed(
            deps.embedder.embed(text, retries=1),
            timeout=deps.timeout,
            label="dedup embed",
        )
        if not embedded.ok:
            print(f"[Memory] dedup skipped candidate ({scope.label()}): {embedded.error}")
            continue
        vector = embedded.data

        if any(cosine_similarity(vector, other) > tuning.dedup_duplicate_threshold for other in kept_vectors):
            continue

        similar = await guarded_call(
            top_k_similar_sync,
            scope.user_id,
            scope.guild_id,
            vector,
            5,
            threshold=tuning.dedup_match_threshold,
            db_lock=deps.db_lock,
            db_conn=deps.db_conn,
            timeout=deps.timeout,
            label="dedup similarity check",
        )
        if not similar.ok:
            print(f"[Memory] dedup skipped candidate ({scope.label()}): {similar.error}")
            continue
        if any(item["similarity"] > tuning.dedup_duplicate_threshold for item in similar.data):
            continue

        kept.append(text)
        kept_vectors.append(vector)
    return kept


async def find_similar_memory(
    scope: MemoryScope,
    text: str,
    *,
    deps,
    memory_type: str | None = MEMORY_TYPE_EXPLICIT,
    threshold: float | None = None,
    vector: list[float] | None = None,
) -> tuple[dict[str, Any] | None, list[float] | None]:
    """Returns (best_match_record_or_None, query_vector). Errors yield (None, vector)."""
    if vector is None:
        embedded = await guarded_embed(
            deps.embedder.embed(text, retries=1),
            timeout=deps.timeout,
            label="similar-memory embed",
        )
        if not embedded.ok:
            return (None, None)
        vector = embedded.data

    cutoff = deps.tuning.similar_memory_threshold if threshold is None else float(threshold)
    result = await guarded_call(
        top_k_similar_sync,
        scope.user_id,
        scope.guild_id,
        vector,
        1,
        threshold=cutoff,
        memory_type=memory_type,
        db_lock=deps.db_lock,
        db_conn=deps.db_conn,
        timeout=deps.timeout,
        label="similar-memory lookup",
    )
    if not result.ok or not result.data:
        return (None, vector)
    match = dict(result.data[0]["record"])
    match["similarity"] = float(result.data[0]["similarity"])
    return (match, vector)
