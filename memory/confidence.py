from __future__ import annotations

import math
from datetime import datetime
from typing import Any

from memory.models import CATEGORY_CONTACT
from memory.models import CATEGORY_PERSONAL
from memory.models import CATEGORY_PREFERENCES
from memory.models import MAX_CONFIDENCE
from memory.models import MEMORY_TYPE_EXPLICIT
from memory.models import MIN_CONFIDENCE
from memory.models import SOURCE_AI_CURATION
from memory.models import SOURCE_MEMORY_COMMAND
from memory.models import SOURCE_MERGED
from memory.models import age_days
from memory.models import clamp_confidence
from memory.models import utc_iso
from memory.models import utc_now


BASE_CONFIDENCE = {
    "explicit": 0.95,
    "intuited": 0.75,
}

HEDGING_WORDS = ("might", "maybe", "possibly", "sometimes", "occasionally")

DECAY_GRACE_DAYS = 7
DECAY_RATE_EXPLICIT = 0.001
DECAY_RATE_INTUITED = 0.01
DECAY_WRITE_EPSILON = 0.01

CORROBORATION_BOOST = {
    "explicit": 0.05,
    "intuited": 0.1,
}


def _base_for_type(memory_type: str | None) -> float:
    return BASE_CONFIDENCE["explicit"] if memory_type == MEMORY_TYPE_EXPLICIT else BASE_CONFIDENCE["intuited"]


def initial_confidence(memory_type: str, source: str | None, category: str | None, text: str | None) -> float:
    try:
        confidence = _base_for_type(memory_type)

        if source == SOURCE_MEMORY_COMMAND:
            confidence = MAX_CONFIDENCE
        elif source in (SOURCE_MERGED, SOURCE_AI_CURATION):
            confidence += 0.05

        if category in (CATEGORY_PERSONAL, CATEGORY_CONTACT):
            confidence += 0.05
        elif category == CATEGORY_PREFERENCES:
            confidence -= 0.05

        lowered = str(text or "").lower()
        if any(word in lowered for word in HEDGING_WORDS):
            confidence -= 0.1

        return clamp_confidence(confidence)
    except Exception as e:
        print(f"[Memory] initial confidence fallback ({memory_type}): {e}")
        return _base_for_type(memory_type)


def track_access(record: dict[str, Any], *, now: datetime | None = None) -> dict[str, Any]:
    """Bump access_count and apply the log-diminishing confidence boost."""
    out = dict(record)
    new_count = int(out.get("access_count") or 0) + 1
    boost = min(0.05, 0.01 * math.log(new_count + 1))
    out["access_count"] = new_count
    out["confidence"] = min(MAX_CONFIDENCE, float(out.get("confidence") or MIN_CONFIDENCE) + boost)
    out["last_accessed"] = utc_iso(now)
    return out


def compute_decay_amount(record: dict[str, Any], *, now: datetime | None = None) -> float:
    if record.get("verified"):
        return 0.0
    age = age_days(record.get("created_at"), now)
    if age <= DECAY_GRACE_DAYS:
        return 0.0

    rate = DECAY_RATE_EXPLICIT if record.get("memory_type") == MEMORY_TYPE_EXPLICIT else DECAY_RATE_INTUITED
    decay = math.log10(age - (DECAY_GRACE_DAYS - 1)) * rate
    access_bonus = min(0.05, int(record.get("access_count") or 0) * 0.005)
    return max(0.0, decay - access_bonus)


def decay_record(record: dict[str, Any], *, now: datetime | None = None) -> tuple[dict[str, Any], bool]:
    """
    Returns (record, changed). changed is False when the record is verified, still in its
    grace window, or the delta is below the write epsilon; the record is then returned as-is.
    """
    amount = compute_decay_amount(record, now=now)
    if amount <= 0.0:
        return (record, False)

    current = float(record.get("confidence") or MIN_CONFIDENCE)
    new_confidence = max(MIN_CONFIDENCE, current - amount)
    if abs(current - new_confidence) <= DECAY_WRITE_EPSILON:
        return (record, False)

    out = dict(record)
    out["confidence"] = new_confidence
    out["updated_at"] = utc_iso(now)
    return (out, True)


def verify_record(record: dict[str, Any], source: str, *, now: datetime | None = None) -> dict[str, Any]:
    stamp = utc_iso(now or utc_now())
    out = dict(record)
    out["verified"] = True
    out["confidence"] = MAX_CONFIDENCE
    out["verification_date"] = stamp
    out["verification_source"] = str(source or "user_confirmation")
    out["updated_at"] = stamp
    return out


def mark_record_contradicted(record: dict[str, Any], *, now: datetime | None = None) -> dict[str, Any]:
    out = dict(record)
    count = int(out.get("contradiction_count") or 0) + 1
    factor = 0.7 if count == 1 else 0.5
    out["contradiction_count"] = count
    out["confidence"] = max(MIN_CONFIDENCE, float(out.get("confidence") or MIN_CONFIDENCE) * factor)
    out["verified"] = False
    out["updated_at"] = utc_iso(now)
    return out


def corroborated_confidence(existing_confidence: float, triggering_type: str) -> float:
    boost = CORROBORATION_BOOST.get(triggering_type, CORROBORATION_BOOST["intuited"])
    return clamp_confidence(min(MAX_CONFIDENCE, float(existing_confidence or MIN_CONFIDENCE) + boost))
