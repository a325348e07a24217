from __future__ import annotations

from typing import Any

from memory.graph import relationship_phrase
from memory.temporal import TIME_MODERATE
from memory.temporal import TIME_PERIODS
from memory.temporal import TIME_RECENT
from memory.temporal import TIME_VERY_RECENT


LOW_CONFIDENCE_THRESHOLD = 0.7
LOW_CONFIDENCE_SUFFIX = " (I think)"

PERIOD_HEADERS = {
    TIME_VERY_RECENT: "VERY RECENT MEMORIES:",
    TIME_RECENT: "RECENT MEMORIES:",
}

FREQUENCY_TEXT = {
    "constant": "always",
    "regular": "regularly",
    "occasional": "sometimes",
    "one_time": "once",
}


def _base_line(memory: dict[str, Any]) -> str:
    line = f"- {memory.get('text') or ''}"
    confidence = memory.get("confidence")
    if confidence is not None and float(confidence) < LOW_CONFIDENCE_THRESHOLD:
        line += LOW_CONFIDENCE_SUFFIX
    return line


def format_plain(memories: list[dict[str, Any]]) -> str:
    return "\n".join(_base_line(m) for m in memories)


def format_with_relationships(memories: list[dict[str, Any]]) -> str:
    lines = []
    for memory in memories:
        line = _base_line(memory)
        if memory.get("graph_relationship"):
            line += f" ({relationship_phrase(memory['graph_relationship'])})"
        lines.append(line)
    return "\n".join(lines)


def _temporal_qualifier(context: dict[str, Any] | None) -> str:
    if not context:
        return ""
    if context.get("is_current") is False:
        return " (in the past)"
    if context.get("tense") == "change":
        return " (changed recently)"
    if context.get("stability") == "low":
        return " (may have changed)"
    text = FREQUENCY_TEXT.get(context.get("frequency") or "")
    return f" ({text})" if text else ""


def format_with_temporal(memories: list[dict[str, Any]]) -> str:
    """Group by time period; only the two most recent periods get headers."""
    if not memories:
        return ""
    grouped: dict[str, list[dict[str, Any]]] = {p: [] for p in TIME_PERIODS}
    for memory in memories:
        period = memory.get("time_period")
        grouped[period if period in grouped else TIME_MODERATE].append(memory)

    blocks = []
    for period in TIME_PERIODS:
        items = grouped[period]
        if not items:
            continue
        lines = [_base_line(m) + _temporal_qualifier(m.get("temporal_context")) for m in items]
        header = PERIOD_HEADERS.get(period)
        if header:
            lines.insert(0, header)
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks).strip()
