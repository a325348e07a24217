from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml


@dataclass(slots=True)
class MemoryTuning:
    store_timeout_seconds: float = 5.0
    embedding_cache_size: int = 1000

    retrieval_similarity_threshold: float = 0.5
    dedup_match_threshold: float = 0.85
    dedup_duplicate_threshold: float = 0.92
    similar_memory_threshold: float = 0.5
    corroboration_threshold: float = 0.85
    graph_strong_edge_threshold: float = 0.75
    graph_candidate_threshold: float = 0.7

    decay_interval_hours: float = 24.0
    graph_interval_hours: float = 24.0
    temporal_interval_hours: float = 12.0
    active_window_days: int = 7
    max_graph_scopes: int = 30
    graph_batch_size: int = 15
    temporal_batch_size: int = 100
    scope_pause_seconds: float = 0.1

    extraction_message_threshold: int = 3
    extraction_inactivity_hours: float = 8.0
    conversation_context_length: int = 20


def _coerce(value: Any, default: Any) -> Any:
    if isinstance(default, bool):
        return bool(value)
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return value


def load_memory_tuning(path: str | Path | None) -> tuple[MemoryTuning, str | None]:
    """
    Returns (tuning, warning_message). warning_message is None on clean load.
    Unknown keys are ignored; bad values keep the built-in default for that key.
    """
    defaults = MemoryTuning()
    if not path:
        return (defaults, None)

    p = Path(path)
    if not p.exists():
        return (defaults, f"Memory tuning file not found at {p}; using built-in defaults.")

    try:
        payload = yaml.safe_load(p.read_text(encoding="utf-8"))
    except Exception as exc:
        return (defaults, f"Failed to read memory tuning from {p}: {exc}; using built-in defaults.")

    if payload is None:
        return (defaults, None)
    if not isinstance(payload, dict):
        return (defaults, f"Invalid memory tuning format in {p}; using built-in defaults.")

    tuning = MemoryTuning()
    bad_keys: list[str] = []
    for f in fields(MemoryTuning):
        if f.name not in payload:
            continue
        try:
            setattr(tuning, f.name, _coerce(payload[f.name], getattr(defaults, f.name)))
        except (TypeError, ValueError):
            bad_keys.append(f.name)

    if bad_keys:
        return (tuning, f"Ignored invalid memory tuning values in {p}: {', '.join(bad_keys)}")
    return (tuning, None)
