from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from memory.models import utc_now
from memory.tuning import MemoryTuning


@dataclass(frozen=True)
class MemoryEngineDeps:
    # storage
    db_lock: Any
    db_conn: Any

    # collaborators
    embedder: Any
    tasks: Any
    client: Any = None
    openai_model: str = "gpt-4o-mini"

    tuning: MemoryTuning = field(default_factory=MemoryTuning)
    clock: Callable[[], datetime] = utc_now

    @property
    def timeout(self) -> float:
        return float(self.tuning.store_timeout_seconds)
