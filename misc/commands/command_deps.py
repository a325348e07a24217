from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Callable


def _default_false(*args, **kwargs) -> bool:
    return False


@dataclass(frozen=True)
class CommandDeps:
    # Core/shared
    send_chunked: Callable | None = None
    max_line_chars: int = 120
    recall_limit: int = 5
    list_limit: int = 20

    # Memory engine, each bound to its MemoryEngineDeps
    remember_func: Callable | None = None
    retrieve_func: Callable | None = None
    list_memories_func: Callable | None = None
    forget_func: Callable | None = None
    verify_func: Callable | None = None
    contradict_func: Callable | None = None
    clear_func: Callable | None = None
    stats_func: Callable | None = None
    maintenance_func: Callable | None = None

    conversations: Any = None


@dataclass(frozen=True)
class CommandGates:
    in_allowed_channel: Callable[[Any], bool] = _default_false
    allowed_channel_ids: set[int] = field(default_factory=set)
    user_is_owner: Callable[[Any], bool] = _default_false
