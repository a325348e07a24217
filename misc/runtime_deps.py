from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable


@dataclass(frozen=True)
class RuntimeDeps:
    # core
    send_chunked: Callable
    conversations: Any
    tasks: Any

    # memory
    context_aware_retrieve_func: Callable
    extract_and_store_func: Callable
    enable_extraction: bool
    extraction_message_threshold: int
    extraction_inactivity_hours: float
    system_prompt_base: str
    bot_name: str

    # llm
    client: Any
    openai_model: str

    max_memory_chars: int = 1900


@dataclass(frozen=True)
class RuntimeBootDeps:
    allowed_channel_ids: set[int]
    maintenance_enabled: bool
    schedule_maintenance_func: Callable
