from __future__ import annotations

from memory.models import MemoryScope


MEMORY_HEADER = "What you remember about this user:"


async def maybe_build_memory_pack(
    scope: MemoryScope,
    *,
    context_aware_retrieve_func,
    safe_prompt: str,
    history: list[dict],
    max_chars: int,
) -> str:
    """Memory section for the system prompt, or "" when nothing relevant is remembered."""
    try:
        memories = await context_aware_retrieve_func(scope, safe_prompt, history)
    except Exception as e:
        print(f"[Retrieval] memory pack failed ({scope.label()}): {e}")
        return ""
    memories = (memories or "").strip()
    if not memories:
        return ""
    return f"{MEMORY_HEADER}\n{memories}"[:max_chars]


def build_system_prompt(base_prompt: str, memory_pack: str) -> str:
    if not memory_pack:
        return base_prompt
    return f"{base_prompt}\n\n{memory_pack}"
