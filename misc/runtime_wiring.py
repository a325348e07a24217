from __future__ import annotations

from jobs.service import schedule_maintenance as schedule_maintenance_service
from jobs.service import run_maintenance as run_maintenance_service
from memory.extraction import extract_and_store as extract_and_store_service
from memory.lifecycle_service import clear_memories as clear_memories_service
from memory.lifecycle_service import deactivate_memory as deactivate_memory_service
from memory.lifecycle_service import mark_memory_contradicted as mark_memory_contradicted_service
from memory.lifecycle_service import verify_memory as verify_memory_service
from memory.service import list_memories as list_memories_service
from memory.service import memory_stats as memory_stats_service
from memory.service import remember as remember_service
from misc.commands.command_deps import CommandDeps
from misc.commands.command_deps import CommandGates
from misc.commands.commands_memory import register as register_memory
from misc.runtime_deps import RuntimeBootDeps
from misc.runtime_deps import RuntimeDeps
from misc.events_runtime import register_runtime_events
from retrieval.service import context_aware_retrieve as context_aware_retrieve_service
from retrieval.service import retrieve as retrieve_service


def wire_bot_runtime(
    bot,
    *,
    engine_deps,
    conversations,
    allowed_channel_ids: set[int],
    in_allowed_channel,
    user_is_owner,
    send_chunked,
    system_prompt_base: str,
    bot_name: str = "Bri",
    enable_extraction: bool = True,
    enable_maintenance: bool = True,
) -> None:
    tuning = engine_deps.tuning

    async def remember(scope, text):
        return await remember_service(scope, text, deps=engine_deps)

    async def retrieve(scope, query, limit=5, *, category=None):
        return await retrieve_service(scope, query, limit, deps=engine_deps, category=category)

    async def list_memories(scope, *, category=None, limit=20):
        return await list_memories_service(scope, deps=engine_deps, category=category, limit=limit)

    async def forget(memory_id, *, scope=None):
        return await deactivate_memory_service(memory_id, deps=engine_deps, scope=scope)

    async def verify(memory_id, *, scope=None):
        return await verify_memory_service(memory_id, deps=engine_deps, scope=scope)

    async def contradict(memory_id, *, scope=None):
        return await mark_memory_contradicted_service(memory_id, deps=engine_deps, scope=scope)

    async def clear(scope):
        return await clear_memories_service(scope, deps=engine_deps)

    async def stats(scope):
        return await memory_stats_service(scope, deps=engine_deps)

    async def maintenance(scope):
        return await run_maintenance_service(scope, deps=engine_deps)

    async def context_aware_retrieve(scope, current_query, recent_messages):
        return await context_aware_retrieve_service(scope, current_query, recent_messages, deps=engine_deps)

    async def extract_and_store(scope, messages, name, *, message_id=None):
        return await extract_and_store_service(scope, messages, name, deps=engine_deps, message_id=message_id)

    def schedule_maintenance():
        return schedule_maintenance_service(deps=engine_deps)

    command_deps = CommandDeps(
        send_chunked=send_chunked,
        remember_func=remember,
        retrieve_func=retrieve,
        list_memories_func=list_memories,
        forget_func=forget,
        verify_func=verify,
        contradict_func=contradict,
        clear_func=clear,
        stats_func=stats,
        maintenance_func=maintenance,
        conversations=conversations,
    )
    command_gates = CommandGates(
        in_allowed_channel=in_allowed_channel,
        allowed_channel_ids=allowed_channel_ids,
        user_is_owner=user_is_owner,
    )

    register_memory(
        bot,
        deps=command_deps,
        gates=command_gates,
    )

    register_runtime_events(
        bot,
        deps=RuntimeDeps(
            send_chunked=send_chunked,
            conversations=conversations,
            tasks=engine_deps.tasks,
            context_aware_retrieve_func=context_aware_retrieve,
            extract_and_store_func=extract_and_store,
            enable_extraction=enable_extraction,
            extraction_message_threshold=int(tuning.extraction_message_threshold),
            extraction_inactivity_hours=float(tuning.extraction_inactivity_hours),
            system_prompt_base=system_prompt_base,
            bot_name=bot_name,
            client=engine_deps.client,
            openai_model=engine_deps.openai_model,
        ),
        boot=RuntimeBootDeps(
            allowed_channel_ids=allowed_channel_ids,
            maintenance_enabled=enable_maintenance,
            schedule_maintenance_func=schedule_maintenance,
        ),
    )
