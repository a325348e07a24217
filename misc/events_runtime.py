from __future__ import annotations

import asyncio

import discord
from discord.ext import commands
from memory.models import MemoryScope
from memory.runtime_recall import build_system_prompt
from memory.runtime_recall import maybe_build_memory_pack
from misc.discord_gates import addressed_to_bot
from misc.discord_gates import message_in_allowed_channels
from misc.mention_routes import is_command
from misc.mention_routes import strip_bot_mention
from misc.runtime_deps import RuntimeBootDeps
from misc.runtime_deps import RuntimeDeps

NO_OUTPUT = "(no output)"
CHAT_FAILED = "Bri hiccuped. Check logs."


async def generate_reply(scope: MemoryScope, prompt: str, *, deps: RuntimeDeps) -> str:
    """
    One chat turn: memory block, system prompt, history, model call.
    The conversation store is updated only after the model answers.
    """
    history = deps.conversations.history(scope)
    memory_pack = await maybe_build_memory_pack(
        scope,
        context_aware_retrieve_func=deps.context_aware_retrieve_func,
        safe_prompt=prompt,
        history=history,
        max_chars=deps.max_memory_chars,
    )
    system_prompt = build_system_prompt(deps.system_prompt_base, memory_pack)
    chat_messages = deps.conversations.build_turn(scope, system_prompt, prompt)

    print(
        f"[CTX] {scope.label()} history={len(chat_messages) - 1} "
        f"mem_chars={len(memory_pack)} prompt_chars={len(prompt)}"
    )

    resp = await asyncio.to_thread(
        deps.client.chat.completions.create,
        model=deps.openai_model,
        messages=chat_messages,
    )
    reply = (resp.choices[0].message.content or NO_OUTPUT)
    deps.conversations.add_assistant_reply(scope, reply)
    deps.conversations.record_exchange(scope)
    return reply


def maybe_queue_extraction(scope: MemoryScope, *, deps: RuntimeDeps, message_id=None) -> bool:
    """Queue extract_and_store when the scope hit the message threshold or went idle long enough."""
    if not deps.enable_extraction:
        return False
    if not deps.conversations.should_extract(
        scope,
        message_threshold=deps.extraction_message_threshold,
        inactivity_hours=deps.extraction_inactivity_hours,
    ):
        return False

    snapshot = deps.conversations.history(scope)

    async def _extract():
        result = await deps.extract_and_store_func(scope, snapshot, deps.bot_name, message_id=message_id)
        if not result.get("success"):
            raise RuntimeError(result.get("error") or "extraction failed")

    queued = deps.tasks.submit(f"extract:{scope.label()}", _extract)
    if queued:
        deps.conversations.mark_extraction_started(scope)
    return queued


def register_runtime_events(
    bot: commands.Bot,
    *,
    deps: RuntimeDeps,
    boot: RuntimeBootDeps,
) -> None:
    @bot.event
    async def on_ready():
        print(f"{deps.bot_name} is online as {bot.user}")

        if boot.maintenance_enabled and not getattr(bot, "_maintenance_task", None):
            bot._maintenance_task = boot.schedule_maintenance_func()
            print("[Memory] maintenance loop started")

    @bot.event
    async def on_message(message: discord.Message):
        if not message_in_allowed_channels(message, boot.allowed_channel_ids):
            return

        if message.author.bot:
            return

        if is_command(message.content):
            await bot.process_commands(message)
            return

        if not addressed_to_bot(message, bot.user):
            return

        prompt = strip_bot_mention(message.content, bot.user.id if bot.user else None)
        if not prompt:
            await message.channel.send("Yep?")
            return

        scope = MemoryScope.from_message(message)
        try:
            async with message.channel.typing():
                reply = await generate_reply(scope, prompt, deps=deps)
            await deps.send_chunked(message.channel, reply)
        except Exception as e:
            print(f"[OpenAI] Error ({scope.label()}): {e}")
            await message.channel.send(CHAT_FAILED)
            return

        maybe_queue_extraction(scope, deps=deps, message_id=message.id)
