from __future__ import annotations

import re

from discord.ext import commands
from memory.lifecycle_service import MemoryLifecycleError
from memory.models import MEMORY_CATEGORIES
from memory.models import MemoryScope
from memory.service import shorten
from misc.commands.command_deps import CommandDeps
from misc.commands.command_deps import CommandGates


REMEMBER_FAILED = "Sorry, I couldn't save that memory right now."
RECALL_EMPTY = "I don't remember anything about that."


def _scope_for(ctx: commands.Context) -> MemoryScope:
    guild = getattr(ctx, "guild", None)
    return MemoryScope.of(ctx.author.id, guild.id if guild is not None else None)


def _parse_recall_args(raw: str) -> tuple[str, str | None, str | None]:
    """(query, category, error). category=<name> may appear anywhere in the text."""
    text = (raw or "").strip()
    category = None
    m_cat = re.search(r"(?:^|\s)category=([^\s]+)", text)
    if m_cat:
        category = m_cat.group(1).strip().lower()
        text = (text[: m_cat.start()] + " " + text[m_cat.end():]).strip()
        if category not in MEMORY_CATEGORIES:
            return ("", None, f"Unknown category `{category}`. Try one of: {', '.join(MEMORY_CATEGORIES)}")
    if not text:
        return ("", None, "Usage: `!recall <query> [category=...]`")
    return (text, category, None)


def _parse_memory_id(raw: str, usage: str) -> tuple[int, str | None]:
    token = (raw or "").strip()
    if not token:
        return (0, usage)
    try:
        return (int(token.lstrip("#")), None)
    except ValueError:
        return (0, "Memory id must be an integer.")


def _lifecycle_error_text(exc: MemoryLifecycleError, memory_id: int) -> str:
    if exc.code in ("not_found", "scope_mismatch"):
        return f"Memory #{int(memory_id)} not found."
    if exc.code == "already_inactive":
        return f"Memory #{int(memory_id)} is already forgotten."
    return f"Memory update failed: {exc}"


def register(
    bot: commands.Bot,
    *,
    deps: CommandDeps,
    gates: CommandGates,
) -> None:
    @bot.command(name="remember")
    async def remember_cmd(ctx: commands.Context, *, arg: str = ""):
        if not gates.in_allowed_channel(ctx):
            return
        text = (arg or "").strip()
        if not text:
            await ctx.send("Usage: `!remember <something about you>`")
            return

        result = await deps.remember_func(_scope_for(ctx), text)
        if result.get("success"):
            await ctx.send(result.get("message") or "Got it! I'll remember that. :)")
            return
        print(f"[Memory] !remember failed ({_scope_for(ctx).label()}): {result.get('error')}")
        await ctx.send(REMEMBER_FAILED)

    @bot.command(name="recall")
    async def recall_cmd(ctx: commands.Context, *, query: str = ""):
        if not gates.in_allowed_channel(ctx):
            return
        q, category, parse_err = _parse_recall_args(query)
        if parse_err:
            await ctx.send(parse_err)
            return

        pack = await deps.retrieve_func(_scope_for(ctx), q, deps.recall_limit, category=category)
        if not pack:
            await ctx.send(RECALL_EMPTY)
            return
        await deps.send_chunked(ctx.channel, f"Here's what I remember:\n{pack}")

    @bot.command(name="memories")
    async def memories_cmd(ctx: commands.Context, category: str = ""):
        if not gates.in_allowed_channel(ctx):
            return
        cat = (category or "").strip().lower() or None
        if cat and cat not in MEMORY_CATEGORIES:
            await ctx.send(f"Unknown category `{cat}`. Try one of: {', '.join(MEMORY_CATEGORIES)}")
            return

        rows = await deps.list_memories_func(_scope_for(ctx), category=cat, limit=deps.list_limit)
        if not rows:
            await ctx.send("I don't have any memories about you yet.")
            return

        lines = [f"Memories ({len(rows)}):"]
        for row in rows:
            flag = " verified" if row.get("verified") else ""
            lines.append(
                f"- #{int(row['id'])} [{row.get('category')}/{row.get('memory_type')}] "
                f"conf={float(row.get('confidence') or 0.0):.2f}{flag} :: "
                f"{shorten(str(row.get('text') or ''), deps.max_line_chars)}"
            )
        await deps.send_chunked(ctx.channel, "```\n" + "\n".join(lines)[:7000] + "\n```")

    async def _lifecycle_command(ctx: commands.Context, raw: str, usage: str, func, done_text: str):
        if not gates.in_allowed_channel(ctx):
            return
        memory_id, parse_err = _parse_memory_id(raw, usage)
        if parse_err:
            await ctx.send(parse_err)
            return
        try:
            updated = await func(memory_id, scope=_scope_for(ctx))
        except MemoryLifecycleError as exc:
            await ctx.send(_lifecycle_error_text(exc, memory_id))
            return
        await ctx.send(done_text.format(id=int(memory_id), conf=float(updated.get("confidence") or 0.0)))

    @bot.command(name="forget")
    async def forget_cmd(ctx: commands.Context, memory_id: str = ""):
        await _lifecycle_command(ctx, memory_id, "Usage: `!forget <id>`", deps.forget_func, "Forgot memory #{id}.")

    @bot.command(name="memverify")
    async def memverify_cmd(ctx: commands.Context, memory_id: str = ""):
        await _lifecycle_command(
            ctx,
            memory_id,
            "Usage: `!memverify <id>`",
            deps.verify_func,
            "Verified memory #{id} (conf={conf:.2f}).",
        )

    @bot.command(name="memcontradict")
    async def memcontradict_cmd(ctx: commands.Context, memory_id: str = ""):
        await _lifecycle_command(
            ctx,
            memory_id,
            "Usage: `!memcontradict <id>`",
            deps.contradict_func,
            "Marked memory #{id} as contradicted (conf={conf:.2f}).",
        )

    @bot.command(name="clearmemories")
    async def clearmemories_cmd(ctx: commands.Context):
        if not gates.in_allowed_channel(ctx):
            return
        scope = _scope_for(ctx)
        try:
            cleared = await deps.clear_func(scope)
        except MemoryLifecycleError as exc:
            await ctx.send(f"Couldn't clear memories: {exc}")
            return
        if deps.conversations is not None:
            deps.conversations.clear(scope)
        await ctx.send(f"All cleared. I've forgotten {int(cleared.get('records') or 0)} memories and our chat history.")

    @bot.command(name="memstats")
    async def memstats_cmd(ctx: commands.Context):
        if not gates.in_allowed_channel(ctx):
            return
        stats = await deps.stats_func(_scope_for(ctx))
        if not stats or not stats.get("total"):
            await ctx.send("I don't have any memories about you yet.")
            return
        by_type = ", ".join(f"{k}={v}" for k, v in sorted(stats["by_type"].items()))
        by_cat = ", ".join(f"{k}={v}" for k, v in sorted(stats["by_category"].items()))
        await ctx.send(
            f"Memories: {stats['total']} (verified={stats['verified']}, avg_conf={stats['avg_confidence']:.2f}, "
            f"connections={stats['connections']})\nBy type: {by_type}\nBy category: {by_cat}"
        )

    @bot.command(name="memmaint")
    async def memmaint_cmd(ctx: commands.Context):
        if not gates.in_allowed_channel(ctx):
            return
        if not gates.user_is_owner(ctx.author):
            await ctx.send("This command is owner-only.")
            return
        report = await deps.maintenance_func(_scope_for(ctx))
        lines = ["Maintenance report:"]
        for step, stats in (report or {}).items():
            lines.append(f"- {step}: {stats}")
        await deps.send_chunked(ctx.channel, "```\n" + "\n".join(lines)[:1800] + "\n```")
