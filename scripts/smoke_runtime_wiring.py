from __future__ import annotations

import asyncio
import importlib
import os
import sqlite3
import sys
from types import SimpleNamespace

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


class _DummyCompletions:
    def create(self, *args, **kwargs):
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="[]"))]
        )


class _DummyClient:
    def __init__(self):
        self.chat = SimpleNamespace(completions=_DummyCompletions())


class _DummyEmbedder:
    async def embed(self, text: str, *, retries: int = 0) -> list[float]:
        return [1.0, 0.0]

    async def embed_batch(self, texts: list[str], *, retries: int = 0) -> list[list[float]]:
        return [[1.0, 0.0] for _ in texts]


async def _noop_async(*args, **kwargs):
    return None


def _try_import_or_skip(module_name: str, pip_name: str | None = None) -> bool:
    try:
        importlib.import_module(module_name)
        return True
    except ModuleNotFoundError:
        install_name = pip_name or module_name
        print(
            f"Smoke wiring check skipped: missing dependency '{module_name}'. "
            f"Install the project and retry (e.g. `pip install {install_name}` "
            f"or `pip install -e .`)."
        )
        return False


def _main() -> int:
    if not _try_import_or_skip("discord", "discord.py"):
        return 0
    if not _try_import_or_skip("yaml", "PyYAML"):
        return 0

    import discord
    from discord.ext import commands
    from db.migrate import apply_sqlite_migrations
    from memory.conversations import ConversationStore
    from memory.engine import MemoryEngineDeps
    from memory.tasks import BackgroundTaskQueue
    from misc.runtime_wiring import wire_bot_runtime

    repo_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    apply_sqlite_migrations(conn, os.path.join(repo_root, "migrations"))

    intents = discord.Intents.none()
    bot = commands.Bot(command_prefix="!", intents=intents)
    engine_deps = MemoryEngineDeps(
        db_lock=asyncio.Lock(),
        db_conn=conn,
        embedder=_DummyEmbedder(),
        tasks=BackgroundTaskQueue(name="smoke"),
        client=_DummyClient(),
        openai_model="gpt-4o-mini",
    )

    wire_bot_runtime(
        bot,
        engine_deps=engine_deps,
        conversations=ConversationStore(),
        allowed_channel_ids={123456789012345678},
        in_allowed_channel=lambda ctx: True,
        user_is_owner=lambda user: True,
        send_chunked=_noop_async,
        system_prompt_base="You are Bri.",
    )

    expected_commands = {
        "remember",
        "recall",
        "memories",
        "forget",
        "memverify",
        "memcontradict",
        "clearmemories",
        "memstats",
        "memmaint",
    }
    existing_commands = set(bot.all_commands.keys())
    missing = sorted(expected_commands - existing_commands)
    if missing:
        raise RuntimeError(f"Missing expected commands: {missing}")

    for event_name in ("on_ready", "on_message"):
        handler = getattr(bot, event_name, None)
        if handler is None or getattr(handler, "__module__", "") != "misc.events_runtime":
            raise RuntimeError(f"Runtime event {event_name} was not registered")

    print("Smoke wiring check passed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(_main())
