from __future__ import annotations

import unittest
from types import SimpleNamespace
from unittest import mock

try:
    import discord
    from discord.ext import commands
except ModuleNotFoundError:
    discord = None
    commands = None

from memory.conversations import ConversationStore
from memory.models import MemoryScope
from memory.runtime_recall import MEMORY_HEADER
from memory.runtime_recall import build_system_prompt
from memory.runtime_recall import maybe_build_memory_pack
from memory_fakes import FIXED_NOW
from memory_fakes import RecordingTasks
from memory_fakes import ScriptedChatClient

try:
    from misc.events_runtime import CHAT_FAILED
    from misc.events_runtime import NO_OUTPUT
    from misc.events_runtime import generate_reply
    from misc.events_runtime import maybe_queue_extraction
    from misc.events_runtime import register_runtime_events
    from misc.runtime_deps import RuntimeBootDeps
    from misc.runtime_deps import RuntimeDeps
except ModuleNotFoundError:
    register_runtime_events = None

SCOPE = MemoryScope.of(7)


class MemoryPackTests(unittest.IsolatedAsyncioTestCase):
    async def test_pack_has_header_and_is_capped(self):
        async def retrieve(scope, query, history):
            return "- " + "x" * 50

        pack = await maybe_build_memory_pack(
            SCOPE,
            context_aware_retrieve_func=retrieve,
            safe_prompt="hi",
            history=[],
            max_chars=40,
        )
        self.assertTrue(pack.startswith(MEMORY_HEADER))
        self.assertEqual(len(pack), 40)

    async def test_retrieval_failure_yields_no_pack(self):
        async def retrieve(scope, query, history):
            raise RuntimeError("vector store down")

        pack = await maybe_build_memory_pack(
            SCOPE,
            context_aware_retrieve_func=retrieve,
            safe_prompt="hi",
            history=[],
            max_chars=1900,
        )
        self.assertEqual(pack, "")
        self.assertEqual(build_system_prompt("base", pack), "base")
        self.assertEqual(build_system_prompt("base", "mem"), "base\n\nmem")


class FakeTyping:
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeChannel:
    def __init__(self):
        self.id = 555
        self.sent: list[str] = []

    def typing(self):
        return FakeTyping()

    async def send(self, text):
        self.sent.append(str(text))


@unittest.skipIf(register_runtime_events is None, "discord.py not installed")
class RuntimeTurnTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.conversations = ConversationStore(context_length=10, clock=lambda: FIXED_NOW)
        self.tasks = RecordingTasks()
        self.extract_calls: list[tuple] = []
        self.extract_result = {"extracted": 1, "success": True}
        self.retrieved = "- User likes tea"
        self.sent_chunked: list[str] = []

    def _deps(self, client, **overrides) -> RuntimeDeps:
        async def context_aware_retrieve(scope, query, history):
            return self.retrieved

        async def extract_and_store(scope, messages, name, *, message_id=None):
            self.extract_calls.append((scope, messages, name, message_id))
            return self.extract_result

        async def send_chunked(channel, text):
            self.sent_chunked.append(text)

        values = dict(
            send_chunked=send_chunked,
            conversations=self.conversations,
            tasks=self.tasks,
            context_aware_retrieve_func=context_aware_retrieve,
            extract_and_store_func=extract_and_store,
            enable_extraction=True,
            extraction_message_threshold=2,
            extraction_inactivity_hours=8.0,
            system_prompt_base="You are Bri.",
            bot_name="Bri",
            client=client,
            openai_model="test-model",
        )
        values.update(overrides)
        return RuntimeDeps(**values)

    async def test_reply_uses_memory_and_updates_history(self):
        client = ScriptedChatClient(["Hi! Want some tea?"])
        deps = self._deps(client)

        reply = await generate_reply(SCOPE, "hello", deps=deps)
        self.assertEqual(reply, "Hi! Want some tea?")

        sent = client.requests[0]
        self.assertEqual(sent[0]["role"], "system")
        self.assertIn("You are Bri.", sent[0]["content"])
        self.assertIn(f"{MEMORY_HEADER}\n- User likes tea", sent[0]["content"])
        self.assertEqual(sent[-1], {"role": "user", "content": "hello"})

        history = self.conversations.history(SCOPE)
        self.assertEqual(history[-1], {"role": "assistant", "content": "Hi! Want some tea?"})

    async def test_empty_completion_becomes_placeholder(self):
        deps = self._deps(ScriptedChatClient([""]))
        self.assertEqual(await generate_reply(SCOPE, "hello", deps=deps), NO_OUTPUT)

    async def test_extraction_queued_at_threshold(self):
        deps = self._deps(ScriptedChatClient(["one", "two"]))
        await generate_reply(SCOPE, "first", deps=deps)
        self.assertFalse(maybe_queue_extraction(SCOPE, deps=deps, message_id=1))

        await generate_reply(SCOPE, "second", deps=deps)
        self.assertTrue(maybe_queue_extraction(SCOPE, deps=deps, message_id=2))
        self.assertEqual(self.tasks.labels(), [f"extract:{SCOPE.label()}"])
        self.assertFalse(maybe_queue_extraction(SCOPE, deps=deps, message_id=3))

        await self.tasks.run_all()
        scope, messages, name, message_id = self.extract_calls[0]
        self.assertEqual((scope, name, message_id), (SCOPE, "Bri", 2))
        self.assertEqual(messages[-1], {"role": "assistant", "content": "two"})

    async def test_failed_extraction_surfaces_to_task_queue(self):
        self.extract_result = {"extracted": 0, "success": False, "error": "no summary"}
        deps = self._deps(ScriptedChatClient(["one", "two"]), extraction_message_threshold=1)
        await generate_reply(SCOPE, "first", deps=deps)
        self.assertTrue(maybe_queue_extraction(SCOPE, deps=deps))
        with self.assertRaises(RuntimeError):
            await self.tasks.run_all()

    async def test_extraction_can_be_disabled(self):
        deps = self._deps(ScriptedChatClient(["one"]), enable_extraction=False, extraction_message_threshold=1)
        await generate_reply(SCOPE, "first", deps=deps)
        self.assertFalse(maybe_queue_extraction(SCOPE, deps=deps))
        self.assertEqual(self.tasks.jobs, [])

    def _bot(self, deps):
        bot = commands.Bot(command_prefix="!", intents=discord.Intents.none())
        register_runtime_events(
            bot,
            deps=deps,
            boot=RuntimeBootDeps(
                allowed_channel_ids=set(),
                maintenance_enabled=False,
                schedule_maintenance_func=None,
            ),
        )
        return bot

    def _dm(self, content: str, *, is_bot: bool = False):
        return SimpleNamespace(
            id=900,
            guild=None,
            channel=FakeChannel(),
            author=SimpleNamespace(id=7, bot=is_bot),
            content=content,
            mentions=[],
        )

    async def test_dm_gets_a_reply(self):
        bot = self._bot(self._deps(ScriptedChatClient(["hey there"])))
        message = self._dm("hi Bri")
        await bot.on_message(message)
        self.assertEqual(self.sent_chunked, ["hey there"])
        await bot.close()

    async def test_commands_and_bots_skip_chat(self):
        client = ScriptedChatClient(["unused"])
        bot = self._bot(self._deps(client))
        bot.process_commands = mock.AsyncMock()

        await bot.on_message(self._dm("!memstats"))
        bot.process_commands.assert_awaited_once()

        await bot.on_message(self._dm("hello", is_bot=True))
        self.assertEqual(client.requests, [])
        await bot.close()

    async def test_model_failure_sends_apology(self):
        def rate_limited(messages):
            raise RuntimeError("rate limited")

        client = ScriptedChatClient(responder=rate_limited)
        bot = self._bot(self._deps(client))
        message = self._dm("hi")
        await bot.on_message(message)
        self.assertEqual(message.channel.sent, [CHAT_FAILED])
        self.assertEqual(self.tasks.jobs, [])
        await bot.close()

    async def test_ready_schedules_maintenance_once(self):
        scheduled = []

        def schedule():
            scheduled.append(True)
            return "maintenance-task"

        bot = commands.Bot(command_prefix="!", intents=discord.Intents.none())
        register_runtime_events(
            bot,
            deps=self._deps(ScriptedChatClient()),
            boot=RuntimeBootDeps(
                allowed_channel_ids=set(),
                maintenance_enabled=True,
                schedule_maintenance_func=schedule,
            ),
        )
        await bot.on_ready()
        await bot.on_ready()
        self.assertEqual(scheduled, [True])
        self.assertEqual(bot._maintenance_task, "maintenance-task")
        await bot.close()


if __name__ == "__main__":
    unittest.main()
