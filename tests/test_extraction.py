from __future__ import annotations

import unittest

from memory.extraction import EXPLICIT_FACTS_SYSTEM
from memory.extraction import IMPLIED_SYSTEM
from memory.extraction import SUMMARY_SYSTEM
from memory.extraction import extract_and_store
from memory.extraction import incremental_segment
from memory.extraction import plan_extraction
from memory.extraction import post_process_facts
from memory.extraction import render_transcript
from memory.models import MemoryScope
from memory.store import get_extraction_tracking_sync
from memory.store import list_memory_records_sync
from memory_fakes import ScriptedChatClient
from memory_fakes import make_conn
from memory_fakes import make_deps

SCOPE = MemoryScope.of(1)


def conversation(n_exchanges: int) -> list[dict]:
    messages = [{"role": "system", "content": "You are Bri."}]
    for i in range(n_exchanges):
        messages.append({"role": "user", "content": f"user message {i}"})
        messages.append({"role": "assistant", "content": f"bri reply {i}"})
    return messages


def responder_for(explicit: str, implied: str, summary: str = "They chatted about life."):
    def respond(messages):
        system = messages[0]["content"]
        if system == SUMMARY_SYSTEM:
            return summary
        if system == EXPLICIT_FACTS_SYSTEM:
            return explicit
        if system == IMPLIED_SYSTEM:
            return implied
        return ""

    return respond


class FactFilterTests(unittest.TestCase):
    def test_post_process_filters_and_prefixes(self):
        facts = post_process_facts(
            [
                "User likes pizza a lot",
                "User's name is not provided",
                "User might be a chef",
                "User doesn't like mushrooms",
                "User didn't go out",
                "Is tall",
                "works as a nurse",
                5,
                "   ",
            ]
        )
        self.assertEqual(
            facts,
            ["User likes pizza a lot", "User doesn't like mushrooms", "User works as a nurse"],
        )

    def test_render_transcript_skips_system(self):
        text = render_transcript(conversation(1), "Bri")
        self.assertEqual(text, "User: user message 0\nBri: bri reply 0")


class PlanningTests(unittest.TestCase):
    def test_plan_extraction(self):
        self.assertFalse(plan_extraction([], None)["needs_processing"])
        self.assertFalse(plan_extraction(conversation(0), None)["needs_processing"])

        initial = plan_extraction(conversation(2), None)
        self.assertEqual((initial["start_index"], initial["is_initial"]), (1, True))

        incremental = plan_extraction(conversation(3), {"last_extracted_message_count": 3})
        self.assertEqual((incremental["start_index"], incremental["is_initial"]), (3, False))

        trimmed = plan_extraction(conversation(3), {"last_extracted_message_count": 9})
        self.assertTrue(trimmed["is_initial"])

    def test_incremental_segment_keeps_context_and_system(self):
        messages = conversation(4)
        segment, new_messages = incremental_segment(messages, 6)
        self.assertEqual(new_messages, messages[6:])
        self.assertEqual(segment, [messages[0]] + messages[3:])


class ExtractAndStoreTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.conn = make_conn()

    async def asyncTearDown(self):
        self.conn.close()

    async def test_initial_pass_stores_facts_and_tracks_progress(self):
        client = ScriptedChatClient(
            responder=responder_for(
                '["User lives in Paris", "User\'s job is unknown"]',
                'Here you go: ["User enjoys jazz music"]',
            )
        )
        deps = make_deps(self.conn, client=client)
        messages = conversation(3)

        result = await extract_and_store(SCOPE, messages, "Bri", deps=deps, message_id=555)
        self.assertEqual(result, {"extracted": 2, "success": True})

        stored = {r["text"]: r for r in list_memory_records_sync(self.conn, "1")}
        self.assertEqual(set(stored), {"User lives in Paris", "User enjoys jazz music"})
        self.assertTrue(all(r["memory_type"] == "intuited" for r in stored.values()))
        self.assertTrue(all(r["source"] == "conversation_extraction" for r in stored.values()))

        tracking = get_extraction_tracking_sync(self.conn, "1")
        self.assertEqual(tracking["last_extracted_message_count"], len(messages))
        self.assertEqual(tracking["last_extracted_message_id"], "555")

    async def test_assistant_only_increment_skips_model_calls(self):
        client = ScriptedChatClient(responder=responder_for('["User lives in Paris"]', "[]"))
        deps = make_deps(self.conn, client=client)
        messages = conversation(3)
        await extract_and_store(SCOPE, messages, deps=deps)
        calls = len(client.requests)

        messages = messages + [{"role": "assistant", "content": "anything else?"}]
        result = await extract_and_store(SCOPE, messages, deps=deps)
        self.assertEqual(result, {"extracted": 0, "success": True})
        self.assertEqual(len(client.requests), calls)
        self.assertEqual(get_extraction_tracking_sync(self.conn, "1")["last_extracted_message_count"], len(messages))

    async def test_incremental_pass_only_summarizes_new_slice(self):
        client = ScriptedChatClient(responder=responder_for("[]", "[]"))
        deps = make_deps(self.conn, client=client)
        messages = conversation(3)
        await extract_and_store(SCOPE, messages, deps=deps)

        messages = messages + [
            {"role": "user", "content": "I adopted a puppy"},
            {"role": "assistant", "content": "aww"},
        ]
        client.requests.clear()
        result = await extract_and_store(SCOPE, messages, deps=deps)
        self.assertTrue(result["success"])

        summary_prompt = client.requests[0][1]["content"]
        self.assertIn("I adopted a puppy", summary_prompt)
        self.assertNotIn("user message 0", summary_prompt)

    async def test_missing_summary_is_a_failure(self):
        client = ScriptedChatClient(responder=responder_for('["User lives in Paris"]', "[]", summary=""))
        deps = make_deps(self.conn, client=client)
        result = await extract_and_store(SCOPE, conversation(2), deps=deps)
        self.assertFalse(result["success"])
        self.assertIsNone(get_extraction_tracking_sync(self.conn, "1"))

    async def test_requires_chat_client(self):
        deps = make_deps(self.conn)
        result = await extract_and_store(SCOPE, conversation(2), deps=deps)
        self.assertFalse(result["success"])


if __name__ == "__main__":
    unittest.main()
