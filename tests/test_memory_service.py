from __future__ import annotations

import unittest

from memory.models import MemoryScope
from memory.service import bulk_store
from memory.service import create_memory
from memory.service import extract_json_array
from memory.service import insert_intuited
from memory.service import list_memories
from memory.service import memory_stats
from memory.service import remember
from memory.service import safe_extract_json_obj
from memory.store import get_memory_record_sync
from memory.store import list_memory_records_sync
from memory_fakes import BagOfWordsEmbedder
from memory_fakes import FailingEmbedder
from memory_fakes import insert_record
from memory_fakes import make_conn
from memory_fakes import make_deps

SCOPE = MemoryScope.of(1)


class JsonHelperTests(unittest.TestCase):
    def test_extract_json_array_tolerates_prose(self):
        self.assertEqual(extract_json_array('Sure! ["User likes tea"] hope that helps'), ["User likes tea"])
        self.assertEqual(extract_json_array('{"not": "a list"}'), [])
        self.assertEqual(extract_json_array(""), [])

    def test_safe_extract_json_obj(self):
        self.assertEqual(safe_extract_json_obj('noise {"a": 1} noise'), {"a": 1})
        self.assertIsNone(safe_extract_json_obj("{broken"))


class MemoryFacadeTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.conn = make_conn()
        self.embedder = BagOfWordsEmbedder()
        self.deps = make_deps(self.conn, embedder=self.embedder)

    async def asyncTearDown(self):
        self.conn.close()

    def _active(self):
        return list_memory_records_sync(self.conn, SCOPE.user_id, SCOPE.guild_id)

    async def test_remember_creates_verified_explicit_memory(self):
        result = await remember(SCOPE, "User has a dog named Max", deps=self.deps)
        self.assertTrue(result["success"])
        self.assertEqual(result["action"], "created")

        record = get_memory_record_sync(self.conn, result["memory_id"])
        self.assertEqual(record["memory_type"], "explicit")
        self.assertEqual(record["category"], "personal")
        self.assertEqual(record["confidence"], 1.0)
        self.assertTrue(record["verified"])
        self.assertEqual(record["source"], "memory_command")
        self.assertIsNotNone(record["temporal_analysis"])
        self.assertEqual(self.deps.tasks.labels(), [f"corroborate:{record['id']}"])

    async def test_explicit_overwrite_keeps_one_record(self):
        first = await remember(SCOPE, "User's favorite color is blue", deps=self.deps)
        second = await remember(SCOPE, "User's favorite color is green", deps=self.deps)

        self.assertEqual(second["action"], "updated")
        self.assertEqual(second["memory_id"], first["memory_id"])
        active = self._active()
        self.assertEqual(len(active), 1)
        self.assertTrue(active[0]["text"].endswith("green"))

    async def test_repeated_explicit_submissions_stay_at_or_below_one(self):
        await remember(SCOPE, "User plays the violin", deps=self.deps)
        await remember(SCOPE, "User plays the violin", deps=self.deps)
        await self.deps.tasks.run_all()
        self.assertTrue(all(r["confidence"] <= 1.0 for r in self._active()))

    async def test_intuited_observation_does_not_overwrite_explicit_fact(self):
        created = await remember(SCOPE, "User has a dog named Max", deps=self.deps)
        result = await insert_intuited(SCOPE, "User loves their dog Max", 0.75, deps=self.deps)

        self.assertEqual(result["id"], created["memory_id"])
        active = self._active()
        self.assertEqual(len(active), 1)
        self.assertEqual(active[0]["text"], "User has a dog named Max")
        self.assertEqual(active[0]["memory_type"], "explicit")
        self.assertEqual(active[0]["confidence"], 1.0)

    async def test_intuited_upgrades_weaker_match(self):
        memory_id = insert_record(
            self.conn,
            "User has a cat",
            embedding=self.embedder.vector("User has a cat"),
            confidence=0.5,
        )
        result = await insert_intuited(SCOPE, "User has a cat", 0.8, deps=self.deps)
        self.assertEqual(result["id"], memory_id)
        self.assertAlmostEqual(result["confidence"], 0.8)

    async def test_intuited_without_match_creates_record(self):
        result = await insert_intuited(SCOPE, "User studies biology", 0.8, deps=self.deps)
        self.assertEqual(result["memory_type"], "intuited")
        self.assertEqual(result["source"], "conversation_extraction")
        self.assertFalse(result["verified"])

    async def test_corroboration_boosts_close_siblings(self):
        sibling = insert_record(
            self.conn,
            "User plays chess",
            embedding=self.embedder.vector("User plays chess"),
            confidence=0.6,
        )
        await create_memory(SCOPE, "User plays chess", memory_type="intuited", source="conversation_extraction", deps=self.deps)
        await self.deps.tasks.run_all()
        self.assertAlmostEqual(get_memory_record_sync(self.conn, sibling)["confidence"], 0.7)

    async def test_bulk_store_dedupes_and_categorizes(self):
        result = await bulk_store(
            SCOPE,
            ["User likes pizza", "User loves pizza", "User lives in Paris", "   ", 5],
            deps=self.deps,
        )
        self.assertEqual(result, {"stored": 2, "success": True})

        by_text = {r["text"]: r for r in self._active()}
        self.assertEqual(set(by_text), {"User likes pizza", "User lives in Paris"})
        self.assertEqual(by_text["User likes pizza"]["category"], "preferences")
        self.assertAlmostEqual(by_text["User likes pizza"]["confidence"], 0.7)
        self.assertEqual(by_text["User lives in Paris"]["category"], "personal")
        self.assertEqual(len(self.deps.tasks.jobs), 2)

    async def test_bulk_store_skips_facts_already_known(self):
        await bulk_store(SCOPE, ["User likes pizza"], deps=self.deps)
        result = await bulk_store(SCOPE, ["User likes pizza"], deps=self.deps)
        self.assertEqual(result["stored"], 0)
        self.assertEqual(len(self._active()), 1)

    async def test_remember_failure_is_reported_not_raised(self):
        deps = make_deps(self.conn, embedder=FailingEmbedder())
        result = await remember(SCOPE, "User likes tea", deps=deps)
        self.assertFalse(result["success"])
        self.assertIn("error", result)
        self.assertFalse((await remember(SCOPE, "   ", deps=deps))["success"])

    async def test_list_and_stats(self):
        insert_record(self.conn, "low", confidence=0.3, category="hobbies")
        insert_record(self.conn, "high", confidence=0.9, category="personal")

        rows = await list_memories(SCOPE, deps=self.deps)
        self.assertEqual([r["text"] for r in rows], ["high", "low"])
        rows = await list_memories(SCOPE, deps=self.deps, category="hobbies")
        self.assertEqual([r["text"] for r in rows], ["low"])

        stats = await memory_stats(SCOPE, deps=self.deps)
        self.assertEqual(stats["total"], 2)
        self.assertAlmostEqual(stats["avg_confidence"], 0.6)


if __name__ == "__main__":
    unittest.main()
