from __future__ import annotations

import os
import unittest

from db.migrate import apply_sqlite_migrations
from db.migrate import list_applied_migrations_sync
from memory.store import deactivate_memory_record_sync
from memory.store import delete_scope_memories_sync
from memory.store import get_extraction_tracking_sync
from memory.store import get_memory_record_sync
from memory.store import list_memory_records_sync
from memory.store import list_memory_scopes_sync
from memory.store import memory_stats_sync
from memory.store import top_k_similar_sync
from memory.store import update_memory_record_sync
from memory.store import upsert_connection_sync
from memory.store import upsert_extraction_tracking_sync
from memory_fakes import insert_record
from memory_fakes import make_conn


class MemoryStoreTests(unittest.TestCase):
    def setUp(self):
        self.conn = make_conn()

    def tearDown(self):
        self.conn.close()

    def test_migrations_are_idempotent(self):
        applied = apply_sqlite_migrations(self.conn, os.path.join(os.getcwd(), "migrations"))
        self.assertEqual(applied, [])
        self.assertEqual(sorted(list_applied_migrations_sync(self.conn)), ["0001", "0002", "0003", "0004"])

    def test_records_round_trip_with_typed_fields(self):
        memory_id = insert_record(
            self.conn,
            "User has a dog named Max",
            embedding=[1.0, 0.0],
            memory_type="explicit",
            category="personal",
            confidence=1.0,
            verified=True,
            temporal_analysis={"tense": "present"},
        )
        record = get_memory_record_sync(self.conn, memory_id)
        self.assertEqual(record["embedding"], [1.0, 0.0])
        self.assertTrue(record["verified"])
        self.assertTrue(record["active"])
        self.assertEqual(record["temporal_analysis"], {"tense": "present"})
        self.assertEqual(record["guild_id"], "")

    def test_top_k_is_scoped_sorted_and_thresholded(self):
        insert_record(self.conn, "a", embedding=[1.0, 0.0])
        insert_record(self.conn, "b", embedding=[0.8, 0.6])
        insert_record(self.conn, "c", embedding=[0.0, 1.0])
        insert_record(self.conn, "other scope", user_id="2", embedding=[1.0, 0.0])
        insert_record(self.conn, "inactive", embedding=[1.0, 0.0], active=False)

        hits = top_k_similar_sync(self.conn, "1", "", [1.0, 0.0], 5, threshold=0.5)
        self.assertEqual([h["record"]["text"] for h in hits], ["a", "b"])
        self.assertAlmostEqual(hits[1]["similarity"], 0.8)

    def test_malformed_embeddings_are_skipped(self):
        good = insert_record(self.conn, "good", embedding=[1.0, 0.0])
        self.conn.execute(
            "INSERT INTO memory_records (user_id, guild_id, text, embedding_json, created_at, updated_at) "
            "VALUES ('1', '', 'broken', '{not json', '2026-01-01', '2026-01-01')"
        )
        insert_record(self.conn, "wrong size", embedding=[1.0, 0.0, 0.0])
        self.conn.commit()

        hits = top_k_similar_sync(self.conn, "1", "", [1.0, 0.0], 5)
        self.assertEqual([h["record"]["id"] for h in hits], [good])

    def test_update_rejects_unknown_fields(self):
        memory_id = insert_record(self.conn, "x")
        with self.assertRaises(ValueError):
            update_memory_record_sync(self.conn, memory_id, {"user_id": "9"})
        updated = update_memory_record_sync(self.conn, memory_id, {"confidence": 0.5, "verified": True})
        self.assertEqual(updated["confidence"], 0.5)
        self.assertTrue(updated["verified"])

    def test_deactivate_is_soft_and_single_shot(self):
        memory_id = insert_record(self.conn, "x")
        self.assertTrue(deactivate_memory_record_sync(self.conn, memory_id, "2026-03-01"))
        self.assertFalse(deactivate_memory_record_sync(self.conn, memory_id, "2026-03-01"))
        self.assertIsNotNone(get_memory_record_sync(self.conn, memory_id))
        self.assertEqual(list_memory_records_sync(self.conn, "1", ""), [])

    def test_delete_scope_removes_records_connections_and_tracking(self):
        a = insert_record(self.conn, "a")
        b = insert_record(self.conn, "b")
        keep = insert_record(self.conn, "keep", user_id="2")
        upsert_connection_sync(
            self.conn,
            {"user_id": "1", "source_id": a, "target_id": b, "relationship_type": "related_to",
             "confidence": 0.8, "created_at": "2026-03-01"},
        )
        upsert_extraction_tracking_sync(self.conn, {"user_id": "1", "last_extracted_message_count": 4})

        counts = delete_scope_memories_sync(self.conn, "1", "")
        self.assertEqual(counts, {"records": 2, "connections": 1, "tracking": 1})
        self.assertIsNone(get_extraction_tracking_sync(self.conn, "1", ""))
        self.assertIsNotNone(get_memory_record_sync(self.conn, keep))

    def test_connection_upsert_keeps_one_row_per_triple(self):
        a = insert_record(self.conn, "a")
        b = insert_record(self.conn, "b")
        payload = {"user_id": "1", "source_id": a, "target_id": b, "relationship_type": "causes",
                   "confidence": 0.6, "created_at": "2026-03-01"}
        first = upsert_connection_sync(self.conn, payload)
        second = upsert_connection_sync(self.conn, dict(payload, confidence=0.9))
        self.assertEqual(first["id"], second["id"])
        self.assertEqual(second["confidence"], 0.9)

    def test_scopes_and_stats(self):
        insert_record(self.conn, "a", memory_type="explicit", category="personal", confidence=1.0, verified=True)
        insert_record(self.conn, "b", category="hobbies", confidence=0.5)
        insert_record(self.conn, "c", user_id="2", guild_id="77")

        self.assertEqual(set(list_memory_scopes_sync(self.conn)), {("1", ""), ("2", "77")})
        stats = memory_stats_sync(self.conn, "1", "")
        self.assertEqual(stats["total"], 2)
        self.assertEqual(stats["verified"], 1)
        self.assertAlmostEqual(stats["avg_confidence"], 0.75)
        self.assertEqual(stats["by_type"], {"explicit": 1, "intuited": 1})
        self.assertEqual(stats["by_category"], {"personal": 1, "hobbies": 1})


if __name__ == "__main__":
    unittest.main()
