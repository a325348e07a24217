from __future__ import annotations

import unittest

from memory.dedup import concept_overlap
from memory.dedup import dedupe_against_store
from memory.dedup import dedupe_within_batch
from memory.dedup import extract_concepts
from memory.dedup import find_similar_memory
from memory.dedup import verb_similarity
from memory.models import MemoryScope
from memory_fakes import FailingEmbedder
from memory_fakes import MappingEmbedder
from memory_fakes import insert_record
from memory_fakes import make_conn
from memory_fakes import make_deps

SCOPE = MemoryScope.of(1)


class ConceptOverlapTests(unittest.TestCase):
    def test_predicates_are_lemmatized(self):
        concepts = extract_concepts("User likes pizza")
        self.assertEqual([(p.verb, p.object, p.type) for p in concepts.predicates], [("like", "pizza", "preference")])
        self.assertIn("pizza", concepts.topics)

    def test_verb_groups(self):
        self.assertEqual(verb_similarity({"like"}, {"love"}), 1.0)
        self.assertEqual(verb_similarity({"like"}, {"hate"}), 0.0)
        self.assertEqual(verb_similarity(set(), {"like"}), 0.0)

    def test_same_slot_different_verb_overlaps_fully(self):
        score = concept_overlap(extract_concepts("User likes pizza"), extract_concepts("User loves pizza"))
        self.assertAlmostEqual(score, 1.0)

    def test_within_batch_keeps_first_of_near_duplicates(self):
        kept = dedupe_within_batch(["User likes pizza", "User loves pizza", "User lives in Paris"])
        self.assertEqual(kept, ["User likes pizza", "User lives in Paris"])

    def test_single_candidate_passes_through(self):
        self.assertEqual(dedupe_within_batch(["User likes pizza"]), ["User likes pizza"])


class StoreDedupTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.conn = make_conn()

    async def asyncTearDown(self):
        self.conn.close()

    async def test_candidates_at_095_collapse_and_080_survive(self):
        embedder = MappingEmbedder(
            {
                "a": [1.0, 0.0],
                "near": [0.95, 0.31224989991991997],
                "far": [0.8, 0.6],
            }
        )
        deps = make_deps(self.conn, embedder=embedder)
        self.assertEqual(await dedupe_against_store(SCOPE, ["a", "near"], deps=deps), ["a"])
        self.assertEqual(await dedupe_against_store(SCOPE, ["a", "far"], deps=deps), ["a", "far"])

    async def test_stored_duplicate_is_dropped(self):
        insert_record(self.conn, "stored", embedding=[1.0, 0.0])
        deps = make_deps(self.conn, embedder=MappingEmbedder({"same": [1.0, 0.0], "new": [0.0, 1.0]}))
        self.assertEqual(await dedupe_against_store(SCOPE, ["same", "new"], deps=deps), ["new"])

    async def test_unembeddable_candidates_are_skipped(self):
        deps = make_deps(self.conn, embedder=FailingEmbedder())
        self.assertEqual(await dedupe_against_store(SCOPE, ["x"], deps=deps), [])

    async def test_find_similar_memory_filters_by_type(self):
        insert_record(self.conn, "intuited", embedding=[1.0, 0.0])
        explicit_id = insert_record(self.conn, "explicit", embedding=[0.8, 0.6], memory_type="explicit")
        deps = make_deps(self.conn, embedder=MappingEmbedder({"q": [1.0, 0.0]}))

        match, vector = await find_similar_memory(SCOPE, "q", deps=deps)
        self.assertEqual(match["id"], explicit_id)
        self.assertAlmostEqual(match["similarity"], 0.8)
        self.assertEqual(vector, [1.0, 0.0])

        match, _ = await find_similar_memory(SCOPE, "q", deps=deps, memory_type=None)
        self.assertEqual(match["text"], "intuited")

    async def test_find_similar_memory_embed_failure(self):
        deps = make_deps(self.conn, embedder=FailingEmbedder())
        self.assertEqual(await find_similar_memory(SCOPE, "q", deps=deps), (None, None))


if __name__ == "__main__":
    unittest.main()
