from __future__ import annotations

import os
import tempfile
import unittest

from memory.tuning import MemoryTuning
from memory.tuning import load_memory_tuning


class MemoryTuningLoadTests(unittest.TestCase):
    def _write(self, body: str) -> str:
        fd, path = tempfile.mkstemp(suffix=".yaml")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(body)
        self.addCleanup(os.remove, path)
        return path

    def test_repo_config_matches_defaults(self):
        path = os.path.join(os.getcwd(), "config", "memory_tuning.yaml")
        tuning, warning = load_memory_tuning(path)
        self.assertIsNone(warning)
        self.assertEqual(tuning, MemoryTuning())

    def test_missing_file_warns_and_uses_defaults(self):
        tuning, warning = load_memory_tuning("/nonexistent/memory_tuning.yaml")
        self.assertEqual(tuning, MemoryTuning())
        self.assertIn("not found", warning)

    def test_no_path_is_silent(self):
        self.assertEqual(load_memory_tuning(None), (MemoryTuning(), None))

    def test_overrides_and_unknown_keys(self):
        path = self._write("dedup_duplicate_threshold: 0.95\ndecay_interval_hours: 6\nsomething_else: 1\n")
        tuning, warning = load_memory_tuning(path)
        self.assertIsNone(warning)
        self.assertEqual(tuning.dedup_duplicate_threshold, 0.95)
        self.assertEqual(tuning.decay_interval_hours, 6.0)
        self.assertIsInstance(tuning.decay_interval_hours, float)

    def test_bad_values_keep_defaults(self):
        path = self._write("graph_batch_size: lots\nretrieval_similarity_threshold: 0.6\n")
        tuning, warning = load_memory_tuning(path)
        self.assertEqual(tuning.graph_batch_size, MemoryTuning().graph_batch_size)
        self.assertEqual(tuning.retrieval_similarity_threshold, 0.6)
        self.assertIn("graph_batch_size", warning)

    def test_non_mapping_payload(self):
        path = self._write("- just\n- a list\n")
        tuning, warning = load_memory_tuning(path)
        self.assertEqual(tuning, MemoryTuning())
        self.assertIn("Invalid", warning)


if __name__ == "__main__":
    unittest.main()
