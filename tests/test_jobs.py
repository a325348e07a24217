from __future__ import annotations

import dataclasses
import unittest
from datetime import timedelta
from unittest import mock

from jobs.service import _sweep
from jobs.service import decay_scope
from jobs.service import maintenance_loop
from jobs.service import run_decay_sweep
from jobs.service import run_graph_sweep
from jobs.service import run_maintenance
from jobs.service import schedule_maintenance
from memory.models import MemoryScope
from memory.store import get_memory_record_sync
from memory_fakes import FIXED_NOW
from memory_fakes import insert_record
from memory_fakes import make_conn
from memory_fakes import make_deps

SCOPE = MemoryScope.of(1)


class StopLoop(Exception):
    pass


class DecayTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.conn = make_conn()
        self.deps = make_deps(self.conn)

    async def asyncTearDown(self):
        self.conn.close()

    def _insert_aged(self, text, days, **kwargs):
        return insert_record(self.conn, text, created_at=FIXED_NOW - timedelta(days=days), **kwargs)

    async def test_decay_respects_type_grace_and_verification(self):
        old_intuited = self._insert_aged("old guess", 30, confidence=0.75)
        old_explicit = self._insert_aged("old fact", 30, memory_type="explicit", confidence=0.95)
        fresh = self._insert_aged("fresh guess", 3, confidence=0.75)
        verified = self._insert_aged("confirmed", 30, confidence=0.75, verified=True)
        popular = self._insert_aged("popular guess", 30, confidence=0.75, access_count=10)
        before = get_memory_record_sync(self.conn, old_intuited)["updated_at"]

        stats = await decay_scope(SCOPE, deps=self.deps)
        self.assertEqual(stats, {"checked": 4, "decayed": 1})

        decayed = get_memory_record_sync(self.conn, old_intuited)
        self.assertAlmostEqual(decayed["confidence"], 0.75 - 0.0138021, places=5)
        self.assertEqual(decayed["updated_at"], before)
        for memory_id, expected in ((old_explicit, 0.95), (fresh, 0.75), (verified, 0.75), (popular, 0.75)):
            self.assertEqual(get_memory_record_sync(self.conn, memory_id)["confidence"], expected)

    async def test_decay_sweep_visits_every_scope(self):
        self._insert_aged("dm guess", 30, confidence=0.75)
        self._insert_aged("guild guess", 30, guild_id="42", confidence=0.75)
        self._insert_aged("other user", 30, user_id="2", confidence=0.75)

        summary = await run_decay_sweep(deps=self.deps)
        self.assertEqual(summary["scopes"], 3)
        self.assertEqual(summary["decayed"], 3)
        self.assertEqual(summary["failed"], 0)

    async def test_graph_sweep_only_visits_recently_active_scopes(self):
        insert_record(self.conn, "recent", user_id="1")
        self._insert_aged("stale", 30, user_id="2")

        summary = await run_graph_sweep(deps=self.deps)
        self.assertEqual(summary["scopes"], 1)


class MaintenanceTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.conn = make_conn()
        self.deps = make_deps(self.conn)

    async def asyncTearDown(self):
        self.conn.close()

    async def test_sweep_isolates_scope_failures(self):
        seen = []

        async def work(scope):
            seen.append(scope.user_id)
            if scope.user_id == "2":
                raise RuntimeError("bad scope")
            return {"touched": 1}

        scopes = [MemoryScope.of(1), MemoryScope.of(2), MemoryScope.of(3)]
        summary = await _sweep("test", scopes, work, deps=self.deps)
        self.assertEqual(seen, ["1", "2", "3"])
        self.assertEqual(summary, {"scopes": 2, "failed": 1, "touched": 2})

    async def test_run_maintenance_reports_every_step(self):
        insert_record(self.conn, "User's job is unknown")
        report = await run_maintenance(SCOPE, deps=self.deps)
        self.assertEqual(set(report), {"decay", "cleanup", "graph", "temporal"})
        self.assertEqual(report["cleanup"]["non_facts"], 1)
        self.assertNotIn("error", report["graph"])
        self.assertIn("contradictions", report["temporal"])

    async def test_failed_step_does_not_stop_the_rest(self):
        with mock.patch("jobs.service.decay_scope", side_effect=RuntimeError("db gone")):
            report = await run_maintenance(SCOPE, deps=self.deps)
        self.assertEqual(report["decay"], {"error": "db gone"})
        self.assertIn("processed", report["graph"])
        self.assertIn("non_facts", report["cleanup"])

    async def test_loop_waits_one_interval_before_each_sweep(self):
        times = [FIXED_NOW, FIXED_NOW + timedelta(hours=1), FIXED_NOW + timedelta(hours=13)]

        def clock():
            return times.pop(0) if len(times) > 1 else times[0]

        deps = dataclasses.replace(self.deps, clock=clock)
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)
            if len(sleeps) >= 2:
                raise StopLoop()

        decay = mock.AsyncMock()
        graph = mock.AsyncMock()
        temporal = mock.AsyncMock()
        with mock.patch("jobs.service.run_decay_sweep", decay), mock.patch(
            "jobs.service.run_graph_sweep", graph
        ), mock.patch("jobs.service.run_temporal_sweep", temporal), mock.patch(
            "jobs.service.asyncio.sleep", fake_sleep
        ):
            with self.assertRaises(StopLoop):
                await maintenance_loop(deps=deps, tick_seconds=60)

        decay.assert_not_awaited()
        graph.assert_not_awaited()
        temporal.assert_awaited_once_with(deps=deps)
        self.assertEqual(sleeps, [60, 60])

    async def test_schedule_maintenance_runs_loop_as_named_task(self):
        loop = mock.AsyncMock()
        with mock.patch("jobs.service.maintenance_loop", loop):
            task = schedule_maintenance(6, deps=self.deps)
            self.assertEqual(task.get_name(), "memory-maintenance")
            await task
        loop.assert_awaited_once_with(deps=self.deps, decay_interval_hours=6, graph_interval_hours=6)

    async def test_schedule_maintenance_defaults_to_tuning_intervals(self):
        loop = mock.AsyncMock()
        with mock.patch("jobs.service.maintenance_loop", loop):
            await schedule_maintenance(deps=self.deps)
        loop.assert_awaited_once_with(deps=self.deps, decay_interval_hours=None, graph_interval_hours=None)


if __name__ == "__main__":
    unittest.main()
