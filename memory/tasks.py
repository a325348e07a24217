from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable


class BackgroundTaskQueue:
    """
    Detached best-effort work (access tracking, corroboration, extraction).
    Jobs run on a bounded worker pool so they stay off the reply path; every failure is logged here.
    """

    def __init__(self, *, workers: int = 2, max_pending: int = 500, name: str = "memory"):
        self.name = name
        self.workers = max(1, int(workers))
        self.max_pending = max(1, int(max_pending))
        self._queue: asyncio.Queue | None = None
        self._worker_tasks: list[asyncio.Task] = []
        self.completed = 0
        self.failed = 0
        self.dropped = 0

    def _ensure_started(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.max_pending)
        alive = [t for t in self._worker_tasks if not t.done()]
        if len(alive) < self.workers:
            for i in range(self.workers - len(alive)):
                alive.append(asyncio.create_task(self._worker(self._queue), name=f"{self.name}-bg-{i}"))
        self._worker_tasks = alive
        return self._queue

    async def _worker(self, queue: asyncio.Queue) -> None:
        while True:
            label, factory = await queue.get()
            try:
                await factory()
                self.completed += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failed += 1
                print(f"[Tasks] {self.name} background job '{label}' failed: {e}")
            finally:
                queue.task_done()

    def submit(self, label: str, factory: Callable[[], Awaitable[Any]]) -> bool:
        """Queue a coroutine factory. Returns False when the queue is full and the job is dropped."""
        queue = self._ensure_started()
        try:
            queue.put_nowait((str(label), factory))
        except asyncio.QueueFull:
            self.dropped += 1
            print(f"[Tasks] {self.name} queue full; dropped '{label}'")
            return False
        return True

    async def drain(self) -> None:
        if self._queue is None:
            return
        await self._queue.join()

    async def close(self) -> None:
        for task in self._worker_tasks:
            task.cancel()
        for task in self._worker_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._worker_tasks = []
        self._queue = None

    def stats(self) -> dict[str, int]:
        pending = self._queue.qsize() if self._queue is not None else 0
        return {"pending": pending, "completed": self.completed, "failed": self.failed, "dropped": self.dropped}
