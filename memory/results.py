from __future__ import annotations

import asyncio
import sqlite3
from dataclasses import dataclass
from typing import Any


class ErrorKind:
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    DATA = "data"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"


class MemoryEngineError(RuntimeError):
    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = str(kind)


@dataclass(slots=True)
class StoreResult:
    ok: bool
    data: Any = None
    error: str | None = None
    kind: str | None = None

    @classmethod
    def success(cls, data: Any = None) -> "StoreResult":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, kind: str, error: str) -> "StoreResult":
        return cls(ok=False, error=str(error), kind=kind)

    def unwrap_or(self, default: Any) -> Any:
        return self.data if self.ok else default


async def _settle_worker(work: asyncio.Future, db_conn, label: str) -> None:
    """Interrupt a timed-out statement and wait for its thread; the caller still holds the db lock."""
    db_conn.interrupt()
    await asyncio.wait([work])
    if not work.cancelled() and work.exception() is not None:
        print(f"[Memory] {label} stopped after interrupt: {work.exception()}")


async def guarded_call(
    fn,
    *args,
    db_lock,
    db_conn,
    timeout: float = 5.0,
    label: str = "store",
    **kwargs,
) -> StoreResult:
    """
    Run a sync store function off-loop under the db lock and map failures to a StoreResult.
    The lock is held until the worker thread returns, including after a timeout.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    try:
        await asyncio.wait_for(db_lock.acquire(), timeout=timeout)
    except asyncio.TimeoutError:
        print(f"[Memory] {label} timed out waiting for the db lock after {timeout}s")
        return StoreResult.failure(ErrorKind.TIMEOUT, f"{label} timed out")

    try:
        work = asyncio.ensure_future(asyncio.to_thread(fn, db_conn, *args, **kwargs))
        try:
            data = await asyncio.wait_for(asyncio.shield(work), timeout=max(0.0, deadline - loop.time()))
        except asyncio.TimeoutError:
            print(f"[Memory] {label} timed out after {timeout}s")
            await _settle_worker(work, db_conn, label)
            return StoreResult.failure(ErrorKind.TIMEOUT, f"{label} timed out")
        except asyncio.CancelledError:
            await _settle_worker(work, db_conn, label)
            raise
    except MemoryEngineError as e:
        print(f"[Memory] {label} failed: {e}")
        return StoreResult.failure(e.kind, str(e))
    except sqlite3.Error as e:
        print(f"[Memory] {label} sqlite error: {e}")
        return StoreResult.failure(ErrorKind.TRANSIENT, str(e))
    except (ValueError, TypeError, KeyError) as e:
        print(f"[Memory] {label} data error: {e}")
        return StoreResult.failure(ErrorKind.DATA, str(e))
    finally:
        db_lock.release()
    return StoreResult.success(data)


async def guarded_embed(embed_coro, *, timeout: float = 5.0, label: str = "embed") -> StoreResult:
    try:
        vector = await asyncio.wait_for(embed_coro, timeout=timeout)
    except asyncio.TimeoutError:
        print(f"[Embeddings] {label} timed out after {timeout}s")
        return StoreResult.failure(ErrorKind.TIMEOUT, f"{label} timed out")
    except MemoryEngineError as e:
        print(f"[Embeddings] {label} failed: {e}")
        return StoreResult.failure(e.kind, str(e))
    if not vector:
        return StoreResult.failure(ErrorKind.DATA, f"{label} returned no vector")
    return StoreResult.success(vector)
