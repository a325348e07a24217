from __future__ import annotations

import asyncio
import re
from collections import OrderedDict

from memory.results import ErrorKind
from memory.results import MemoryEngineError


DEFAULT_EMBEDDING_MODEL = "text-embedding-ada-002"


def normalize_embedding_text(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").strip().lower())


class EmbeddingCache:
    """Process-wide LRU keyed on normalized text. Last writer wins on the same key."""

    def __init__(self, max_size: int = 1000):
        self.max_size = max(1, int(max_size))
        self._data: OrderedDict[str, list[float]] = OrderedDict()

    def get(self, key: str) -> list[float] | None:
        vector = self._data.get(key)
        if vector is not None:
            self._data.move_to_end(key)
        return vector

    def set(self, key: str, vector: list[float]) -> None:
        self._data[key] = list(vector)
        self._data.move_to_end(key)
        while len(self._data) > self.max_size:
            self._data.popitem(last=False)

    def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: str) -> bool:
        return key in self._data


class Embedder:
    def __init__(self, client, *, model: str = DEFAULT_EMBEDDING_MODEL, cache_size: int = 1000):
        self.client = client
        self.model = model
        self.cache = EmbeddingCache(cache_size)
        self._inflight: dict[str, asyncio.Future] = {}

    def _create(self, inputs):
        return self.client.embeddings.create(model=self.model, input=inputs)

    async def _remote_embed(self, inputs: list[str]) -> list[list[float]]:
        try:
            resp = await asyncio.to_thread(self._create, inputs if len(inputs) > 1 else inputs[0])
        except Exception as e:
            raise MemoryEngineError(ErrorKind.TRANSIENT, f"embedding request failed (model={self.model}): {e}") from e
        data = sorted(resp.data, key=lambda d: getattr(d, "index", 0))
        if len(data) != len(inputs):
            raise MemoryEngineError(ErrorKind.DATA, f"embedding response size mismatch {len(data)} != {len(inputs)}")
        return [list(d.embedding) for d in data]

    async def embed(self, text: str, *, retries: int = 0) -> list[float]:
        key = normalize_embedding_text(text)
        if not key:
            raise MemoryEngineError(ErrorKind.VALIDATION, "cannot embed empty text")

        cached = self.cache.get(key)
        if cached is not None:
            return cached

        pending = self._inflight.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        fut = asyncio.get_running_loop().create_future()
        self._inflight[key] = fut
        try:
            attempt = 0
            while True:
                try:
                    vector = (await self._remote_embed([key]))[0]
                    break
                except MemoryEngineError as e:
                    if attempt >= retries or e.kind != ErrorKind.TRANSIENT:
                        raise
                    attempt += 1
                    print(f"[Embeddings] retrying after transient failure: {e}")
            self.cache.set(key, vector)
            fut.set_result(vector)
            return vector
        except Exception as e:
            if not fut.done():
                fut.set_exception(e)
                # Consume so an unawaited shared future does not warn.
                fut.exception()
            raise
        except BaseException:
            if not fut.done():
                fut.cancel()
            raise
        finally:
            self._inflight.pop(key, None)

    async def embed_batch(self, texts: list[str], *, retries: int = 0) -> list[list[float]]:
        """Embed many texts with one remote call for the uncached, de-duplicated inputs."""
        if not texts:
            return []
        keys = [normalize_embedding_text(t) for t in texts]
        if any(not k for k in keys):
            raise MemoryEngineError(ErrorKind.VALIDATION, "cannot embed empty text")

        missing: list[str] = []
        for key in keys:
            if key not in self.cache and key not in missing:
                missing.append(key)

        if missing:
            attempt = 0
            while True:
                try:
                    vectors = await self._remote_embed(missing)
                    break
                except MemoryEngineError as e:
                    if attempt >= retries or e.kind != ErrorKind.TRANSIENT:
                        raise
                    attempt += 1
                    print(f"[Embeddings] retrying batch after transient failure: {e}")
            for key, vector in zip(missing, vectors):
                self.cache.set(key, vector)
            print(f"[Embeddings] batch embedded {len(texts)} texts ({len(missing)} unique uncached)")

        out: list[list[float]] = []
        for key in keys:
            vector = self.cache.get(key)
            if vector is None:
                # Evicted between set and read when the batch exceeds the cache size.
                vector = await self.embed(key, retries=retries)
            out.append(vector)
        return out

    def cache_stats(self) -> dict[str, int]:
        return {"size": len(self.cache), "max_size": self.cache.max_size, "inflight": len(self._inflight)}


def cosine_similarity(a, b) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = 0.0
    na = 0.0
    nb = 0.0
    for x, y in zip(a, b):
        dot += x * y
        na += x * x
        nb += y * y
    if na <= 0.0 or nb <= 0.0:
        return 0.0
    return dot / ((na ** 0.5) * (nb ** 0.5))
