"""Embedding store with a two-tier cache and adaptive batching.

Vectors are looked up by the hash of the normalised text: first in a
bounded in-memory LRU, then in a persistent backing cache keyed by
``(text_hash, project_id)``, and only then computed by the injected
embedding provider. Computed vectors are written through to both tiers.
"""

from __future__ import annotations

import hashlib
import logging
import math
import re
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Callable, Dict, Hashable, Iterable, List, Optional, Protocol, Sequence, Tuple

from .text import normalize_text, text_hash
from .types import EmbeddingStats

logger = logging.getLogger(__name__)

Vector = List[float]

_TOKEN_RE = re.compile(r"\w+")


class EmbeddingBatchError(RuntimeError):
    """Raised when a batch still fails after the reduced-size retry."""


class EmbeddingProvider(Protocol):
    """Anything that turns texts into fixed-length vectors."""

    dim: int

    def embed(self, texts: Sequence[str]) -> List[Vector]:
        ...


class BackingCache(Protocol):
    """Persistent vector cache keyed by ``(text_hash, project_id)``."""

    def get_many(self, project_id: Hashable, hashes: Sequence[str]) -> Dict[str, Vector]:
        ...

    def put_many(self, project_id: Hashable, vectors: Dict[str, Vector]) -> None:
        ...


class HashedEmbeddingProvider:
    """Deterministic bag-of-words embedding using hashed token slots.

    Not a semantic model, but stable across processes, which makes it a
    sensible default and keeps behaviour reproducible when no real model is
    configured.
    """

    def __init__(self, dim: int = 384) -> None:
        self.dim = dim

    def embed(self, texts: Sequence[str]) -> List[Vector]:
        vectors: List[Vector] = []
        for text in texts:
            vector = [0.0] * self.dim
            for token in _TOKEN_RE.findall(text.lower()):
                digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
                vector[int.from_bytes(digest, "big") % self.dim] += 1.0
            vectors.append(unit(vector))
        return vectors


def unit(vector: Sequence[float]) -> Vector:
    norm = math.sqrt(sum(value * value for value in vector))
    if norm == 0:
        return list(vector)
    return [value / norm for value in vector]


def centroid(vectors: Iterable[Sequence[float]]) -> Vector:
    """Unit-length mean of equally sized vectors."""

    total: Optional[Vector] = None
    for vector in vectors:
        if total is None:
            total = list(vector)
            continue
        if len(vector) != len(total):
            raise ValueError("Cannot average vectors of different lengths")
        for idx, value in enumerate(vector):
            total[idx] += value
    return unit(total) if total is not None else []


class LRUCache:
    """Thread-safe bounded mapping with least-recently-used eviction."""

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._data: "OrderedDict[Hashable, Vector]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[Vector]:
        with self._lock:
            if key not in self._data:
                return None
            self._data.move_to_end(key)
            return self._data[key]

    def put(self, key: Hashable, value: Vector) -> None:
        with self._lock:
            self._data[key] = value
            self._data.move_to_end(key)
            while len(self._data) > self.capacity:
                self._data.popitem(last=False)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class BatchSizeTuner:
    """Pick a batch size from the round-trip latency of a probe batch."""

    def __init__(
        self,
        initial: int = 32,
        minimum: int = 8,
        maximum: int = 128,
        slow_seconds: float = 2.0,
        fast_seconds: float = 0.5,
        grow_factor: float = 1.5,
    ) -> None:
        self.minimum = minimum
        self.maximum = maximum
        self.slow_seconds = slow_seconds
        self.fast_seconds = fast_seconds
        self.grow_factor = grow_factor
        self.size = self._clamp(initial)
        self.calibrated = False
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, batch: Dict[str, float]) -> "BatchSizeTuner":
        return cls(
            initial=int(batch.get("initial_size", 32)),
            minimum=int(batch.get("min_size", 8)),
            maximum=int(batch.get("max_size", 128)),
            slow_seconds=float(batch.get("slow_seconds", 2.0)),
            fast_seconds=float(batch.get("fast_seconds", 0.5)),
            grow_factor=float(batch.get("grow_factor", 1.5)),
        )

    def _clamp(self, size: int) -> int:
        return max(self.minimum, min(self.maximum, int(size)))

    def observe(self, latency: float) -> int:
        """Adjust the size after a batch that took ``latency`` seconds."""

        with self._lock:
            previous = self.size
            if latency > self.slow_seconds:
                self.size = self._clamp(self.size // 2)
            elif latency < self.fast_seconds:
                self.size = self._clamp(self.size * self.grow_factor)
            if self.size != previous:
                logger.info("Embedding batch size %s -> %s (latency %.2fs)", previous, self.size, latency)
            return self.size

    def shrink(self) -> int:
        with self._lock:
            self.size = self._clamp(self.size // 2)
            return self.size

    def calibrate(self, probe: Callable[[int], None], clock: Callable[[], float] = time.monotonic) -> int:
        """Time ``probe(size)`` once and adapt; a failing probe counts as slow."""

        if self.calibrated:
            return self.size
        started = clock()
        try:
            probe(self.size)
            latency = clock() - started
        except Exception as exc:
            logger.warning("Embedding probe batch failed: %s", exc)
            latency = self.slow_seconds + 1.0
        self.calibrated = True
        return self.observe(latency)


_PROJECT_LOCKS: Dict[Hashable, threading.Lock] = {}
_PROJECT_LOCKS_GUARD = threading.Lock()


def project_lock(project_id: Hashable) -> threading.Lock:
    """Lock serialising embedding computation for one project."""

    with _PROJECT_LOCKS_GUARD:
        lock = _PROJECT_LOCKS.get(project_id)
        if lock is None:
            lock = _PROJECT_LOCKS[project_id] = threading.Lock()
        return lock


_shared_memory_cache: Optional[LRUCache] = None
_shared_memory_guard = threading.Lock()


def shared_memory_cache(capacity: int = 20000) -> LRUCache:
    """Process-wide in-memory tier, created on first use."""

    global _shared_memory_cache
    with _shared_memory_guard:
        if _shared_memory_cache is None:
            _shared_memory_cache = LRUCache(capacity)
        return _shared_memory_cache


_timeout_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="linkplanner-embed")


class EmbeddingStore:
    """Resolve vectors for texts of one project, computing only cache misses."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        project_id: Hashable,
        *,
        backing: Optional[BackingCache] = None,
        memory: Optional[LRUCache] = None,
        tuner: Optional[BatchSizeTuner] = None,
        batch_timeout: float = 30.0,
    ) -> None:
        self.provider = provider
        self.project_id = project_id
        self.backing = backing
        self.memory = memory if memory is not None else shared_memory_cache()
        self.tuner = tuner or BatchSizeTuner()
        self.batch_timeout = batch_timeout
        self.stats = EmbeddingStats()

    def calibrate(self) -> int:
        """Measure a probe batch once and set the batch size from it."""

        def probe(size: int) -> None:
            texts = [f"probe block {idx} with some content for latency measurement" for idx in range(size)]
            self._embed_batch(texts)

        return self.tuner.calibrate(probe)

    def ensure(self, item_id: Hashable, text: str) -> Vector:
        return self.ensure_many([(item_id, text)])[item_id]

    def ensure_many(
        self,
        items: Sequence[Tuple[Hashable, str]],
        progress: Optional[Callable[[int, int], None]] = None,
    ) -> Dict[Hashable, Vector]:
        """Return a vector for every ``(item_id, text)`` pair."""

        with project_lock(self.project_id):
            return self._ensure_locked(items, progress)

    def _memory_key(self, digest: str) -> Tuple[Hashable, str]:
        return (self.project_id, digest)

    def _ensure_locked(
        self,
        items: Sequence[Tuple[Hashable, str]],
        progress: Optional[Callable[[int, int], None]],
    ) -> Dict[Hashable, Vector]:
        digests: Dict[Hashable, str] = {}
        texts_by_digest: Dict[str, str] = {}
        for item_id, text in items:
            digest = text_hash(text)
            digests[item_id] = digest
            texts_by_digest.setdefault(digest, normalize_text(text))

        resolved: Dict[str, Vector] = {}
        for digest in texts_by_digest:
            vector = self.memory.get(self._memory_key(digest))
            if vector is not None:
                resolved[digest] = vector
                self.stats.memory_hits += 1

        missing = [digest for digest in texts_by_digest if digest not in resolved]
        if missing and self.backing is not None:
            found = self.backing.get_many(self.project_id, missing)
            for digest, vector in found.items():
                resolved[digest] = vector
                self.memory.put(self._memory_key(digest), vector)
                self.stats.persistent_hits += 1
            missing = [digest for digest in missing if digest not in resolved]

        total = len(missing)
        done = 0
        while done < total:
            batch = missing[done:done + self.tuner.size]
            computed = self._compute_with_retry([(digest, texts_by_digest[digest]) for digest in batch])
            if self.backing is not None:
                self.backing.put_many(self.project_id, computed)
            for digest, vector in computed.items():
                self.memory.put(self._memory_key(digest), vector)
                resolved[digest] = vector
            self.stats.computed += len(computed)
            done += len(batch)
            if progress is not None:
                progress(done, total)

        return {item_id: resolved[digest] for item_id, digest in digests.items()}

    def _compute_with_retry(self, pairs: List[Tuple[str, str]]) -> Dict[str, Vector]:
        try:
            return self._compute(pairs)
        except Exception as exc:
            smaller = self.tuner.shrink()
            logger.warning(
                "Embedding batch of %s failed (%s); retrying with batch size %s",
                len(pairs),
                exc,
                smaller,
            )
        result: Dict[str, Vector] = {}
        try:
            for start in range(0, len(pairs), smaller):
                result.update(self._compute(pairs[start:start + smaller]))
        except Exception as exc:
            raise EmbeddingBatchError(f"Embedding batch failed after retry: {exc}") from exc
        return result

    def _compute(self, pairs: List[Tuple[str, str]]) -> Dict[str, Vector]:
        vectors = self._embed_batch([text for _, text in pairs])
        self.stats.batches.append(len(pairs))
        return {digest: vector for (digest, _), vector in zip(pairs, vectors)}

    def _embed_batch(self, texts: List[str]) -> List[Vector]:
        future = _timeout_pool.submit(self.provider.embed, texts)
        try:
            vectors = future.result(timeout=self.batch_timeout)
        except FuturesTimeout as exc:
            future.cancel()
            raise EmbeddingBatchError(f"Embedding batch timed out after {self.batch_timeout}s") from exc
        if len(vectors) != len(texts):
            raise EmbeddingBatchError(f"Provider returned {len(vectors)} vectors for {len(texts)} texts")
        dim = getattr(self.provider, "dim", None)
        if dim is not None and any(len(vector) != dim for vector in vectors):
            raise EmbeddingBatchError("Provider returned vectors of unexpected length")
        return [unit(vector) for vector in vectors]
