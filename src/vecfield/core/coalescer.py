"""Coalescing of concurrent embedding requests for the same input.

When N requests for an identical (model_id, input) arrive together, only one
of them (the owner) runs the model. The others attach to the owner's
InflightRequest and receive the same vector (each caller gets its own copy),
or the same exception.

Resolution order for one fingerprint:
    inflight request exists? → wait for it
    ↓ No
    cache hit? → return it (no inflight request is created)
    ↓ No
    become owner → compute → cache on success → release → wake waiters

The computation runs in its own task and callers wait through
`asyncio.shield`, so cancelling a caller (owner or waiter) never cancels the
shared computation: it still finishes, is cached, and resolves the remaining
waiters. Failures are delivered to every waiter and never cached, so the next
request retries.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np

from vecfield.core.cache import EmbeddingCache, cache_key
from vecfield.core.exceptions import CacheError, EmbedError

logger = logging.getLogger(__name__)

ComputeFn = Callable[[], Awaitable[np.ndarray]]
ComputeManyFn = Callable[[list[Any]], Awaitable[np.ndarray]]


@dataclass
class InflightRequest:
    """Shared pending result for one fingerprint."""

    fingerprint: str
    model_id: str
    future: asyncio.Future
    waiters: int = 0
    data: Any = None


def _consume_exception(future: asyncio.Future) -> None:
    # Avoids "exception was never retrieved" when every waiter was cancelled
    if not future.cancelled():
        future.exception()


class InflightCoalescer:
    """At most one concurrent computation per (model_id, input) fingerprint.

    All methods must be called from the same event loop. The cache is used
    synchronously; its lookups are short and happen before any suspension
    point, so the check-then-register step is atomic with respect to other
    tasks.

    Args:
        cache: Shared embedding cache, or None to coalesce without caching.
    """

    def __init__(self, cache: EmbeddingCache | None = None):
        self.cache = cache
        self._inflight: dict[str, InflightRequest] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    def is_inflight(self, model_id: str, data: str | bytes) -> bool:
        return cache_key(model_id, data) in self._inflight

    def _lookup(self, fingerprint: str) -> np.ndarray | None:
        if self.cache is None:
            return None
        try:
            return self.cache.get_by_key(fingerprint)
        except CacheError as exc:
            logger.warning("Cache lookup failed, treating as miss: %s", exc)
            return None

    def _store(self, request: InflightRequest, vector: np.ndarray, use_cache: bool) -> None:
        if not use_cache or self.cache is None:
            return
        try:
            self.cache.put_by_key(request.fingerprint, request.model_id, vector)
        except CacheError as exc:
            logger.warning("Cache write failed for %s: %s", request.fingerprint, exc)

    def _open(self, fingerprint: str, model_id: str, data: Any) -> InflightRequest:
        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)
        request = InflightRequest(
            fingerprint=fingerprint, model_id=model_id, future=future, data=data
        )
        self._inflight[fingerprint] = request
        return request

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _fail(self, requests: list[InflightRequest], exc: BaseException) -> None:
        for request in requests:
            self._inflight.pop(request.fingerprint, None)
            if request.future.done():
                continue
            if isinstance(exc, asyncio.CancelledError):
                request.future.cancel()
            else:
                request.future.set_exception(exc)

    async def _run(self, request: InflightRequest, compute_fn: ComputeFn, use_cache: bool) -> None:
        try:
            vector = await compute_fn()
        except Exception as exc:
            self._fail([request], exc)
            return
        except asyncio.CancelledError as exc:
            self._fail([request], exc)
            raise

        vector = np.asarray(vector, dtype=np.float32).reshape(-1)
        self._store(request, vector, use_cache)
        self._inflight.pop(request.fingerprint, None)
        if not request.future.done():
            request.future.set_result(vector)

    async def resolve(
        self,
        model_id: str,
        data: str | bytes,
        compute_fn: ComputeFn,
        use_cache: bool = True,
    ) -> np.ndarray:
        """Return the vector for (model_id, input), computing it at most once.

        Args:
            model_id: Model identifier (part of the fingerprint).
            data: Raw input value (part of the fingerprint).
            compute_fn: Coroutine factory running the actual inference.
            use_cache: Read and write the shared cache.

        Returns:
            1-D float32 vector.

        Raises:
            Whatever compute_fn raised, for the owner and every waiter.
        """
        fingerprint = cache_key(model_id, data)

        request = self._inflight.get(fingerprint)
        if request is not None:
            request.waiters += 1
            logger.debug("Coalescing onto inflight request %s", fingerprint)
            return (await asyncio.shield(request.future)).copy()

        if use_cache:
            cached = self._lookup(fingerprint)
            if cached is not None:
                logger.debug("Cache hit for %s", fingerprint)
                return cached

        request = self._open(fingerprint, model_id, data)
        self._spawn(self._run(request, compute_fn, use_cache))
        return (await asyncio.shield(request.future)).copy()

    async def _run_many(
        self,
        requests: list[InflightRequest],
        compute_many: ComputeManyFn,
        use_cache: bool,
    ) -> None:
        inputs = [request.data for request in requests]
        try:
            vectors = np.asarray(await compute_many(inputs), dtype=np.float32)
            if len(vectors) != len(requests):
                raise EmbedError(
                    f"Batch computation returned {len(vectors)} vectors for {len(requests)} inputs",
                    kind="runtime",
                    model_id=requests[0].model_id,
                )
        except Exception as exc:
            self._fail(requests, exc)
            return
        except asyncio.CancelledError as exc:
            self._fail(requests, exc)
            raise

        for request, vector in zip(requests, vectors):
            self._store(request, vector, use_cache)
        for request, vector in zip(requests, vectors):
            self._inflight.pop(request.fingerprint, None)
            if not request.future.done():
                request.future.set_result(vector)

    async def resolve_many(
        self,
        model_id: str,
        inputs: Sequence[str | bytes],
        compute_many: ComputeManyFn,
        use_cache: bool = True,
    ) -> list[np.ndarray]:
        """Resolve several inputs of one model, batching the misses.

        Duplicate inputs share one fingerprint. Cache hits and requests already
        in flight are reused; every remaining miss is computed by a single
        `compute_many(misses)` call and registered as in flight, so concurrent
        `resolve` calls for those inputs wait on the batch.

        Returns:
            One vector per input, in input order.
        """
        fingerprints = [cache_key(model_id, data) for data in inputs]
        resolved: dict[str, np.ndarray] = {}
        pending: dict[str, asyncio.Future] = {}
        owned: list[InflightRequest] = []

        for fingerprint, data in zip(fingerprints, inputs):
            if fingerprint in resolved or fingerprint in pending:
                continue
            request = self._inflight.get(fingerprint)
            if request is not None:
                request.waiters += 1
                pending[fingerprint] = request.future
                continue
            if use_cache:
                cached = self._lookup(fingerprint)
                if cached is not None:
                    resolved[fingerprint] = cached
                    continue
            request = self._open(fingerprint, model_id, data)
            owned.append(request)
            pending[fingerprint] = request.future

        if owned:
            logger.debug("Computing %d of %d inputs for %s", len(owned), len(inputs), model_id)
            self._spawn(self._run_many(owned, compute_many, use_cache))

        for fingerprint, future in pending.items():
            resolved[fingerprint] = await asyncio.shield(future)

        return [resolved[fingerprint].copy() for fingerprint in fingerprints]
