"""Tests for InflightCoalescer.

This module validates that concurrent requests for one (model, input) run the
computation once, that failures reach every waiter without being cached, and
that cancellation never loses an in-flight computation.
"""

import asyncio

import numpy as np
import pytest

from vecfield.core.cache import cache_key
from vecfield.core.coalescer import InflightCoalescer
from vecfield.core.exceptions import CacheError, EmbedError


class CountingCompute:
    """Instrumented compute_fn: counts calls and sleeps to stay in flight."""

    def __init__(self, vector=None, delay: float = 0.05, error: Exception | None = None):
        self.vector = np.array([0.1, 0.2, 0.3], dtype=np.float32) if vector is None else vector
        self.delay = delay
        self.error = error
        self.calls = 0

    async def __call__(self) -> np.ndarray:
        self.calls += 1
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.vector


class CountingBatchCompute:
    def __init__(self, dim: int = 3, delay: float = 0.05):
        self.dim = dim
        self.delay = delay
        self.batches: list[list] = []

    async def __call__(self, inputs: list) -> np.ndarray:
        self.batches.append(list(inputs))
        await asyncio.sleep(self.delay)
        return np.array([[float(len(text))] * self.dim for text in inputs], dtype=np.float32)


# Coalescing


@pytest.mark.asyncio
async def test_concurrent_identical_requests_compute_once(coalescer):
    compute = CountingCompute()

    results = await asyncio.gather(
        *[coalescer.resolve("m", "same input", compute) for _ in range(10)]
    )

    assert compute.calls == 1
    for result in results:
        np.testing.assert_array_equal(result, compute.vector)


@pytest.mark.asyncio
async def test_distinct_inputs_compute_independently(coalescer):
    compute = CountingCompute()

    await asyncio.gather(
        coalescer.resolve("m", "first", compute),
        coalescer.resolve("m", "second", compute),
        coalescer.resolve("other-model", "first", compute),
    )

    assert compute.calls == 3


@pytest.mark.asyncio
async def test_inflight_entry_removed_after_resolution(coalescer):
    compute = CountingCompute()

    task = asyncio.ensure_future(coalescer.resolve("m", "text", compute))
    await asyncio.sleep(0)
    assert coalescer.is_inflight("m", "text")
    assert coalescer.inflight_count == 1

    await task
    assert coalescer.inflight_count == 0


# Cache interaction


@pytest.mark.asyncio
async def test_result_is_cached_and_reused(coalescer, cache):
    compute = CountingCompute()

    await coalescer.resolve("m", "text", compute)
    second = await coalescer.resolve("m", "text", compute)

    assert compute.calls == 1
    np.testing.assert_array_equal(second, compute.vector)
    np.testing.assert_array_equal(cache.get("m", "text"), compute.vector)


@pytest.mark.asyncio
async def test_cache_hit_creates_no_inflight_request(coalescer, cache):
    cache.put("m", "text", np.ones(3, dtype=np.float32))
    compute = CountingCompute()

    result = await coalescer.resolve("m", "text", compute)

    assert compute.calls == 0
    assert coalescer.inflight_count == 0
    np.testing.assert_array_equal(result, np.ones(3, dtype=np.float32))


@pytest.mark.asyncio
async def test_use_cache_false_skips_cache(coalescer, cache):
    cache.put("m", "text", np.ones(3, dtype=np.float32))
    compute = CountingCompute()

    result = await coalescer.resolve("m", "text", compute, use_cache=False)

    assert compute.calls == 1
    np.testing.assert_array_equal(result, compute.vector)
    # Existing entry untouched
    np.testing.assert_array_equal(cache.get("m", "text"), np.ones(3, dtype=np.float32))


@pytest.mark.asyncio
async def test_works_without_cache():
    coalescer = InflightCoalescer(cache=None)
    compute = CountingCompute()

    await asyncio.gather(*[coalescer.resolve("m", "x", compute) for _ in range(3)])
    await coalescer.resolve("m", "x", compute)

    assert compute.calls == 2


@pytest.mark.asyncio
async def test_cache_failure_degrades_to_miss(coalescer, cache, monkeypatch):
    def broken(*args, **kwargs):
        raise CacheError("disk full")

    monkeypatch.setattr(cache, "get_by_key", broken)
    monkeypatch.setattr(cache, "put_by_key", broken)
    compute = CountingCompute()

    result = await coalescer.resolve("m", "text", compute)

    assert compute.calls == 1
    np.testing.assert_array_equal(result, compute.vector)


# Failures


@pytest.mark.asyncio
async def test_failure_delivered_to_all_waiters(coalescer):
    compute = CountingCompute(error=EmbedError("model crashed"))

    results = await asyncio.gather(
        *[coalescer.resolve("m", "bad", compute) for _ in range(5)],
        return_exceptions=True,
    )

    assert compute.calls == 1
    assert all(isinstance(r, EmbedError) for r in results)
    assert coalescer.inflight_count == 0


@pytest.mark.asyncio
async def test_failure_is_not_cached_and_retry_succeeds(coalescer, cache):
    failing = CountingCompute(error=EmbedError("transient"))
    with pytest.raises(EmbedError):
        await coalescer.resolve("m", "text", failing)

    assert cache.get("m", "text") is None
    assert cache.list() == []

    succeeding = CountingCompute()
    await coalescer.resolve("m", "text", succeeding)

    assert succeeding.calls == 1
    entries = cache.list()
    assert len(entries) == 1
    assert entries[0].id == cache_key("m", "text")


# Cancellation


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_cancel_computation(coalescer):
    compute = CountingCompute(delay=0.1)

    owner = asyncio.ensure_future(coalescer.resolve("m", "text", compute))
    await asyncio.sleep(0)
    waiter = asyncio.ensure_future(coalescer.resolve("m", "text", compute))
    await asyncio.sleep(0.01)

    waiter.cancel()
    result = await owner

    assert compute.calls == 1
    np.testing.assert_array_equal(result, compute.vector)
    assert waiter.cancelled()


@pytest.mark.asyncio
async def test_cancelled_owner_still_resolves_waiters_and_caches(coalescer, cache):
    compute = CountingCompute(delay=0.1)

    owner = asyncio.ensure_future(coalescer.resolve("m", "text", compute))
    await asyncio.sleep(0)
    waiter = asyncio.ensure_future(coalescer.resolve("m", "text", compute))
    await asyncio.sleep(0.01)

    owner.cancel()
    result = await waiter

    np.testing.assert_array_equal(result, compute.vector)
    assert compute.calls == 1
    np.testing.assert_array_equal(cache.get("m", "text"), compute.vector)


# Batches


@pytest.mark.asyncio
async def test_resolve_many_computes_each_distinct_miss_once(coalescer, cache):
    cache.put("m", "cached", np.full(3, 9.0, dtype=np.float32))
    compute_many = CountingBatchCompute()

    results = await coalescer.resolve_many("m", ["a", "bb", "a", "cached"], compute_many)

    assert compute_many.batches == [["a", "bb"]]
    np.testing.assert_array_equal(results[0], [1.0, 1.0, 1.0])
    np.testing.assert_array_equal(results[1], [2.0, 2.0, 2.0])
    np.testing.assert_array_equal(results[2], results[0])
    np.testing.assert_array_equal(results[3], [9.0, 9.0, 9.0])
    assert cache.get("m", "bb") is not None


@pytest.mark.asyncio
async def test_single_resolve_coalesces_onto_batch(coalescer):
    compute_many = CountingBatchCompute(delay=0.1)
    compute = CountingCompute()

    batch = asyncio.ensure_future(coalescer.resolve_many("m", ["abc", "de"], compute_many))
    await asyncio.sleep(0)
    single = await coalescer.resolve("m", "abc", compute)

    await batch
    assert compute.calls == 0
    np.testing.assert_array_equal(single, [3.0, 3.0, 3.0])


@pytest.mark.asyncio
async def test_resolve_many_rejects_wrong_vector_count(coalescer):
    async def short_batch(inputs):
        return np.zeros((1, 3), dtype=np.float32)

    with pytest.raises(EmbedError, match="returned 1 vectors for 2 inputs"):
        await coalescer.resolve_many("m", ["x", "y"], short_batch)
    assert coalescer.inflight_count == 0


@pytest.mark.asyncio
async def test_waiters_receive_independent_vectors(coalescer, cache):
    compute = CountingCompute()

    first, second = await asyncio.gather(
        coalescer.resolve("m", "text", compute),
        coalescer.resolve("m", "text", compute),
    )
    first[0] = 99.0

    assert second[0] == pytest.approx(0.1)
    assert (await coalescer.resolve("m", "text", compute))[0] == pytest.approx(0.1)
    assert cache.get("m", "text")[0] == pytest.approx(0.1)
