"""Vectors extension: wires the embedding subsystem together for a host.

Builds the process-wide components once (registry, cache, coalescer,
pipeline, backfill scheduler) and exposes the operations the host calls:
register an application, intercept writes and queries, administer the cache.

Example:
    extension = VectorsExtension.from_settings(Settings(), store=host_store)
    await extension.register_app(
        "docs",
        {"fields": [{"source": "content", "target": "embedding",
                     "model": "BAAI/bge-small-en-v1.5"}],
         "tables": ["documents"]},
    )
    stored = await extension.write("docs", "documents", {"id": "doc-1", "content": "hello world"})
    query = await extension.query("docs", {"vector_text": "greeting",
                                           "vector_model": "BAAI/bge-small-en-v1.5"})
"""

import asyncio
import logging
from typing import Any

from vecfield.core.backfill import BackfillScheduler
from vecfield.core.cache import EmbeddingCache
from vecfield.core.coalescer import InflightCoalescer
from vecfield.core.models import AppConfig, CacheEntry, load_app_config
from vecfield.core.pipeline import BatchWriteResult, FieldMappingPipeline
from vecfield.core.registry import ModelRegistry
from vecfield.core.store import RecordStore
from vecfield.settings import Settings

logger = logging.getLogger(__name__)


class VectorsExtension:
    """Composition root for the embedding subsystem.

    Args:
        registry: Shared model registry.
        cache: Shared embedding cache.
        store: Host record storage (used by writes and the backfill).
        inference_workers: Threads dedicated to model inference.
        backfill_batch_size: Records per backfill batch.
        backfill_batch_delay: Seconds between backfill batches.
    """

    name = "vectors"

    def __init__(
        self,
        registry: ModelRegistry,
        cache: EmbeddingCache,
        store: RecordStore,
        inference_workers: int = 2,
        backfill_batch_size: int = 50,
        backfill_batch_delay: float = 0.0,
    ):
        self.registry = registry
        self.cache = cache
        self.store = store
        self.coalescer = InflightCoalescer(cache)
        self.pipeline = FieldMappingPipeline(
            registry, self.coalescer, inference_workers=inference_workers
        )
        self.backfill = BackfillScheduler(
            self.pipeline,
            store,
            batch_size=backfill_batch_size,
            batch_delay=backfill_batch_delay,
        )

    @classmethod
    def from_settings(cls, settings: Settings, store: RecordStore) -> "VectorsExtension":
        """Build the extension from process configuration."""
        models_dir = settings.resolved_models_dir
        logger.info("Model cache directory: %s", models_dir)
        registry = ModelRegistry(models_dir=models_dir, text_backend=settings.text_backend)
        cache = EmbeddingCache(
            settings.resolved_cache_path, memory_cache_size=settings.memory_cache_size
        )
        return cls(
            registry,
            cache,
            store,
            inference_workers=settings.inference_workers,
            backfill_batch_size=settings.backfill_batch_size,
            backfill_batch_delay=settings.backfill_batch_delay,
        )

    async def register_app(
        self, app_id: str, config: AppConfig | dict[str, Any], backfill: bool = True
    ) -> AppConfig:
        """Register an application and start its backfill in the background.

        Returns as soon as the configuration is validated; the backfill runs
        concurrently with normal traffic. Re-registering an app restarts a
        running backfill so it covers the new mappings.

        Raises:
            ConfigError: Malformed configuration or unknown model.
        """
        if not isinstance(config, AppConfig):
            config = load_app_config(config)
        self.pipeline.register_app(app_id, config)
        if backfill and config.tables:
            self.backfill.restart(app_id)
        return config

    async def write(self, app_id: str, table: str, record: dict[str, Any]) -> dict[str, Any]:
        """Embed a record's mapped fields and store it.

        Raises:
            PipelineError: The record is not stored.
        """
        updated = await self.pipeline.on_write(app_id, record)
        await asyncio.to_thread(self.store.put, app_id, table, updated)
        return updated

    def _put_all(self, app_id: str, table: str, records: list[dict[str, Any]]) -> None:
        for record in records:
            self.store.put(app_id, table, record)

    async def write_many(
        self, app_id: str, table: str, records: list[dict[str, Any]]
    ) -> BatchWriteResult:
        """Embed and store several records.

        Records that failed to embed are not stored and are reported in the
        result's `errors` by their position; the others are stored.
        """
        result = await self.pipeline.on_write_batch(app_id, records)
        await asyncio.to_thread(self._put_all, app_id, table, result.written)
        if not result.ok:
            logger.warning(
                "Batch write for %s/%s: %d of %d records rejected",
                app_id,
                table,
                len(result.errors),
                len(records),
            )
        return result

    async def query(self, app_id: str, params: dict[str, Any]) -> dict[str, Any]:
        """Materialize the query vector for a `vector_text` search."""
        return await self.pipeline.on_query(app_id, params)

    def cache_entries(self, model: str | None = None) -> list[CacheEntry]:
        return self.cache.list(model=model)

    def delete_cache_entry(self, key: str) -> bool:
        return self.cache.delete(key)

    def invalidate_model(self, model_id: str) -> int:
        """Drop all cached vectors of a model (after an in-place upgrade)."""
        return self.cache.delete_model(self.registry.resolve(model_id).name)

    def status(self) -> dict[str, Any]:
        return {
            "extension": self.name,
            "status": "active",
            "apps": sorted(self.pipeline.apps),
            "loaded_models": self.registry.loaded_models,
            "inflight": self.coalescer.inflight_count,
            "cache": self.cache.cache_info(),
        }

    async def aclose(self) -> None:
        """Stop running backfills and release the inference executor."""
        await self.backfill.stop()
        self.pipeline.close()
