"""Field-mapping pipeline: embeds configured fields on write and queries on read.

Write path:
    record → for each FieldMapping with a non-empty source value
           → InflightCoalescer (dedupe concurrent identical inputs)
           → EmbeddingCache (shared, content-addressed)
           → ModelRegistry on a miss (inference executor thread)
           → record[target] = vector

Read path:
    {"vector_text": ..., "vector_model": ..., "vector_attr": ...}
           → validate model against the mapping for vector_attr
           → same coalescer/cache/registry chain
           → {"vector": [...], ...} handed to nearest-neighbour search

Writes are fail-closed per record: if any mapping fails to embed, that record
is rejected with a PipelineError naming the mapping. In a batch write the
other records are still embedded and returned.
"""

import asyncio
import logging
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

import numpy as np

from vecfield.core.coalescer import InflightCoalescer
from vecfield.core.exceptions import ConfigError, EmbedError, PipelineError
from vecfield.core.models import AppConfig, FieldMapping
from vecfield.core.registry import ModelRegistry

logger = logging.getLogger(__name__)

DEFAULT_VECTOR_ATTR = "embedding"


def is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value == "")


@dataclass
class BatchWriteResult:
    """Per-record outcome of a batch write.

    Attributes:
        records: Vectorized record per input position, None where it failed.
        errors: PipelineError per failed input position.
    """

    records: list[dict[str, Any] | None]
    errors: dict[int, PipelineError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def written(self) -> list[dict[str, Any]]:
        return [record for record in self.records if record is not None]


class FieldMappingPipeline:
    """Intercepts writes and queries for registered applications.

    Args:
        registry: Shared model registry.
        coalescer: Shared coalescer (wrapping the shared cache).
        executor: Executor that runs model inference. A dedicated
            ThreadPoolExecutor with `inference_workers` threads is created
            when omitted.
        inference_workers: Thread count for the default executor.

    Example:
        pipeline = FieldMappingPipeline(registry, InflightCoalescer(cache))
        pipeline.register_app("docs", load_app_config({"fields": [...]}))
        stored = await pipeline.on_write("docs", {"id": "doc-1", "content": "hello"})
    """

    def __init__(
        self,
        registry: ModelRegistry,
        coalescer: InflightCoalescer,
        executor: ThreadPoolExecutor | None = None,
        inference_workers: int = 2,
    ):
        self.registry = registry
        self.coalescer = coalescer
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=inference_workers, thread_name_prefix="vecfield-inference"
        )
        self._apps: dict[str, AppConfig] = {}

    # ============ CONFIGURATION ============

    def register_app(self, app_id: str, config: AppConfig) -> None:
        """Validate and register an application's vector configuration.

        Raises:
            ConfigError: Unknown model or field_type/model kind mismatch.
        """
        for mapping in config.fields:
            spec = self.registry.resolve(mapping.model)
            if spec.kind != mapping.field_type:
                raise ConfigError(
                    f"Mapping {mapping.describe()} is a {mapping.field_type} field "
                    f"but model '{spec.name}' embeds {spec.kind}"
                )

        self._apps[app_id] = config
        logger.info(
            "Registered app %s with %d field mapping(s), cache=%s",
            app_id,
            len(config.fields),
            config.cache,
        )

    @property
    def apps(self) -> Mapping[str, AppConfig]:
        return MappingProxyType(self._apps)

    def config_for(self, app_id: str) -> AppConfig:
        config = self._apps.get(app_id)
        if config is None:
            raise PipelineError(f"Application '{app_id}' is not registered", status_code=404)
        return config

    # ============ EMBEDDING ============

    def _canonical(self, mapping: FieldMapping) -> str:
        return self.registry.resolve(mapping.model).name

    async def _run_inference(self, func, *args) -> np.ndarray:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    async def embed_value(self, mapping: FieldMapping, value: Any, use_cache: bool = True) -> np.ndarray:
        """Embed one source value through the coalescer/cache/registry chain.

        Raises:
            EmbedError: Malformed value, model load or inference failure.
        """
        model_id = self._canonical(mapping)
        # Validate before fingerprinting: only strings are hashable inputs
        self.registry.decode(mapping.field_type, value, model_id=model_id)

        async def compute() -> np.ndarray:
            return await self._run_inference(
                self.registry.embed, model_id, mapping.field_type, value
            )

        return await self.coalescer.resolve(model_id, value, compute, use_cache=use_cache)

    async def embed_values(
        self, mapping: FieldMapping, values: list[Any], use_cache: bool = True
    ) -> list[np.ndarray]:
        """Embed many values of one mapping, batching the cache misses."""
        model_id = self._canonical(mapping)
        for value in values:
            self.registry.decode(mapping.field_type, value, model_id=model_id)

        async def compute_many(misses: list[Any]) -> np.ndarray:
            return await self._run_inference(
                self.registry.embed_batch, model_id, mapping.field_type, misses
            )

        return await self.coalescer.resolve_many(model_id, values, compute_many, use_cache=use_cache)

    def _write_error(
        self, app_id: str, mapping: FieldMapping, exc: EmbedError, index: int | None = None
    ) -> PipelineError:
        status = 400 if exc.kind == "input" else 503
        prefix = "" if index is None else f"Record {index}: "
        logger.warning(
            "%sEmbedding failed for app %s mapping %s: %s", prefix, app_id, mapping.describe(), exc
        )
        return PipelineError(
            f"{prefix}Embedding failed for field mapping {mapping.describe()}: {exc}",
            mapping=mapping,
            status_code=status,
            index=index,
        )

    # ============ WRITE PATH ============

    async def vectorize(
        self, app_id: str, record: dict[str, Any], only_missing: bool = False
    ) -> dict[str, Any]:
        """Return a copy of `record` with every applicable target vector set.

        Args:
            app_id: Registered application.
            record: Record about to be written.
            only_missing: Skip mappings whose target already holds a value
                (used by the backfill).

        Raises:
            PipelineError: If any mapping fails to embed (the write must abort).
        """
        config = self.config_for(app_id)
        result = dict(record)

        for mapping in config.fields:
            value = record.get(mapping.source)
            if is_missing(value):
                continue
            if only_missing and not is_missing(record.get(mapping.target)):
                continue

            try:
                vector = await self.embed_value(mapping, value, use_cache=config.cache)
            except EmbedError as exc:
                raise self._write_error(app_id, mapping, exc) from exc
            result[mapping.target] = vector.tolist()

        return result

    async def on_write(self, app_id: str, record: dict[str, Any]) -> dict[str, Any]:
        """Embed configured fields of a record before it is stored.

        Mappings whose source field is absent, null or empty are skipped
        without error and without touching the cache.

        Raises:
            PipelineError: Unknown app (404) or failed embedding naming the
                mapping (400 malformed input, 503 model unavailable).
        """
        return await self.vectorize(app_id, record)

    async def on_write_batch(self, app_id: str, records: list[dict[str, Any]]) -> BatchWriteResult:
        """Embed configured fields of several records.

        For each mapping, all cache misses across the batch are embedded with
        a single inference call. Failures are per record: a malformed value
        rejects only its own record (400), and an inference failure rejects
        the records that were waiting on it (503). Records that failed on one
        mapping are not embedded for the remaining ones.

        Raises:
            PipelineError: Unknown app (404).
        """
        config = self.config_for(app_id)
        results = [dict(record) for record in records]
        errors: dict[int, PipelineError] = {}

        for mapping in config.fields:
            model_id = self._canonical(mapping)
            indexed = []
            for i, record in enumerate(records):
                value = record.get(mapping.source)
                if i in errors or is_missing(value):
                    continue
                try:
                    self.registry.decode(mapping.field_type, value, model_id=model_id)
                except EmbedError as exc:
                    errors[i] = self._write_error(app_id, mapping, exc, index=i)
                    continue
                indexed.append((i, value))
            if not indexed:
                continue

            try:
                vectors = await self.embed_values(
                    mapping, [value for _, value in indexed], use_cache=config.cache
                )
            except EmbedError as exc:
                for i, _ in indexed:
                    errors[i] = self._write_error(app_id, mapping, exc, index=i)
                continue

            for (i, _), vector in zip(indexed, vectors):
                results[i][mapping.target] = vector.tolist()

        return BatchWriteResult(
            records=[None if i in errors else record for i, record in enumerate(results)],
            errors=errors,
        )

    # ============ READ PATH ============

    async def on_query(self, app_id: str, params: dict[str, Any]) -> dict[str, Any]:
        """Replace `vector_text` in query parameters with its embedding.

        Queries without `vector_text` are returned unchanged. Otherwise the
        result drops `vector_text` and carries `vector` (list of floats);
        `vector_attr`, `vector_model`, `limit`, `max_distance` and anything
        else pass through.

        Raises:
            PipelineError: 400 for a missing/mismatched model or unmapped
                attribute (raised before any inference) and malformed input;
                503 when the model cannot be loaded or inference fails.
        """
        text = params.get("vector_text")
        if text is None:
            return dict(params)

        config = self.config_for(app_id)
        if text == "":
            raise PipelineError("vector_text must not be empty", status_code=400)
        model_id = params.get("vector_model")
        if not model_id:
            raise PipelineError("vector_model is required with vector_text", status_code=400)
        vector_attr = params.get("vector_attr") or DEFAULT_VECTOR_ATTR

        mapping = config.mapping_for_target(vector_attr)
        if mapping is None:
            raise PipelineError(
                f"No field mapping targets vector attribute '{vector_attr}'", status_code=400
            )
        try:
            requested = self.registry.resolve(model_id).name
        except ConfigError as exc:
            raise PipelineError(str(exc), mapping=mapping, status_code=400) from exc
        if requested != self._canonical(mapping):
            raise PipelineError(
                f"vector_model '{model_id}' does not match model '{mapping.model}' "
                f"configured for '{vector_attr}'",
                mapping=mapping,
                status_code=400,
            )
        if mapping.field_type != "text":
            raise PipelineError(
                f"Vector attribute '{vector_attr}' holds {mapping.field_type} embeddings; "
                "text queries are not supported",
                mapping=mapping,
                status_code=400,
            )

        try:
            vector = await self.embed_value(mapping, text, use_cache=config.cache)
        except EmbedError as exc:
            if exc.kind == "input":
                raise PipelineError(
                    f"Invalid vector_text: {exc}", mapping=mapping, status_code=400
                ) from exc
            raise PipelineError(
                f"Embedding service unavailable: {exc}", mapping=mapping, status_code=503
            ) from exc

        result = {key: value for key, value in params.items() if key != "vector_text"}
        result["vector"] = vector.tolist()
        result["vector_attr"] = vector_attr
        return result

    def close(self) -> None:
        """Shut down the inference executor if this pipeline created it."""
        if self._owns_executor:
            self._executor.shutdown(wait=True)
