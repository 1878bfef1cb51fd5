"""
vecfield.core: Components of the embedding interception subsystem.

Leaves first: embedding backends, the model registry, the shared cache, the
inflight coalescer, the field-mapping pipeline and the backfill scheduler.
"""

from vecfield.core.backfill import BackfillScheduler
from vecfield.core.cache import EmbeddingCache, cache_key
from vecfield.core.coalescer import InflightCoalescer, InflightRequest
from vecfield.core.embedders import (
    EmbeddingModel,
    FakeEmbeddingModel,
    FastEmbedImageModel,
    FastEmbedTextModel,
    SentenceTransformerTextModel,
)
from vecfield.core.exceptions import (
    CacheError,
    ConfigError,
    EmbedError,
    PipelineError,
    VectorsError,
)
from vecfield.core.models import (
    AppConfig,
    BackfillCursor,
    BackfillReport,
    CacheEntry,
    FieldMapping,
    ModelSpec,
    load_app_config,
)
from vecfield.core.pipeline import FieldMappingPipeline
from vecfield.core.registry import DEFAULT_CATALOGUE, ModelRegistry
from vecfield.core.store import InMemoryRecordStore, RecordStore

__all__ = [
    "AppConfig",
    "BackfillCursor",
    "BackfillReport",
    "BackfillScheduler",
    "cache_key",
    "CacheEntry",
    "CacheError",
    "ConfigError",
    "DEFAULT_CATALOGUE",
    "EmbedError",
    "EmbeddingCache",
    "EmbeddingModel",
    "FakeEmbeddingModel",
    "FastEmbedImageModel",
    "FastEmbedTextModel",
    "FieldMapping",
    "FieldMappingPipeline",
    "InflightCoalescer",
    "InflightRequest",
    "InMemoryRecordStore",
    "load_app_config",
    "ModelRegistry",
    "ModelSpec",
    "PipelineError",
    "RecordStore",
    "SentenceTransformerTextModel",
    "VectorsError",
]
