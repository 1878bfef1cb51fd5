"""Shared fixtures: a registry backed by fake models, a temporary cache, a pipeline."""

import base64

import pytest

from vecfield.core.cache import EmbeddingCache
from vecfield.core.coalescer import InflightCoalescer
from vecfield.core.embedders import FakeEmbeddingModel
from vecfield.core.models import ModelSpec
from vecfield.core.pipeline import FieldMappingPipeline
from vecfield.core.registry import ModelRegistry

TEXT_MODEL = "fake/text-small"
OTHER_TEXT_MODEL = "fake/text-large"
IMAGE_MODEL = "fake/image"

FAKE_CATALOGUE = (
    ModelSpec(name=TEXT_MODEL, kind="text", dim=8, aliases=("text-small",)),
    ModelSpec(name=OTHER_TEXT_MODEL, kind="text", dim=16),
    ModelSpec(name=IMAGE_MODEL, kind="image", dim=4),
)

# 1x1 transparent PNG
PNG_BASE64 = (
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)


@pytest.fixture
def fake_models():
    """Fake models created by the registry, keyed by canonical name."""
    return {}


@pytest.fixture
def registry(fake_models):
    def loader(spec: ModelSpec) -> FakeEmbeddingModel:
        model = FakeEmbeddingModel(embedding_dim=spec.dim)
        fake_models[spec.name] = model
        return model

    return ModelRegistry(catalogue=FAKE_CATALOGUE, loader=loader)


@pytest.fixture
def cache(tmp_path):
    return EmbeddingCache(tmp_path / "cache" / "embedding_cache.db", memory_cache_size=100)


@pytest.fixture
def coalescer(cache):
    return InflightCoalescer(cache)


@pytest.fixture
def pipeline(registry, coalescer):
    pipeline = FieldMappingPipeline(registry, coalescer, inference_workers=4)
    yield pipeline
    pipeline.close()


@pytest.fixture
def image_base64():
    return PNG_BASE64


@pytest.fixture
def image_bytes():
    return base64.b64decode(PNG_BASE64)
