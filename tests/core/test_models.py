"""
Tests for vecfield.core.models data contracts.

This test suite validates:
- ModelSpec: catalogue entries
- FieldMapping / AppConfig: per-application configuration
- load_app_config: malformed configuration surfaces as ConfigError
- Backfill progress models
"""

import pytest
from pydantic import ValidationError

from vecfield.core.exceptions import ConfigError, EmbedError, PipelineError, VectorsError
from vecfield.core.models import (
    AppConfig,
    BackfillReport,
    CacheEntry,
    FieldMapping,
    ModelSpec,
    load_app_config,
)


class TestModelSpec:
    def test_defaults(self):
        spec = ModelSpec(name="BAAI/bge-small-en-v1.5", kind="text", dim=384)
        assert spec.aliases == ()

    def test_dimension_must_be_positive(self):
        with pytest.raises(ValidationError):
            ModelSpec(name="m", kind="text", dim=0)

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValidationError):
            ModelSpec(name="m", kind="audio", dim=4)

    def test_frozen(self):
        spec = ModelSpec(name="m", kind="text", dim=4)
        with pytest.raises(ValidationError):
            spec.dim = 8


class TestFieldMapping:
    def test_field_type_defaults_to_text(self):
        mapping = FieldMapping(source="content", target="embedding", model="m")
        assert mapping.field_type == "text"

    def test_describe(self):
        mapping = FieldMapping(source="content", target="embedding", model="m")
        assert mapping.describe() == "content -> embedding (m)"

    def test_empty_names_rejected(self):
        with pytest.raises(ValidationError):
            FieldMapping(source="", target="embedding", model="m")


class TestAppConfig:
    def test_defaults(self):
        config = AppConfig()
        assert config.fields == ()
        assert config.cache is True
        assert config.tables == ()

    def test_duplicate_targets_rejected(self):
        with pytest.raises(ValidationError, match="same target"):
            AppConfig(
                fields=(
                    FieldMapping(source="title", target="embedding", model="m"),
                    FieldMapping(source="body", target="embedding", model="m"),
                )
            )

    def test_same_source_to_two_targets_allowed(self):
        config = AppConfig(
            fields=(
                FieldMapping(source="body", target="small_vec", model="a"),
                FieldMapping(source="body", target="large_vec", model="b"),
            )
        )
        assert config.targets == ["small_vec", "large_vec"]

    def test_mapping_for_target(self):
        mapping = FieldMapping(source="body", target="embedding", model="m")
        config = AppConfig(fields=(mapping,))

        assert config.mapping_for_target("embedding") == mapping
        assert config.mapping_for_target("other") is None


class TestLoadAppConfig:
    def test_from_parsed_dict(self):
        config = load_app_config(
            {
                "fields": [{"source": "content", "target": "embedding", "model": "m"}],
                "cache": False,
                "tables": ["documents"],
            }
        )
        assert config.fields[0].source == "content"
        assert config.cache is False
        assert config.tables == ("documents",)

    def test_malformed_config_is_config_error(self):
        with pytest.raises(ConfigError, match="Invalid vector configuration"):
            load_app_config({"fields": [{"source": "content"}]})

    def test_duplicate_targets_is_config_error(self):
        with pytest.raises(ConfigError):
            load_app_config(
                {
                    "fields": [
                        {"source": "a", "target": "v", "model": "m"},
                        {"source": "b", "target": "v", "model": "m"},
                    ]
                }
            )


class TestProgressModels:
    def test_report_defaults(self):
        report = BackfillReport(app_id="docs")
        assert (report.scanned, report.updated, report.skipped, report.failed) == (0, 0, 0, 0)
        assert report.cursors == []

    def test_cache_entry(self):
        entry = CacheEntry(id="abc", model="m", embedding=[0.1, 0.2], created_at=1700000000)
        assert entry.embedding == [0.1, 0.2]


class TestExceptions:
    def test_hierarchy(self):
        assert issubclass(ConfigError, VectorsError)
        assert issubclass(EmbedError, VectorsError)
        assert issubclass(PipelineError, VectorsError)

    def test_embed_error_retryable_by_kind(self):
        assert not EmbedError("bad", kind="input").retryable
        assert EmbedError("crash", kind="runtime").retryable
        assert EmbedError("download", kind="unavailable").retryable

    def test_pipeline_error_retryable_only_when_unavailable(self):
        assert PipelineError("x", status_code=503).retryable
        assert not PipelineError("x", status_code=400).retryable
