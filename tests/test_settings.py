"""Tests for vecfield.settings module."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from vecfield.settings import Settings


@pytest.fixture
def no_dotenv():
    """Keep a developer's .env file out of the tests."""
    with patch("pydantic_settings.sources.DotEnvSettingsSource.__call__", return_value={}):
        yield


class TestSettings:
    def test_default_values(self, no_dotenv):
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings()

        assert settings.root_dir == Path(".")
        assert settings.memory_cache_size == 10_000
        assert settings.inference_workers == 2
        assert settings.text_backend == "fastembed"
        assert settings.backfill_batch_size == 50
        assert settings.backfill_batch_delay == 0.0

    def test_paths_derive_from_root_dir(self, no_dotenv):
        with patch.dict(os.environ, {"VECFIELD_ROOT_DIR": "/var/lib/app"}, clear=True):
            settings = Settings()

        assert settings.resolved_models_dir == Path("/var/lib/app/models")
        assert settings.resolved_cache_path == Path("/var/lib/app/embedding_cache.db")

    def test_explicit_paths_override_root_dir(self, no_dotenv):
        with patch.dict(
            os.environ,
            {
                "VECFIELD_ROOT_DIR": "/var/lib/app",
                "VECFIELD_MODELS_DIR": "/opt/models",
                "VECFIELD_CACHE_PATH": "/tmp/cache.db",
            },
            clear=True,
        ):
            settings = Settings()

        assert settings.resolved_models_dir == Path("/opt/models")
        assert settings.resolved_cache_path == Path("/tmp/cache.db")

    def test_custom_values_from_environment(self, no_dotenv):
        with patch.dict(
            os.environ,
            {
                "VECFIELD_INFERENCE_WORKERS": "4",
                "VECFIELD_TEXT_BACKEND": "sentence-transformers",
                "VECFIELD_BACKFILL_BATCH_SIZE": "10",
                "VECFIELD_BACKFILL_BATCH_DELAY": "0.5",
                "VECFIELD_MEMORY_CACHE_SIZE": "0",
            },
            clear=True,
        ):
            settings = Settings()

        assert settings.inference_workers == 4
        assert settings.text_backend == "sentence-transformers"
        assert settings.backfill_batch_size == 10
        assert settings.backfill_batch_delay == 0.5
        assert settings.memory_cache_size == 0

    def test_unprefixed_variables_ignored(self, no_dotenv):
        with patch.dict(os.environ, {"INFERENCE_WORKERS": "8"}, clear=True):
            assert Settings().inference_workers == 2

    def test_invalid_backend_rejected(self, no_dotenv):
        with patch.dict(os.environ, {"VECFIELD_TEXT_BACKEND": "openai"}, clear=True):
            with pytest.raises(ValidationError):
                Settings()

    def test_zero_workers_rejected(self, no_dotenv):
        with patch.dict(os.environ, {"VECFIELD_INFERENCE_WORKERS": "0"}, clear=True):
            with pytest.raises(ValidationError):
                Settings()
