"""Central configuration for the vectors extension."""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-wide configuration loaded from environment variables.

    Environment variables:
        VECFIELD_ROOT_DIR: Base directory for models and cache (default: ".")
        VECFIELD_MODELS_DIR: Model weights directory (default: <root>/models)
        VECFIELD_CACHE_PATH: SQLite cache file (default: <root>/embedding_cache.db)
        VECFIELD_MEMORY_CACHE_SIZE: Hot cache capacity in vectors (default: 10000)
        VECFIELD_INFERENCE_WORKERS: Inference threads (default: 2)
        VECFIELD_TEXT_BACKEND: "fastembed" or "sentence-transformers"
        VECFIELD_BACKFILL_BATCH_SIZE: Records per backfill batch (default: 50)
        VECFIELD_BACKFILL_BATCH_DELAY: Seconds between backfill batches (default: 0)

    Example (.env file):
        VECFIELD_ROOT_DIR=/var/lib/app
        VECFIELD_INFERENCE_WORKERS=4
    """

    root_dir: Path = Path(".")
    models_dir: Path | None = None
    cache_path: Path | None = None
    memory_cache_size: int = Field(default=10_000, ge=0)

    inference_workers: int = Field(default=2, ge=1)
    text_backend: Literal["fastembed", "sentence-transformers"] = "fastembed"

    backfill_batch_size: int = Field(default=50, ge=1)
    backfill_batch_delay: float = Field(default=0.0, ge=0.0)

    model_config = SettingsConfigDict(
        env_prefix="VECFIELD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    @property
    def resolved_models_dir(self) -> Path:
        return self.models_dir or self.root_dir / "models"

    @property
    def resolved_cache_path(self) -> Path:
        return self.cache_path or self.root_dir / "embedding_cache.db"
