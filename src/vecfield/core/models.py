"""
Data contracts for vecfield.

This module defines the Pydantic models passed between components:

- ModelSpec: Catalogue entry for an embedding model
- FieldMapping: One source field -> target vector field rule
- AppConfig: Per-application configuration (mappings, cache flag, tables)
- CacheEntry: A persisted embedding, shared across applications
- BackfillCursor / BackfillReport: Transient backfill progress
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from vecfield.core.exceptions import ConfigError

FieldType = Literal["text", "image"]


class ModelSpec(BaseModel):
    """
    Catalogue entry describing an embedding model.

    Attributes:
        name: Canonical model identifier (used to load the model)
        kind: Input modality the model accepts
        dim: Fixed length of every vector the model produces
        aliases: Alternative identifiers accepted in configuration
    """

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    name: str
    kind: FieldType
    dim: int = Field(..., gt=0)
    aliases: tuple[str, ...] = ()


class FieldMapping(BaseModel):
    """
    Rule that embeds `source` into the vector field `target`.

    The target must exist in the host schema as an indexed vector attribute;
    the host enforces that, not the pipeline.
    """

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    source: str = Field(..., min_length=1)
    target: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    field_type: FieldType = "text"

    def describe(self) -> str:
        return f"{self.source} -> {self.target} ({self.model})"


class AppConfig(BaseModel):
    """
    Vector configuration for one application.

    Loaded once at registration and immutable for the process lifetime.

    Attributes:
        fields: Field mappings applied on every write
        cache: Whether embeddings are read from and written to the shared cache
        tables: Tables the backfill scans for records missing a target
    """

    model_config = ConfigDict(frozen=True)

    fields: tuple[FieldMapping, ...] = ()
    cache: bool = True
    tables: tuple[str, ...] = ()

    @model_validator(mode="after")
    def _unique_targets(self) -> "AppConfig":
        targets = [mapping.target for mapping in self.fields]
        duplicates = sorted({t for t in targets if targets.count(t) > 1})
        if duplicates:
            raise ValueError(f"Multiple mappings write the same target field(s): {duplicates}")
        return self

    @property
    def targets(self) -> list[str]:
        return [mapping.target for mapping in self.fields]

    def mapping_for_target(self, target: str) -> FieldMapping | None:
        for mapping in self.fields:
            if mapping.target == target:
                return mapping
        return None


def load_app_config(data: dict[str, Any]) -> AppConfig:
    """Build an AppConfig from already-parsed configuration (YAML, JSON).

    Raises:
        ConfigError: If the configuration is malformed.
    """
    try:
        return AppConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid vector configuration: {exc}") from exc


class CacheEntry(BaseModel):
    """
    A previously computed embedding.

    Attributes:
        id: Hex SHA-256 of model_id + NUL + input bytes
        model: Model that produced the embedding
        embedding: The vector
        created_at: Seconds since epoch when the entry was written
    """

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    id: str
    model: str
    embedding: list[float]
    created_at: int


class BackfillCursor(BaseModel):
    """Progress through one table during a single backfill run (never persisted)."""

    app_id: str
    table: str
    scanned: int = 0
    last_record_id: str | None = None


class BackfillReport(BaseModel):
    """Outcome of one backfill run for an application."""

    app_id: str
    scanned: int = 0
    updated: int = 0
    skipped: int = 0
    superseded: int = 0
    failed: int = 0
    cursors: list[BackfillCursor] = Field(default_factory=list)
