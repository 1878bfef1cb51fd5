"""Process-wide registry of embedding models.

The registry owns one loaded EmbeddingModel per canonical model name and is
shared by every application in the process. It is an explicit object built
once by the extension and injected into the pipeline, so tests can hand the
pipeline a registry backed by FakeEmbeddingModel instead of real weights.

Example:
    registry = ModelRegistry(models_dir=Path("./models"))
    vector = registry.embed("bge-small-en-v1.5", "text", "hello world")  # (384,)
"""

import base64
import binascii
import logging
import threading
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path
from typing import Any

import numpy as np

from vecfield.core.embedders import EmbeddingModel, load_model
from vecfield.core.exceptions import ConfigError, EmbedError
from vecfield.core.models import FieldType, ModelSpec

logger = logging.getLogger(__name__)

DEFAULT_CATALOGUE: tuple[ModelSpec, ...] = (
    ModelSpec(name="BAAI/bge-small-en-v1.5", kind="text", dim=384, aliases=("bge-small-en-v1.5",)),
    ModelSpec(name="BAAI/bge-base-en-v1.5", kind="text", dim=768, aliases=("bge-base-en-v1.5",)),
    ModelSpec(name="BAAI/bge-large-en-v1.5", kind="text", dim=1024, aliases=("bge-large-en-v1.5",)),
    ModelSpec(
        name="sentence-transformers/all-MiniLM-L6-v2",
        kind="text",
        dim=384,
        aliases=("all-MiniLM-L6-v2",),
    ),
    ModelSpec(
        name="Qdrant/clip-ViT-B-32-vision",
        kind="image",
        dim=512,
        aliases=("clip-ViT-B-32", "CLIP-ViT-B-32", "clip-vit-b-32"),
    ),
)

ModelLoader = Callable[[ModelSpec], EmbeddingModel]


class ModelRegistry:
    """Lazily loads and shares embedding models by identifier.

    Loading is synchronised per model: concurrent first uses of the same model
    trigger exactly one load, while different models load independently.
    A failed load is not remembered, so the next call retries it.

    Args:
        catalogue: Known models. Defaults to DEFAULT_CATALOGUE.
        loader: Builds an EmbeddingModel for a catalogue entry. Defaults to
            `load_model` with `models_dir` and `text_backend`.
        models_dir: Download/cache directory for model weights.
        text_backend: "fastembed" or "sentence-transformers".
    """

    def __init__(
        self,
        catalogue: Iterable[ModelSpec] = DEFAULT_CATALOGUE,
        loader: ModelLoader | None = None,
        models_dir: Path | None = None,
        text_backend: str = "fastembed",
    ):
        self.models_dir = models_dir
        self.text_backend = text_backend
        self._loader = loader or self._default_loader
        self._specs: dict[str, ModelSpec] = {}
        for spec in catalogue:
            self._specs[spec.name] = spec
            for alias in spec.aliases:
                self._specs[alias] = spec

        self._models: dict[str, EmbeddingModel] = {}
        self._load_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _default_loader(self, spec: ModelSpec) -> EmbeddingModel:
        return load_model(spec, models_dir=self.models_dir, text_backend=self.text_backend)

    def resolve(self, model_id: str) -> ModelSpec:
        """Look up the catalogue entry for a model name or alias.

        Raises:
            ConfigError: If the model is unknown.
        """
        spec = self._specs.get(model_id)
        if spec is None:
            known = sorted({s.name for s in self._specs.values()})
            raise ConfigError(f"Unknown embedding model '{model_id}'. Known models: {known}")
        return spec

    def is_known(self, model_id: str) -> bool:
        return model_id in self._specs

    def is_loaded(self, model_id: str) -> bool:
        return self.resolve(model_id).name in self._models

    @property
    def loaded_models(self) -> list[str]:
        return sorted(self._models)

    def _lock_for(self, name: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._load_locks.get(name)
            if lock is None:
                lock = self._load_locks[name] = threading.Lock()
            return lock

    def get_model(self, model_id: str) -> EmbeddingModel:
        """Return the loaded model for `model_id`, loading it on first use.

        Raises:
            ConfigError: If the model is unknown.
            EmbedError: kind="unavailable" if loading fails.
        """
        spec = self.resolve(model_id)
        model = self._models.get(spec.name)
        if model is not None:
            return model

        with self._lock_for(spec.name):
            model = self._models.get(spec.name)
            if model is not None:
                return model

            logger.info("Initializing %s model: %s", spec.kind, spec.name)
            try:
                model = self._loader(spec)
                model.load()
            except Exception as exc:
                raise EmbedError(
                    f"Failed to load model '{spec.name}': {exc}",
                    kind="unavailable",
                    model_id=spec.name,
                ) from exc

            self._models[spec.name] = model
            logger.info("Model '%s' ready (dim=%d)", spec.name, spec.dim)
            return model

    def decode(self, field_type: FieldType, value: Any, model_id: str | None = None) -> Any:
        """Decode a raw field value for inference.

        Text values must be strings. Image values must be base64 strings and
        are returned as raw bytes.

        Raises:
            EmbedError: kind="input" for values of the wrong shape.
        """
        if field_type == "image":
            if not isinstance(value, str):
                raise EmbedError(
                    "Image field must be a base64 string", kind="input", model_id=model_id
                )
            try:
                return base64.b64decode(value, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise EmbedError(
                    f"Failed to decode base64 image: {exc}", kind="input", model_id=model_id
                ) from exc

        if not isinstance(value, str):
            raise EmbedError("Text field must be a string", kind="input", model_id=model_id)
        return value

    def embed(self, model_id: str, field_type: FieldType, value: Any) -> np.ndarray:
        """Embed one value.

        Args:
            model_id: Model name or alias.
            field_type: "text" (UTF-8 string) or "image" (base64 string).
            value: Raw field value.

        Returns:
            1-D float32 vector of the model's fixed dimension.

        Raises:
            ConfigError: Unknown model.
            EmbedError: Malformed input, load failure or inference failure.
        """
        return self.embed_batch(model_id, field_type, [value])[0]

    def embed_batch(self, model_id: str, field_type: FieldType, values: Sequence[Any]) -> np.ndarray:
        """Embed several values of one field type with a single inference call.

        Returns:
            Float32 array of shape (len(values), dim).
        """
        spec = self.resolve(model_id)
        if spec.kind != field_type:
            raise EmbedError(
                f"Model '{spec.name}' embeds {spec.kind} fields, not {field_type}",
                kind="input",
                model_id=spec.name,
            )
        if len(values) == 0:
            return np.zeros((0, spec.dim), dtype=np.float32)

        decoded = [self.decode(field_type, value, model_id=spec.name) for value in values]
        model = self.get_model(spec.name)

        try:
            vectors = model.embed(decoded)
        except EmbedError:
            raise
        except Exception as exc:
            raise EmbedError(
                f"{spec.kind.capitalize()} embedding failed: {exc}",
                kind="runtime",
                model_id=spec.name,
            ) from exc

        vectors = np.asarray(vectors, dtype=np.float32)
        if vectors.shape != (len(values), spec.dim):
            raise EmbedError(
                f"Model '{spec.name}' returned shape {vectors.shape}, "
                f"expected ({len(values)}, {spec.dim})",
                kind="runtime",
                model_id=spec.name,
            )
        return vectors
