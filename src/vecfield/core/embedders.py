"""Embedding backends that turn decoded field values into dense vectors.

Every backend implements the EmbeddingModel protocol: a batch `embed()` call
returning a float32 array of shape (len(inputs), embedding_dim).

Implementations:
- FastEmbedTextModel: ONNX text embeddings via fastembed (default backend)
- FastEmbedImageModel: ONNX image embeddings (CLIP) via fastembed
- SentenceTransformerTextModel: Text embeddings via sentence-transformers
- FakeEmbeddingModel: Test double for fast deterministic testing

Backends are constructed cheaply and load their weights lazily on the first
embed() call. Loading may download model files into `cache_dir`.
"""

import hashlib
import io
import logging
import threading
import time
from pathlib import Path
from typing import Any, Protocol

import numpy as np
from sentence_transformers import SentenceTransformer

from vecfield.core.exceptions import EmbedError
from vecfield.core.models import ModelSpec

logger = logging.getLogger(__name__)


class EmbeddingModel(Protocol):
    """Protocol for a loaded embedding model.

    Inputs are already decoded: `str` for text models, raw image `bytes` for
    image models.
    """

    def load(self) -> None:
        """Load model weights (downloading them on first use)."""
        ...  # pragma: no cover

    def embed(self, inputs: list[Any]) -> np.ndarray:
        """Embed a batch of inputs.

        Args:
            inputs: Decoded values to embed. Can be empty.

        Returns:
            Numpy float32 array of shape (len(inputs), embedding_dim).
        """
        ...  # pragma: no cover

    @property
    def embedding_dim(self) -> int:
        """Dimensionality of the produced vectors."""
        ...  # pragma: no cover


class FastEmbedTextModel:
    """Text embedding backend using fastembed's TextEmbedding (ONNX runtime).

    Example:
        model = FastEmbedTextModel("BAAI/bge-small-en-v1.5", dim=384)
        vectors = model.embed(["hello world"])  # Shape: (1, 384)
    """

    def __init__(self, model_name: str, dim: int, cache_dir: Path | None = None):
        self.model_name = model_name
        self.cache_dir = cache_dir
        self._dim = dim
        self._model: Any = None  # Lazy-loaded on first embed

    def _get_model(self) -> Any:
        if self._model is None:
            from fastembed import TextEmbedding

            logger.info(
                "Loading FastEmbed text model: %s (cache: %s)", self.model_name, self.cache_dir
            )
            self._model = TextEmbedding(
                model_name=self.model_name,
                cache_dir=str(self.cache_dir) if self.cache_dir else None,
            )
        return self._model

    def load(self) -> None:
        self._get_model()

    def embed(self, inputs: list[Any]) -> np.ndarray:
        if len(inputs) == 0:
            return np.zeros((0, self._dim), dtype=np.float32)

        embeddings = list(self._get_model().embed(inputs))
        return np.array(embeddings, dtype=np.float32)

    @property
    def embedding_dim(self) -> int:
        return self._dim


class FastEmbedImageModel:
    """Image embedding backend using fastembed's ImageEmbedding (CLIP vision).

    Accepts raw image bytes (PNG, JPEG, ...). Bytes that Pillow cannot decode
    raise EmbedError(kind="input").
    """

    def __init__(self, model_name: str, dim: int, cache_dir: Path | None = None):
        self.model_name = model_name
        self.cache_dir = cache_dir
        self._dim = dim
        self._model: Any = None

    def _get_model(self) -> Any:
        if self._model is None:
            from fastembed import ImageEmbedding

            logger.info(
                "Loading FastEmbed image model: %s (cache: %s)", self.model_name, self.cache_dir
            )
            self._model = ImageEmbedding(
                model_name=self.model_name,
                cache_dir=str(self.cache_dir) if self.cache_dir else None,
            )
        return self._model

    def _open_image(self, data: bytes) -> Any:
        from PIL import Image, UnidentifiedImageError

        try:
            image = Image.open(io.BytesIO(data))
            image.load()
        except (UnidentifiedImageError, OSError) as exc:
            raise EmbedError(
                f"Could not decode image bytes: {exc}", kind="input", model_id=self.model_name
            ) from exc
        return image

    def load(self) -> None:
        self._get_model()

    def embed(self, inputs: list[Any]) -> np.ndarray:
        if len(inputs) == 0:
            return np.zeros((0, self._dim), dtype=np.float32)

        images = [self._open_image(data) for data in inputs]
        embeddings = list(self._get_model().embed(images))
        return np.array(embeddings, dtype=np.float32)

    @property
    def embedding_dim(self) -> int:
        return self._dim


class SentenceTransformerTextModel:
    """Text embedding backend using the sentence-transformers library.

    Alternative to FastEmbedTextModel for deployments that already run
    PyTorch. Produces the same catalogue dimensions.

    Note:
        Device selection (CPU/CUDA/MPS) is automatic.
    """

    def __init__(
        self,
        model_name: str,
        dim: int,
        cache_dir: Path | None = None,
        batch_size: int = 32,
        normalize_embeddings: bool = True,
    ):
        self.model_name = model_name
        self.cache_dir = cache_dir
        self.batch_size = batch_size
        self.normalize_embeddings = normalize_embeddings
        self._dim = dim
        self._model: SentenceTransformer | None = None

    def _get_model(self) -> SentenceTransformer:
        if self._model is None:
            logger.info("Loading sentence-transformers model: %s", self.model_name)
            self._model = SentenceTransformer(
                self.model_name,
                cache_folder=str(self.cache_dir) if self.cache_dir else None,
            )
        return self._model

    def load(self) -> None:
        self._get_model()

    def embed(self, inputs: list[Any]) -> np.ndarray:
        if len(inputs) == 0:
            return np.zeros((0, self._dim), dtype=np.float32)

        embeddings = self._get_model().encode(
            inputs,
            batch_size=self.batch_size,
            show_progress_bar=False,
            normalize_embeddings=self.normalize_embeddings,
            convert_to_numpy=True,
        )
        if not isinstance(embeddings, np.ndarray):
            embeddings = np.array(embeddings, dtype=np.float32)
        return embeddings.astype(np.float32)

    @property
    def embedding_dim(self) -> int:
        return self._dim


class FakeEmbeddingModel:
    """Test double for EmbeddingModel that produces deterministic embeddings.

    The fake embeddings are:
    1. Deterministic: same input always produces the same vector
    2. Different: different inputs produce different vectors
    3. L2-normalized unit vectors
    4. Fast: no model loading

    Instrumentation for tests:
    - `call_count` / `input_count`: number of embed() calls and inputs seen
    - `delay`: seconds to sleep per call, simulating inference latency
    - `fail_with`: exception raised by every embed() call while set

    Example:
        model = FakeEmbeddingModel(embedding_dim=8)
        vectors = model.embed(["text1", "text2"])  # (2, 8) instantly
    """

    def __init__(self, embedding_dim: int = 384, delay: float = 0.0):
        self._embedding_dim = embedding_dim
        self.delay = delay
        self.fail_with: Exception | None = None
        self.call_count = 0
        self.input_count = 0
        self.load_count = 0
        self._lock = threading.Lock()

    def load(self) -> None:
        with self._lock:
            self.load_count += 1

    def embed(self, inputs: list[Any]) -> np.ndarray:
        with self._lock:
            self.call_count += 1
            self.input_count += len(inputs)

        if self.delay:
            time.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with

        if len(inputs) == 0:
            return np.zeros((0, self._embedding_dim), dtype=np.float32)

        embeddings = []
        for value in inputs:
            data = value if isinstance(value, bytes) else str(value).encode("utf-8")

            # SHA256 seeds a generator for stable, uniformly distributed values
            digest = hashlib.sha256(data).digest()
            rng = np.random.default_rng(seed=int.from_bytes(digest[:8], byteorder="big"))
            embedding = rng.uniform(-1.0, 1.0, size=self._embedding_dim).astype(np.float32)
            embeddings.append(embedding / np.linalg.norm(embedding))

        return np.array(embeddings, dtype=np.float32)

    @property
    def embedding_dim(self) -> int:
        return self._embedding_dim


def load_model(
    spec: ModelSpec,
    models_dir: Path | None = None,
    text_backend: str = "fastembed",
) -> EmbeddingModel:
    """Construct the backend for a catalogue entry.

    Args:
        spec: Catalogue entry of the model to load.
        models_dir: Directory where model weights are downloaded and cached.
        text_backend: "fastembed" (ONNX) or "sentence-transformers".

    Returns:
        An EmbeddingModel whose weights load on first use.
    """
    if spec.kind == "image":
        return FastEmbedImageModel(spec.name, dim=spec.dim, cache_dir=models_dir)
    if text_backend == "sentence-transformers":
        return SentenceTransformerTextModel(spec.name, dim=spec.dim, cache_dir=models_dir)
    return FastEmbedTextModel(spec.name, dim=spec.dim, cache_dir=models_dir)
