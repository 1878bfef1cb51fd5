"""Exception hierarchy for vecfield.

- ConfigError: bad field mappings or unknown models (fatal at app registration)
- CacheError: embedding cache storage failures (callers degrade to a cache miss)
- EmbedError: model load, runtime or input-decoding failures for one value
- PipelineError: what write/query entry points raise, wrapping the above
"""

from typing import Literal

EmbedErrorKind = Literal["input", "runtime", "unavailable"]


class VectorsError(Exception):
    """Base exception for all vecfield errors."""


class ConfigError(VectorsError):
    """Invalid application configuration.

    Raised when:
    - A mapping references a model that is not in the catalogue
    - A mapping's field_type does not match the model kind
    - Two mappings write the same target field
    """


class CacheError(VectorsError):
    """Embedding cache storage could not be read or written."""


class EmbedError(VectorsError):
    """Embedding a single value failed.

    Attributes:
        kind: "input" for malformed input (client error, not retryable),
            "runtime" for inference failures, "unavailable" when the model
            could not be loaded.
        model_id: Model that was asked to embed the value.
    """

    def __init__(self, message: str, kind: EmbedErrorKind = "runtime", model_id: str | None = None):
        super().__init__(message)
        self.kind = kind
        self.model_id = model_id

    @property
    def retryable(self) -> bool:
        return self.kind != "input"


class PipelineError(VectorsError):
    """A write or query could not be processed.

    Attributes:
        mapping: Field mapping that failed, when the failure is tied to one.
        index: Position of the failed record within a batch write.
        status_code: HTTP-equivalent status for the request layer
            (400 client error, 404 unknown app, 503 retryable server error).
    """

    def __init__(self, message: str, mapping=None, status_code: int = 500, index: int | None = None):
        super().__init__(message)
        self.mapping = mapping
        self.status_code = status_code
        self.index = index

    @property
    def retryable(self) -> bool:
        return self.status_code == 503
