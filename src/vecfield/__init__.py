"""
vecfield: Automatic vector embedding for record fields.

Configured text and image fields are embedded on write, and natural-language
queries are embedded on read, with a content-addressed cache shared by every
application and coalescing of concurrent identical requests.

- vecfield.core: Registry, cache, coalescer, pipeline and backfill primitives
- vecfield.extension: VectorsExtension wiring them together for a host
"""

from vecfield.core import AppConfig, FieldMapping, PipelineError
from vecfield.extension import VectorsExtension
from vecfield.settings import Settings

__all__ = ["AppConfig", "FieldMapping", "PipelineError", "Settings", "VectorsExtension"]

__version__ = "0.1.0"
