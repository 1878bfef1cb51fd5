"""Demonstration of automatic field embedding with VectorsExtension.

This example shows how to:
1. Register an application whose `content` field is embedded on write
2. Insert records and watch repeated content come from the shared cache
3. Turn a natural-language query into a query vector
4. Backfill records that were stored before the mapping existed

The first run downloads BAAI/bge-small-en-v1.5 (~130MB) into tmp/vectors/models.
Run it again to see cold cache hits from SQLite and no recomputation.
"""

import asyncio
import logging
import time
from pathlib import Path

from vecfield import Settings, VectorsExtension
from vecfield.core.store import InMemoryRecordStore

# Configure logging to see model loading, cache and backfill operations
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

MODEL = "BAAI/bge-small-en-v1.5"

APP_CONFIG = {
    "fields": [{"source": "content", "target": "embedding", "model": MODEL}],
    "tables": ["documents"],
}


async def main() -> None:
    print("=" * 80)
    print("VECTORS EXTENSION DEMONSTRATION")
    print("=" * 80)

    settings = Settings(root_dir=Path("tmp/vectors"))
    store = InMemoryRecordStore()

    # Records written before the app had a vector mapping
    store.put("docs", "documents", {"id": "old-1", "content": "The quick brown fox"})
    store.put("docs", "documents", {"id": "old-2", "content": "Lazy dogs sleep all day"})

    extension = VectorsExtension.from_settings(settings, store=store)
    print(f"\nCache file: {settings.resolved_cache_path}")
    print(f"Models dir: {settings.resolved_models_dir}")

    try:
        print("\n[1] Registering app 'docs' (backfill starts in the background)...")
        await extension.register_app("docs", APP_CONFIG)

        print("\n[2] First insert (loads the model, computes the embedding)...")
        start = time.time()
        stored = await extension.write(
            "docs", "documents", {"id": "doc-1", "content": "hello world"}
        )
        print(f"    Vector length: {len(stored['embedding'])}")
        print(f"    Time: {time.time() - start:.2f}s")

        print("\n[3] Second insert with identical content (cache hit)...")
        start = time.time()
        await extension.write("docs", "documents", {"id": "doc-2", "content": "hello world"})
        print(f"    Time: {time.time() - start:.4f}s")

        print("\n[4] Ten concurrent inserts of new content (one inference)...")
        await asyncio.gather(
            *[
                extension.write("docs", "documents", {"id": f"burst-{i}", "content": "burst"})
                for i in range(10)
            ]
        )

        print("\n[5] Query with vector_text...")
        query = await extension.query(
            "docs", {"vector_text": "greeting", "vector_model": MODEL, "limit": 3}
        )
        print(f"    Query keys: {sorted(query)}")
        print(f"    Vector head: {[round(x, 4) for x in query['vector'][:4]]}")

        print("\n[6] Waiting for the backfill...")
        report = await extension.backfill.wait("docs")
        print(f"    Scanned: {report.scanned}, updated: {report.updated}, failed: {report.failed}")

        status = extension.status()
        info = status["cache"]
        print("\n    Cache stats:")
        print(f"      Hot hits:  {info['hits_hot']}")
        print(f"      Cold hits: {info['hits_cold']}")
        print(f"      Misses:    {info['misses']}")
        print(f"      Cold size: {info['cold_size']} (on disk)")
        print(f"      Hit rate:  {info['hit_rate']:.1%}")
        print(f"    Loaded models: {status['loaded_models']}")
    finally:
        await extension.aclose()

    print("\nRun this script again - every embedding will come from the cache!")
    print("=" * 80)


if __name__ == "__main__":
    asyncio.run(main())
