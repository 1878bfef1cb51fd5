"""Background backfill of target vectors for pre-existing records.

When an application is (re)registered, records written before its mappings
existed (or whose embedding failed earlier) lack their target vectors. The
backfill scans every configured table, selects records where any target is
missing or null, embeds them through the pipeline's write logic (sharing the
cache and coalescer with live traffic) and writes the missing targets back.

Safety rails:
- Runs as a background asyncio task; registration never waits for it
- Records are processed in batches, yielding to the event loop between
  batches so request handling keeps priority
- A failing record is logged and skipped; it stays eligible for the next run
- Targets are written with a conditional update: a record changed by a live
  write since the scan is left alone (counted as superseded)
- Re-registration restarts a running backfill with the new configuration
- No persisted cursor: each run rescans, and records that already have their
  targets are filtered out, so re-running is a no-op scan
"""

import asyncio
import logging
from typing import Any

from vecfield.core.exceptions import PipelineError
from vecfield.core.models import AppConfig, BackfillCursor, BackfillReport
from vecfield.core.pipeline import FieldMappingPipeline, is_missing
from vecfield.core.store import RecordStore

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50
DEFAULT_BATCH_DELAY_SECONDS = 0.0


def needs_backfill(config: AppConfig, record: dict[str, Any]) -> bool:
    """True if any mapping has a source value but no target vector."""
    return any(
        is_missing(record.get(mapping.target)) and not is_missing(record.get(mapping.source))
        for mapping in config.fields
    )


class BackfillScheduler:
    """Runs and tracks backfill tasks, one per application.

    Args:
        pipeline: Pipeline whose write logic embeds the records.
        store: Host record storage.
        batch_size: Records embedded between two yields to the event loop.
        batch_delay: Seconds to sleep between batches.

    Example:
        scheduler = BackfillScheduler(pipeline, store)
        scheduler.start("docs")          # returns immediately
        report = await scheduler.wait("docs")
    """

    def __init__(
        self,
        pipeline: FieldMappingPipeline,
        store: RecordStore,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_delay: float = DEFAULT_BATCH_DELAY_SECONDS,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self.pipeline = pipeline
        self.store = store
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancelled: set[asyncio.Task] = set()

    def _scan_missing(self, app_id: str, table: str, config: AppConfig) -> tuple[int, list[dict[str, Any]]]:
        scanned = 0
        missing = []
        for record in self.store.scan(app_id, table):
            scanned += 1
            if needs_backfill(config, record):
                missing.append(record)
        return scanned, missing

    async def _backfill_record(
        self, app_id: str, table: str, config: AppConfig, record: dict[str, Any]
    ) -> bool:
        """Embed a scanned record and write back only its missing targets.

        The write is conditional on the sources and targets still holding the
        scanned values, so a live write that landed meanwhile is never
        overwritten with stale content.

        Returns:
            False if the record changed (or disappeared) since the scan.
        """
        updated = await self.pipeline.vectorize(app_id, record, only_missing=True)
        changes = {
            target: updated[target]
            for target in config.targets
            if is_missing(record.get(target)) and not is_missing(updated.get(target))
        }
        if not changes:
            return True

        expected = {mapping.source: record.get(mapping.source) for mapping in config.fields}
        expected.update({target: record.get(target) for target in changes})
        return await asyncio.to_thread(
            self.store.update_if, app_id, table, str(record["id"]), expected, changes
        )

    async def _backfill_table(self, app_id: str, table: str, config: AppConfig, report: BackfillReport) -> None:
        cursor = BackfillCursor(app_id=app_id, table=table)
        report.cursors.append(cursor)

        scanned, missing = await asyncio.to_thread(self._scan_missing, app_id, table, config)
        report.scanned += scanned
        report.skipped += scanned - len(missing)
        if not missing:
            logger.debug("Backfill %s/%s: nothing to do (%d records)", app_id, table, scanned)
            return

        logger.info("Backfill %s/%s: %d of %d records missing vectors", app_id, table, len(missing), scanned)
        for start in range(0, len(missing), self.batch_size):
            for record in missing[start : start + self.batch_size]:
                cursor.scanned += 1
                cursor.last_record_id = str(record.get("id"))
                try:
                    applied = await self._backfill_record(app_id, table, config, record)
                except PipelineError as exc:
                    report.failed += 1
                    logger.warning(
                        "Backfill %s/%s: skipping record %s: %s", app_id, table, record.get("id"), exc
                    )
                    continue
                except Exception:
                    report.failed += 1
                    logger.exception(
                        "Backfill %s/%s: failed to store record %s", app_id, table, record.get("id")
                    )
                    continue
                if applied:
                    report.updated += 1
                else:
                    report.superseded += 1
                    logger.debug(
                        "Backfill %s/%s: record %s changed while embedding, left to the live write",
                        app_id,
                        table,
                        record.get("id"),
                    )

            await asyncio.sleep(self.batch_delay)

    async def backfill(self, app_id: str) -> BackfillReport:
        """Embed every record of the app that is missing a target vector.

        Returns:
            Counts of scanned, updated, skipped (already complete),
            superseded (changed by a live write meanwhile) and failed records,
            plus per-table cursors.

        Raises:
            PipelineError: If the app is not registered.
        """
        config = self.pipeline.config_for(app_id)
        report = BackfillReport(app_id=app_id)

        for table in config.tables:
            await self._backfill_table(app_id, table, config, report)

        logger.info(
            "Backfill %s finished: scanned=%d updated=%d skipped=%d superseded=%d failed=%d",
            app_id,
            report.scanned,
            report.updated,
            report.skipped,
            report.superseded,
            report.failed,
        )
        return report

    def start(self, app_id: str) -> asyncio.Task:
        """Start the backfill for `app_id` in the background.

        Returns the already running task if a backfill for the app is in
        progress. Must be called from a running event loop.
        """
        task = self._tasks.get(app_id)
        if task is not None and not task.done():
            return task

        task = asyncio.get_running_loop().create_task(
            self.backfill(app_id), name=f"vecfield-backfill-{app_id}"
        )
        self._tasks[app_id] = task
        return task

    def restart(self, app_id: str) -> asyncio.Task:
        """Cancel any running backfill for `app_id` and start a fresh one.

        Used on re-registration: a running task selected its records with
        the previous configuration and would miss targets of new mappings.
        """
        task = self._tasks.get(app_id)
        if task is not None and not task.done():
            logger.info("Restarting backfill for %s with its new configuration", app_id)
            task.cancel()
            self._cancelled.add(task)
            task.add_done_callback(self._cancelled.discard)
        self._tasks.pop(app_id, None)
        return self.start(app_id)

    def is_running(self, app_id: str) -> bool:
        task = self._tasks.get(app_id)
        return task is not None and not task.done()

    async def wait(self, app_id: str) -> BackfillReport | None:
        """Wait for the app's current backfill and return its report."""
        task = self._tasks.get(app_id)
        if task is None:
            return None
        return await task

    async def stop(self) -> None:
        """Cancel every running backfill and wait for them to finish."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        tasks.extend(self._cancelled)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
