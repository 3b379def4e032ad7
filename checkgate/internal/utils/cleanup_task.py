# checkgate/internal/utils/cleanup_task.py

"""
Data retention cleanup.
Runs daily (3 AM by default) and deletes records older than each retention class's horizon.
"""

import asyncio
import logging
from datetime import datetime, time, timedelta

from checkgate.internal.errors import StoreError
from checkgate.internal.storage.base import MetricsStore
from checkgate.internal.utils.clock import Clock, SystemClock
from checkgate.models.metrics import AuditEntry
from checkgate.models.results import (
    ClassCleanupResult,
    CleanupReport,
    RetentionClass,
    RetentionStats,
)

logger = logging.getLogger(__name__)

DEFAULT_HORIZONS = {
    RetentionClass.METRICS: timedelta(days=90),
    RetentionClass.AUDIT: timedelta(days=365),
}


class RetentionManager:
    """
    Deletes expired records per retention class and audits every run.

    Cutoffs never move backwards between runs, so a later run can not bring
    back anything an earlier run removed.
    """

    def __init__(
        self,
        store: MetricsStore,
        horizons: dict[RetentionClass, timedelta] | None = None,
        clock: Clock | None = None,
        query_timeout: float = 300.0,
    ):
        self.store = store
        self.horizons = dict(horizons or DEFAULT_HORIZONS)
        self.clock = clock or SystemClock()
        self.query_timeout = query_timeout
        self._last_cutoffs: dict[RetentionClass, datetime] = {}

    @classmethod
    def from_days(cls, store: MetricsStore, metrics_days: int = 90, audit_days: int = 365, **kwargs):
        return cls(
            store,
            horizons={
                RetentionClass.METRICS: timedelta(days=metrics_days),
                RetentionClass.AUDIT: timedelta(days=audit_days),
            },
            **kwargs,
        )

    def cutoff_for(self, retention_class: RetentionClass, now: datetime) -> datetime:
        cutoff = now - self.horizons[retention_class]
        previous = self._last_cutoffs.get(retention_class)
        if previous and previous > cutoff:
            return previous
        return cutoff

    async def run_cleanup(self) -> CleanupReport:
        now = self.clock.now()
        results = []
        for retention_class in self.horizons:
            cutoff = self.cutoff_for(retention_class, now)
            result = ClassCleanupResult(retention_class=retention_class, cutoff=cutoff)
            try:
                result.deleted = await asyncio.wait_for(
                    self.store.delete_older_than(retention_class, cutoff),
                    timeout=self.query_timeout,
                )
                self._last_cutoffs[retention_class] = cutoff
            except asyncio.TimeoutError:
                result.error = f"delete timed out after {self.query_timeout}s"
            except StoreError as e:
                result.error = str(e)

            if result.error:
                logger.error(f"Retention cleanup of '{retention_class.value}' failed: {result.error}")
            else:
                logger.info(
                    f"Deleted {result.deleted} '{retention_class.value}' rows older than {cutoff.isoformat()}"
                )
            results.append(result)

        report = CleanupReport(ran_at=now, results=results)
        await self._audit(report)
        return report

    async def _audit(self, report: CleanupReport):
        entry = AuditEntry(
            timestamp=report.ran_at,
            action="CLEANUP",
            resource="DATABASE",
            success=all(r.error is None for r in report.results),
            details={
                r.retention_class.value: {
                    "cutoff": r.cutoff.isoformat(),
                    "deleted": r.deleted,
                    "error": r.error,
                }
                for r in report.results
            },
        )
        try:
            await asyncio.wait_for(self.store.write_audit(entry), timeout=self.query_timeout)
        except (StoreError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to write cleanup audit entry: {e}")

    async def preview(self) -> list[RetentionStats]:
        """What run_cleanup would delete right now, without deleting anything."""
        now = self.clock.now()
        stats = []
        for retention_class in self.horizons:
            cutoff = self.cutoff_for(retention_class, now)
            try:
                count = await asyncio.wait_for(
                    self.store.count_older_than(retention_class, cutoff),
                    timeout=self.query_timeout,
                )
            except asyncio.TimeoutError:
                raise StoreError(f"count of '{retention_class.value}' timed out after {self.query_timeout}s") from None
            stats.append(RetentionStats(retention_class=retention_class, cutoff=cutoff, would_delete=count))
        return stats


def seconds_until(now: datetime, hour: int) -> float:
    """Seconds from now until the next occurrence of hour:00 (local to now's tz)."""
    target_time = datetime.combine(now.date(), time(hour=hour, minute=0), tzinfo=now.tzinfo)
    # If it's already past the hour today, target tomorrow
    if now >= target_time:
        target_time += timedelta(days=1)
    return (target_time - now).total_seconds()


async def run_daily_cleanup(manager: RetentionManager, cleanup_hour: int = 3, maintenance=None):
    """
    Background task that runs cleanup once a day at cleanup_hour.

    Args:
        manager: The retention manager to run
        cleanup_hour: Hour of day (local time) to run at
        maintenance: Optional coroutine function run before each cleanup
            (e.g. creating upcoming partitions)
    """
    logger.info("Data retention cleanup task started")

    while True:
        try:
            now = manager.clock.now().astimezone()
            sleep_seconds = seconds_until(now, cleanup_hour)
            logger.info(f"Next cleanup in {sleep_seconds / 3600:.1f} hours")
            await manager.clock.sleep(sleep_seconds)

            if maintenance:
                await maintenance()
            report = await manager.run_cleanup()
            logger.info(f"Cleanup completed: {report.total_deleted} rows removed")

        except asyncio.CancelledError:
            logger.info("Cleanup task cancelled")
            raise
        except Exception as e:
            logger.exception(f"Error in cleanup task: {e}")
            # Wait 1 hour before retrying on error
            await manager.clock.sleep(3600)
