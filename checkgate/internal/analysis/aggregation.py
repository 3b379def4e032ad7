# checkgate/internal/analysis/aggregation.py

"""
Historical aggregation for the query layer.

summarize() cuts a time range into fixed-size buckets and reports min/max/avg per
bucket; baseline() computes trailing-window statistics used for capacity and
anomaly judgments. Both recompute from stored rows on every call.
"""

import asyncio
import logging
import math
from collections import OrderedDict
from datetime import datetime, timedelta

import numpy as np

from checkgate.internal.analysis.catalog import MetricDefinition, resolve_metric, source_of
from checkgate.internal.errors import InsufficientDataError, StoreError, ValidationError
from checkgate.internal.storage.base import MetricsStore
from checkgate.internal.utils.clock import Clock, SystemClock, to_millis, truncate_to_millis
from checkgate.models.results import AggregateBucket, Baseline, HistoricalPage

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 1000


class AggregationEngine:
    """
    Stateless aggregation over a MetricsStore.

    Variance is always the SAMPLE variance (ddof=1).
    """

    def __init__(
        self,
        store: MetricsStore,
        clock: Clock | None = None,
        max_span_days: int = 30,
        query_timeout: float = 30.0,
        trend_tolerance_per_day: float = 0.5,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.max_span = timedelta(days=max_span_days)
        self.query_timeout = query_timeout
        self.trend_tolerance_per_day = trend_tolerance_per_day

    def validate_range(self, start: datetime, end: datetime) -> tuple[datetime, datetime]:
        """UTC bounds at millisecond resolution; a range narrower than 1 ms is empty."""
        start, end = truncate_to_millis(start), truncate_to_millis(end)
        if end <= start:
            raise ValidationError("End time must be after start time")
        if end - start > self.max_span:
            raise ValidationError(f"Time range cannot exceed {self.max_span.days} days")
        return start, end

    async def bounded_query(self, awaitable):
        """Await a store call under query_timeout; a timeout surfaces as StoreError."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.query_timeout)
        except asyncio.TimeoutError:
            raise StoreError(f"query timed out after {self.query_timeout}s") from None

    async def _samples(
        self,
        definition: MetricDefinition,
        start: datetime,
        end: datetime,
        source: str | None,
    ) -> list[tuple[int, str, float]]:
        """(timestamp_ms, source, value) for every record in [start, end), in a fixed order"""
        records = await self.bounded_query(self.store.query(definition.name, start, end, source))
        start_ms, end_ms = to_millis(start), to_millis(end)
        samples = []
        for record in records:
            ts = to_millis(record.timestamp)
            if not start_ms <= ts < end_ms:
                continue
            value = definition.value_of(record)
            if value is None or math.isnan(value):
                continue
            samples.append((ts, source_of(record), value))
        samples.sort()
        return samples

    async def summarize(
        self,
        metric: str,
        start: datetime,
        end: datetime,
        bucket_size_minutes: int,
        source: str | None = None,
    ) -> list[AggregateBucket]:
        """
        Partition [start, end) into half-open buckets of bucket_size_minutes aligned
        to start; the final bucket is cut short at end. Buckets with no samples are
        still returned, with sample_count=0 and NaN statistics.
        """
        definition = resolve_metric(metric)
        start, end = self.validate_range(start, end)
        if bucket_size_minutes < 1:
            raise ValidationError("bucket_size_minutes must be at least 1")

        start_ms, end_ms = to_millis(start), to_millis(end)
        size_ms = bucket_size_minutes * 60_000
        count = -(-(end_ms - start_ms) // size_ms)

        values: list[list[float]] = [[] for _ in range(count)]
        for ts, _, value in await self._samples(definition, start, end, source):
            values[(ts - start_ms) // size_ms].append(value)

        buckets = []
        for i, bucket_values in enumerate(values):
            bucket_start = start + timedelta(milliseconds=i * size_ms)
            bucket_end = min(start + timedelta(milliseconds=(i + 1) * size_ms), end)
            if bucket_values:
                arr = np.asarray(bucket_values, dtype=float)
                low, high, avg = float(np.min(arr)), float(np.max(arr)), float(np.mean(arr))
            else:
                low = high = avg = float("nan")
            buckets.append(AggregateBucket(
                bucket_start=bucket_start,
                bucket_end=bucket_end,
                metric=metric,
                min=low,
                max=high,
                avg=avg,
                sample_count=len(bucket_values),
            ))
        return buckets

    async def baseline(self, metric: str, days: int, source: str | None = None) -> Baseline:
        """
        Statistics over the trailing days*24h window ending now.

        Raises:
            InsufficientDataError: fewer than 2 samples in the window
        """
        definition = resolve_metric(metric)
        if days < 1:
            raise ValidationError("days must be at least 1")
        if timedelta(days=days) > self.max_span:
            raise ValidationError(f"Baseline window cannot exceed {self.max_span.days} days")

        window_end = self.clock.now()
        window_start = window_end - timedelta(days=days)
        samples = await self._samples(definition, window_start, window_end, source)
        if len(samples) < 2:
            raise InsufficientDataError(
                f"Baseline for {metric} needs at least 2 samples, found {len(samples)}",
                sample_count=len(samples),
            )

        values = np.asarray([v for _, _, v in samples], dtype=float)
        days_since_start = np.asarray(
            [(ts - to_millis(window_start)) / 86_400_000 for ts, _, _ in samples], dtype=float
        )
        slope = self._trend_slope(days_since_start, values)
        if slope > self.trend_tolerance_per_day:
            trend = "increasing"
        elif slope < -self.trend_tolerance_per_day:
            trend = "decreasing"
        else:
            trend = "stable"

        logger.info(f"Baseline for {metric} over {days} days: {len(values)} samples analyzed")
        return Baseline(
            metric=metric,
            window_start=window_start,
            window_end=window_end,
            mean=float(np.mean(values)),
            stddev=float(np.std(values, ddof=1)),
            sample_count=len(values),
            minimum=float(np.min(values)),
            maximum=float(np.max(values)),
            p95=float(np.percentile(values, 95)),
            p99=float(np.percentile(values, 99)),
            trend_slope_per_day=slope,
            trend=trend,
        )

    async def history(
        self,
        start: datetime,
        end: datetime,
        hostname: str | None = None,
        page: int = 1,
        page_size: int = 100,
    ) -> HistoricalPage:
        """
        Raw host records in [start, end), oldest first, one page at a time.
        """
        start, end = self.validate_range(start, end)
        if page < 1:
            raise ValidationError("page must be at least 1")
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValidationError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")

        records, total = await self.bounded_query(self.store.query_page(
            start, end, hostname, offset=(page - 1) * page_size, limit=page_size,
        ))
        return HistoricalPage(
            items=records,
            page=page,
            page_size=page_size,
            total_items=total,
            total_pages=-(-total // page_size),
        )

    @staticmethod
    def _trend_slope(x: np.ndarray, y: np.ndarray) -> float:
        """Least-squares slope of y over x; 0 when all samples share one timestamp."""
        if np.ptp(x) == 0:
            return 0.0
        slope, _ = np.polyfit(x, y, 1)
        return float(slope)


class SummaryCache:
    """
    Time-boxed LRU cache in front of AggregationEngine.summarize.

    Only summaries whose last bucket has already ended are cached; a range that
    still contains the in-progress bucket always goes to the engine. Expired
    entries are dropped on every insert and at most max_entries are kept.
    """

    def __init__(self, engine: AggregationEngine, ttl_seconds: float = 300.0, max_entries: int = 256):
        self.engine = engine
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, max_entries)
        self._entries: OrderedDict[tuple, tuple[float, list[AggregateBucket]]] = OrderedDict()

    def __len__(self):
        return len(self._entries)

    def _prune(self, now: float):
        expired = [key for key, (stored_at, _) in self._entries.items() if now - stored_at >= self.ttl_seconds]
        for key in expired:
            del self._entries[key]

    async def summarize(self, metric, start, end, bucket_size_minutes, source=None):
        key = (metric, to_millis(start), to_millis(end), bucket_size_minutes, source)
        clock = self.engine.clock
        cached = self._entries.get(key)
        if cached and clock.monotonic() - cached[0] < self.ttl_seconds:
            self._entries.move_to_end(key)
            return [b.model_copy() for b in cached[1]]

        buckets = await self.engine.summarize(metric, start, end, bucket_size_minutes, source)
        now = clock.monotonic()
        self._entries.pop(key, None)
        self._prune(now)
        if self.ttl_seconds > 0 and buckets and buckets[-1].bucket_end <= clock.now():
            self._entries[key] = (now, buckets)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
        return [b.model_copy() for b in buckets]

    def clear(self):
        self._entries.clear()
