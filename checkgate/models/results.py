# checkgate/models/results.py

"""Result types returned by the collection, retention and aggregation operations"""
import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, field_serializer

from checkgate.models.metrics import MetricRecord, Record


class ProbeErrorKind(str, Enum):
    TIMEOUT = "timeout"
    FAILURE = "failure"
    INVALID = "invalid"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ProbeError:
    """One probe's failed outcome for one cycle"""

    probe: str
    kind: ProbeErrorKind
    message: str


@dataclass
class CycleResult:
    triggered_at: datetime
    records: list[Record] = field(default_factory=list)
    errors: list[ProbeError] = field(default_factory=list)
    written: bool = False
    write_error: str | None = None

    @property
    def partially_successful(self) -> bool:
        return bool(self.records) and bool(self.errors)


class EventKind(str, Enum):
    PROBE_FAILED = "probe_failed"
    CYCLE_FAILED = "cycle_failed"
    CYCLE_WRITE_FAILED = "cycle_write_failed"
    CYCLE_OVERRUN = "cycle_overrun"


@dataclass(frozen=True)
class CollectionEvent:
    kind: EventKind
    triggered_at: datetime
    detail: str = ""


class RetentionClass(str, Enum):
    METRICS = "metrics"
    AUDIT = "audit"


class ClassCleanupResult(BaseModel):
    retention_class: RetentionClass
    cutoff: datetime
    deleted: int = 0
    error: str | None = None


class CleanupReport(BaseModel):
    ran_at: datetime
    results: list[ClassCleanupResult]

    @property
    def total_deleted(self) -> int:
        return sum(r.deleted for r in self.results)

    def deleted_for(self, retention_class: RetentionClass) -> int:
        for result in self.results:
            if result.retention_class == retention_class:
                return result.deleted
        return 0


class RetentionStats(BaseModel):
    retention_class: RetentionClass
    cutoff: datetime
    would_delete: int


class AggregateBucket(BaseModel):
    """
    Summary of one metric over [bucket_start, bucket_end).
    Empty buckets carry sample_count=0 and NaN statistics.
    """
    bucket_start: datetime
    bucket_end: datetime
    metric: str
    min: float
    max: float
    avg: float
    sample_count: int

    @field_serializer("min", "max", "avg", when_used="json")
    def _nan_as_null(self, value: float) -> float | None:
        return None if math.isnan(value) else value


class Baseline(BaseModel):
    """Trailing-window statistics. stddev is the sample standard deviation (ddof=1)."""
    metric: str
    window_start: datetime
    window_end: datetime
    mean: float
    stddev: float
    sample_count: int
    minimum: float
    maximum: float
    p95: float
    p99: float
    trend_slope_per_day: float
    trend: Literal["increasing", "decreasing", "stable"]


class HistoricalPage(BaseModel):
    """One page of raw host records, oldest first"""
    items: list[MetricRecord]
    page: int
    page_size: int
    total_items: int
    total_pages: int
