"""
Shared fixtures: an in-memory metrics store, a controllable clock and scripted probes.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from checkgate.internal.analysis.catalog import resolve_metric
from checkgate.internal.collector.probes import Snapshot, SourceProbe
from checkgate.internal.errors import StoreError
from checkgate.internal.storage.base import MetricsStore
from checkgate.internal.utils.clock import Clock
from checkgate.models.metrics import AuditEntry, ClusterRecord, MetricRecord
from checkgate.models.results import RetentionClass

GIB = 1024 ** 3
T0 = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


class FakeClock(Clock):
    """Wall and monotonic time that only move when told to (or when slept on)."""

    def __init__(self, start: datetime = T0):
        self._now = start
        self._monotonic = 0.0
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float):
        self._now += timedelta(seconds=seconds)
        self._monotonic += seconds

    def set(self, value: datetime):
        self._now = value

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(max(0.0, seconds))
        await asyncio.sleep(0)


class InMemoryMetricsStore(MetricsStore):
    def __init__(self):
        self.records: list[MetricRecord | ClusterRecord] = []
        self.audit: list[AuditEntry] = []
        self.write_calls = 0
        self.query_calls = 0
        # Number of upcoming write_batch calls that fail
        self.fail_writes = 0
        self.write_exception: Exception | None = None
        self.delete_errors: dict[RetentionClass, Exception] = {}
        # Seconds every read waits before answering
        self.query_delay = 0.0

    async def _delay(self):
        if self.query_delay:
            await asyncio.sleep(self.query_delay)

    async def write_batch(self, records):
        self.write_calls += 1
        if self.write_exception is not None:
            raise self.write_exception
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise StoreError("connection reset")
        self.records.extend(records)

    async def query(self, metric, start, end, source=None):
        self.query_calls += 1
        await self._delay()
        family = resolve_metric(metric).family
        wanted = MetricRecord if family == "system" else ClusterRecord
        matches = []
        for record in self.records:
            if not isinstance(record, wanted) or not start <= record.timestamp < end:
                continue
            name = record.hostname if wanted is MetricRecord else record.cluster_name
            if source is None or name == source:
                matches.append(record)
        return sorted(matches, key=lambda r: r.timestamp)

    async def query_page(self, start, end, hostname=None, offset=0, limit=100):
        self.query_calls += 1
        await self._delay()
        matches = sorted(
            (r for r in self.records if isinstance(r, MetricRecord) and start <= r.timestamp < end
             and (hostname is None or r.hostname == hostname)),
            key=lambda r: (r.timestamp, r.hostname),
        )
        return matches[offset:offset + limit], len(matches)

    async def delete_older_than(self, retention_class, cutoff):
        if retention_class in self.delete_errors:
            raise self.delete_errors[retention_class]
        if retention_class == RetentionClass.AUDIT:
            before = len(self.audit)
            self.audit = [e for e in self.audit if e.timestamp >= cutoff]
            return before - len(self.audit)
        before = len(self.records)
        # Child rows (disks, network, processes) live inside the record and go with it
        self.records = [r for r in self.records if r.timestamp >= cutoff]
        return before - len(self.records)

    async def count_older_than(self, retention_class, cutoff):
        await self._delay()
        rows = self.audit if retention_class == RetentionClass.AUDIT else self.records
        return sum(1 for r in rows if r.timestamp < cutoff)

    async def write_audit(self, entry):
        self.audit.append(entry)

    async def latest(self, hostname=None):
        await self._delay()
        hosts = [r for r in self.records if isinstance(r, MetricRecord)
                 and (hostname is None or r.hostname == hostname)]
        return max(hosts, key=lambda r: r.timestamp, default=None)


def system_data(hostname: str = "host-a", **sections: Any) -> dict[str, Any]:
    data = {
        "hostname": hostname,
        "cpu": {
            "overall_utilization": 42.5,
            "core_utilization": [40.0, 45.0],
            "core_count": 2,
            "logical_processors": 2,
            "frequency_mhz": 2400.0,
        },
        "memory": {
            "total_physical_bytes": 16 * GIB,
            "available_physical_bytes": 4 * GIB,
        },
        "disks": [{"drive_id": "/", "total_bytes": 100 * GIB, "free_bytes": 50 * GIB}],
        "network": [{"interface_name": "eth0", "bytes_recv_per_sec": 1000, "bytes_sent_per_sec": 500}],
        "processes": {
            "total_processes": 3,
            "total_threads": 12,
            "samples": [
                {"pid": 1, "name": "init", "cpu_utilization": 0.1, "memory_bytes": 10},
                {"pid": 7, "name": "db", "cpu_utilization": 30.0, "memory_bytes": 3000},
                {"pid": 9, "name": "web", "cpu_utilization": 12.0, "memory_bytes": 2000},
            ],
        },
    }
    data.update(sections)
    return data


def cluster_data(cluster_name: str = "kind", **fields: Any) -> dict[str, Any]:
    data = {
        "cluster_name": cluster_name,
        "nodes_total": 3,
        "nodes_ready": 3,
        "pods_total": 10,
        "pods_running": 8,
        "pods_pending": 1,
        "pods_failed": 1,
        "cpu_requests": 1.5,
        "cpu_limits": 4.0,
        "memory_requests_bytes": 2 * GIB,
        "memory_limits_bytes": 4 * GIB,
    }
    data.update(fields)
    return data


def system_snapshot(hostname: str = "host-a", **sections: Any) -> Snapshot:
    return Snapshot(source="system", kind="system", collected_at=T0, data=system_data(hostname, **sections))


def cluster_snapshot(cluster_name: str = "kind", **fields: Any) -> Snapshot:
    return Snapshot(source=f"cluster:{cluster_name}", kind="cluster", collected_at=T0,
                    data=cluster_data(cluster_name, **fields))


class ScriptedProbe(SourceProbe):
    """
    Probe whose behaviour is fixed up front: return a snapshot, raise, or hang.
    """

    def __init__(self, name: str, snapshot: Snapshot | None = None, error: Exception | None = None,
                 hang: bool = False, mandatory: bool = False, on_sample=None):
        self.name = name
        self.snapshot = snapshot
        self.error = error
        self.hang = hang
        self.mandatory = mandatory
        self.on_sample = on_sample
        self.calls = 0
        self.cancelled = False

    async def sample(self) -> Snapshot:
        self.calls += 1
        if self.on_sample:
            self.on_sample()
        if self.hang:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        if self.error:
            raise self.error
        await asyncio.sleep(0)
        return self.snapshot


def metric_record(ts: datetime, hostname: str = "host-a", cpu: float = 50.0) -> MetricRecord:
    return MetricRecord(
        timestamp=ts,
        hostname=hostname,
        cpu={"overall_utilization": cpu, "core_count": 2, "logical_processors": 2},
        memory={"total_physical_bytes": 16 * GIB, "available_physical_bytes": 4 * GIB},
        disks=[{"drive_id": "/", "total_bytes": 100, "free_bytes": 50}],
        process_summary={"total_processes": 3, "total_threads": 12},
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryMetricsStore()
