# checkgate/internal/analysis/catalog.py

"""
Named scalar metrics that can be summarized or baselined.
Each definition knows which record family it reads and how to pull one value out of a record.
"""

from dataclasses import dataclass
from typing import Callable, Literal

from checkgate.internal.errors import ValidationError
from checkgate.models.metrics import ClusterRecord, MetricRecord

Family = Literal["system", "cluster"]


@dataclass(frozen=True)
class MetricDefinition:
    name: str
    family: Family
    extract: Callable[[MetricRecord | ClusterRecord], float | None]
    description: str = ""

    def value_of(self, record) -> float | None:
        value = self.extract(record)
        return None if value is None else float(value)


def _disk_utilization(record: MetricRecord) -> float | None:
    if not record.disks:
        return None
    return sum(d.utilization_percent for d in record.disks) / len(record.disks)


def _disk_free(record: MetricRecord) -> float | None:
    if not record.disks:
        return None
    return sum(d.free_bytes for d in record.disks)


def _net_recv(record: MetricRecord) -> float | None:
    if not record.network:
        return None
    return sum(n.bytes_recv_per_sec for n in record.network)


def _net_sent(record: MetricRecord) -> float | None:
    if not record.network:
        return None
    return sum(n.bytes_sent_per_sec for n in record.network)


def _section(section: str, attr: str):
    def extract(record):
        value = getattr(record, section)
        return None if value is None else getattr(value, attr)
    return extract


def _cluster(attr: str):
    return lambda record: getattr(record, attr)


_DEFINITIONS = [
    MetricDefinition("cpu.utilization", "system", _section("cpu", "overall_utilization"),
                     "Overall CPU utilization (%)"),
    MetricDefinition("cpu.temperature", "system", _section("cpu", "temperature"),
                     "CPU temperature (C)"),
    MetricDefinition("cpu.frequency_mhz", "system", _section("cpu", "frequency_mhz"),
                     "CPU frequency (MHz)"),
    MetricDefinition("memory.utilization", "system", _section("memory", "physical_utilization_percent"),
                     "Physical memory utilization (%)"),
    MetricDefinition("memory.available_bytes", "system", _section("memory", "available_physical_bytes"),
                     "Available physical memory (bytes)"),
    MetricDefinition("disk.utilization", "system", _disk_utilization,
                     "Mean utilization across disks (%)"),
    MetricDefinition("disk.free_bytes", "system", _disk_free, "Free space across disks (bytes)"),
    MetricDefinition("network.bytes_recv_per_sec", "system", _net_recv,
                     "Receive throughput across interfaces"),
    MetricDefinition("network.bytes_sent_per_sec", "system", _net_sent,
                     "Send throughput across interfaces"),
    MetricDefinition("process.count", "system", _section("process_summary", "total_processes"),
                     "Running processes"),
    MetricDefinition("process.threads", "system", _section("process_summary", "total_threads"),
                     "Threads across all processes"),
    MetricDefinition("cluster.nodes_ready", "cluster", _cluster("nodes_ready")),
    MetricDefinition("cluster.pods_running", "cluster", _cluster("pods_running")),
    MetricDefinition("cluster.pods_pending", "cluster", _cluster("pods_pending")),
    MetricDefinition("cluster.pods_failed", "cluster", _cluster("pods_failed")),
    MetricDefinition("cluster.cpu_requests", "cluster", _cluster("cpu_requests")),
    MetricDefinition("cluster.memory_requests_bytes", "cluster", _cluster("memory_requests_bytes")),
]

METRICS: dict[str, MetricDefinition] = {d.name: d for d in _DEFINITIONS}


def resolve_metric(name: str) -> MetricDefinition:
    try:
        return METRICS[name]
    except KeyError:
        raise ValidationError(
            f"Unknown metric '{name}'. Known metrics: {', '.join(sorted(METRICS))}"
        ) from None


def source_of(record) -> str:
    """Host or cluster name a record belongs to"""
    if isinstance(record, ClusterRecord):
        return record.cluster_name
    return record.hostname
