# checkgate/internal/collector/normalizer.py

"""
Turns raw probe snapshots into canonical MetricRecord / ClusterRecord rows.

Percentages are clamped into [0, 100] (probes overshoot slightly from measurement
jitter); negative byte or count fields are rejected.
"""

import logging
import math
from datetime import datetime
from typing import Any

import pydantic

from checkgate.internal.collector.probes import Snapshot
from checkgate.internal.errors import ValidationError
from checkgate.internal.utils.clock import truncate_to_millis
from checkgate.models.metrics import (
    ClusterRecord,
    CpuSample,
    DiskSample,
    MemorySample,
    MetricRecord,
    NetworkSample,
    ProcessSample,
    ProcessSummary,
)

logger = logging.getLogger(__name__)

# Overshoot beyond this many points is still clamped, but logged
OVERSHOOT_TOLERANCE = 5.0


def _number(section: dict, key: str, where: str, required: bool = True, default=None):
    value = section.get(key)
    if value is None:
        if required:
            raise ValidationError(f"{where}.{key} is required")
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{where}.{key} must be numeric, got {value!r}")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValidationError(f"{where}.{key} is not finite: {value}")
    return value


def _count(section: dict, key: str, where: str, required: bool = True, default=0) -> int:
    value = _number(section, key, where, required=required, default=default)
    if value is None:
        return value
    if value < 0:
        raise ValidationError(f"{where}.{key} must be >= 0, got {value}")
    return int(value)


def _rate(section: dict, key: str, where: str) -> float:
    value = _number(section, key, where, required=False, default=0.0)
    if value < 0:
        raise ValidationError(f"{where}.{key} must be >= 0, got {value}")
    return float(value)


def clamp_percent(value: float, where: str = "") -> float:
    if value < -OVERSHOOT_TOLERANCE or value > 100 + OVERSHOOT_TOLERANCE:
        logger.warning(f"{where} percentage {value} far outside [0, 100], clamping")
    return min(100.0, max(0.0, float(value)))


class Normalizer:
    def __init__(self, top_n: int = 5):
        if top_n < 1:
            raise ValueError("top_n must be >= 1")
        self.top_n = top_n

    def normalize(self, snapshot: Snapshot, timestamp: datetime | None = None) -> MetricRecord | ClusterRecord:
        """
        Build the canonical record for a snapshot.

        Args:
            snapshot: Raw probe output
            timestamp: Cycle timestamp to stamp on the record (default: snapshot.collected_at)

        Raises:
            ValidationError: the snapshot is malformed
        """
        ts = truncate_to_millis(timestamp or snapshot.collected_at)
        try:
            if snapshot.kind == "system":
                return self._normalize_system(snapshot.data, ts)
            if snapshot.kind == "cluster":
                return self._normalize_cluster(snapshot.data, ts)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Snapshot from {snapshot.source} failed validation: {e}") from e
        except (TypeError, AttributeError) as e:
            raise ValidationError(f"Snapshot from {snapshot.source} is malformed: {e}") from e
        raise ValidationError(f"Unknown snapshot kind '{snapshot.kind}' from {snapshot.source}")

    def _normalize_system(self, data: dict[str, Any], ts: datetime) -> MetricRecord:
        hostname = data.get("hostname")
        if not hostname:
            raise ValidationError("hostname is required")

        return MetricRecord(
            timestamp=ts,
            hostname=str(hostname),
            cpu=self._cpu(data.get("cpu") or {}),
            memory=self._memory(data.get("memory") or {}),
            disks=[self._disk(d) for d in data.get("disks") or []],
            network=[self._network(n) for n in data.get("network") or []],
            process_summary=self._processes(data.get("processes") or {}),
        )

    def _cpu(self, cpu: dict) -> CpuSample:
        logical = _count(cpu, "logical_processors", "cpu")
        temperature = _number(cpu, "temperature", "cpu", required=False)
        frequency = _number(cpu, "frequency_mhz", "cpu", required=False)
        if frequency is not None and frequency < 0:
            raise ValidationError(f"cpu.frequency_mhz must be >= 0, got {frequency}")
        cores = []
        for i, value in enumerate(cpu.get("core_utilization") or []):
            cores.append(clamp_percent(_number({"v": value}, "v", f"cpu.core[{i}]"), "cpu core"))
        return CpuSample(
            overall_utilization=clamp_percent(_number(cpu, "overall_utilization", "cpu"), "cpu"),
            core_count=_count(cpu, "core_count", "cpu", required=False, default=logical),
            logical_processors=logical,
            core_utilization=cores,
            temperature=temperature,
            frequency_mhz=frequency,
        )

    def _memory(self, memory: dict) -> MemorySample:
        total = _count(memory, "total_physical_bytes", "memory")
        available = _count(memory, "available_physical_bytes", "memory")
        if available > total:
            raise ValidationError(
                f"memory.available_physical_bytes ({available}) exceeds total ({total})"
            )
        return MemorySample(
            total_physical_bytes=total,
            available_physical_bytes=available,
            total_virtual_bytes=_count(memory, "total_virtual_bytes", "memory", required=False),
            available_virtual_bytes=_count(memory, "available_virtual_bytes", "memory", required=False),
            page_file_bytes=_count(memory, "page_file_bytes", "memory", required=False),
        )

    def _disk(self, disk: dict) -> DiskSample:
        drive_id = disk.get("drive_id")
        if not drive_id:
            raise ValidationError("disk.drive_id is required")
        total = _count(disk, "total_bytes", "disk")
        free = _count(disk, "free_bytes", "disk")
        if free > total:
            raise ValidationError(f"disk {drive_id}: free_bytes ({free}) exceeds total ({total})")
        return DiskSample(
            drive_id=str(drive_id),
            label=disk.get("label") or None,
            total_bytes=total,
            free_bytes=free,
            read_ops_per_sec=_rate(disk, "read_ops_per_sec", "disk"),
            write_ops_per_sec=_rate(disk, "write_ops_per_sec", "disk"),
        )

    def _network(self, net: dict) -> NetworkSample:
        name = net.get("interface_name")
        if not name:
            raise ValidationError("network.interface_name is required")
        return NetworkSample(
            interface_name=str(name),
            bytes_recv_per_sec=_count(net, "bytes_recv_per_sec", "network", required=False),
            bytes_sent_per_sec=_count(net, "bytes_sent_per_sec", "network", required=False),
            errors_recv=_count(net, "errors_recv", "network", required=False),
            errors_sent=_count(net, "errors_sent", "network", required=False),
        )

    def _process(self, proc: dict) -> ProcessSample:
        return ProcessSample(
            pid=_count(proc, "pid", "process"),
            name=str(proc.get("name") or ""),
            cpu_utilization=clamp_percent(
                _number(proc, "cpu_utilization", "process", required=False, default=0.0), "process"
            ),
            memory_bytes=_count(proc, "memory_bytes", "process", required=False),
        )

    def _processes(self, processes: dict) -> ProcessSummary:
        samples = [self._process(p) for p in processes.get("samples") or []]
        top_cpu = [self._process(p) for p in processes.get("top_cpu") or []] or samples
        top_memory = [self._process(p) for p in processes.get("top_memory") or []] or samples
        return ProcessSummary(
            total_processes=_count(processes, "total_processes", "processes", required=False,
                                   default=len(samples)),
            total_threads=_count(processes, "total_threads", "processes", required=False),
            top_cpu=self.top_by(top_cpu, lambda p: p.cpu_utilization),
            top_memory=self.top_by(top_memory, lambda p: p.memory_bytes),
        )

    def top_by(self, samples: list[ProcessSample], metric) -> list[ProcessSample]:
        """Descending by metric, ties broken by ascending pid, duplicates by pid dropped."""
        unique = {}
        for sample in samples:
            unique.setdefault(sample.pid, sample)
        ordered = sorted(unique.values(), key=lambda p: (-metric(p), p.pid))
        return ordered[:self.top_n]

    def _normalize_cluster(self, data: dict[str, Any], ts: datetime) -> ClusterRecord:
        name = data.get("cluster_name")
        if not name:
            raise ValidationError("cluster_name is required")

        nodes_total = _count(data, "nodes_total", "cluster")
        nodes_ready = _count(data, "nodes_ready", "cluster")
        if nodes_ready > nodes_total:
            raise ValidationError(f"nodes_ready ({nodes_ready}) exceeds nodes_total ({nodes_total})")

        pods_total = _count(data, "pods_total", "cluster")
        running = _count(data, "pods_running", "cluster")
        pending = _count(data, "pods_pending", "cluster")
        failed = _count(data, "pods_failed", "cluster")
        if running + pending + failed > pods_total:
            raise ValidationError(
                f"running+pending+failed pods ({running + pending + failed}) exceed pods_total ({pods_total})"
            )

        return ClusterRecord(
            timestamp=ts,
            cluster_name=str(name),
            nodes_total=nodes_total,
            nodes_ready=nodes_ready,
            pods_total=pods_total,
            pods_running=running,
            pods_pending=pending,
            pods_failed=failed,
            cpu_requests=_rate(data, "cpu_requests", "cluster"),
            cpu_limits=_rate(data, "cpu_limits", "cluster"),
            memory_requests_bytes=_count(data, "memory_requests_bytes", "cluster", required=False),
            memory_limits_bytes=_count(data, "memory_limits_bytes", "cluster", required=False),
        )
