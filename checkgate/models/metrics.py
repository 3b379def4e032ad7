# checkgate/models/metrics.py

"""Models for host and cluster metric records"""
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class CpuSample(BaseModel):
    overall_utilization: float = Field(ge=0, le=100)
    core_count: int = Field(ge=0)
    logical_processors: int = Field(ge=0)
    core_utilization: list[float] = Field(default_factory=list)
    temperature: float | None = None
    frequency_mhz: float | None = None


class MemorySample(BaseModel):
    total_physical_bytes: int = Field(ge=0)
    available_physical_bytes: int = Field(ge=0)
    total_virtual_bytes: int = Field(0, ge=0)
    available_virtual_bytes: int = Field(0, ge=0)
    page_file_bytes: int = Field(0, ge=0)

    @property
    def physical_utilization_percent(self) -> float:
        if self.total_physical_bytes <= 0:
            return 0.0
        used = self.total_physical_bytes - self.available_physical_bytes
        return used / self.total_physical_bytes * 100


class DiskSample(BaseModel):
    drive_id: str
    label: str | None = None
    total_bytes: int = Field(ge=0)
    free_bytes: int = Field(ge=0)
    read_ops_per_sec: float = Field(0.0, ge=0)
    write_ops_per_sec: float = Field(0.0, ge=0)

    @property
    def utilization_percent(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return (self.total_bytes - self.free_bytes) / self.total_bytes * 100


class NetworkSample(BaseModel):
    interface_name: str
    bytes_recv_per_sec: int = Field(0, ge=0)
    bytes_sent_per_sec: int = Field(0, ge=0)
    errors_recv: int = Field(0, ge=0)
    errors_sent: int = Field(0, ge=0)


class ProcessSample(BaseModel):
    pid: int = Field(ge=0)
    name: str
    cpu_utilization: float = Field(ge=0, le=100)
    memory_bytes: int = Field(ge=0)


class ProcessSummary(BaseModel):
    total_processes: int = Field(ge=0)
    total_threads: int = Field(ge=0)
    top_cpu: list[ProcessSample] = Field(default_factory=list)
    top_memory: list[ProcessSample] = Field(default_factory=list)


class MetricRecord(BaseModel):
    """
    Canonical time-series row for one host and one collection cycle.

    cpu, memory and process_summary are None when the system probe failed
    for the cycle; the row is still written so readers can see the attempt.
    """
    timestamp: datetime
    hostname: str
    cpu: CpuSample | None = None
    memory: MemorySample | None = None
    disks: list[DiskSample] = Field(default_factory=list)
    network: list[NetworkSample] = Field(default_factory=list)
    process_summary: ProcessSummary | None = None

    @property
    def is_partial(self) -> bool:
        return self.cpu is None or self.memory is None or self.process_summary is None


class ClusterRecord(BaseModel):
    """Cluster-wide snapshot"""
    timestamp: datetime
    cluster_name: str
    nodes_total: int = Field(ge=0)
    nodes_ready: int = Field(ge=0)
    pods_total: int = Field(ge=0)
    pods_running: int = Field(ge=0)
    pods_pending: int = Field(ge=0)
    pods_failed: int = Field(ge=0)
    cpu_requests: float = Field(0.0, ge=0)
    cpu_limits: float = Field(0.0, ge=0)
    memory_requests_bytes: int = Field(0, ge=0)
    memory_limits_bytes: int = Field(0, ge=0)


Record = MetricRecord | ClusterRecord


class AuditEntry(BaseModel):
    timestamp: datetime
    user_identity: str = "SYSTEM"
    action: str
    resource: str
    details: dict[str, Any] = Field(default_factory=dict)
    success: bool = True
