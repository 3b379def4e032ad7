# checkgate/internal/collector/system_probe.py

"""
Host metrics probe.
Collects CPU, memory, disk, network and process metrics with psutil.
"""

import asyncio
import logging
import os
import platform
import threading
import time
from datetime import UTC, datetime
from typing import Any

import psutil

from checkgate.internal.collector.probes import Snapshot, SourceProbe

logger = logging.getLogger(__name__)


class SystemProbe(SourceProbe):
    mandatory = True

    def __init__(self, hostname: str | None = None, candidate_processes: int = 25):
        """
        Args:
            hostname: Name recorded on every sample (default: this machine's name)
            candidate_processes: How many of the busiest processes per metric are
                handed to the normalizer, which applies the final top-N cut
        """
        self.name = "system"
        self.hostname = hostname or platform.node()
        self.candidate_processes = candidate_processes
        # Previous cumulative counters, used to turn them into per-second rates
        self._last_disk_io: dict[str, Any] = {}
        self._last_net_io: dict[str, Any] = {}
        self._last_sample_at: float | None = None
        # Counter state is shared with executor threads that outlive a timed-out sample
        self._lock = threading.Lock()
        self._pending: asyncio.Future | None = None

    async def sample(self) -> Snapshot:
        loop = asyncio.get_running_loop()
        if self._pending is not None and not self._pending.done():
            raise RuntimeError("previous collection is still running")
        self._pending = loop.run_in_executor(None, self.collect_all_metrics)
        data = await asyncio.shield(self._pending)
        return Snapshot(
            source=self.name,
            kind="system",
            collected_at=datetime.now(UTC),
            data=data,
        )

    def collect_cpu_metrics(self) -> dict[str, Any]:
        """Collect CPU-related metrics"""
        try:
            freq = psutil.cpu_freq()
        except (NotImplementedError, OSError):
            freq = None
        logical = psutil.cpu_count() or 0
        return {
            # interval=None measures since the previous call and does not block
            "overall_utilization": float(psutil.cpu_percent(interval=None)),
            "core_utilization": [float(v) for v in psutil.cpu_percent(interval=None, percpu=True)],
            "core_count": int(psutil.cpu_count(logical=False) or logical),
            "logical_processors": int(logical),
            "frequency_mhz": float(freq.current) if freq else None,
            "temperature": self._read_temperature(),
        }

    def _read_temperature(self) -> float | None:
        if not hasattr(psutil, "sensors_temperatures"):
            return None
        try:
            sensors = psutil.sensors_temperatures()
        except (OSError, RuntimeError):
            return None
        for key in ("coretemp", "k10temp", "cpu_thermal", "acpitz"):
            entries = sensors.get(key)
            if entries:
                return float(entries[0].current)
        return None

    def collect_memory_metrics(self) -> dict[str, Any]:
        """Collect memory-related metrics"""
        mem = psutil.virtual_memory()
        swap = psutil.swap_memory()
        return {
            "total_physical_bytes": int(mem.total),
            "available_physical_bytes": int(mem.available),
            "total_virtual_bytes": int(mem.total + swap.total),
            "available_virtual_bytes": int(mem.available + swap.free),
            "page_file_bytes": int(swap.used),
        }

    def collect_disk_metrics(self, elapsed: float | None) -> list[dict[str, Any]]:
        """Collect per-partition capacity and per-device I/O rates"""
        io_counters = psutil.disk_io_counters(perdisk=True) or {}
        disks = []
        seen = set()
        for part in psutil.disk_partitions(all=False):
            if part.mountpoint in seen:
                continue
            seen.add(part.mountpoint)
            try:
                usage = psutil.disk_usage(part.mountpoint)
            except (PermissionError, OSError) as e:
                logger.debug(f"Skipping {part.mountpoint}: {e}")
                continue

            device = os.path.basename(part.device)
            read_rate = write_rate = 0.0
            io = io_counters.get(device)
            previous = self._last_disk_io.get(device)
            if io and previous and elapsed:
                read_rate = max(0.0, (io.read_count - previous.read_count) / elapsed)
                write_rate = max(0.0, (io.write_count - previous.write_count) / elapsed)

            disks.append({
                "drive_id": part.mountpoint,
                "label": device or None,
                "total_bytes": int(usage.total),
                "free_bytes": int(usage.free),
                "read_ops_per_sec": read_rate,
                "write_ops_per_sec": write_rate,
            })
        self._last_disk_io = dict(io_counters)
        return disks

    def collect_network_metrics(self, elapsed: float | None) -> list[dict[str, Any]]:
        """Collect per-interface throughput and error counters"""
        counters = psutil.net_io_counters(pernic=True) or {}
        interfaces = []
        for name, net in sorted(counters.items()):
            previous = self._last_net_io.get(name)
            recv_rate = sent_rate = 0
            if previous and elapsed:
                recv_rate = max(0, int((net.bytes_recv - previous.bytes_recv) / elapsed))
                sent_rate = max(0, int((net.bytes_sent - previous.bytes_sent) / elapsed))
            interfaces.append({
                "interface_name": name,
                "bytes_recv_per_sec": recv_rate,
                "bytes_sent_per_sec": sent_rate,
                "errors_recv": int(net.errin),
                "errors_sent": int(net.errout),
            })
        self._last_net_io = dict(counters)
        return interfaces

    def collect_process_metrics(self) -> dict[str, Any]:
        """Collect process counts and the busiest processes by CPU and memory"""
        samples = []
        total_threads = 0
        for proc in psutil.process_iter(["pid", "name", "cpu_percent", "memory_info", "num_threads"]):
            info = proc.info
            total_threads += info.get("num_threads") or 0
            mem = info.get("memory_info")
            samples.append({
                "pid": info["pid"],
                "name": info.get("name") or "",
                "cpu_utilization": float(info.get("cpu_percent") or 0.0),
                "memory_bytes": int(mem.rss) if mem else 0,
            })

        n = self.candidate_processes
        by_cpu = sorted(samples, key=lambda s: (-s["cpu_utilization"], s["pid"]))[:n]
        by_mem = sorted(samples, key=lambda s: (-s["memory_bytes"], s["pid"]))[:n]
        return {
            "total_processes": len(samples),
            "total_threads": total_threads,
            "top_cpu": by_cpu,
            "top_memory": by_mem,
        }

    def collect_all_metrics(self) -> dict[str, Any]:
        """Collect all system metrics. Blocking; runs in an executor thread."""
        with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_sample_at if self._last_sample_at else None
            self._last_sample_at = now

            return {
                "hostname": self.hostname,
                "cpu": self.collect_cpu_metrics(),
                "memory": self.collect_memory_metrics(),
                "disks": self.collect_disk_metrics(elapsed),
                "network": self.collect_network_metrics(elapsed),
                "processes": self.collect_process_metrics(),
            }
