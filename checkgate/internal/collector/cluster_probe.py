# checkgate/internal/collector/cluster_probe.py

"""
Kubernetes cluster probe.

Counts nodes and pods and sums container resource requests/limits across the cluster.
The kubernetes client is synchronous, so every API call runs in the default executor.
"""

import asyncio
import logging
import math
from datetime import UTC, datetime
from typing import Any

from kubernetes import client, config
from kubernetes.utils import parse_quantity

from checkgate.internal.collector.probes import Snapshot, SourceProbe

logger = logging.getLogger(__name__)


class ClusterProbe(SourceProbe):
    mandatory = False

    def __init__(self, cluster_name: str = "default", core_api: Any = None):
        self.name = f"cluster:{cluster_name}"
        self.cluster_name = cluster_name
        self._core_api = core_api

    def _init_k8s_client(self) -> Any:
        # Try in-cluster config first (when running in a pod)
        try:
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes config")
        except config.ConfigException:
            # Fall back to kubeconfig (for local development)
            config.load_kube_config()
            logger.info("Loaded kubeconfig")
        return client.CoreV1Api()

    async def sample(self) -> Snapshot:
        loop = asyncio.get_running_loop()
        if self._core_api is None:
            self._core_api = await loop.run_in_executor(None, self._init_k8s_client)

        nodes = await loop.run_in_executor(None, self._core_api.list_node)
        pods = await loop.run_in_executor(None, self._core_api.list_pod_for_all_namespaces)

        return Snapshot(
            source=self.name,
            kind="cluster",
            collected_at=datetime.now(UTC),
            data=self.summarize(nodes.items, pods.items),
        )

    def summarize(self, nodes: list, pods: list) -> dict[str, Any]:
        nodes_ready = 0
        for node in nodes:
            for condition in (node.status.conditions or []):
                if condition.type == "Ready" and condition.status == "True":
                    nodes_ready += 1
                    break

        phases = {"Running": 0, "Pending": 0, "Failed": 0}
        cpu_requests = cpu_limits = 0
        mem_requests = mem_limits = 0
        for pod in pods:
            phase = pod.status.phase
            if phase in phases:
                phases[phase] += 1
            for container in (pod.spec.containers or []):
                resources = container.resources
                if resources is None:
                    continue
                requests = resources.requests or {}
                limits = resources.limits or {}
                cpu_requests += self._parse_cpu(requests.get("cpu"))
                cpu_limits += self._parse_cpu(limits.get("cpu"))
                mem_requests += self._parse_memory(requests.get("memory"))
                mem_limits += self._parse_memory(limits.get("memory"))

        return {
            "cluster_name": self.cluster_name,
            "nodes_total": len(nodes),
            "nodes_ready": nodes_ready,
            "pods_total": len(pods),
            "pods_running": phases["Running"],
            "pods_pending": phases["Pending"],
            "pods_failed": phases["Failed"],
            # Nanocores summed as integers, reported in cores
            "cpu_requests": cpu_requests / 1_000_000_000,
            "cpu_limits": cpu_limits / 1_000_000_000,
            "memory_requests_bytes": mem_requests,
            "memory_limits_bytes": mem_limits,
        }

    @staticmethod
    def _parse_cpu(cpu_str: str | None) -> int:
        """
        Parse a CPU quantity to nanocores, rounding up.

        Examples: "100m" -> 100_000_000, "1" -> 1_000_000_000, "500n" -> 500, "1e-3" -> 1_000_000
        """
        if not cpu_str:
            return 0
        return math.ceil(parse_quantity(str(cpu_str).strip()) * 1_000_000_000)

    @staticmethod
    def _parse_memory(mem_str: str | None) -> int:
        """
        Parse a memory quantity to bytes, rounding up like the API server does.

        Examples: "128Mi" -> 134217728, "1e9" -> 1000000000, "500m" -> 1, "1Pi" -> 2**50
        """
        if not mem_str:
            return 0
        return math.ceil(parse_quantity(str(mem_str).strip()))
