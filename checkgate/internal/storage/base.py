# checkgate/internal/storage/base.py

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Sequence

from checkgate.models.metrics import AuditEntry, ClusterRecord, MetricRecord, Record
from checkgate.models.results import RetentionClass


class MetricsStore(ABC):
    """
    Append-mostly time-series sink.

    Implementations raise StoreError for transient failures. write_batch is
    atomic per call: every record of the batch commits, or none does.
    """

    @abstractmethod
    async def write_batch(self, records: Sequence[Record]) -> None:
        ...

    @abstractmethod
    async def query(
        self,
        metric: str,
        start: datetime,
        end: datetime,
        source: str | None = None,
    ) -> list[MetricRecord] | list[ClusterRecord]:
        """
        Records of the metric's family with start <= timestamp < end, oldest first.
        source restricts to one hostname (system family) or cluster name (cluster family).
        """

    @abstractmethod
    async def query_page(
        self,
        start: datetime,
        end: datetime,
        hostname: str | None = None,
        offset: int = 0,
        limit: int = 100,
    ) -> tuple[list[MetricRecord], int]:
        """
        One page of host records with start <= timestamp < end, oldest first,
        and the total number of matching records.
        """

    @abstractmethod
    async def delete_older_than(self, retention_class: RetentionClass, cutoff: datetime) -> int:
        """Delete every record of the class older than cutoff, children included. Returns rows removed."""

    @abstractmethod
    async def count_older_than(self, retention_class: RetentionClass, cutoff: datetime) -> int:
        ...

    @abstractmethod
    async def write_audit(self, entry: AuditEntry) -> None:
        ...

    @abstractmethod
    async def latest(self, hostname: str | None = None) -> MetricRecord | None:
        ...
