# checkgate/internal/collector/probes.py

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

SnapshotKind = Literal["system", "cluster"]


@dataclass
class Snapshot:
    """
    Raw output of one probe for one cycle. Owned by the cycle that produced it
    and discarded once normalized.
    """

    source: str
    kind: SnapshotKind
    collected_at: datetime
    data: dict[str, Any] = field(default_factory=dict)


class SourceProbe(ABC):
    """
    A source of raw measurements.

    sample() returns a Snapshot or raises; the orchestrator turns the exception
    (or a timeout) into a ProbeError tagged with the probe's name. It is never
    called again while a previous call is still outstanding.
    """

    name: str = "probe"
    # A mandatory probe failing still produces a (partial) host record
    mandatory: bool = False

    @abstractmethod
    async def sample(self) -> Snapshot:
        ...
