# checkgate/internal/analysis/export.py

"""CSV export of stored host metrics"""

import logging
from datetime import datetime

import pandas as pd

from checkgate.internal.analysis.aggregation import AggregationEngine

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = ["Timestamp", "Hostname", "CPU_Usage", "Memory_Usage", "Disk_Usage"]


async def export_metrics_csv(
    engine: AggregationEngine,
    start: datetime,
    end: datetime,
    hostname: str | None = None,
) -> str:
    """
    Export one row per stored host record in [start, end).
    Partial records export empty cells for the sections they lack.
    """
    start, end = engine.validate_range(start, end)
    records = await engine.bounded_query(engine.store.query("cpu.utilization", start, end, hostname))

    rows = []
    for record in records:
        disk_usage = None
        if record.disks:
            disk_usage = sum(d.utilization_percent for d in record.disks) / len(record.disks)
        rows.append({
            "Timestamp": record.timestamp.isoformat(),
            "Hostname": record.hostname,
            "CPU_Usage": record.cpu.overall_utilization if record.cpu else None,
            "Memory_Usage": record.memory.physical_utilization_percent if record.memory else None,
            "Disk_Usage": disk_usage,
        })

    df = pd.DataFrame(rows, columns=EXPORT_COLUMNS)
    logger.info(f"Exported {len(df)} metric rows from {start.isoformat()} to {end.isoformat()}")
    return df.to_csv(index=False, float_format="%.2f")
