# checkgate/internal/storage/postgres.py

import json
import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Sequence

import asyncpg

from checkgate.internal.analysis.catalog import resolve_metric
from checkgate.internal.errors import StoreError
from checkgate.internal.storage.base import MetricsStore
from checkgate.models.metrics import (
    AuditEntry,
    ClusterRecord,
    CpuSample,
    DiskSample,
    MemorySample,
    MetricRecord,
    NetworkSample,
    ProcessSample,
    ProcessSummary,
    Record,
)
from checkgate.models.results import RetentionClass

logger = logging.getLogger(__name__)

# We'll create a global pool variable
db_pool: asyncpg.Pool | None = None

# Errors that mean "the store is unavailable right now"
_STORE_FAILURES = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS system_metrics (
        id BIGSERIAL,
        timestamp TIMESTAMP(3) WITH TIME ZONE NOT NULL,
        hostname VARCHAR(255) NOT NULL,
        cpu_overall_utilization NUMERIC(5,2),
        cpu_core_count INT,
        cpu_logical_processors INT,
        cpu_core_utilization JSONB,
        cpu_temperature NUMERIC(6,2),
        cpu_frequency_mhz NUMERIC(10,2),
        memory_total_physical_bytes BIGINT,
        memory_available_physical_bytes BIGINT,
        memory_total_virtual_bytes BIGINT,
        memory_available_virtual_bytes BIGINT,
        memory_page_file_bytes BIGINT,
        process_total_count INT,
        process_total_threads INT,
        created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (id, timestamp)
    ) PARTITION BY RANGE (timestamp);
    """,
    "CREATE TABLE IF NOT EXISTS system_metrics_default PARTITION OF system_metrics DEFAULT;",
    "CREATE INDEX IF NOT EXISTS idx_system_metrics_host_time ON system_metrics(hostname, timestamp);",
    """
    CREATE TABLE IF NOT EXISTS disk_metrics (
        id BIGSERIAL PRIMARY KEY,
        system_metrics_id BIGINT NOT NULL,
        system_metrics_timestamp TIMESTAMP(3) WITH TIME ZONE NOT NULL,
        position INT NOT NULL,
        drive_id VARCHAR(255) NOT NULL,
        drive_label VARCHAR(255),
        total_size_bytes BIGINT NOT NULL DEFAULT 0,
        free_space_bytes BIGINT NOT NULL DEFAULT 0,
        read_operations_per_second NUMERIC(12,2) NOT NULL DEFAULT 0,
        write_operations_per_second NUMERIC(12,2) NOT NULL DEFAULT 0,
        FOREIGN KEY (system_metrics_id, system_metrics_timestamp)
            REFERENCES system_metrics(id, timestamp) ON DELETE CASCADE
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_disk_metrics_parent ON disk_metrics(system_metrics_id);",
    """
    CREATE TABLE IF NOT EXISTS network_metrics (
        id BIGSERIAL PRIMARY KEY,
        system_metrics_id BIGINT NOT NULL,
        system_metrics_timestamp TIMESTAMP(3) WITH TIME ZONE NOT NULL,
        position INT NOT NULL,
        interface_name VARCHAR(255) NOT NULL,
        bytes_received_per_second BIGINT NOT NULL DEFAULT 0,
        bytes_sent_per_second BIGINT NOT NULL DEFAULT 0,
        errors_received BIGINT NOT NULL DEFAULT 0,
        errors_sent BIGINT NOT NULL DEFAULT 0,
        FOREIGN KEY (system_metrics_id, system_metrics_timestamp)
            REFERENCES system_metrics(id, timestamp) ON DELETE CASCADE
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_network_metrics_parent ON network_metrics(system_metrics_id);",
    """
    CREATE TABLE IF NOT EXISTS process_metrics (
        id BIGSERIAL PRIMARY KEY,
        system_metrics_id BIGINT NOT NULL,
        system_metrics_timestamp TIMESTAMP(3) WITH TIME ZONE NOT NULL,
        position INT NOT NULL,
        process_id INT NOT NULL,
        process_name VARCHAR(255) NOT NULL,
        cpu_utilization NUMERIC(5,2) NOT NULL DEFAULT 0,
        memory_usage_bytes BIGINT NOT NULL DEFAULT 0,
        metric_type VARCHAR(16) NOT NULL CHECK (metric_type IN ('top_cpu', 'top_memory')),
        FOREIGN KEY (system_metrics_id, system_metrics_timestamp)
            REFERENCES system_metrics(id, timestamp) ON DELETE CASCADE
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_process_metrics_parent ON process_metrics(system_metrics_id);",
    """
    CREATE TABLE IF NOT EXISTS kubernetes_metrics (
        id BIGSERIAL PRIMARY KEY,
        timestamp TIMESTAMP(3) WITH TIME ZONE NOT NULL,
        cluster_name VARCHAR(255) NOT NULL DEFAULT 'default',
        nodes_total INT NOT NULL DEFAULT 0,
        nodes_ready INT NOT NULL DEFAULT 0,
        pods_total INT NOT NULL DEFAULT 0,
        pods_running INT NOT NULL DEFAULT 0,
        pods_pending INT NOT NULL DEFAULT 0,
        pods_failed INT NOT NULL DEFAULT 0,
        cpu_requests NUMERIC(10,3) NOT NULL DEFAULT 0,
        cpu_limits NUMERIC(10,3) NOT NULL DEFAULT 0,
        memory_requests_bytes BIGINT NOT NULL DEFAULT 0,
        memory_limits_bytes BIGINT NOT NULL DEFAULT 0,
        created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_kubernetes_cluster_time ON kubernetes_metrics(cluster_name, timestamp);",
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id BIGSERIAL PRIMARY KEY,
        timestamp TIMESTAMP(3) WITH TIME ZONE NOT NULL,
        user_identity VARCHAR(255) NOT NULL,
        action VARCHAR(100) NOT NULL,
        resource VARCHAR(255) NOT NULL,
        details JSONB,
        success BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_log_timestamp ON audit_log(timestamp);",
]


async def init_db_pool(db_url: str, min_size: int = 2, max_size: int = 10) -> asyncpg.Pool:
    """
    Initializes the asyncpg connection pool.
    """
    global db_pool
    if not db_url:
        logger.critical("Database URL not configured. Check config.toml.")
        raise ValueError("Database configuration is missing.")

    db_pool = await asyncpg.create_pool(db_url, min_size=min_size, max_size=max_size)
    logger.info("Database connection pool established.")
    return db_pool


async def close_db_pool():
    """
    Closes the asyncpg connection pool.
    """
    global db_pool
    if db_pool:
        await db_pool.close()
        db_pool = None
        logger.info("Database connection pool closed.")


def _month_start(value: datetime, offset: int = 0) -> datetime:
    month_index = value.year * 12 + (value.month - 1) + offset
    return datetime(month_index // 12, month_index % 12 + 1, 1, tzinfo=UTC)


def _affected_rows(status: str) -> int:
    # asyncpg returns the command tag, e.g. "DELETE 42"
    return int(status.split()[-1])


class PostgresMetricsStore(MetricsStore):
    """
    MetricsStore backed by PostgreSQL.

    system_metrics is range-partitioned by month; the disk/network/process child
    tables cascade on delete, so retention removes a record and its children in
    one statement.
    """

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    @asynccontextmanager
    async def _connection(self):
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except _STORE_FAILURES as e:
            raise StoreError(f"{type(e).__name__}: {e}") from e

    async def init_schema(self, now: datetime | None = None, months_ahead: int = 2):
        async with self._connection() as conn:
            async with conn.transaction():
                for statement in SCHEMA:
                    await conn.execute(statement)
        await self.ensure_partitions(now or datetime.now(UTC), months_ahead)
        logger.info("Database schema verified.")

    async def ensure_partitions(self, now: datetime, months_ahead: int = 2) -> list[str]:
        """Create the monthly partitions for the current month and the next months_ahead."""
        created = []
        async with self._connection() as conn:
            for offset in range(months_ahead + 1):
                lower = _month_start(now, offset)
                upper = _month_start(now, offset + 1)
                name = f"system_metrics_p{lower:%Y%m}"
                exists = await conn.fetchval("SELECT to_regclass($1)", name)
                if exists:
                    continue
                # Bounds are generated from datetimes, not user input
                await conn.execute(
                    f"CREATE TABLE IF NOT EXISTS {name} PARTITION OF system_metrics "
                    f"FOR VALUES FROM ('{lower.isoformat()}') TO ('{upper.isoformat()}')"
                )
                created.append(name)
        if created:
            logger.info(f"Created partitions: {', '.join(created)}")
        return created

    async def write_batch(self, records: Sequence[Record]) -> None:
        if not records:
            return
        async with self._connection() as conn:
            async with conn.transaction():
                for record in records:
                    if isinstance(record, ClusterRecord):
                        await self._insert_cluster(conn, record)
                    else:
                        await self._insert_system(conn, record)

    async def _insert_system(self, conn: asyncpg.Connection, record: MetricRecord):
        cpu, memory, procs = record.cpu, record.memory, record.process_summary
        metrics_id = await conn.fetchval(
            """
            INSERT INTO system_metrics (
                timestamp, hostname,
                cpu_overall_utilization, cpu_core_count, cpu_logical_processors,
                cpu_core_utilization, cpu_temperature, cpu_frequency_mhz,
                memory_total_physical_bytes, memory_available_physical_bytes,
                memory_total_virtual_bytes, memory_available_virtual_bytes, memory_page_file_bytes,
                process_total_count, process_total_threads
            )
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8, $9, $10, $11, $12, $13, $14, $15)
            RETURNING id
            """,
            record.timestamp,
            record.hostname,
            cpu.overall_utilization if cpu else None,
            cpu.core_count if cpu else None,
            cpu.logical_processors if cpu else None,
            json.dumps(cpu.core_utilization) if cpu else None,
            cpu.temperature if cpu else None,
            cpu.frequency_mhz if cpu else None,
            memory.total_physical_bytes if memory else None,
            memory.available_physical_bytes if memory else None,
            memory.total_virtual_bytes if memory else None,
            memory.available_virtual_bytes if memory else None,
            memory.page_file_bytes if memory else None,
            procs.total_processes if procs else None,
            procs.total_threads if procs else None,
        )

        parent = (metrics_id, record.timestamp)
        if record.disks:
            await conn.executemany(
                """
                INSERT INTO disk_metrics (
                    system_metrics_id, system_metrics_timestamp, position, drive_id, drive_label,
                    total_size_bytes, free_space_bytes,
                    read_operations_per_second, write_operations_per_second
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                """,
                [
                    (*parent, i, d.drive_id, d.label, d.total_bytes, d.free_bytes,
                     d.read_ops_per_sec, d.write_ops_per_sec)
                    for i, d in enumerate(record.disks)
                ],
            )
        if record.network:
            await conn.executemany(
                """
                INSERT INTO network_metrics (
                    system_metrics_id, system_metrics_timestamp, position, interface_name,
                    bytes_received_per_second, bytes_sent_per_second, errors_received, errors_sent
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                [
                    (*parent, i, n.interface_name, n.bytes_recv_per_sec, n.bytes_sent_per_sec,
                     n.errors_recv, n.errors_sent)
                    for i, n in enumerate(record.network)
                ],
            )
        if procs:
            rows = [
                (*parent, i, p.pid, p.name, p.cpu_utilization, p.memory_bytes, "top_cpu")
                for i, p in enumerate(procs.top_cpu)
            ] + [
                (*parent, i, p.pid, p.name, p.cpu_utilization, p.memory_bytes, "top_memory")
                for i, p in enumerate(procs.top_memory)
            ]
            if rows:
                await conn.executemany(
                    """
                    INSERT INTO process_metrics (
                        system_metrics_id, system_metrics_timestamp, position, process_id,
                        process_name, cpu_utilization, memory_usage_bytes, metric_type
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    """,
                    rows,
                )

    async def _insert_cluster(self, conn: asyncpg.Connection, record: ClusterRecord):
        await conn.execute(
            """
            INSERT INTO kubernetes_metrics (
                timestamp, cluster_name, nodes_total, nodes_ready,
                pods_total, pods_running, pods_pending, pods_failed,
                cpu_requests, cpu_limits, memory_requests_bytes, memory_limits_bytes
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
            """,
            record.timestamp, record.cluster_name, record.nodes_total, record.nodes_ready,
            record.pods_total, record.pods_running, record.pods_pending, record.pods_failed,
            record.cpu_requests, record.cpu_limits,
            record.memory_requests_bytes, record.memory_limits_bytes,
        )

    async def query(self, metric, start, end, source=None):
        definition = resolve_metric(metric)
        async with self._connection() as conn:
            if definition.family == "cluster":
                rows = await conn.fetch(
                    """
                    SELECT * FROM kubernetes_metrics
                    WHERE timestamp >= $1 AND timestamp < $2
                      AND ($3::text IS NULL OR cluster_name = $3)
                    ORDER BY timestamp, cluster_name
                    """,
                    start, end, source,
                )
                return [self._cluster_from_row(row) for row in rows]

            rows = await conn.fetch(
                """
                SELECT * FROM system_metrics
                WHERE timestamp >= $1 AND timestamp < $2
                  AND ($3::text IS NULL OR hostname = $3)
                ORDER BY timestamp, hostname
                """,
                start, end, source,
            )
            return await self._hydrate(conn, rows)

    async def query_page(self, start, end, hostname=None, offset=0, limit=100):
        async with self._connection() as conn:
            total = await conn.fetchval(
                """
                SELECT COUNT(*) FROM system_metrics
                WHERE timestamp >= $1 AND timestamp < $2
                  AND ($3::text IS NULL OR hostname = $3)
                """,
                start, end, hostname,
            )
            rows = await conn.fetch(
                """
                SELECT * FROM system_metrics
                WHERE timestamp >= $1 AND timestamp < $2
                  AND ($3::text IS NULL OR hostname = $3)
                ORDER BY timestamp, hostname
                OFFSET $4 LIMIT $5
                """,
                start, end, hostname, offset, limit,
            )
            return await self._hydrate(conn, rows), total

    async def latest(self, hostname=None):
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM system_metrics
                WHERE ($1::text IS NULL OR hostname = $1)
                ORDER BY timestamp DESC
                LIMIT 1
                """,
                hostname,
            )
            if not row:
                return None
            records = await self._hydrate(conn, [row])
            return records[0]

    async def _hydrate(self, conn: asyncpg.Connection, rows) -> list[MetricRecord]:
        if not rows:
            return []
        ids = [row["id"] for row in rows]
        disks: dict[int, list] = {}
        networks: dict[int, list] = {}
        processes: dict[int, dict[str, list]] = {}

        for d in await conn.fetch(
            "SELECT * FROM disk_metrics WHERE system_metrics_id = ANY($1::bigint[]) ORDER BY position",
            ids,
        ):
            disks.setdefault(d["system_metrics_id"], []).append(DiskSample(
                drive_id=d["drive_id"],
                label=d["drive_label"],
                total_bytes=d["total_size_bytes"],
                free_bytes=d["free_space_bytes"],
                read_ops_per_sec=float(d["read_operations_per_second"]),
                write_ops_per_sec=float(d["write_operations_per_second"]),
            ))
        for n in await conn.fetch(
            "SELECT * FROM network_metrics WHERE system_metrics_id = ANY($1::bigint[]) ORDER BY position",
            ids,
        ):
            networks.setdefault(n["system_metrics_id"], []).append(NetworkSample(
                interface_name=n["interface_name"],
                bytes_recv_per_sec=n["bytes_received_per_second"],
                bytes_sent_per_sec=n["bytes_sent_per_second"],
                errors_recv=n["errors_received"],
                errors_sent=n["errors_sent"],
            ))
        for p in await conn.fetch(
            "SELECT * FROM process_metrics WHERE system_metrics_id = ANY($1::bigint[]) ORDER BY position",
            ids,
        ):
            bucket = processes.setdefault(p["system_metrics_id"], {"top_cpu": [], "top_memory": []})
            bucket[p["metric_type"]].append(ProcessSample(
                pid=p["process_id"],
                name=p["process_name"],
                cpu_utilization=float(p["cpu_utilization"]),
                memory_bytes=p["memory_usage_bytes"],
            ))

        records = []
        for row in rows:
            row_id = row["id"]
            cpu = memory = summary = None
            if row["cpu_overall_utilization"] is not None:
                core_utilization = row["cpu_core_utilization"]
                if isinstance(core_utilization, str):
                    core_utilization = json.loads(core_utilization)
                cpu = CpuSample(
                    overall_utilization=float(row["cpu_overall_utilization"]),
                    core_count=row["cpu_core_count"],
                    logical_processors=row["cpu_logical_processors"],
                    core_utilization=core_utilization or [],
                    temperature=float(row["cpu_temperature"]) if row["cpu_temperature"] is not None else None,
                    frequency_mhz=float(row["cpu_frequency_mhz"]) if row["cpu_frequency_mhz"] is not None else None,
                )
            if row["memory_total_physical_bytes"] is not None:
                memory = MemorySample(
                    total_physical_bytes=row["memory_total_physical_bytes"],
                    available_physical_bytes=row["memory_available_physical_bytes"],
                    total_virtual_bytes=row["memory_total_virtual_bytes"],
                    available_virtual_bytes=row["memory_available_virtual_bytes"],
                    page_file_bytes=row["memory_page_file_bytes"],
                )
            if row["process_total_count"] is not None:
                procs = processes.get(row_id, {})
                summary = ProcessSummary(
                    total_processes=row["process_total_count"],
                    total_threads=row["process_total_threads"],
                    top_cpu=procs.get("top_cpu", []),
                    top_memory=procs.get("top_memory", []),
                )
            records.append(MetricRecord(
                timestamp=row["timestamp"],
                hostname=row["hostname"],
                cpu=cpu,
                memory=memory,
                disks=disks.get(row_id, []),
                network=networks.get(row_id, []),
                process_summary=summary,
            ))
        return records

    @staticmethod
    def _cluster_from_row(row) -> ClusterRecord:
        return ClusterRecord(
            timestamp=row["timestamp"],
            cluster_name=row["cluster_name"],
            nodes_total=row["nodes_total"],
            nodes_ready=row["nodes_ready"],
            pods_total=row["pods_total"],
            pods_running=row["pods_running"],
            pods_pending=row["pods_pending"],
            pods_failed=row["pods_failed"],
            cpu_requests=float(row["cpu_requests"]),
            cpu_limits=float(row["cpu_limits"]),
            memory_requests_bytes=row["memory_requests_bytes"],
            memory_limits_bytes=row["memory_limits_bytes"],
        )

    async def delete_older_than(self, retention_class, cutoff):
        async with self._connection() as conn:
            async with conn.transaction():
                if retention_class == RetentionClass.AUDIT:
                    result = await conn.execute("DELETE FROM audit_log WHERE timestamp < $1", cutoff)
                    return _affected_rows(result)

                # Child rows go with their parent through ON DELETE CASCADE
                result_system = await conn.execute(
                    "DELETE FROM system_metrics WHERE timestamp < $1", cutoff
                )
                result_cluster = await conn.execute(
                    "DELETE FROM kubernetes_metrics WHERE timestamp < $1", cutoff
                )
                return _affected_rows(result_system) + _affected_rows(result_cluster)

    async def count_older_than(self, retention_class, cutoff):
        async with self._connection() as conn:
            if retention_class == RetentionClass.AUDIT:
                return await conn.fetchval("SELECT COUNT(*) FROM audit_log WHERE timestamp < $1", cutoff)
            system = await conn.fetchval("SELECT COUNT(*) FROM system_metrics WHERE timestamp < $1", cutoff)
            cluster = await conn.fetchval("SELECT COUNT(*) FROM kubernetes_metrics WHERE timestamp < $1", cutoff)
            return system + cluster

    async def write_audit(self, entry: AuditEntry) -> None:
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO audit_log (timestamp, user_identity, action, resource, details, success)
                VALUES ($1, $2, $3, $4, $5::jsonb, $6)
                """,
                entry.timestamp, entry.user_identity, entry.action, entry.resource,
                json.dumps(entry.details, default=str), entry.success,
            )
