# checkgate/main.py

import asyncio
import logging
import platform
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI

from checkgate.internal.analysis.aggregation import AggregationEngine, SummaryCache
from checkgate.internal.collector.normalizer import Normalizer
from checkgate.internal.collector.orchestrator import CollectionOrchestrator, CollectionScheduler
from checkgate.internal.collector.probes import SourceProbe
from checkgate.internal.collector.system_probe import SystemProbe
from checkgate.internal.config.config import Settings, configure_logging, get_settings
from checkgate.internal.storage.base import MetricsStore
from checkgate.internal.storage.postgres import (
    PostgresMetricsStore,
    close_db_pool,
    init_db_pool,
)
from checkgate.internal.utils.cleanup_task import RetentionManager, run_daily_cleanup
from checkgate.internal.utils.clock import Clock, SystemClock
from checkgate.routers import metrics

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    scheduler: CollectionScheduler
    retention: RetentionManager
    engine: AggregationEngine
    summary_cache: SummaryCache


def build_probes(settings: Settings, hostname: str) -> list[SourceProbe]:
    probes: list[SourceProbe] = [SystemProbe(hostname=hostname)]
    if settings.cluster.enabled:
        from checkgate.internal.collector.cluster_probe import ClusterProbe

        probes.append(ClusterProbe(cluster_name=settings.cluster.cluster_name))
    return probes


def build_pipeline(settings: Settings, store: MetricsStore, clock: Clock | None = None,
                   probes: list[SourceProbe] | None = None) -> Pipeline:
    clock = clock or SystemClock()
    collection = settings.collection
    hostname = collection.hostname or platform.node()

    orchestrator = CollectionOrchestrator(
        probes=probes if probes is not None else build_probes(settings, hostname),
        store=store,
        hostname=hostname,
        normalizer=Normalizer(top_n=collection.top_n),
        clock=clock,
        probe_timeout=collection.probe_timeout_seconds,
        write_timeout=collection.write_timeout_seconds,
        write_attempts=collection.write_attempts,
        write_retry_delay=collection.write_retry_delay_seconds,
    )
    retention = RetentionManager.from_days(
        store,
        metrics_days=settings.retention.metrics_days,
        audit_days=settings.retention.audit_days,
        clock=clock,
        query_timeout=settings.retention.query_timeout_seconds,
    )
    engine = AggregationEngine(
        store,
        clock=clock,
        max_span_days=settings.aggregation.max_span_days,
        query_timeout=settings.aggregation.query_timeout_seconds,
        trend_tolerance_per_day=settings.aggregation.trend_tolerance_per_day,
    )
    return Pipeline(
        scheduler=CollectionScheduler(orchestrator, interval=collection.interval_seconds, clock=clock),
        retention=retention,
        engine=engine,
        summary_cache=SummaryCache(
            engine,
            ttl_seconds=settings.aggregation.cache_ttl_seconds,
            max_entries=settings.aggregation.cache_max_entries,
        ),
    )


async def open_store(settings: Settings) -> PostgresMetricsStore:
    db = settings.database
    pool = await init_db_pool(db.url, min_size=db.min_pool_size, max_size=db.max_pool_size)
    return PostgresMetricsStore(pool)


def start_background_tasks(pipeline: Pipeline, store: PostgresMetricsStore,
                           settings: Settings) -> list[asyncio.Task]:
    async def refresh_partitions():
        await store.ensure_partitions(pipeline.retention.clock.now(), settings.retention.partitions_ahead)

    logger.info("Starting collection task...")
    collection_task = asyncio.create_task(pipeline.scheduler.run())
    logger.info("Starting daily data retention cleanup task...")
    cleanup_task = asyncio.create_task(run_daily_cleanup(
        pipeline.retention,
        cleanup_hour=settings.retention.cleanup_hour,
        maintenance=refresh_partitions,
    ))
    return [collection_task, cleanup_task]


async def stop_background_tasks(pipeline: Pipeline, tasks: list[asyncio.Task], timeout: float = 15.0):
    pipeline.scheduler.stop()
    collection_task, *others = tasks
    try:
        # Let the in-flight cycle persist what it already collected
        await asyncio.wait_for(collection_task, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Collection task did not stop in time, cancelled")
    for task in others:
        task.cancel()
    await asyncio.gather(*others, return_exceptions=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.logging)
    logger.info("Server starting up...")

    store = await open_store(settings)
    await store.init_schema(months_ahead=settings.retention.partitions_ahead)
    pipeline = build_pipeline(settings, store)
    app.state.engine = pipeline.engine
    app.state.summary_cache = pipeline.summary_cache

    tasks = start_background_tasks(pipeline, store, settings)

    yield  # Application runs here

    logger.info("Server shutting down...")
    await stop_background_tasks(pipeline, tasks)
    await close_db_pool()


app = FastAPI(
    title="CheckGate Metrics Server",
    description="Host and cluster metrics collection with historical aggregation.",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(metrics.router, prefix="/api")


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "service": "checkgate",
        "version": "1.0.0",
    }
