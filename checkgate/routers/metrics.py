# checkgate/routers/metrics.py

"""
Router for historical metrics queries.
Serves the latest record, paged history, bucketed summaries, baselines and CSV export.
"""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from checkgate.internal.analysis.aggregation import MAX_PAGE_SIZE, AggregationEngine, SummaryCache
from checkgate.internal.analysis.export import export_metrics_csv
from checkgate.internal.errors import InsufficientDataError, StoreError, ValidationError
from checkgate.models.metrics import MetricRecord
from checkgate.models.results import AggregateBucket, Baseline, HistoricalPage

router = APIRouter()
logger = logging.getLogger(__name__)


def get_engine(request: Request) -> AggregationEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Metrics store not available")
    return engine


def get_summary_cache(request: Request) -> SummaryCache:
    cache = getattr(request.app.state, "summary_cache", None)
    if cache is None:
        raise HTTPException(status_code=503, detail="Metrics store not available")
    return cache


@router.get("/metrics/current")
async def get_current_metrics(
    hostname: str | None = None,
    engine: AggregationEngine = Depends(get_engine),
) -> MetricRecord:
    """
    Most recent host record.
    """
    try:
        record = await engine.bounded_query(engine.store.latest(hostname))
    except StoreError as e:
        raise HTTPException(status_code=503, detail=f"Failed to retrieve metrics: {e}")
    if record is None:
        raise HTTPException(status_code=404, detail="No system metrics available")
    return record


@router.get("/metrics/historical")
async def get_historical_metrics(
    start: datetime,
    end: datetime,
    hostname: str | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(100, ge=1, le=MAX_PAGE_SIZE),
    engine: AggregationEngine = Depends(get_engine),
) -> HistoricalPage:
    """
    Raw host records in [start, end), oldest first, paged.
    """
    try:
        return await engine.history(start, end, hostname, page, page_size)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StoreError as e:
        raise HTTPException(status_code=503, detail=f"Failed to retrieve metrics: {e}")


@router.get("/metrics/summary")
async def get_metrics_summary(
    metric: str,
    start: datetime,
    end: datetime,
    bucket_minutes: int = Query(5, ge=1, le=1440),
    source: str | None = None,
    cache: SummaryCache = Depends(get_summary_cache),
) -> list[AggregateBucket]:
    """
    Bucketed min/max/avg of a metric over [start, end).

    Empty buckets are reported with sample_count 0 and null statistics.
    """
    try:
        return await cache.summarize(metric, start, end, bucket_minutes, source)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StoreError as e:
        raise HTTPException(status_code=503, detail=f"Failed to summarize metrics: {e}")


@router.get("/metrics/baseline")
async def get_metric_baseline(
    metric: str,
    # Upper bound is the configured max span, enforced by the engine
    days: int = Query(30, ge=1),
    source: str | None = None,
    engine: AggregationEngine = Depends(get_engine),
):
    """
    Trailing-window statistics (sample standard deviation).
    With fewer than 2 samples the statistics are null and sample_count says why.
    """
    try:
        baseline: Baseline = await engine.baseline(metric, days, source)
        return baseline
    except InsufficientDataError as e:
        return {
            "metric": metric,
            "mean": None,
            "stddev": None,
            "sample_count": e.sample_count,
            "detail": str(e),
        }
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StoreError as e:
        raise HTTPException(status_code=503, detail=f"Failed to compute baseline: {e}")


@router.get("/metrics/export", response_class=PlainTextResponse)
async def export_metrics(
    start: datetime,
    end: datetime,
    hostname: str | None = None,
    engine: AggregationEngine = Depends(get_engine),
):
    try:
        content = await export_metrics_csv(engine, start, end, hostname)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StoreError as e:
        raise HTTPException(status_code=503, detail=f"Failed to export metrics: {e}")
    return PlainTextResponse(
        content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="metrics.csv"'},
    )
