from datetime import timedelta

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from checkgate.internal.analysis.aggregation import AggregationEngine, SummaryCache
from checkgate.routers import metrics

from conftest import T0, metric_record


@pytest.fixture
def client(store, clock):
    app = FastAPI()
    app.include_router(metrics.router, prefix="/api")
    engine = AggregationEngine(store, clock=clock)
    app.state.engine = engine
    app.state.summary_cache = SummaryCache(engine, ttl_seconds=0)
    return TestClient(app)


def iso(dt):
    return dt.isoformat()


def test_current_returns_latest_record(client, store):
    store.records = [metric_record(T0 - timedelta(minutes=1), cpu=10.0), metric_record(T0, cpu=20.0)]

    response = client.get("/api/metrics/current")

    assert response.status_code == 200
    assert response.json()["cpu"]["overall_utilization"] == 20.0


def test_current_without_data_is_404(client):
    assert client.get("/api/metrics/current").status_code == 404


def test_summary_reports_empty_buckets_as_null(client, store):
    store.records = [metric_record(T0 - timedelta(minutes=29), cpu=10.0)]
    params = {
        "metric": "cpu.utilization",
        "start": iso(T0 - timedelta(minutes=30)),
        "end": iso(T0),
        "bucket_minutes": 10,
    }

    response = client.get("/api/metrics/summary", params=params)

    assert response.status_code == 200
    body = response.json()
    assert [b["sample_count"] for b in body] == [1, 0, 0]
    assert body[1]["avg"] is None


def test_summary_with_inverted_range_is_400(client):
    params = {"metric": "cpu.utilization", "start": iso(T0), "end": iso(T0 - timedelta(hours=1))}

    response = client.get("/api/metrics/summary", params=params)

    assert response.status_code == 400


def test_summary_with_unknown_metric_is_400(client):
    params = {"metric": "nope", "start": iso(T0 - timedelta(hours=1)), "end": iso(T0)}

    assert client.get("/api/metrics/summary", params=params).status_code == 400


def test_baseline_with_insufficient_data_returns_null_statistics(client):
    response = client.get("/api/metrics/baseline", params={"metric": "cpu.utilization", "days": 7})

    assert response.status_code == 200
    body = response.json()
    assert body["mean"] is None
    assert body["sample_count"] == 0


def test_export_returns_csv(client, store):
    store.records = [metric_record(T0 - timedelta(minutes=5))]
    params = {"start": iso(T0 - timedelta(hours=1)), "end": iso(T0)}

    response = client.get("/api/metrics/export", params=params)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert response.text.startswith("Timestamp,Hostname,CPU_Usage,Memory_Usage,Disk_Usage")


def test_slow_store_is_503(client, store):
    store.query_delay = 0.5
    client.app.state.engine.query_timeout = 0.01
    params = {"metric": "cpu.utilization", "start": iso(T0 - timedelta(hours=1)), "end": iso(T0)}

    response = client.get("/api/metrics/summary", params=params)

    assert response.status_code == 503
    assert "timed out" in response.json()["detail"]


def test_baseline_beyond_max_span_is_400(client):
    response = client.get("/api/metrics/baseline", params={"metric": "cpu.utilization", "days": 365})

    assert response.status_code == 400


def test_historical_returns_a_page_of_records(client, store):
    store.records = [metric_record(T0 - timedelta(minutes=m), cpu=float(m)) for m in range(1, 6)]
    params = {"start": iso(T0 - timedelta(hours=1)), "end": iso(T0), "page": 2, "page_size": 2}

    response = client.get("/api/metrics/historical", params=params)

    assert response.status_code == 200
    body = response.json()
    assert body["total_items"] == 5
    assert body["total_pages"] == 3
    assert body["page"] == 2
    assert [r["cpu"]["overall_utilization"] for r in body["items"]] == [3.0, 2.0]


def test_historical_rejects_oversized_pages(client):
    params = {"start": iso(T0 - timedelta(hours=1)), "end": iso(T0), "page_size": 5000}

    assert client.get("/api/metrics/historical", params=params).status_code == 422
