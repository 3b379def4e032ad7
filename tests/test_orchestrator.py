import asyncio
from datetime import timedelta

import pytest

from checkgate.internal.collector.orchestrator import CollectionOrchestrator
from checkgate.models.metrics import ClusterRecord, MetricRecord
from checkgate.models.results import EventKind, ProbeErrorKind

from conftest import T0, ScriptedProbe, cluster_snapshot, system_snapshot


def make_orchestrator(probes, store, clock, **kwargs):
    events = []
    kwargs.setdefault("probe_timeout", 0.05)
    orchestrator = CollectionOrchestrator(
        probes, store, hostname="host-a", clock=clock, on_event=events.append, **kwargs
    )
    return orchestrator, events


async def test_one_timeout_out_of_three_probes_still_writes_the_rest(store, clock):
    probes = [
        ScriptedProbe("system", system_snapshot(), mandatory=True),
        ScriptedProbe("cluster:a", cluster_snapshot("a")),
        ScriptedProbe("cluster:b", hang=True),
    ]
    orchestrator, events = make_orchestrator(probes, store, clock)

    result = await orchestrator.run_cycle()

    assert len(result.records) == 2
    assert [(e.probe, e.kind) for e in result.errors] == [("cluster:b", ProbeErrorKind.TIMEOUT)]
    assert result.written
    assert result.partially_successful
    assert store.write_calls == 1
    assert len(store.records) == 2
    assert [e.kind for e in events] == [EventKind.PROBE_FAILED]


async def test_records_share_the_cycle_timestamp(store, clock):
    probes = [
        ScriptedProbe("system", system_snapshot(), mandatory=True),
        ScriptedProbe("cluster:a", cluster_snapshot("a")),
    ]
    orchestrator, _ = make_orchestrator(probes, store, clock)

    result = await orchestrator.run_cycle()

    assert {r.timestamp for r in result.records} == {T0}


async def test_all_probes_failing_writes_nothing(store, clock):
    probes = [
        ScriptedProbe("system", error=RuntimeError("psutil exploded"), mandatory=True),
        ScriptedProbe("cluster:a", hang=True),
    ]
    orchestrator, events = make_orchestrator(probes, store, clock)

    result = await orchestrator.run_cycle()

    assert result.records == []
    assert len(result.errors) == 2
    assert not result.written
    assert store.write_calls == 0
    assert events[-1].kind == EventKind.CYCLE_FAILED


async def test_failed_mandatory_probe_leaves_partial_host_record(store, clock):
    probes = [
        ScriptedProbe("system", error=OSError("no /proc"), mandatory=True),
        ScriptedProbe("cluster:a", cluster_snapshot("a")),
    ]
    orchestrator, _ = make_orchestrator(probes, store, clock)

    result = await orchestrator.run_cycle()

    assert result.written
    host = [r for r in result.records if isinstance(r, MetricRecord)]
    assert len(host) == 1
    assert host[0].hostname == "host-a"
    assert host[0].is_partial
    assert any(isinstance(r, ClusterRecord) for r in result.records)
    assert result.errors[0].kind == ProbeErrorKind.FAILURE
    assert "no /proc" in result.errors[0].message


async def test_invalid_snapshot_is_reported_not_written(store, clock):
    bad = system_snapshot(memory={"total_physical_bytes": 1, "available_physical_bytes": 2})
    probes = [
        ScriptedProbe("system", system_snapshot(), mandatory=True),
        ScriptedProbe("other", bad),
    ]
    orchestrator, _ = make_orchestrator(probes, store, clock)

    result = await orchestrator.run_cycle()

    assert len(result.records) == 1
    assert result.errors[0].probe == "other"
    assert result.errors[0].kind == ProbeErrorKind.INVALID


async def test_write_is_retried_with_backoff(store, clock):
    store.fail_writes = 2
    orchestrator, events = make_orchestrator(
        [ScriptedProbe("system", system_snapshot(), mandatory=True)], store, clock,
        write_attempts=3, write_retry_delay=1.0,
    )

    result = await orchestrator.run_cycle()

    assert result.written
    assert result.write_error is None
    assert store.write_calls == 3
    assert clock.sleeps == [1.0, 2.0]
    assert len(store.records) == 1
    assert events == []


async def test_write_gives_up_after_bounded_attempts(store, clock):
    store.fail_writes = 10
    orchestrator, events = make_orchestrator(
        [ScriptedProbe("system", system_snapshot(), mandatory=True)], store, clock,
        write_attempts=3,
    )

    result = await orchestrator.run_cycle()

    assert not result.written
    assert "connection reset" in result.write_error
    assert store.write_calls == 3
    assert store.records == []
    assert events[-1].kind == EventKind.CYCLE_WRITE_FAILED


async def test_timestamps_strictly_increase_across_cycles(store, clock):
    orchestrator, _ = make_orchestrator(
        [ScriptedProbe("system", system_snapshot(), mandatory=True)], store, clock
    )

    first = await orchestrator.run_cycle(T0)
    second = await orchestrator.run_cycle(T0)

    assert second.triggered_at == first.triggered_at + timedelta(milliseconds=1)
    assert store.records[1].timestamp > store.records[0].timestamp


async def test_shutdown_abandons_pending_probes_and_keeps_finished_ones(store, clock):
    slow = ScriptedProbe("cluster:a", hang=True)
    probes = [ScriptedProbe("system", system_snapshot(), mandatory=True), slow]
    orchestrator, _ = make_orchestrator(probes, store, clock, probe_timeout=30)

    cycle = asyncio.create_task(orchestrator.run_cycle())
    for _ in range(10):
        await asyncio.sleep(0)
    orchestrator.request_shutdown()
    result = await asyncio.wait_for(cycle, timeout=1)

    assert [(e.probe, e.kind) for e in result.errors] == [("cluster:a", ProbeErrorKind.CANCELLED)]
    assert slow.cancelled
    assert result.written
    assert len(store.records) == 1


def test_probe_names_must_be_unique(store):
    probes = [ScriptedProbe("system", system_snapshot()), ScriptedProbe("system", system_snapshot())]

    with pytest.raises(ValueError):
        CollectionOrchestrator(probes, store, hostname="host-a")


def test_at_least_one_probe_required(store):
    with pytest.raises(ValueError):
        CollectionOrchestrator([], store, hostname="host-a")
