from datetime import UTC, datetime

import pytest

from checkgate.internal.collector.normalizer import Normalizer, clamp_percent
from checkgate.internal.collector.probes import Snapshot
from checkgate.internal.errors import ValidationError
from checkgate.models.metrics import ClusterRecord, MetricRecord

from conftest import GIB, T0, cluster_snapshot, system_data, system_snapshot


def test_memory_utilization_from_total_and_available():
    record = Normalizer().normalize(system_snapshot())

    assert isinstance(record, MetricRecord)
    assert record.memory.total_physical_bytes == 16 * GIB
    assert record.memory.physical_utilization_percent == pytest.approx(75.0)


def test_overshooting_percentages_are_clamped():
    cpu = dict(system_data()["cpu"], overall_utilization=100.4, core_utilization=[-0.3, 101.0])

    record = Normalizer().normalize(system_snapshot(cpu=cpu))

    assert record.cpu.overall_utilization == 100.0
    assert record.cpu.core_utilization == [0.0, 100.0]


def test_far_out_of_range_percentage_is_clamped_and_logged(caplog):
    cpu = dict(system_data()["cpu"], overall_utilization=250.0)

    record = Normalizer().normalize(system_snapshot(cpu=cpu))

    assert record.cpu.overall_utilization == 100.0
    assert "far outside" in caplog.text


def test_clamp_percent_leaves_in_range_values_alone():
    assert clamp_percent(37.25) == 37.25
    assert clamp_percent(0) == 0.0


@pytest.mark.parametrize("memory", [
    {"total_physical_bytes": -1, "available_physical_bytes": 0},
    {"total_physical_bytes": 4 * GIB, "available_physical_bytes": 8 * GIB},
    {"total_physical_bytes": 4 * GIB},
])
def test_bad_memory_section_is_rejected(memory):
    with pytest.raises(ValidationError):
        Normalizer().normalize(system_snapshot(memory=memory))


def test_non_finite_value_is_rejected():
    cpu = dict(system_data()["cpu"], overall_utilization=float("nan"))

    with pytest.raises(ValidationError):
        Normalizer().normalize(system_snapshot(cpu=cpu))


def test_non_numeric_value_is_rejected():
    cpu = dict(system_data()["cpu"], logical_processors="eight")

    with pytest.raises(ValidationError):
        Normalizer().normalize(system_snapshot(cpu=cpu))


def test_disk_free_above_total_is_rejected():
    disks = [{"drive_id": "/data", "total_bytes": 10, "free_bytes": 11}]

    with pytest.raises(ValidationError, match="/data"):
        Normalizer().normalize(system_snapshot(disks=disks))


def test_missing_hostname_is_rejected():
    with pytest.raises(ValidationError):
        Normalizer().normalize(system_snapshot(hostname=""))


def test_optional_sections_default_to_empty():
    data = system_data()
    del data["disks"], data["network"], data["processes"]
    snapshot = Snapshot(source="system", kind="system", collected_at=T0, data=data)

    record = Normalizer().normalize(snapshot)

    assert record.disks == []
    assert record.network == []
    assert record.process_summary.total_processes == 0
    assert record.process_summary.top_cpu == []
    assert record.cpu.temperature is None


def test_core_count_defaults_to_logical_processors():
    cpu = {"overall_utilization": 10.0, "logical_processors": 8}

    record = Normalizer().normalize(system_snapshot(cpu=cpu))

    assert record.cpu.core_count == 8


def test_top_processes_ordered_with_pid_tiebreak():
    processes = {
        "total_processes": 6,
        "samples": [
            {"pid": 40, "name": "d", "cpu_utilization": 20.0, "memory_bytes": 100},
            {"pid": 12, "name": "b", "cpu_utilization": 20.0, "memory_bytes": 500},
            {"pid": 3, "name": "a", "cpu_utilization": 5.0, "memory_bytes": 500},
            {"pid": 8, "name": "c", "cpu_utilization": 90.0, "memory_bytes": 1},
            {"pid": 12, "name": "b", "cpu_utilization": 20.0, "memory_bytes": 500},
            {"pid": 99, "name": "e", "cpu_utilization": 1.0, "memory_bytes": 900},
        ],
    }

    record = Normalizer(top_n=3).normalize(system_snapshot(processes=processes))

    summary = record.process_summary
    assert [p.pid for p in summary.top_cpu] == [8, 12, 40]
    assert [p.pid for p in summary.top_memory] == [99, 3, 12]
    assert summary.total_processes == 6


def test_top_processes_keep_fewer_than_n():
    record = Normalizer(top_n=10).normalize(system_snapshot())

    assert [p.pid for p in record.process_summary.top_cpu] == [7, 9, 1]


def test_timestamp_uses_cycle_time_truncated_to_millis():
    ts = datetime(2024, 6, 1, 12, 0, 0, 123456, tzinfo=UTC)

    record = Normalizer().normalize(system_snapshot(), ts)

    assert record.timestamp == datetime(2024, 6, 1, 12, 0, 0, 123000, tzinfo=UTC)


def test_cluster_snapshot_normalizes():
    record = Normalizer().normalize(cluster_snapshot())

    assert isinstance(record, ClusterRecord)
    assert record.cluster_name == "kind"
    assert record.pods_running == 8
    assert record.cpu_requests == 1.5


def test_cluster_ready_nodes_above_total_is_rejected():
    with pytest.raises(ValidationError, match="nodes_ready"):
        Normalizer().normalize(cluster_snapshot(nodes_total=2, nodes_ready=3))


def test_cluster_pod_phases_above_total_is_rejected():
    with pytest.raises(ValidationError, match="pods_total"):
        Normalizer().normalize(cluster_snapshot(pods_total=5, pods_running=5, pods_pending=1))


def test_unknown_snapshot_kind_is_rejected():
    snapshot = Snapshot(source="gpu", kind="gpu", collected_at=T0, data={})

    with pytest.raises(ValidationError, match="Unknown snapshot kind"):
        Normalizer().normalize(snapshot)


def test_top_n_must_be_positive():
    with pytest.raises(ValueError):
        Normalizer(top_n=0)
