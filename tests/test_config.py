import pytest

from checkgate.internal.config.config import Settings, load_config


def test_load_config_reads_sections(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(
        '[database]\npassword = "secret"\nhost = "db"\n'
        "[collection]\ninterval_seconds = 15\n"
        "[retention]\nmetrics_days = 30\n"
    )

    settings = load_config(path)

    assert settings.database.url == "postgres://checkgate:secret@db:5432/checkgate"
    assert settings.collection.interval_seconds == 15
    assert settings.retention.metrics_days == 30
    assert settings.retention.audit_days == 365
    assert settings.aggregation.max_span_days == 30


def test_missing_config_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.toml")


def test_defaults_match_documented_values():
    settings = Settings()

    assert settings.collection.interval_seconds == 30
    assert settings.collection.probe_timeout_seconds == 10
    assert settings.retention.cleanup_hour == 3
    assert settings.cluster.enabled is False
