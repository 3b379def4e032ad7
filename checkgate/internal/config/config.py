# checkgate/internal/config/config.py

import logging
import os
from functools import lru_cache
from pathlib import Path

import tomli
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

CONFIG_FILE_PATH = Path(os.getenv("CHECKGATE_CONFIG", "config.toml"))


class DBSettings(BaseModel):
    user: str = "checkgate"
    password: str = ""
    database: str = "checkgate"
    host: str = "localhost"
    port: int = 5432
    min_pool_size: int = 2
    max_pool_size: int = 10

    @property
    def url(self) -> str:
        return (
            f"postgres://{self.user}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )


class CollectionSettings(BaseModel):
    interval_seconds: float = Field(30.0, gt=0)
    probe_timeout_seconds: float = Field(10.0, gt=0)
    # Empty means "use the machine's hostname"
    hostname: str = ""
    top_n: int = Field(5, ge=1)
    write_attempts: int = Field(3, ge=1)
    write_retry_delay_seconds: float = Field(1.0, ge=0)
    write_timeout_seconds: float = Field(15.0, gt=0)


class ClusterSettings(BaseModel):
    enabled: bool = False
    cluster_name: str = "docker-desktop"


class RetentionSettings(BaseModel):
    metrics_days: int = Field(90, ge=1)
    audit_days: int = Field(365, ge=1)
    cleanup_hour: int = Field(3, ge=0, le=23)
    query_timeout_seconds: float = Field(300.0, gt=0)
    partitions_ahead: int = Field(2, ge=0)


class AggregationSettings(BaseModel):
    max_span_days: int = Field(30, ge=1)
    query_timeout_seconds: float = Field(30.0, gt=0)
    cache_ttl_seconds: float = Field(300.0, ge=0)
    cache_max_entries: int = Field(256, ge=1)
    trend_tolerance_per_day: float = Field(0.5, ge=0)


class LoggingSettings(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class Settings(BaseModel):
    database: DBSettings = Field(default_factory=DBSettings)
    collection: CollectionSettings = Field(default_factory=CollectionSettings)
    cluster: ClusterSettings = Field(default_factory=ClusterSettings)
    retention: RetentionSettings = Field(default_factory=RetentionSettings)
    aggregation: AggregationSettings = Field(default_factory=AggregationSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_config(path: Path | None = None) -> Settings:
    """
    Loads configuration from a TOML file (config.toml by default).
    """
    config_path = Path(path) if path else CONFIG_FILE_PATH
    if not config_path.exists():
        logger.critical(f"Configuration file not found at {config_path.resolve()}")
        logger.critical("Copy 'config.example.toml' to 'config.toml' and fill it out.")
        raise FileNotFoundError(f"{config_path} not found")

    with open(config_path, "rb") as f:
        data = tomli.load(f)
    settings = Settings.model_validate(data)

    if not settings.database.password:
        logger.warning("Database password is empty. Check the [database] section.")

    return settings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Settings for the running process, loaded once."""
    return load_config()


def configure_logging(settings: LoggingSettings) -> None:
    logging.basicConfig(level=settings.level.upper(), format=settings.format)
