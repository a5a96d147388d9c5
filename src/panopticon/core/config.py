"""Application configuration using pydantic-settings."""

from datetime import timedelta
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from panopticon.utils import parse_duration


def _coerce_duration(value: Any) -> Any:
    if isinstance(value, str):
        return parse_duration(value)
    return value


class ScannerSettings(BaseModel):
    """Scan execution settings."""

    frequency: timedelta = timedelta(hours=1)
    rate_limit: int = Field(default=1000, gt=0)
    target_network: str = "192.168.1.0/24"
    output_dir: Path = Path("./data/scans")
    output_retention_days: int = 30
    compress_output: bool = True
    enable_scheduler: bool = True
    default_template: str = "default"
    nmap_path: str = "nmap"
    mock_mode: bool = False

    @field_validator("frequency", mode="before")
    @classmethod
    def _parse_frequency(cls, value: Any) -> Any:
        return _coerce_duration(value)


class DatabaseSettings(BaseModel):
    """SQLite storage and maintenance settings."""

    path: Path = Path("./data/panopticon.db")
    backup_frequency: timedelta = timedelta(hours=168)
    optimize_frequency: timedelta = timedelta(hours=24)
    data_retention_days: int = 730
    echo: bool = False

    @field_validator("backup_frequency", "optimize_frequency", mode="before")
    @classmethod
    def _parse_frequencies(cls, value: Any) -> Any:
        return _coerce_duration(value)


class LoggingSettings(BaseModel):
    """Logging settings."""

    level: str = "info"


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Nested values use a double underscore, e.g.
    ``PANOPTICON_SCANNER__TARGET_NETWORK=10.0.0.0/24``.
    """

    model_config = SettingsConfigDict(
        env_prefix="PANOPTICON_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    scanner: ScannerSettings = Field(default_factory=ScannerSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
