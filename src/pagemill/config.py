"""Runtime configuration for pagemill."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class SplitterSettings:
    poll_interval_seconds: float = 2.0
    max_retries: int = 3
    retry_base_seconds: float = 1.0
    retry_max_seconds: float = 30.0


@dataclass(slots=True)
class ConverterSettings:
    count: int = 3
    poll_interval_seconds: float = 2.0
    max_retries: int = 3
    retry_base_seconds: float = 1.0
    retry_max_seconds: float = 30.0
    timeout_seconds: float = 120.0
    max_content_length: int = 500_000


@dataclass(slots=True)
class MergerSettings:
    poll_interval_seconds: float = 2.0
    max_retries: int = 3
    retry_base_seconds: float = 1.0
    retry_max_seconds: float = 30.0


@dataclass(slots=True)
class HealthCheckSettings:
    """Periodic release of pages whose converter stopped reporting back."""

    enabled: bool = True
    interval_seconds: float = 60.0
    page_timeout_seconds: float = 300.0


@dataclass(slots=True)
class WorkerSettings:
    splitter: SplitterSettings = field(default_factory=SplitterSettings)
    converter: ConverterSettings = field(default_factory=ConverterSettings)
    merger: MergerSettings = field(default_factory=MergerSettings)
    health_check: HealthCheckSettings = field(default_factory=HealthCheckSettings)
    graceful_shutdown_seconds: float = 15.0


@dataclass(slots=True)
class Settings:
    """Top-level settings object."""

    db_path: Path
    uploads_dir: Path
    default_model: str = ""
    sqlite_busy_timeout_ms: int = 5000
    workers: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(
        cls,
        db_path: Path | None = None,
        uploads_dir: Path | None = None,
    ) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("PAGEMILL_DB_PATH", ".pagemill.db")),
            uploads_dir=uploads_dir or Path(os.getenv("PAGEMILL_UPLOADS_DIR", "uploads")),
            default_model=os.getenv("PAGEMILL_DEFAULT_MODEL", ""),
            sqlite_busy_timeout_ms=int(os.getenv("PAGEMILL_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            workers=WorkerSettings(
                splitter=SplitterSettings(
                    poll_interval_seconds=float(
                        os.getenv("PAGEMILL_SPLITTER_POLL_INTERVAL_SECONDS", "2.0"),
                    ),
                    max_retries=int(os.getenv("PAGEMILL_SPLITTER_MAX_RETRIES", "3")),
                    retry_base_seconds=float(
                        os.getenv("PAGEMILL_SPLITTER_RETRY_BASE_SECONDS", "1.0"),
                    ),
                ),
                converter=ConverterSettings(
                    count=int(os.getenv("PAGEMILL_CONVERTER_COUNT", "3")),
                    poll_interval_seconds=float(
                        os.getenv("PAGEMILL_CONVERTER_POLL_INTERVAL_SECONDS", "2.0"),
                    ),
                    max_retries=int(os.getenv("PAGEMILL_CONVERTER_MAX_RETRIES", "3")),
                    retry_base_seconds=float(
                        os.getenv("PAGEMILL_CONVERTER_RETRY_BASE_SECONDS", "1.0"),
                    ),
                    retry_max_seconds=float(
                        os.getenv("PAGEMILL_CONVERTER_RETRY_MAX_SECONDS", "30.0"),
                    ),
                    timeout_seconds=float(
                        os.getenv("PAGEMILL_CONVERTER_TIMEOUT_SECONDS", "120.0"),
                    ),
                    max_content_length=int(
                        os.getenv("PAGEMILL_CONVERTER_MAX_CONTENT_LENGTH", "500000"),
                    ),
                ),
                merger=MergerSettings(
                    poll_interval_seconds=float(
                        os.getenv("PAGEMILL_MERGER_POLL_INTERVAL_SECONDS", "2.0"),
                    ),
                    max_retries=int(os.getenv("PAGEMILL_MERGER_MAX_RETRIES", "3")),
                    retry_base_seconds=float(
                        os.getenv("PAGEMILL_MERGER_RETRY_BASE_SECONDS", "1.0"),
                    ),
                ),
                health_check=HealthCheckSettings(
                    enabled=_env_bool("PAGEMILL_HEALTH_CHECK_ENABLED", default=True),
                    interval_seconds=float(
                        os.getenv("PAGEMILL_HEALTH_CHECK_INTERVAL_SECONDS", "60.0"),
                    ),
                    page_timeout_seconds=float(
                        os.getenv("PAGEMILL_PAGE_TIMEOUT_SECONDS", "300.0"),
                    ),
                ),
                graceful_shutdown_seconds=float(
                    os.getenv("PAGEMILL_GRACEFUL_SHUTDOWN_SECONDS", "15.0"),
                ),
            ),
        )

    def validate(self) -> None:
        """Reject settings the workers cannot run with."""

        workers = self.workers
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("PAGEMILL_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if workers.converter.count < 1:
            raise ValueError("PAGEMILL_CONVERTER_COUNT must be >= 1.")
        for name, value in (
            ("PAGEMILL_SPLITTER_POLL_INTERVAL_SECONDS", workers.splitter.poll_interval_seconds),
            ("PAGEMILL_CONVERTER_POLL_INTERVAL_SECONDS", workers.converter.poll_interval_seconds),
            ("PAGEMILL_MERGER_POLL_INTERVAL_SECONDS", workers.merger.poll_interval_seconds),
            ("PAGEMILL_CONVERTER_TIMEOUT_SECONDS", workers.converter.timeout_seconds),
            ("PAGEMILL_PAGE_TIMEOUT_SECONDS", workers.health_check.page_timeout_seconds),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")
        for name, retries in (
            ("PAGEMILL_SPLITTER_MAX_RETRIES", workers.splitter.max_retries),
            ("PAGEMILL_CONVERTER_MAX_RETRIES", workers.converter.max_retries),
            ("PAGEMILL_MERGER_MAX_RETRIES", workers.merger.max_retries),
        ):
            if retries < 1:
                raise ValueError(f"{name} must be >= 1.")
        if workers.converter.retry_base_seconds < 0:
            raise ValueError("PAGEMILL_CONVERTER_RETRY_BASE_SECONDS must be >= 0.")
        if workers.converter.max_content_length < 1:
            raise ValueError("PAGEMILL_CONVERTER_MAX_CONTENT_LENGTH must be >= 1.")
        if workers.health_check.enabled and workers.health_check.interval_seconds <= 0:
            raise ValueError("PAGEMILL_HEALTH_CHECK_INTERVAL_SECONDS must be > 0.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
