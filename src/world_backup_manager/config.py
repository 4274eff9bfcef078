from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any
import os
import re
import shlex

import yaml

from .errors import ConfigError

ARTIFACT_FORMATS = ("directory", "tar.gz")

_BYTE_UNITS = {
    "": 1,
    "b": 1,
    "kb": 1000,
    "mb": 1000**2,
    "gb": 1000**3,
    "tb": 1000**4,
    "kib": 1024,
    "mib": 1024**2,
    "gib": 1024**3,
    "tib": 1024**4,
}
_BYTE_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*$")


@dataclass(frozen=True)
class ServerControlConfig:
    command: tuple[str, ...] = tuple(shlex.split(os.getenv("WBM_SERVER_COMMAND", "rcon-cli")))
    flush_wait_seconds: float = float(os.getenv("WBM_FLUSH_WAIT_SECONDS", "10"))


@dataclass(frozen=True)
class SchedulerConfig:
    interval_seconds: float = float(os.getenv("WBM_INTERVAL_SECONDS", "3600"))
    jitter_seconds: float = float(os.getenv("WBM_JITTER_SECONDS", "0"))

    def __post_init__(self) -> None:
        if self.interval_seconds < 0:
            raise ConfigError("scheduler.interval_seconds must be >= 0")
        if self.jitter_seconds < 0:
            raise ConfigError("scheduler.jitter_seconds must be >= 0")


@dataclass(frozen=True)
class RetentionConfig:
    min_keep: int = 3
    max_count: int | None = None
    max_age: timedelta | None = None
    min_free_bytes: int = 0
    compress_before_evict: bool = True

    def __post_init__(self) -> None:
        if self.min_keep < 1:
            raise ConfigError("retention.min_keep must be >= 1")
        if self.max_count is not None and self.max_count < self.min_keep:
            raise ConfigError("retention.max_count must be >= retention.min_keep")
        if self.max_age is not None and self.max_age <= timedelta(0):
            raise ConfigError("retention.max_age_days must be positive")
        if self.min_free_bytes < 0:
            raise ConfigError("retention.min_free_bytes must be >= 0")


@dataclass(frozen=True)
class AdmissionConfig:
    safety_margin_bytes: int = 1024**3
    make_room_before_backup: bool = False

    def __post_init__(self) -> None:
        if self.safety_margin_bytes < 0:
            raise ConfigError("admission.safety_margin_bytes must be >= 0")


@dataclass(frozen=True)
class TimeoutConfig:
    quiesce_seconds: float = 30.0
    resume_seconds: float = 30.0
    resume_attempts: int = 3
    resume_backoff_seconds: float = 2.0

    def __post_init__(self) -> None:
        if self.quiesce_seconds <= 0 or self.resume_seconds <= 0:
            raise ConfigError("timeouts must be positive")
        if self.resume_attempts < 1:
            raise ConfigError("timeouts.resume_attempts must be >= 1")


@dataclass(frozen=True)
class AppConfig:
    world_name: str = os.getenv("WBM_WORLD_NAME", "world")
    world_dir: Path = Path(os.getenv("WBM_WORLD_DIR", "./world"))
    backup_dir: Path = Path(os.getenv("WBM_BACKUP_DIR", "./backups"))
    metadata_db_path: Path | None = None
    log_dir: Path = Path(os.getenv("WBM_LOG_DIR", "./logs"))
    artifact_format: str = os.getenv("WBM_ARTIFACT_FORMAT", "directory")
    server: ServerControlConfig = field(default_factory=ServerControlConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    admission: AdmissionConfig = field(default_factory=AdmissionConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)

    def __post_init__(self) -> None:
        if self.artifact_format not in ARTIFACT_FORMATS:
            raise ConfigError(f"artifact_format must be one of {', '.join(ARTIFACT_FORMATS)}")
        if not self.world_name.strip():
            raise ConfigError("world_name is required")

    @property
    def catalog_db_path(self) -> Path:
        return self.metadata_db_path or self.backup_dir / "catalog.db"


def ensure_directories(config: AppConfig) -> None:
    config.backup_dir.mkdir(parents=True, exist_ok=True)
    config.catalog_db_path.parent.mkdir(parents=True, exist_ok=True)
    config.log_dir.mkdir(parents=True, exist_ok=True)


def load_config(path: Path | None = None) -> AppConfig:
    if path is None:
        env_path = os.getenv("WBM_CONFIG", "").strip()
        if not env_path:
            return AppConfig()
        path = Path(env_path)

    config_path = path.expanduser()
    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except OSError as error:
        raise ConfigError(f"unable to read config file {config_path}: {error}") from error
    except yaml.YAMLError as error:
        raise ConfigError(f"config file {config_path} must be valid YAML: {error.__class__.__name__}") from error

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"config file {config_path} must be a YAML mapping")
    return config_from_mapping(raw)


def config_from_mapping(raw: dict[str, Any]) -> AppConfig:
    defaults = AppConfig()
    server = _section(raw, "server")
    scheduler = _section(raw, "scheduler")
    retention = _section(raw, "retention")
    admission = _section(raw, "admission")
    timeouts = _section(raw, "timeouts")

    try:
        command = server.get("command", defaults.server.command)
        if isinstance(command, str):
            command = shlex.split(command)

        max_count = retention.get("max_count")
        max_age_days = retention.get("max_age_days")
        metadata_db_path = raw.get("metadata_db_path")

        return AppConfig(
            world_name=str(raw.get("world_name", defaults.world_name)),
            world_dir=Path(raw.get("world_dir", defaults.world_dir)).expanduser(),
            backup_dir=Path(raw.get("backup_dir", defaults.backup_dir)).expanduser(),
            metadata_db_path=Path(metadata_db_path).expanduser() if metadata_db_path else None,
            log_dir=Path(raw.get("log_dir", defaults.log_dir)).expanduser(),
            artifact_format=str(raw.get("artifact_format", defaults.artifact_format)),
            server=ServerControlConfig(
                command=tuple(str(token) for token in command),
                flush_wait_seconds=float(server.get("flush_wait_seconds", defaults.server.flush_wait_seconds)),
            ),
            scheduler=SchedulerConfig(
                interval_seconds=float(scheduler.get("interval_seconds", defaults.scheduler.interval_seconds)),
                jitter_seconds=float(scheduler.get("jitter_seconds", defaults.scheduler.jitter_seconds)),
            ),
            retention=RetentionConfig(
                min_keep=int(retention.get("min_keep", defaults.retention.min_keep)),
                max_count=int(max_count) if max_count is not None else None,
                max_age=timedelta(days=float(max_age_days)) if max_age_days is not None else None,
                min_free_bytes=parse_byte_size(retention.get("min_free_bytes", 0)),
                compress_before_evict=bool(
                    retention.get("compress_before_evict", defaults.retention.compress_before_evict)
                ),
            ),
            admission=AdmissionConfig(
                safety_margin_bytes=parse_byte_size(
                    admission.get("safety_margin_bytes", defaults.admission.safety_margin_bytes)
                ),
                make_room_before_backup=bool(admission.get("make_room_before_backup", False)),
            ),
            timeouts=TimeoutConfig(
                quiesce_seconds=float(timeouts.get("quiesce_seconds", defaults.timeouts.quiesce_seconds)),
                resume_seconds=float(timeouts.get("resume_seconds", defaults.timeouts.resume_seconds)),
                resume_attempts=int(timeouts.get("resume_attempts", defaults.timeouts.resume_attempts)),
                resume_backoff_seconds=float(
                    timeouts.get("resume_backoff_seconds", defaults.timeouts.resume_backoff_seconds)
                ),
            ),
        )
    except (TypeError, ValueError) as error:
        raise ConfigError(f"invalid configuration value: {error}") from error


def parse_byte_size(value: object) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"invalid byte size: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise ConfigError(f"byte size must be >= 0: {value}")
        return value

    match = _BYTE_SIZE_PATTERN.match(str(value))
    if match is None:
        raise ConfigError(f"invalid byte size: {value!r}")
    number, unit = match.groups()
    multiplier = _BYTE_UNITS.get(unit.lower())
    if multiplier is None:
        raise ConfigError(f"unknown byte size unit in {value!r}")
    return int(float(number) * multiplier)


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    section = raw.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"config section '{name}' must be a mapping")
    return section
