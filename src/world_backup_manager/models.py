from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path


class BackupStatus(str, Enum):
    PENDING = "pending"
    COMPLETE = "complete"
    FAILED = "failed"


class ServerState(str, Enum):
    RUNNING = "running"
    QUIESCING = "quiescing"
    QUIESCED = "quiesced"
    RESUMING = "resuming"


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    SKIPPED_NO_SPACE = "skipped_no_space"
    SKIPPED_SERVER_UNRESPONSIVE = "skipped_server_unresponsive"
    FAILED = "failed"


@dataclass(frozen=True)
class BackupRecord:
    created_at: datetime
    world_name: str
    artifact_path: Path
    size_bytes: int
    status: BackupStatus = BackupStatus.COMPLETE

    @property
    def name(self) -> str:
        return self.artifact_path.name

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.created_at, self.name)

    def with_status(self, status: BackupStatus, *, size_bytes: int | None = None) -> BackupRecord:
        if size_bytes is None:
            return replace(self, status=status)
        return replace(self, status=status, size_bytes=size_bytes)


@dataclass(frozen=True)
class CatalogInconsistency:
    """A mismatch between catalog metadata and the backup directory, already repaired."""

    kind: str
    artifact_path: Path
    detail: str = ""


@dataclass(frozen=True)
class RetentionFloorConflict:
    """The minimum-keep floor stopped eviction before the free-space floor was reached."""

    free_bytes: int
    min_free_bytes: int
    remaining_backups: int

    @property
    def message(self) -> str:
        return (
            f"free space floor unmet: {self.free_bytes} bytes free, {self.min_free_bytes} required, "
            f"{self.remaining_backups} backup(s) kept by the minimum-keep floor"
        )


@dataclass(frozen=True)
class EvictionReport:
    removed: tuple[BackupRecord, ...]
    kept: tuple[BackupRecord, ...]
    freed_bytes: int
    floor_conflict: RetentionFloorConflict | None = None
    compacted: tuple[BackupRecord, ...] = ()


@dataclass(frozen=True)
class CycleOutcome:
    kind: OutcomeKind
    started_at: str
    finished_at: str
    record: BackupRecord | None = None
    reason: str = ""
    eviction: EvictionReport | None = None
    warnings: tuple[str, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    def as_event(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "outcome": self.kind.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }
        if self.record is not None:
            payload["backup"] = self.record.name
            payload["size_bytes"] = self.record.size_bytes
        if self.reason:
            payload["reason"] = self.reason
        if self.eviction is not None:
            payload["evicted"] = [record.name for record in self.eviction.removed]
            payload["freed_bytes"] = self.eviction.freed_bytes
            if self.eviction.compacted:
                payload["compacted"] = [record.name for record in self.eviction.compacted]
        if self.warnings:
            payload["warnings"] = list(self.warnings)
        return payload
