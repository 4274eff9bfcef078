"""Retention policy: a pure eviction planner plus the step that applies a plan."""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Protocol, Sequence

from .catalog import BackupCatalog
from .config import RetentionConfig
from .disk import DiskMonitor
from .errors import SnapshotIOError
from .logs import BackupLogger
from .models import BackupRecord, BackupStatus, EvictionReport, RetentionFloorConflict


@dataclass(frozen=True)
class EvictionPlan:
    to_delete: tuple[BackupRecord, ...]
    to_keep: tuple[BackupRecord, ...]
    projected_free_bytes: int
    floor_conflict: RetentionFloorConflict | None = None

    @property
    def freed_bytes(self) -> int:
        return sum(record.size_bytes for record in self.to_delete)


def plan_eviction(
    records: Sequence[BackupRecord],
    config: RetentionConfig,
    *,
    free_bytes: int,
    now: datetime | None = None,
) -> EvictionPlan:
    """Select the minimal oldest-first set of complete backups to delete.

    The ``min_keep`` newest complete backups are never eligible. Among the rest,
    deletion covers (in order) the excess over ``max_count``, anything older than
    ``max_age`` and then as many of the oldest as it takes for free space to reach
    ``min_free_bytes``. Non-complete records are neither counted nor touched.
    """
    current = now or datetime.now(tz=UTC)
    complete = sorted(
        (record for record in records if record.status == BackupStatus.COMPLETE),
        key=lambda record: record.sort_key,
    )
    protected_count = min(config.min_keep, len(complete))
    eligible = complete[: len(complete) - protected_count]

    delete_count = 0
    if config.max_count is not None:
        delete_count = max(delete_count, len(complete) - config.max_count)
    if config.max_age is not None:
        aged = sum(1 for record in eligible if current - record.created_at > config.max_age)
        delete_count = max(delete_count, aged)
    delete_count = min(delete_count, len(eligible))

    projected_free = free_bytes + sum(record.size_bytes for record in eligible[:delete_count])
    while projected_free < config.min_free_bytes and delete_count < len(eligible):
        projected_free += eligible[delete_count].size_bytes
        delete_count += 1

    to_delete = tuple(eligible[:delete_count])
    to_keep = tuple(reversed(complete[delete_count:]))
    floor_conflict = None
    if projected_free < config.min_free_bytes:
        floor_conflict = RetentionFloorConflict(
            free_bytes=projected_free,
            min_free_bytes=config.min_free_bytes,
            remaining_backups=len(to_keep),
        )

    return EvictionPlan(
        to_delete=to_delete,
        to_keep=to_keep,
        projected_free_bytes=projected_free,
        floor_conflict=floor_conflict,
    )


class ArtifactCompactor(Protocol):
    def compress(self, record: BackupRecord) -> BackupRecord: ...


class RetentionEvictor:
    def __init__(
        self,
        *,
        config: RetentionConfig,
        disk_monitor: DiskMonitor,
        logger: BackupLogger | None = None,
        compactor: ArtifactCompactor | None = None,
    ) -> None:
        self.config = config
        self.disk_monitor = disk_monitor
        self.logger = logger or BackupLogger()
        self.compactor = compactor

    def plan(
        self,
        catalog: BackupCatalog,
        *,
        now: datetime | None = None,
        config: RetentionConfig | None = None,
    ) -> EvictionPlan:
        return plan_eviction(
            catalog.list_records(),
            config or self.config,
            free_bytes=self.disk_monitor.free_bytes(),
            now=now,
        )

    def apply(
        self,
        catalog: BackupCatalog,
        *,
        now: datetime | None = None,
        config: RetentionConfig | None = None,
    ) -> EvictionReport:
        """Compress uncompressed backups toward the free-space floor, then delete what the plan selects."""
        policy = config or self.config
        compacted = self._compact(catalog, now=now, config=policy)
        plan = self.plan(catalog, now=now, config=policy)
        removed: list[BackupRecord] = []
        for record in plan.to_delete:
            catalog.remove(record)
            removed.append(record)
            self.logger.info("backup_removed", backup=record.name, reason="retention", size_bytes=record.size_bytes)

        if plan.floor_conflict is not None:
            self.logger.warning(
                "retention_floor_conflict",
                free_bytes=plan.floor_conflict.free_bytes,
                min_free_bytes=plan.floor_conflict.min_free_bytes,
                remaining=plan.floor_conflict.remaining_backups,
            )
        self.logger.event(
            event="retention_applied",
            phase="retention",
            ok=True,
            compacted=len(compacted),
            removed=len(removed),
            kept=len(plan.to_keep),
        )
        return EvictionReport(
            removed=tuple(removed),
            kept=plan.to_keep,
            freed_bytes=sum(record.size_bytes for record in removed),
            floor_conflict=plan.floor_conflict,
            compacted=tuple(compacted),
        )

    def _compact(
        self,
        catalog: BackupCatalog,
        *,
        now: datetime | None,
        config: RetentionConfig,
    ) -> list[BackupRecord]:
        """Compress the smallest uncompressed backup until the floor is met or nothing fits.

        A candidate must be smaller than the current free space so its archive
        can be written next to it. Backups the count and age limits delete anyway
        are skipped.
        """
        if self.compactor is None or not config.compress_before_evict or config.min_free_bytes <= 0:
            return []

        doomed = {
            record.artifact_path
            for record in plan_eviction(
                catalog.list_records(),
                replace(config, min_free_bytes=0),
                free_bytes=0,
                now=now,
            ).to_delete
        }
        compacted: list[BackupRecord] = []
        while True:
            free_bytes = self.disk_monitor.free_bytes()
            if free_bytes >= config.min_free_bytes:
                break
            candidates = [
                record
                for record in catalog.list_records()
                if record.status == BackupStatus.COMPLETE
                and record.artifact_path not in doomed
                and record.artifact_path.is_dir()
                and not record.artifact_path.is_symlink()
                and record.size_bytes < free_bytes
            ]
            if not candidates:
                break
            smallest = min(candidates, key=lambda record: (record.size_bytes, record.sort_key))
            try:
                archived = self.compactor.compress(smallest)
            except SnapshotIOError as error:
                self.logger.warning("compaction_stopped", backup=smallest.name, reason=str(error))
                break
            catalog.replace(smallest, archived)
            compacted.append(archived)
        return compacted
