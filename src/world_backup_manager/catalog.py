from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Iterable, Sequence
import re
import shutil

from .disk import dir_size
from .errors import BackupStageError, CatalogCorruptionError
from .logs import BackupLogger
from .metadata import BackupMetadataStore
from .models import BackupRecord, BackupStatus, CatalogInconsistency

TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"
TEMP_PREFIX = ".tmp-"
TAR_SUFFIX = ".tar.gz"

_ARTIFACT_NAME_PATTERN = re.compile(
    r"^(?P<world>.+?)_(?P<timestamp>[0-9]{4}-[0-9]{2}-[0-9]{2}_[0-9]{2}-[0-9]{2}-[0-9]{2})(?P<suffix>\.tar\.gz)?$"
)


@dataclass(frozen=True)
class ObservedArtifact:
    path: Path
    world_name: str
    created_at: datetime
    size_bytes: int


@dataclass(frozen=True)
class DirectoryListing:
    artifacts: tuple[ObservedArtifact, ...] = ()
    temporaries: tuple[Path, ...] = ()
    unrecognized: tuple[Path, ...] = ()


class BackupCatalog:
    def __init__(
        self,
        *,
        backup_dir: Path,
        store: BackupMetadataStore,
        logger: BackupLogger | None = None,
    ) -> None:
        self.backup_dir = backup_dir
        self.store = store
        self.logger = logger or BackupLogger()
        self._records: list[BackupRecord] = []

    def load(self) -> None:
        records = self.store.list_records()
        ensure_catalog_invariant(records)
        self._records = _ordered(records)

    def reconcile(self) -> list[CatalogInconsistency]:
        listing = scan_backup_dir(self.backup_dir, ignore_names=self._ignored_names())
        records, inconsistencies = reconcile_records(self.store.list_records(), listing.artifacts)
        ensure_catalog_invariant(records)

        for temporary in listing.temporaries:
            _delete_artifact(temporary)
            inconsistencies.append(
                CatalogInconsistency(
                    kind="removed_stale_temporary",
                    artifact_path=temporary,
                    detail="partial artifact left by an interrupted snapshot",
                )
            )
        for path in listing.unrecognized:
            self.logger.warning("catalog_unrecognized_entry", path=str(path))

        if inconsistencies:
            self.store.replace_records(records)
        for inconsistency in inconsistencies:
            self.logger.warning(
                "catalog_inconsistency",
                kind=inconsistency.kind,
                path=str(inconsistency.artifact_path),
                detail=inconsistency.detail,
            )
        self._records = records
        self.logger.event(
            event="catalog_reconciled",
            phase="reconcile",
            ok=True,
            records=len(records),
            repaired=len(inconsistencies),
        )
        return inconsistencies

    def list_records(self) -> tuple[BackupRecord, ...]:
        return tuple(self._records)

    def latest(self) -> BackupRecord | None:
        return self._records[0] if self._records else None

    def append(self, record: BackupRecord) -> None:
        if record.status != BackupStatus.COMPLETE:
            raise ValueError(f"only complete backups can be cataloged, got {record.status.value}")
        if any(existing.created_at == record.created_at for existing in self._records):
            raise ValueError(f"a backup with identity {record.created_at.isoformat()} is already cataloged")

        candidate = [*self._records, record]
        ensure_catalog_invariant(candidate)
        self.store.insert_record(record)
        self._records = _ordered(candidate)

    def replace(self, current: BackupRecord, updated: BackupRecord) -> None:
        """Swap a cataloged record for its rewritten artifact, e.g. after compression."""
        if updated.status != BackupStatus.COMPLETE:
            raise ValueError(f"only complete backups can be cataloged, got {updated.status.value}")
        if not any(existing.artifact_path == current.artifact_path for existing in self._records):
            raise ValueError(f"{current.name} is not cataloged")

        candidate = [updated if existing.artifact_path == current.artifact_path else existing for existing in self._records]
        ensure_catalog_invariant(candidate)
        self.store.update_record(current, updated)
        self._records = _ordered(candidate)

    def remove(self, record: BackupRecord) -> None:
        try:
            _delete_artifact(record.artifact_path)
        except OSError as error:
            raise BackupStageError(stage="remove", reason=f"{record.name}: {error}") from error
        self.store.delete_record(record)
        self._records = [existing for existing in self._records if existing.artifact_path != record.artifact_path]

    def next_identity(self, now: datetime | None = None) -> datetime:
        candidate = (now or datetime.now(tz=UTC)).astimezone(UTC).replace(microsecond=0)
        latest = max((record.created_at for record in self._records), default=None)
        if latest is not None and candidate <= latest:
            candidate = latest + timedelta(seconds=1)
        return candidate

    def _ignored_names(self) -> set[str]:
        db_name = self.store.db_path.name
        return {db_name, f"{db_name}-journal", f"{db_name}-wal", f"{db_name}-shm"}


def artifact_name(world_name: str, created_at: datetime, *, artifact_format: str = "directory") -> str:
    suffix = TAR_SUFFIX if artifact_format == "tar.gz" else ""
    safe_world = _sanitize_filesystem_component(world_name)
    return f"{safe_world}_{created_at.astimezone(UTC).strftime(TIMESTAMP_FORMAT)}{suffix}"


def parse_artifact_name(name: str) -> tuple[str, datetime] | None:
    match = _ARTIFACT_NAME_PATTERN.match(name)
    if match is None:
        return None
    try:
        created_at = datetime.strptime(match.group("timestamp"), TIMESTAMP_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        return None
    return match.group("world"), created_at


def scan_backup_dir(backup_dir: Path, *, ignore_names: Iterable[str] = ()) -> DirectoryListing:
    if not backup_dir.exists():
        return DirectoryListing()

    ignored = set(ignore_names)
    artifacts: list[ObservedArtifact] = []
    temporaries: list[Path] = []
    unrecognized: list[Path] = []
    for entry in sorted(backup_dir.iterdir()):
        name = entry.name
        if name in ignored:
            continue
        if name.startswith(TEMP_PREFIX):
            temporaries.append(entry.absolute())
            continue
        if name.startswith("."):
            continue
        parsed = parse_artifact_name(name)
        if parsed is None:
            unrecognized.append(entry.absolute())
            continue
        world_name, created_at = parsed
        artifacts.append(
            ObservedArtifact(
                path=entry.absolute(),
                world_name=world_name,
                created_at=created_at,
                size_bytes=dir_size(entry),
            )
        )

    return DirectoryListing(
        artifacts=tuple(artifacts),
        temporaries=tuple(temporaries),
        unrecognized=tuple(unrecognized),
    )


def reconcile_records(
    persisted: Sequence[BackupRecord],
    observed: Sequence[ObservedArtifact],
) -> tuple[list[BackupRecord], list[CatalogInconsistency]]:
    """Repair catalog metadata against what is actually on disk.

    Presence always comes from ``observed``. A persisted record survives only if
    its artifact was observed, and then keeps its recorded fields (size in
    particular). Observed artifacts nobody tracks are adopted as complete
    records. Returns the repaired records, newest first, and every repair made.
    """
    observed_by_path = {artifact.path: artifact for artifact in observed}
    records: list[BackupRecord] = []
    inconsistencies: list[CatalogInconsistency] = []
    tracked: set[Path] = set()

    for record in persisted:
        if record.artifact_path not in observed_by_path:
            inconsistencies.append(
                CatalogInconsistency(
                    kind="missing_artifact",
                    artifact_path=record.artifact_path,
                    detail="record dropped, artifact no longer exists",
                )
            )
            continue
        if record.status != BackupStatus.COMPLETE:
            inconsistencies.append(
                CatalogInconsistency(
                    kind="incomplete_record",
                    artifact_path=record.artifact_path,
                    detail=f"record with status {record.status.value} replaced by the observed artifact",
                )
            )
            continue
        records.append(record)
        tracked.add(record.artifact_path)

    for artifact in observed:
        if artifact.path in tracked:
            continue
        records.append(
            BackupRecord(
                created_at=artifact.created_at,
                world_name=artifact.world_name,
                artifact_path=artifact.path,
                size_bytes=artifact.size_bytes,
                status=BackupStatus.COMPLETE,
            )
        )
        inconsistencies.append(
            CatalogInconsistency(
                kind="adopted_orphan",
                artifact_path=artifact.path,
                detail="untracked artifact adopted as a complete backup",
            )
        )

    return _ordered(records), inconsistencies


def ensure_catalog_invariant(records: Iterable[BackupRecord]) -> None:
    seen: set[Path] = set()
    for record in records:
        if record.artifact_path in seen:
            raise CatalogCorruptionError(f"multiple catalog records claim artifact {record.artifact_path}")
        seen.add(record.artifact_path)


def _ordered(records: Iterable[BackupRecord]) -> list[BackupRecord]:
    return sorted(records, key=lambda record: record.sort_key, reverse=True)


def _delete_artifact(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink(missing_ok=True)


def _sanitize_filesystem_component(value: str) -> str:
    sanitized = re.sub(r"[^a-zA-Z0-9._-]", "_", value)
    return sanitized or "unknown"
