from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from datetime import UTC, datetime
from threading import Lock
from typing import Callable, Iterator
import fcntl
import os

from .cancellation import CancellationToken
from .catalog import BackupCatalog
from .config import AppConfig, ensure_directories
from .disk import DiskMonitor, DiskStats
from .errors import (
    BackupError,
    CatalogCorruptionError,
    CycleCancelled,
    DiskSpaceExhausted,
    ServerUnresponsive,
)
from .logs import BackupLogger
from .metadata import BackupMetadataStore
from .models import BackupRecord, CatalogInconsistency, CycleOutcome, EvictionReport, OutcomeKind
from .retention import EvictionPlan, RetentionEvictor
from .server import CommandServerControl, ServerControl, ServerCoordinator
from .snapshot import SnapshotWriter

LOCK_FILE_NAME = ".lock"


class CycleBusyError(BackupError):
    """Another backup cycle or prune already holds the backup directory."""


class BackupCycle:
    def __init__(
        self,
        *,
        config: AppConfig,
        catalog: BackupCatalog,
        coordinator: ServerCoordinator,
        writer: SnapshotWriter,
        disk_monitor: DiskMonitor,
        evictor: RetentionEvictor,
        logger: BackupLogger | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config
        self.catalog = catalog
        self.coordinator = coordinator
        self.writer = writer
        self.disk_monitor = disk_monitor
        self.evictor = evictor
        self.logger = logger or BackupLogger()
        self.clock = clock or (lambda: datetime.now(tz=UTC))
        self._lock = Lock()

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        control: ServerControl | None = None,
        disk_stats: DiskStats | None = None,
        logger: BackupLogger | None = None,
    ) -> BackupCycle:
        ensure_directories(config)
        logger = logger or BackupLogger(config.log_dir)
        store = BackupMetadataStore(config.catalog_db_path)
        store.initialize()
        disk_monitor = DiskMonitor(volume=config.backup_dir, stats=disk_stats)
        writer = SnapshotWriter(backup_dir=config.backup_dir, artifact_format=config.artifact_format, logger=logger)
        return cls(
            config=config,
            catalog=BackupCatalog(backup_dir=config.backup_dir, store=store, logger=logger),
            coordinator=ServerCoordinator(
                control=control or CommandServerControl(config.server),
                timeouts=config.timeouts,
                logger=logger,
            ),
            writer=writer,
            disk_monitor=disk_monitor,
            evictor=RetentionEvictor(
                config=config.retention,
                disk_monitor=disk_monitor,
                logger=logger,
                compactor=writer,
            ),
            logger=logger,
        )

    @contextmanager
    def exclusive(self, *, blocking: bool = True) -> Iterator[None]:
        """Hold the in-process cycle lock and the cross-process lock file on the backup directory."""
        if not self._lock.acquire(blocking=blocking):
            raise CycleBusyError("another backup cycle is in progress")
        try:
            self.config.backup_dir.mkdir(parents=True, exist_ok=True)
            descriptor = os.open(self.config.backup_dir / LOCK_FILE_NAME, os.O_RDWR | os.O_CREAT, 0o644)
            try:
                flags = fcntl.LOCK_EX if blocking else fcntl.LOCK_EX | fcntl.LOCK_NB
                try:
                    fcntl.flock(descriptor, flags)
                except BlockingIOError as error:
                    raise CycleBusyError("another process holds the backup directory lock") from error
                try:
                    yield
                finally:
                    fcntl.flock(descriptor, fcntl.LOCK_UN)
            finally:
                os.close(descriptor)
        finally:
            self._lock.release()

    def reconcile(self) -> list[CatalogInconsistency]:
        with self.exclusive():
            return self.catalog.reconcile()

    def plan_prune(self) -> EvictionPlan:
        with self.exclusive():
            self.catalog.load()
            return self.evictor.plan(self.catalog, now=self.clock())

    def prune(self) -> EvictionReport:
        with self.exclusive():
            self.catalog.load()
            return self.evictor.apply(self.catalog, now=self.clock())

    def run(self, cancel: CancellationToken | None = None) -> CycleOutcome:
        started_at = _iso(self.clock())
        token = cancel or CancellationToken()
        try:
            with self.exclusive(blocking=False):
                return self._run_locked(token=token, started_at=started_at)
        except CycleBusyError as error:
            return self._outcome(OutcomeKind.FAILED, started_at=started_at, reason=str(error))

    def _run_locked(self, *, token: CancellationToken, started_at: str) -> CycleOutcome:
        record: BackupRecord | None = None
        try:
            self.catalog.load()
            token.checkpoint("before admission check")
            expected_bytes = self.disk_monitor.estimate_backup_size(self.config.world_dir)
            margin = self.config.admission.safety_margin_bytes
            if self.config.admission.make_room_before_backup:
                self._make_room(expected_bytes + margin)
            decision = self.disk_monitor.require_admission(expected_bytes=expected_bytes, safety_margin_bytes=margin)
            self.logger.info(
                "admission_granted",
                free_bytes=decision.free_bytes,
                required_bytes=decision.required_bytes,
            )

            token.checkpoint("before quiesce")
            if not self.coordinator.quiesce():
                return self._outcome(
                    OutcomeKind.SKIPPED_SERVER_UNRESPONSIVE,
                    started_at=started_at,
                    reason=f"server did not acknowledge quiesce within {self.config.timeouts.quiesce_seconds}s",
                )

            record, resume_error = self._snapshot_while_quiesced(token)
            if resume_error is not None:
                return self._outcome(
                    OutcomeKind.FAILED,
                    started_at=started_at,
                    record=record,
                    reason=str(resume_error),
                )

            eviction = self.evictor.apply(self.catalog, now=self.clock())
            warnings: tuple[str, ...] = ()
            if eviction.floor_conflict is not None:
                warnings = (eviction.floor_conflict.message,)
            return self._outcome(
                OutcomeKind.SUCCESS,
                started_at=started_at,
                record=record,
                eviction=eviction,
                warnings=warnings,
            )
        except DiskSpaceExhausted as error:
            return self._outcome(OutcomeKind.SKIPPED_NO_SPACE, started_at=started_at, reason=str(error))
        except CatalogCorruptionError:
            raise
        except CycleCancelled as error:
            return self._outcome(OutcomeKind.FAILED, started_at=started_at, reason=str(error))
        except BackupError as error:
            return self._outcome(OutcomeKind.FAILED, started_at=started_at, record=record, reason=str(error))
        except Exception as error:  # pylint: disable=broad-except
            return self._outcome(
                OutcomeKind.FAILED,
                started_at=started_at,
                record=record,
                reason=f"unexpected cycle failure: {_error_message(error)}",
            )

    def _snapshot_while_quiesced(
        self,
        token: CancellationToken,
    ) -> tuple[BackupRecord, ServerUnresponsive | None]:
        record: BackupRecord | None = None
        snapshot_error: Exception | None = None
        try:
            record = self.writer.write(
                world_dir=self.config.world_dir,
                world_name=self.config.world_name,
                created_at=self.catalog.next_identity(self.clock()),
                cancel=token,
            )
        except Exception as error:  # pylint: disable=broad-except
            snapshot_error = error

        resume_error: ServerUnresponsive | None = None
        try:
            self.coordinator.resume()
        except ServerUnresponsive as error:
            resume_error = error
            self.logger.error("server_left_paused", reason=str(error))

        if snapshot_error is not None or record is None:
            if resume_error is not None:
                raise resume_error from snapshot_error
            raise snapshot_error or RuntimeError("snapshot produced no record")
        self.catalog.append(record)
        return record, resume_error

    def _make_room(self, required_bytes: int) -> None:
        retention = self.config.retention
        floor = replace(retention, min_free_bytes=max(retention.min_free_bytes, required_bytes))
        self.evictor.apply(self.catalog, now=self.clock(), config=floor)

    def _outcome(
        self,
        kind: OutcomeKind,
        *,
        started_at: str,
        record: BackupRecord | None = None,
        reason: str = "",
        eviction: EvictionReport | None = None,
        warnings: tuple[str, ...] = (),
    ) -> CycleOutcome:
        return CycleOutcome(
            kind=kind,
            started_at=started_at,
            finished_at=_iso(self.clock()),
            record=record,
            reason=reason,
            eviction=eviction,
            warnings=warnings,
        )


def _iso(value: datetime) -> str:
    return value.astimezone(UTC).replace(microsecond=0).isoformat()


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
