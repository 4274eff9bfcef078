from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from pathlib import Path
import os
import shutil
import tarfile

from .cancellation import CancellationToken
from .catalog import TAR_SUFFIX, TEMP_PREFIX, artifact_name
from .disk import dir_size
from .errors import CycleCancelled, SnapshotIOError
from .logs import BackupLogger
from .models import BackupRecord, BackupStatus


class SnapshotWriter:
    def __init__(
        self,
        *,
        backup_dir: Path,
        artifact_format: str = "directory",
        logger: BackupLogger | None = None,
    ) -> None:
        self.backup_dir = backup_dir.absolute()
        self.artifact_format = artifact_format
        self.logger = logger or BackupLogger()

    def write(
        self,
        *,
        world_dir: Path,
        world_name: str,
        created_at: datetime,
        cancel: CancellationToken | None = None,
    ) -> BackupRecord:
        token = cancel or CancellationToken()
        name = artifact_name(world_name, created_at, artifact_format=self.artifact_format)
        final_path = self.backup_dir / name
        temp_path = self.backup_dir / f"{TEMP_PREFIX}{name}"
        record = BackupRecord(
            created_at=created_at,
            world_name=world_name,
            artifact_path=final_path,
            size_bytes=0,
            status=BackupStatus.PENDING,
        )

        if not world_dir.is_dir():
            raise SnapshotIOError(stage="prepare", reason=f"world directory not found at {world_dir}")
        if final_path.exists() or temp_path.exists():
            raise SnapshotIOError(stage="prepare", reason=f"artifact already exists at {final_path}")

        self.logger.info("snapshot_started", backup=name, source=str(world_dir))
        committed = False
        try:
            token.checkpoint("before snapshot write")
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            if self.artifact_format == "tar.gz":
                self._write_archive(
                    world_dir=world_dir,
                    destination=temp_path,
                    root_name=name.removesuffix(TAR_SUFFIX),
                    token=token,
                )
            else:
                self._copy_tree(world_dir=world_dir, destination=temp_path, token=token)
            size_bytes = dir_size(temp_path)
            token.checkpoint("before commit")
            os.replace(temp_path, final_path)
            committed = True
            _fsync_directory(self.backup_dir)
        except CycleCancelled:
            _remove_partial(final_path if committed else temp_path)
            self.logger.warning("snapshot_cancelled", backup=name, status=BackupStatus.FAILED.value)
            raise
        except (OSError, tarfile.TarError) as error:
            _remove_partial(final_path if committed else temp_path)
            self.logger.error("snapshot_failed", backup=name, status=BackupStatus.FAILED.value, reason=str(error))
            raise SnapshotIOError(stage="write", reason=f"{name}: {error}") from error
        except BaseException:
            _remove_partial(final_path if committed else temp_path)
            raise

        completed = record.with_status(BackupStatus.COMPLETE, size_bytes=size_bytes)
        self.logger.event(event="snapshot_committed", phase="snapshot", ok=True, backup=name, size_bytes=size_bytes)
        return completed

    def compress(self, record: BackupRecord) -> BackupRecord:
        """Rewrite a directory backup as ``<name>.tar.gz`` and return the updated record.

        The archive is committed before the directory is retired under the temp
        prefix, so a crash at any point leaves at least one complete copy.
        """
        source = record.artifact_path
        if not source.is_dir() or source.is_symlink():
            raise SnapshotIOError(stage="compress", reason=f"{record.name} is not an uncompressed backup")

        final_path = source.with_name(f"{source.name}{TAR_SUFFIX}")
        temp_path = source.with_name(f"{TEMP_PREFIX}{final_path.name}")
        retired_path = source.with_name(f"{TEMP_PREFIX}{source.name}")
        if final_path.exists() or temp_path.exists() or retired_path.exists():
            raise SnapshotIOError(stage="compress", reason=f"archive already exists at {final_path}")

        committed = retired = False
        try:
            self._write_archive(
                world_dir=source,
                destination=temp_path,
                root_name=source.name,
                token=CancellationToken(),
            )
            os.replace(temp_path, final_path)
            committed = True
            os.replace(source, retired_path)
            retired = True
            _fsync_directory(source.parent)
        except (OSError, tarfile.TarError) as error:
            if not retired:
                _remove_partial(final_path if committed else temp_path)
                self.logger.error("compress_failed", backup=record.name, reason=str(error))
                raise SnapshotIOError(stage="compress", reason=f"{record.name}: {error}") from error
            self.logger.warning("compress_sync_failed", backup=record.name, reason=str(error))

        _remove_partial(retired_path)
        compressed = replace(record, artifact_path=final_path, size_bytes=final_path.stat().st_size)
        self.logger.info(
            "backup_compressed",
            backup=record.name,
            archive=compressed.name,
            size_before=record.size_bytes,
            size_after=compressed.size_bytes,
        )
        return compressed

    def _copy_tree(self, *, world_dir: Path, destination: Path, token: CancellationToken) -> None:
        destination.mkdir()
        for root, dirs, files in os.walk(world_dir, followlinks=False):
            relative_root = Path(root).relative_to(world_dir)
            target_root = destination / relative_root
            for name in sorted(dirs):
                source = Path(root) / name
                target = target_root / name
                if source.is_symlink():
                    os.symlink(os.readlink(source), target)
                else:
                    target.mkdir()
            for name in sorted(files):
                token.checkpoint("between files")
                source = Path(root) / name
                target = target_root / name
                if source.is_symlink():
                    os.symlink(os.readlink(source), target)
                    continue
                shutil.copy2(source, target)
                _fsync_file(target)
            _fsync_directory(target_root)

    def _write_archive(
        self,
        *,
        world_dir: Path,
        destination: Path,
        root_name: str,
        token: CancellationToken,
    ) -> None:
        with destination.open("xb") as handle:
            with tarfile.open(fileobj=handle, mode="w:gz") as archive:
                archive.add(world_dir, arcname=root_name, recursive=False)
                for root, dirs, files in os.walk(world_dir, followlinks=False):
                    relative_root = Path(root_name) / Path(root).relative_to(world_dir)
                    for name in sorted(dirs):
                        archive.add(Path(root) / name, arcname=str(relative_root / name), recursive=False)
                    for name in sorted(files):
                        token.checkpoint("between files")
                        archive.add(Path(root) / name, arcname=str(relative_root / name), recursive=False)
            handle.flush()
            os.fsync(handle.fileno())


def _fsync_file(path: Path) -> None:
    with path.open("rb") as handle:
        os.fsync(handle.fileno())


def _fsync_directory(path: Path) -> None:
    if os.name != "posix":
        return
    descriptor = os.open(path, os.O_RDONLY)
    try:
        os.fsync(descriptor)
    finally:
        os.close(descriptor)


def _remove_partial(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path, ignore_errors=True)
    elif path.exists() or path.is_symlink():
        path.unlink(missing_ok=True)
