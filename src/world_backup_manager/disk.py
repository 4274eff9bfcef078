from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
import os
import shutil

from .errors import BackupStageError, DiskSpaceExhausted


class DiskStats(Protocol):
    def free_bytes(self, volume: Path) -> int: ...


class ShutilDiskStats:
    def free_bytes(self, volume: Path) -> int:
        return shutil.disk_usage(_nearest_existing_ancestor(volume)).free


@dataclass(frozen=True)
class AdmissionDecision:
    free_bytes: int
    expected_bytes: int
    safety_margin_bytes: int

    @property
    def required_bytes(self) -> int:
        return self.expected_bytes + self.safety_margin_bytes

    @property
    def admitted(self) -> bool:
        return self.free_bytes >= self.required_bytes


class DiskMonitor:
    def __init__(self, *, volume: Path, stats: DiskStats | None = None) -> None:
        self.volume = volume
        self.stats = stats or ShutilDiskStats()

    def free_bytes(self) -> int:
        return int(self.stats.free_bytes(self.volume))

    def estimate_backup_size(self, world_dir: Path) -> int:
        try:
            return dir_size(world_dir)
        except OSError as error:
            raise BackupStageError(stage="estimate", reason=f"unable to size {world_dir}: {error}") from error

    def check_admission(self, *, expected_bytes: int, safety_margin_bytes: int) -> AdmissionDecision:
        return AdmissionDecision(
            free_bytes=self.free_bytes(),
            expected_bytes=expected_bytes,
            safety_margin_bytes=safety_margin_bytes,
        )

    def require_admission(self, *, expected_bytes: int, safety_margin_bytes: int) -> AdmissionDecision:
        decision = self.check_admission(expected_bytes=expected_bytes, safety_margin_bytes=safety_margin_bytes)
        if not decision.admitted:
            raise DiskSpaceExhausted(free_bytes=decision.free_bytes, required_bytes=decision.required_bytes)
        return decision


def dir_size(path: Path) -> int:
    """Total size of ``path`` in bytes, counting symlinks themselves rather than their targets."""
    metadata = os.lstat(path)
    if not os.path.isdir(path) or os.path.islink(path):
        return metadata.st_size

    total = 0
    for root, dirs, files in os.walk(path, followlinks=False):
        for name in files:
            total += os.lstat(os.path.join(root, name)).st_size
        for name in dirs:
            candidate = os.path.join(root, name)
            if os.path.islink(candidate):
                total += os.lstat(candidate).st_size
    return total


def _nearest_existing_ancestor(path: Path) -> Path:
    for candidate in (path, *path.parents):
        if candidate.exists():
            return candidate
    return Path(os.sep)
