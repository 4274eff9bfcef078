from __future__ import annotations


class BackupError(RuntimeError):
    """Base exception for backup cycle failures."""


class ConfigError(BackupError):
    """Raised when the configuration file or environment is invalid."""


class BackupStageError(BackupError):
    def __init__(self, *, stage: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{stage} stage failed: {normalized_reason}")
        self.stage = stage
        self.reason = normalized_reason


class ServerUnresponsive(BackupStageError):
    """The server did not acknowledge a quiesce or resume request in time."""


class SnapshotIOError(BackupStageError):
    """Writing, flushing or renaming the snapshot failed."""


class DiskSpaceExhausted(BackupStageError):
    def __init__(self, *, free_bytes: int, required_bytes: int) -> None:
        super().__init__(
            stage="admission",
            reason=f"not enough room to create a backup ({free_bytes} bytes free, {required_bytes} required)",
        )
        self.free_bytes = free_bytes
        self.required_bytes = required_bytes


class CycleCancelled(BackupError):
    def __init__(self, checkpoint: str) -> None:
        super().__init__(f"cycle cancelled at checkpoint: {checkpoint}")
        self.checkpoint = checkpoint


class CatalogCorruptionError(Exception):
    """Two catalog records claim the same artifact. Never handled at the cycle boundary."""


__all__ = [
    "BackupError",
    "BackupStageError",
    "CatalogCorruptionError",
    "ConfigError",
    "CycleCancelled",
    "DiskSpaceExhausted",
    "ServerUnresponsive",
    "SnapshotIOError",
]
