"""Structured logging and outcome reporting for backup cycles."""
from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from threading import Lock
from typing import Any, Protocol
import json
import logging

from .models import CycleOutcome, OutcomeKind

LOGGER = logging.getLogger("world_backup_manager")


class BackupLogger:
    """Write one JSON line per backup event and mirror it to ``logging``."""

    def __init__(self, log_dir: Path | None = None) -> None:
        self._log_path: Path | None = None
        if log_dir is not None:
            self._log_path = Path(log_dir) / "backup.jsonl"
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()

    @property
    def log_path(self) -> Path | None:
        return self._log_path

    def _write(self, payload: dict[str, Any], *, level: int) -> None:
        payload.setdefault("ts", datetime.now(tz=UTC).isoformat())
        line = json.dumps(payload, sort_keys=True, default=str)
        if self._log_path is not None:
            with self._lock:
                with self._log_path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
        LOGGER.log(level, "%s", line)

    def event(self, *, event: str, phase: str, ok: bool, **extra: Any) -> None:
        payload = {"event": event, "phase": phase, "ok": bool(ok)}
        if extra:
            payload.update(extra)
        self._write(payload, level=logging.INFO if ok else logging.ERROR)

    def debug(self, event: str, **extra: Any) -> None:
        self._write({"event": event, **extra, "ok": True}, level=logging.DEBUG)

    def info(self, event: str, **extra: Any) -> None:
        self._write({"event": event, **extra, "ok": True}, level=logging.INFO)

    def warning(self, event: str, **extra: Any) -> None:
        self._write({"event": event, **extra, "ok": False}, level=logging.WARNING)

    def error(self, event: str, **extra: Any) -> None:
        self._write({"event": event, **extra, "ok": False}, level=logging.ERROR)


class OutcomeReporter(Protocol):
    def report(self, outcome: CycleOutcome) -> None: ...


class LoggingOutcomeReporter:
    """Default reporter: render every cycle outcome as a structured log event."""

    def __init__(self, logger: BackupLogger) -> None:
        self.logger = logger

    def report(self, outcome: CycleOutcome) -> None:
        payload = outcome.as_event()
        if outcome.kind == OutcomeKind.SUCCESS and outcome.warnings:
            self.logger.warning("cycle_finished", **payload)
        elif outcome.kind == OutcomeKind.FAILED:
            self.logger.error("cycle_finished", **payload)
        elif outcome.kind == OutcomeKind.SUCCESS:
            self.logger.info("cycle_finished", **payload)
        else:
            self.logger.warning("cycle_finished", **payload)


def configure_logging(*, verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


__all__ = ["BackupLogger", "LoggingOutcomeReporter", "OutcomeReporter", "configure_logging"]
