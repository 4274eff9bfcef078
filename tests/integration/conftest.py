from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import shutil

import pytest
import yaml

_REQUIRED_BINARIES = ("true", "false")


@dataclass(frozen=True)
class ServerHarness:
    world_dir: Path
    backup_dir: Path
    log_dir: Path
    harness_dir: Path

    def write_config(self, *, command: list[str], **extra: object) -> Path:
        raw = {
            "world_name": "smoke",
            "world_dir": str(self.world_dir),
            "backup_dir": str(self.backup_dir),
            "log_dir": str(self.log_dir),
            "server": {"command": command, "flush_wait_seconds": 0},
            "retention": {"min_keep": 2, "max_count": 2},
            "admission": {"safety_margin_bytes": 0},
            "timeouts": {"quiesce_seconds": 10, "resume_seconds": 10, "resume_attempts": 2, "resume_backoff_seconds": 0},
            **extra,
        }
        config_path = self.harness_dir / "backup.yaml"
        config_path.write_text(yaml.safe_dump(raw), encoding="utf-8")
        return config_path

    def artifacts(self) -> list[Path]:
        return sorted(
            path
            for path in self.backup_dir.iterdir()
            if path.name.startswith("smoke_")
        )


def _verify_prerequisites() -> None:
    missing = [binary for binary in _REQUIRED_BINARIES if shutil.which(binary) is None]
    if missing:
        pytest.skip(
            f"integration prerequisites are missing: {', '.join(sorted(missing))}.",
            allow_module_level=True,
        )


@pytest.fixture
def server_harness(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> ServerHarness:
    _verify_prerequisites()
    monkeypatch.setattr("world_backup_manager.cli.signal.signal", lambda signum, handler: None)

    world_dir = tmp_path / "world"
    (world_dir / "region").mkdir(parents=True)
    (world_dir / "level.dat").write_bytes(b"L" * 2048)
    (world_dir / "region" / "r.0.0.mca").write_bytes(b"R" * 8192)
    return ServerHarness(
        world_dir=world_dir,
        backup_dir=tmp_path / "backups",
        log_dir=tmp_path / "logs",
        harness_dir=tmp_path,
    )
