from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Any, Callable

import pytest

from world_backup_manager.config import AdmissionConfig, AppConfig, RetentionConfig, TimeoutConfig
from world_backup_manager.cycle import BackupCycle

from fakes import FakeDiskStats, FakeServerControl


@pytest.fixture
def server_control() -> FakeServerControl:
    return FakeServerControl()


@pytest.fixture
def disk_stats() -> FakeDiskStats:
    return FakeDiskStats()


@pytest.fixture
def world_dir(tmp_path: Path) -> Path:
    world = tmp_path / "world"
    (world / "region").mkdir(parents=True)
    (world / "level.dat").write_bytes(b"L" * 100)
    (world / "region" / "r.0.0.mca").write_bytes(b"R" * 300)
    return world


@pytest.fixture
def app_config(tmp_path: Path, world_dir: Path) -> AppConfig:
    return AppConfig(
        world_name="world",
        world_dir=world_dir,
        backup_dir=tmp_path / "backups",
        log_dir=tmp_path / "logs",
        retention=RetentionConfig(min_keep=3),
        admission=AdmissionConfig(safety_margin_bytes=0),
        timeouts=TimeoutConfig(quiesce_seconds=30, resume_seconds=5, resume_attempts=3, resume_backoff_seconds=0),
    )


@pytest.fixture
def make_cycle(
    app_config: AppConfig,
    server_control: FakeServerControl,
    disk_stats: FakeDiskStats,
) -> Callable[..., BackupCycle]:
    def _make(**overrides: Any) -> BackupCycle:
        config = replace(app_config, **overrides) if overrides else app_config
        cycle = BackupCycle.from_config(config, control=server_control, disk_stats=disk_stats)
        cycle.reconcile()
        return cycle

    return _make
