from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest
import yaml

from world_backup_manager import cli
from world_backup_manager.catalog import artifact_name
from world_backup_manager.metadata import BackupMetadataStore
from world_backup_manager.models import BackupRecord


def _write_config(tmp_path: Path, world_dir: Path, **extra: object) -> Path:
    raw = {
        "world_name": "world",
        "world_dir": str(world_dir),
        "backup_dir": str(tmp_path / "backups"),
        "log_dir": str(tmp_path / "logs"),
        "retention": {"min_keep": 3, "max_count": 3},
        "admission": {"safety_margin_bytes": 0},
        **extra,
    }
    config_path = tmp_path / "backup.yaml"
    config_path.write_text(yaml.safe_dump(raw), encoding="utf-8")
    return config_path


def _seed_artifacts(backup_dir: Path, count: int) -> list[Path]:
    paths = []
    for hour in range(count):
        path = backup_dir / artifact_name("world", datetime(2026, 3, 1, hour, 0, 0, tzinfo=UTC))
        path.mkdir(parents=True)
        (path / "level.dat").write_bytes(b"x" * 10)
        paths.append(path)
    return paths


def test_build_parser_requires_subcommand() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])


def test_build_parser_reads_prune_dry_run() -> None:
    args = cli.build_parser().parse_args(["-c", "backup.yaml", "prune", "--dry-run"])

    assert args.command == "prune"
    assert args.dry_run is True
    assert args.config == Path("backup.yaml")


def test_main_with_unreadable_config_returns_usage_error(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = cli.main(["-c", str(tmp_path / "missing.yaml"), "list"])

    assert exit_code == 64
    assert "configuration error" in capsys.readouterr().err


def test_main_reconcile_adopts_untracked_backups(
    tmp_path: Path,
    world_dir: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    config_path = _write_config(tmp_path, world_dir)
    _seed_artifacts(tmp_path / "backups", 2)

    exit_code = cli.main(["-c", str(config_path), "reconcile"])

    output = capsys.readouterr().out
    assert exit_code == 0
    assert output.count("adopted_orphan") == 2
    assert "2 inconsistency(ies) repaired" in output


def test_main_list_prints_newest_first(
    tmp_path: Path,
    world_dir: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    config_path = _write_config(tmp_path, world_dir)
    paths = _seed_artifacts(tmp_path / "backups", 2)

    exit_code = cli.main(["-c", str(config_path), "list"])

    lines = capsys.readouterr().out.splitlines()
    assert exit_code == 0
    assert [line.split("\t")[-1] for line in lines] == [str(paths[1]), str(paths[0])]
    assert lines[0].split("\t")[1] == "10 B"


def test_main_prune_dry_run_reports_without_deleting(
    tmp_path: Path,
    world_dir: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    config_path = _write_config(tmp_path, world_dir)
    paths = _seed_artifacts(tmp_path / "backups", 4)

    exit_code = cli.main(["-c", str(config_path), "prune", "--dry-run"])

    output = capsys.readouterr().out
    assert exit_code == 0
    assert "would delete\t" in output
    assert str(paths[0]) in output
    assert all(path.exists() for path in paths)


def test_main_prune_deletes_oldest_beyond_max_count(
    tmp_path: Path,
    world_dir: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    config_path = _write_config(tmp_path, world_dir)
    paths = _seed_artifacts(tmp_path / "backups", 4)

    exit_code = cli.main(["-c", str(config_path), "prune"])

    assert exit_code == 0
    assert "deleted\t" in capsys.readouterr().out
    assert not paths[0].exists()
    assert all(path.exists() for path in paths[1:])


def test_main_with_corrupt_catalog_exits_with_fatal_code(
    tmp_path: Path,
    world_dir: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    config_path = _write_config(tmp_path, world_dir)
    (path,) = _seed_artifacts(tmp_path / "backups", 1)
    store = BackupMetadataStore(tmp_path / "backups" / "catalog.db")
    store.initialize()
    record = BackupRecord(
        created_at=datetime(2026, 3, 1, 0, 0, 0, tzinfo=UTC),
        world_name="world",
        artifact_path=path,
        size_bytes=10,
    )
    store.insert_record(record)
    store.insert_record(record)

    exit_code = cli.main(["-c", str(config_path), "list"])

    assert exit_code == cli.EXIT_CATALOG_CORRUPT
    assert "catalog is corrupt" in capsys.readouterr().err


def test_main_run_maps_outcome_to_exit_code(
    tmp_path: Path,
    world_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr("world_backup_manager.cli.signal.signal", lambda signum, handler: None)
    config_path = _write_config(tmp_path, world_dir, admission={"safety_margin_bytes": "1000TiB"})

    exit_code = cli.main(["-c", str(config_path), "run"])

    assert exit_code == cli.EXIT_CODES[cli.OutcomeKind.SKIPPED_NO_SPACE]


@pytest.mark.parametrize(
    ("value", "expected"),
    [(0, "0 B"), (1023, "1023 B"), (1024, "1.0 KiB"), (3 * 1024**3, "3.0 GiB")],
)
def test_format_bytes_uses_binary_units(value: int, expected: str) -> None:
    assert cli.format_bytes(value) == expected
