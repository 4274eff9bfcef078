from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from world_backup_manager.config import (
    AppConfig,
    RetentionConfig,
    config_from_mapping,
    ensure_directories,
    load_config,
    parse_byte_size,
)
from world_backup_manager.errors import ConfigError


def test_load_config_with_full_yaml_builds_nested_sections(tmp_path: Path) -> None:
    config_path = tmp_path / "backup.yaml"
    config_path.write_text(
        """
world_name: wurstmineberg
world_dir: /srv/minecraft/world
backup_dir: /media/backup/world
artifact_format: tar.gz
server:
  command: docker exec mc rcon-cli
  flush_wait_seconds: 5
scheduler:
  interval_seconds: 1800
  jitter_seconds: 60
retention:
  min_keep: 3
  max_count: 5
  max_age_days: 7
  min_free_bytes: 10GiB
  compress_before_evict: false
admission:
  safety_margin_bytes: 1GiB
  make_room_before_backup: true
timeouts:
  quiesce_seconds: 30
  resume_attempts: 4
""",
        encoding="utf-8",
    )

    config = load_config(config_path)

    assert config.world_name == "wurstmineberg"
    assert config.world_dir == Path("/srv/minecraft/world")
    assert config.artifact_format == "tar.gz"
    assert config.server.command == ("docker", "exec", "mc", "rcon-cli")
    assert config.server.flush_wait_seconds == 5
    assert config.scheduler.interval_seconds == 1800
    assert config.scheduler.jitter_seconds == 60
    assert config.retention == RetentionConfig(
        min_keep=3,
        max_count=5,
        max_age=timedelta(days=7),
        min_free_bytes=10 * 1024**3,
        compress_before_evict=False,
    )
    assert config.admission.safety_margin_bytes == 1024**3
    assert config.admission.make_room_before_backup is True
    assert config.timeouts.resume_attempts == 4
    assert config.catalog_db_path == Path("/media/backup/world/catalog.db")


def test_load_config_with_empty_file_uses_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "empty.yaml"
    config_path.write_text("", encoding="utf-8")

    config = load_config(config_path)

    assert config.retention.min_keep == 3
    assert config.retention.max_count is None
    assert config.artifact_format in {"directory", "tar.gz"}


def test_load_config_without_path_reads_environment_variable(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "env.yaml"
    config_path.write_text("world_name: from-env\n", encoding="utf-8")
    monkeypatch.setenv("WBM_CONFIG", str(config_path))

    assert load_config().world_name == "from-env"


def test_load_config_with_invalid_yaml_raises_config_error(tmp_path: Path) -> None:
    config_path = tmp_path / "broken.yaml"
    config_path.write_text("retention: [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="valid YAML"):
        load_config(config_path)


def test_load_config_with_non_mapping_raises_config_error(tmp_path: Path) -> None:
    config_path = tmp_path / "list.yaml"
    config_path.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="mapping"):
        load_config(config_path)


def test_load_config_with_missing_file_raises_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="unable to read"):
        load_config(tmp_path / "missing.yaml")


@pytest.mark.parametrize(
    ("retention", "message"),
    [
        ({"min_keep": 0}, "min_keep"),
        ({"min_keep": 3, "max_count": 2}, "max_count"),
        ({"max_age_days": 0}, "max_age_days"),
    ],
)
def test_config_from_mapping_with_invalid_retention_raises_config_error(retention: dict, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        config_from_mapping({"retention": retention})


def test_config_from_mapping_with_unknown_artifact_format_raises_config_error() -> None:
    with pytest.raises(ConfigError, match="artifact_format"):
        config_from_mapping({"artifact_format": "zip"})


def test_config_from_mapping_with_non_numeric_value_raises_config_error() -> None:
    with pytest.raises(ConfigError, match="invalid configuration value"):
        config_from_mapping({"scheduler": {"interval_seconds": "hourly"}})


def test_config_from_mapping_with_scalar_section_raises_config_error() -> None:
    with pytest.raises(ConfigError, match="section 'timeouts'"):
        config_from_mapping({"timeouts": 30})


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (0, 0),
        (512, 512),
        ("512", 512),
        ("1KiB", 1024),
        ("1.5 GiB", int(1.5 * 1024**3)),
        ("2GB", 2 * 1000**3),
        ("10 mib", 10 * 1024**2),
    ],
)
def test_parse_byte_size_accepts_integers_and_unit_strings(value: object, expected: int) -> None:
    assert parse_byte_size(value) == expected


@pytest.mark.parametrize("value", [-1, "ten", "5 PiBs", True])
def test_parse_byte_size_with_invalid_value_raises_config_error(value: object) -> None:
    with pytest.raises(ConfigError):
        parse_byte_size(value)


def test_ensure_directories_creates_backup_metadata_and_log_dirs(tmp_path: Path) -> None:
    config = AppConfig(
        backup_dir=tmp_path / "backups",
        metadata_db_path=tmp_path / "state" / "catalog.db",
        log_dir=tmp_path / "logs",
    )

    ensure_directories(config)

    assert (tmp_path / "backups").is_dir()
    assert (tmp_path / "state").is_dir()
    assert (tmp_path / "logs").is_dir()
