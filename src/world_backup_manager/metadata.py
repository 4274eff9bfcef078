from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Iterable
import sqlite3

from .models import BackupRecord, BackupStatus


class BackupMetadataStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def initialize(self) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS backup_catalog (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at TEXT NOT NULL,
                    world_name TEXT NOT NULL,
                    artifact_path TEXT NOT NULL,
                    size_bytes INTEGER NOT NULL,
                    status TEXT NOT NULL
                )
                """
            )
            connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_backup_catalog_created
                ON backup_catalog(created_at)
                """
            )
            connection.commit()

    def insert_record(self, record: BackupRecord) -> None:
        with sqlite3.connect(self.db_path) as connection:
            _insert(connection, record)
            connection.commit()

    def delete_record(self, record: BackupRecord) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                "DELETE FROM backup_catalog WHERE artifact_path = ?",
                (str(record.artifact_path),),
            )
            connection.commit()

    def update_record(self, current: BackupRecord, updated: BackupRecord) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                UPDATE backup_catalog
                SET created_at = ?, world_name = ?, artifact_path = ?, size_bytes = ?, status = ?
                WHERE artifact_path = ?
                """,
                (
                    updated.created_at.isoformat(),
                    updated.world_name,
                    str(updated.artifact_path),
                    updated.size_bytes,
                    updated.status.value,
                    str(current.artifact_path),
                ),
            )
            connection.commit()

    def replace_records(self, records: Iterable[BackupRecord]) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute("DELETE FROM backup_catalog")
            for record in records:
                _insert(connection, record)
            connection.commit()

    def list_records(self) -> list[BackupRecord]:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                SELECT created_at, world_name, artifact_path, size_bytes, status
                FROM backup_catalog
                ORDER BY created_at DESC, artifact_path DESC, id DESC
                """
            )
            rows = cursor.fetchall()

        return [
            BackupRecord(
                created_at=datetime.fromisoformat(row[0]),
                world_name=row[1],
                artifact_path=Path(row[2]),
                size_bytes=int(row[3]),
                status=BackupStatus(row[4]),
            )
            for row in rows
        ]

    def count_records(self) -> int:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute("SELECT COUNT(*) FROM backup_catalog")
            row = cursor.fetchone()

        return int(row[0]) if row else 0


def _insert(connection: sqlite3.Connection, record: BackupRecord) -> None:
    connection.execute(
        """
        INSERT INTO backup_catalog (
            created_at,
            world_name,
            artifact_path,
            size_bytes,
            status
        ) VALUES (?, ?, ?, ?, ?)
        """,
        (
            record.created_at.isoformat(),
            record.world_name,
            str(record.artifact_path),
            record.size_bytes,
            record.status.value,
        ),
    )
