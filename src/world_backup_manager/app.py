from __future__ import annotations

from pathlib import Path
import os

import streamlit as st

from world_backup_manager.cli import format_bytes
from world_backup_manager.config import AppConfig, load_config
from world_backup_manager.cycle import BackupCycle
from world_backup_manager.errors import CatalogCorruptionError, ConfigError
from world_backup_manager.logs import LoggingOutcomeReporter, OutcomeReporter
from world_backup_manager.models import BackupRecord, CycleOutcome, EvictionReport, OutcomeKind

_STAGE_HINTS: tuple[tuple[str, str], ...] = (
    (
        "admission stage failed",
        "Free space on the backup volume, lower the safety margin, or tighten retention.",
    ),
    (
        "estimate stage failed",
        "Confirm the configured world directory exists and is readable.",
    ),
    (
        "resume stage failed",
        "The server may still have autosave disabled. Run save-on from the console now.",
    ),
    (
        "write stage failed",
        "Check backup volume health and permissions; the partial artifact was removed.",
    ),
    (
        "remove stage failed",
        "Check permissions on the backup directory so old backups can be deleted.",
    ),
    (
        "cycle cancelled",
        "The cycle was interrupted by shutdown; the next scheduled cycle will retry.",
    ),
    (
        "another",
        "Another cycle or prune is running; wait for it to finish.",
    ),
    (
        "unexpected cycle failure",
        "Inspect backup.jsonl in the log directory for the failing step.",
    ),
)

_OUTCOME_LABELS = {
    OutcomeKind.SUCCESS: "Backup completed successfully.",
    OutcomeKind.SKIPPED_NO_SPACE: "Skipped: not enough free space.",
    OutcomeKind.SKIPPED_SERVER_UNRESPONSIVE: "Skipped: server did not acknowledge save pause.",
    OutcomeKind.FAILED: "Backup failed.",
}


def _initialize_state() -> None:
    defaults = {
        "last_outcome": None,
        "last_eviction": None,
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def _build_catalog_rows(records: tuple[BackupRecord, ...]) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for record in records:
        rows.append(
            {
                "created_at": record.created_at.isoformat(),
                "world": record.world_name,
                "size": format_bytes(record.size_bytes),
                "status": record.status.value,
                "artifact_path": str(record.artifact_path),
            }
        )
    return rows


def _actionable_next_step(message: str) -> str:
    normalized = message.strip()
    if not normalized:
        return "No follow-up action required."

    for stage, hint in _STAGE_HINTS:
        if stage in normalized:
            return f"{normalized} | Next step: {hint}"
    return f"{normalized} | Next step: Inspect backup.jsonl in the log directory for more detail."


def _build_outcome_rows(outcome: CycleOutcome) -> list[dict[str, str]]:
    actionable_message = _OUTCOME_LABELS[outcome.kind]
    if outcome.kind != OutcomeKind.SUCCESS:
        actionable_message = _actionable_next_step(outcome.reason or actionable_message)

    return [
        {
            "outcome": outcome.kind.value,
            "backup": outcome.record.name if outcome.record else "",
            "size": format_bytes(outcome.record.size_bytes) if outcome.record else "",
            "started_at": outcome.started_at,
            "finished_at": outcome.finished_at,
            "evicted": str(len(outcome.eviction.removed)) if outcome.eviction else "0",
            "warnings": "; ".join(outcome.warnings),
            "actionable_message": actionable_message,
        }
    ]


def _build_eviction_rows(report: EvictionReport) -> list[dict[str, str]]:
    return [
        {
            "deleted": record.name,
            "created_at": record.created_at.isoformat(),
            "size": format_bytes(record.size_bytes),
        }
        for record in report.removed
    ]


def _build_summary_metrics(records: tuple[BackupRecord, ...], free_bytes: int) -> list[tuple[str, str]]:
    return [
        ("Backups", str(len(records))),
        ("Catalog size", format_bytes(sum(record.size_bytes for record in records))),
        ("Free on volume", format_bytes(free_bytes)),
    ]


def _run_and_report(cycle: BackupCycle, reporter: OutcomeReporter | None = None) -> CycleOutcome:
    outcome = cycle.run()
    (reporter or LoggingOutcomeReporter(cycle.logger)).report(outcome)
    return outcome


def _load_app_config() -> AppConfig:
    config_path = os.getenv("WBM_CONFIG", "").strip()
    return load_config(Path(config_path) if config_path else None)


def main() -> None:
    st.set_page_config(page_title="World Backup Manager", layout="wide")
    _initialize_state()

    try:
        config = _load_app_config()
    except ConfigError as error:
        st.error(f"Configuration error: {error}")
        return

    st.title("World Backup Manager")
    st.caption("Pause saves, snapshot the world, and keep the backup volume within its retention policy.")

    try:
        cycle = BackupCycle.from_config(config)
        inconsistencies = cycle.reconcile()
    except CatalogCorruptionError as error:
        st.error(f"Backup catalog is corrupt and needs manual repair: {error}")
        return

    if inconsistencies:
        st.warning(f"Catalog reconciliation repaired {len(inconsistencies)} inconsistency(ies).")

    st.sidebar.header("Configuration")
    st.sidebar.caption(f"World: {config.world_name} ({config.world_dir})")
    st.sidebar.caption(f"Backup directory: {config.backup_dir}")
    st.sidebar.caption(f"Artifact format: {config.artifact_format}")
    st.sidebar.caption(
        "Retention: "
        f"min_keep={config.retention.min_keep}, "
        f"max_count={config.retention.max_count or 'unbounded'}, "
        f"max_age={config.retention.max_age or 'unbounded'}, "
        f"min_free={format_bytes(config.retention.min_free_bytes)}"
    )

    action_columns = st.columns(2)
    if action_columns[0].button("Run backup now", type="primary"):
        with st.spinner("Pausing saves and writing snapshot..."):
            st.session_state.last_outcome = _run_and_report(cycle)

    if action_columns[1].button("Prune now"):
        with st.spinner("Applying retention policy..."):
            st.session_state.last_eviction = cycle.prune()

    records = cycle.catalog.list_records()
    metrics = _build_summary_metrics(records, cycle.disk_monitor.free_bytes())
    for column, (label, value) in zip(st.columns(3), metrics):
        column.metric(label, value)

    outcome: CycleOutcome | None = st.session_state.last_outcome
    if outcome is not None:
        st.subheader("Latest Backup Cycle")
        st.dataframe(_build_outcome_rows(outcome), use_container_width=True, hide_index=True)
        if outcome.kind == OutcomeKind.SUCCESS and not outcome.warnings:
            st.success(_OUTCOME_LABELS[outcome.kind])
        elif outcome.kind == OutcomeKind.FAILED:
            st.error(_actionable_next_step(outcome.reason))
        else:
            st.warning(outcome.reason or "; ".join(outcome.warnings))

    eviction: EvictionReport | None = st.session_state.last_eviction
    if eviction is not None:
        st.subheader("Latest Prune")
        if eviction.removed:
            st.dataframe(_build_eviction_rows(eviction), use_container_width=True, hide_index=True)
        else:
            st.info("Retention policy already satisfied; nothing deleted.")
        if eviction.floor_conflict is not None:
            st.warning(eviction.floor_conflict.message)

    st.subheader("Backup Catalog")
    catalog_rows = _build_catalog_rows(records)
    if catalog_rows:
        st.dataframe(catalog_rows, use_container_width=True, hide_index=True)
    else:
        st.info("No backups yet. Run your first backup to populate this table.")


if __name__ == "__main__":
    main()
