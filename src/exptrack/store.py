"""store.py — local experiment records in a parquet file.

One row per experiment.  Every write reads, updates and rewrites the whole
table while holding an exclusive lock on ``<state_file>.lock``, so several
``exp run`` processes can share one store.  The new table is written to a
temporary file beside the store and moved into place with :func:`os.replace`;
readers never see a half-written file and take no lock.  Timestamps are
stored as ISO-8601 UTC strings so the file stays readable from any parquet
tool.

Typical usage::

    from exptrack.store import ExperimentStore

    store = ExperimentStore(config.state_file)
    exp_id = store.create(experiment)
    store.update_status(exp_id, "RUNNING")
    print(store.list_experiments().to_string(index=False))
"""
from __future__ import annotations

__all__ = ["ExperimentStore", "STATE_COLUMNS"]

import logging
import os
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

import pandas as pd
import portalocker

from exptrack.config import ArtifactSource
from exptrack.exceptions import ExperimentNotFound, StoreError
from exptrack.experiment import Experiment, format_ts, parse_ts

logger = logging.getLogger(__name__)

#: Seconds to wait for another process to release the store lock.
LOCK_TIMEOUT = 60.0

# Columns and dtypes for the experiments parquet file
STATE_COLUMNS = {
    "id": "int64",
    "name": "object",
    "remote": "object",
    "script_path": "object",
    "args": "object",
    "git_commit": "object",
    "git_branch": "object",
    "job_id": "object",
    "job_status": "object",
    "log_path": "object",
    "created_at": "object",
    "completed_at": "object",
    "artifact_remote": "object",
    "artifact_dest": "object",
    "artifact_pattern": "object",
    "artifact_since_start": "bool",
    "artifact_last_sync": "object",
    "artifact_last_error": "object",
    "config_snapshot": "object",
}

_LIST_COLUMNS = ["id", "name", "remote", "job_id", "job_status", "created_at"]


class ExperimentStore:
    """Persistence for :class:`~exptrack.experiment.Experiment` records.

    Parameters
    ----------
    state_file:
        Path to the parquet file.  Parent directories are created on the
        first write.
    """

    def __init__(self, state_file: str | Path) -> None:
        self.state_file = Path(state_file)

    # -- public API ---------------------------------------------------------

    def create(self, experiment: Experiment) -> int:
        """Insert *experiment* and return its newly assigned id."""
        with self._locked():
            table = self._load()
            new_id = 1 if table.empty else int(table["id"].max()) + 1
            record = _to_record(replace(experiment, id=new_id))
            row = pd.DataFrame([record]).astype(STATE_COLUMNS)
            table = row if table.empty else pd.concat([table, row], ignore_index=True)
            self._save(table)
        experiment.id = new_id
        logger.debug("Recorded experiment %d (%s)", new_id, experiment.name)
        return new_id

    def update_status(
        self, exp_id: int, status: str, completed_at: datetime | None = None
    ) -> None:
        """Set the job status and, for terminal states, the completion time."""
        updates: dict[str, Any] = {"job_status": status}
        if completed_at is not None:
            updates["completed_at"] = format_ts(completed_at)
        self._update(exp_id, updates)

    def record_artifact_sync(
        self, exp_id: int, synced_at: datetime | None, error: str = ""
    ) -> None:
        """Record the outcome of an artifact sync (empty *error* = success)."""
        self._update(
            exp_id,
            {"artifact_last_sync": format_ts(synced_at), "artifact_last_error": error},
        )

    def set_artifact_dest(self, exp_id: int, dest: str, config_snapshot: str) -> None:
        """Point the experiment at its per-experiment destination directory."""
        self._update(exp_id, {"artifact_dest": dest, "config_snapshot": config_snapshot})

    def load(self, exp_id: int | str) -> Experiment:
        """Return the experiment with id *exp_id*.

        Raises
        ------
        ExperimentNotFound
            If no such experiment exists (or *exp_id* is not an integer).
        """
        table = self._load()
        idx = self._locate(table, exp_id)
        return _from_record(table.loc[idx].to_dict())

    def list_experiments(self) -> pd.DataFrame:
        """Return id, name, remote, job_id, job_status, created_at — newest first."""
        table = self._load()
        if table.empty:
            return table[_LIST_COLUMNS]
        return (
            table.sort_values(["created_at", "id"], ascending=False)[_LIST_COLUMNS]
            .reset_index(drop=True)
        )

    # -- internals ----------------------------------------------------------

    def _load(self) -> pd.DataFrame:
        if not self.state_file.exists():
            return _empty_table()
        return pd.read_parquet(self.state_file)

    @property
    def lock_file(self) -> Path:
        return self.state_file.with_name(self.state_file.name + ".lock")

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        try:
            with portalocker.Lock(str(self.lock_file), timeout=LOCK_TIMEOUT, fail_when_locked=False):
                yield
        except portalocker.LockException as exc:
            raise StoreError(
                f"Could not lock {self.state_file} within {LOCK_TIMEOUT:g}s: {exc}"
            ) from exc

    def _save(self, table: pd.DataFrame) -> None:
        tmp = self.state_file.with_name(f".{self.state_file.name}.{os.getpid()}.tmp")
        try:
            table.to_parquet(tmp, index=False)
            os.replace(tmp, self.state_file)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

    def _locate(self, table: pd.DataFrame, exp_id: int | str) -> Any:
        try:
            key = int(exp_id)
        except (TypeError, ValueError):
            raise ExperimentNotFound(f"No experiment with id {exp_id}") from None
        matches = table.index[table["id"] == key] if not table.empty else []
        if len(matches) == 0:
            raise ExperimentNotFound(f"No experiment with id {exp_id}")
        return matches[0]

    def _update(self, exp_id: int, updates: dict[str, Any]) -> None:
        with self._locked():
            table = self._load()
            idx = self._locate(table, exp_id)
            for column, value in updates.items():
                table.at[idx, column] = value
            self._save(table)


def _empty_table() -> pd.DataFrame:
    """Return an empty DataFrame with the correct schema and dtypes."""
    return pd.DataFrame(
        {col: pd.Series(dtype=dtype) for col, dtype in STATE_COLUMNS.items()}
    )


def _to_record(exp: Experiment) -> dict[str, Any]:
    return {
        "id": exp.id,
        "name": exp.name,
        "remote": exp.remote,
        "script_path": exp.script_path,
        "args": exp.args,
        "git_commit": exp.git_commit,
        "git_branch": exp.git_branch,
        "job_id": exp.job_id,
        "job_status": exp.job_status,
        "log_path": exp.log_path,
        "created_at": format_ts(exp.created_at),
        "completed_at": format_ts(exp.completed_at),
        "artifact_remote": exp.artifact_remote,
        "artifact_dest": exp.artifact_dest,
        "artifact_pattern": exp.artifact_pattern,
        "artifact_since_start": bool(exp.artifact_since_start),
        "artifact_last_sync": format_ts(exp.artifact_last_sync),
        "artifact_last_error": exp.artifact_last_error,
        "config_snapshot": exp.config_snapshot,
    }


def _text(value: Any) -> str:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return ""
    return str(value)


def _from_record(row: dict[str, Any]) -> Experiment:
    exp = Experiment(
        id=int(row["id"]),
        name=_text(row["name"]),
        remote=_text(row["remote"]),
        script_path=_text(row["script_path"]),
        args=_text(row["args"]),
        git_commit=_text(row["git_commit"]),
        git_branch=_text(row["git_branch"]),
        job_id=_text(row["job_id"]),
        job_status=_text(row["job_status"]),
        log_path=_text(row["log_path"]),
        created_at=parse_ts(_text(row["created_at"])),
        completed_at=parse_ts(_text(row["completed_at"])),
        artifact_remote=_text(row["artifact_remote"]),
        artifact_dest=_text(row["artifact_dest"]),
        artifact_pattern=_text(row["artifact_pattern"]),
        artifact_since_start=bool(row["artifact_since_start"]),
        artifact_last_sync=parse_ts(_text(row["artifact_last_sync"])),
        artifact_last_error=_text(row["artifact_last_error"]),
        config_snapshot=_text(row["config_snapshot"]),
    )
    sources = exp.snapshot().get("artifact_sources") or []
    try:
        exp.artifact_sources = [ArtifactSource.from_mapping(s) for s in sources]
    except ValueError:
        logger.warning("Experiment %d has unreadable artifact sources in its snapshot", exp.id)
    return exp
