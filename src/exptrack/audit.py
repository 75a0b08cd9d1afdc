"""audit.py — append-only JSONL trail of what happened to each experiment.

A line is written when a job is submitted, when polling sees its Slurm
state change, and when an artifact fetch finishes, fails, or is only
listed (dry run).  Entries carry the experiment id, name and Slurm job id
so ``grep '"experiment_id": 3'`` recovers the history of one run.

Typical usage::

    from exptrack.audit import get_logger

    audit = get_logger(config)
    audit.log("artifacts_synced", experiment, detail="/scratch/results/3")
"""
from __future__ import annotations

__all__ = ["AuditLogger", "get_logger", "AUDIT_EVENTS"]

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from exptrack.config import ExpConfig

if TYPE_CHECKING:
    from exptrack.experiment import Experiment

logger = logging.getLogger(__name__)

#: Event names accepted by :meth:`AuditLogger.log`.
AUDIT_EVENTS = frozenset(
    {"submitted", "status_change", "artifacts_synced", "sync_error", "dry_run"}
)


class AuditLogger:
    """Writes one JSON object per line to *log_file*, creating it on demand."""

    def __init__(self, log_file: Path) -> None:
        self.log_file = Path(log_file)

    def log(
        self,
        event: str,
        experiment: Experiment | None = None,
        *,
        detail: str = "",
        old_status: str = "",
        new_status: str = "",
        **extra: Any,
    ) -> None:
        """Append *event* for *experiment*.

        The experiment's id, name and job id are copied into the entry;
        *old_status*/*new_status* only matter for ``status_change``.  Extra
        keyword arguments become additional keys.

        Raises
        ------
        ValueError
            If *event* is not one of :data:`AUDIT_EVENTS`; nothing is written.
        """
        if event not in AUDIT_EVENTS:
            raise ValueError(f"Unknown audit event {event!r}; expected one of {sorted(AUDIT_EVENTS)}")
        entry: dict[str, Any] = {
            "ts": datetime.now(tz=timezone.utc).isoformat(),
            "event": event,
            "experiment_id": experiment.id if experiment is not None else None,
            "name": experiment.name if experiment is not None else "",
            "job_id": experiment.job_id if experiment is not None else None,
            "detail": detail,
        }
        if event == "status_change":
            entry["old_status"] = old_status
            entry["new_status"] = new_status
        entry.update(extra)

        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        with self.log_file.open("a") as fh:
            fh.write(json.dumps(entry) + "\n")
        logger.debug("audit %s: experiment=%s", event, entry["experiment_id"])


def get_logger(config: ExpConfig) -> AuditLogger:
    """Audit logger writing to ``config.log_file`` (``<home>/audit.jsonl`` unless configured)."""
    return AuditLogger(config.log_file)
