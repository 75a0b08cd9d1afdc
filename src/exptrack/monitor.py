"""monitor.py — Slurm job state polling via squeue and sacct.

Queries the scheduler on the remote host for one job and drives the
experiment record from ``SUBMITTED`` to a terminal state.

Typical usage::

    from exptrack.monitor import poll_until_terminal

    final = poll_until_terminal(
        experiment, executor=SSHExecutor(), store=store, interval=30.0,
    )
"""
from __future__ import annotations

__all__ = [
    "ACTIVE_STATES",
    "UNKNOWN",
    "is_active_status",
    "normalize_sacct_state",
    "query_squeue",
    "query_sacct",
    "query_job_status",
    "poll_until_terminal",
]

import logging
import threading
import time
from typing import TYPE_CHECKING, Callable

from exptrack.exceptions import MonitoringCancelled, RemoteCommandError
from exptrack.experiment import Experiment, utcnow
from exptrack.remote import RemoteExecutor, check_result

if TYPE_CHECKING:
    from exptrack.audit import AuditLogger
    from exptrack.store import ExperimentStore

logger = logging.getLogger(__name__)

#: Slurm states in which the job is still tracked by the scheduler.
ACTIVE_STATES = frozenset(
    {
        "PENDING",
        "CONFIGURING",
        "RUNNING",
        "COMPLETING",
        "SUSPENDED",
        "RESV_DEL_HOLD",
        "SPECIAL_EXIT",
    }
)

#: Reported when neither squeue nor sacct knows the job.
UNKNOWN = "UNKNOWN"


def is_active_status(status: str | None) -> bool:
    """Return True while the scheduler still considers the job live.

    Every other value, including ``UNKNOWN`` and garbage, is terminal.
    """
    return (status or "").strip().upper() in ACTIVE_STATES


def normalize_sacct_state(state: str) -> str:
    """Strip sacct qualifiers: ``"CANCELLED by 1001"`` → ``CANCELLED``, ``"FAILED+"`` → ``FAILED``."""
    state = state.strip()
    if " " in state:
        state = state.split(" ", 1)[0]
    return state.strip("+")


def _first_line(text: str) -> str:
    for line in text.splitlines():
        line = line.strip()
        if line:
            return line
    return ""


def query_squeue(executor: RemoteExecutor, remote: str, job_id: str) -> str:
    """Return the job's queue state, or ``""`` once it has left the queue.

    Raises
    ------
    RemoteCommandError
        If squeue (or ssh) fails.
    """
    cmd = ["squeue", "-h", "-j", job_id, "-o", "%T"]
    result = check_result(executor.run(remote, cmd), remote, " ".join(cmd))
    return _first_line(result.stdout)


def query_sacct(executor: RemoteExecutor, remote: str, job_id: str) -> str:
    """Return the job's accounting state, or ``""`` if sacct has no record.

    Raises
    ------
    RemoteCommandError
        If sacct (or ssh) fails.
    """
    cmd = ["sacct", "-n", "-X", "-j", job_id, "-o", "State"]
    result = check_result(executor.run(remote, cmd), remote, " ".join(cmd))
    line = _first_line(result.stdout)
    return normalize_sacct_state(line) if line else ""


def query_job_status(executor: RemoteExecutor, remote: str, job_id: str) -> str:
    """Look up a job's state: squeue first, then sacct once it has left the queue.

    An squeue failure propagates so the caller can retry.  sacct is
    best-effort: when it is missing or fails the job is reported as
    ``UNKNOWN``.
    """
    if not job_id:
        return UNKNOWN
    status = query_squeue(executor, remote, job_id)
    if status:
        return status
    try:
        status = query_sacct(executor, remote, job_id)
    except RemoteCommandError as exc:
        logger.debug("sacct unavailable for job %s: %s", job_id, exc)
        return UNKNOWN
    return status or UNKNOWN


def poll_until_terminal(
    experiment: Experiment,
    *,
    executor: RemoteExecutor,
    store: ExperimentStore,
    interval: float,
    audit: AuditLogger | None = None,
    sleep: Callable[[float], None] = time.sleep,
    cancel: threading.Event | None = None,
) -> str:
    """Poll the experiment's job until it reaches a terminal state.

    Every successful query is persisted straight away; the terminal state is
    persisted together with the completion time.  A failed query is logged
    and retried after *interval* without touching the stored status.

    Parameters
    ----------
    experiment:
        Recorded experiment (must have an ``id``).  Updated in place.
    executor:
        Remote executor used for squeue/sacct.
    store:
        Store receiving every status update.
    interval:
        Seconds between polls.
    audit:
        Optional audit logger for ``status_change`` events.
    sleep:
        Blocking wait used between polls when no *cancel* event is given.
    cancel:
        When set, polling stops before the next query.

    Returns
    -------
    str
        The terminal status.

    Raises
    ------
    MonitoringCancelled
        If *cancel* is set before the job finishes.
    """
    logger.info("Monitoring job %s on %s every %gs", experiment.job_id, experiment.remote, interval)

    def wait() -> None:
        if cancel is None:
            sleep(interval)
        elif cancel.wait(interval):
            raise MonitoringCancelled(
                f"Monitoring of job {experiment.job_id} cancelled; "
                f"last recorded status {experiment.job_status}"
            )

    while True:
        if cancel is not None and cancel.is_set():
            raise MonitoringCancelled(
                f"Monitoring of job {experiment.job_id} cancelled; "
                f"last recorded status {experiment.job_status}"
            )
        try:
            status = query_job_status(executor, experiment.remote, experiment.job_id)
        except RemoteCommandError as exc:
            logger.warning("Unable to query status of job %s: %s", experiment.job_id, exc)
            wait()
            continue

        old_status = experiment.job_status
        experiment.job_status = status
        terminal = not is_active_status(status)
        if terminal:
            experiment.completed_at = utcnow()
            store.update_status(experiment.id, status, experiment.completed_at)
        else:
            store.update_status(experiment.id, status)

        if status != old_status:
            logger.info("job %s (%s): %s → %s", experiment.job_id, experiment.name, old_status, status)
            if audit is not None:
                audit.log("status_change", experiment, old_status=old_status, new_status=status)
        if terminal:
            return status
        wait()
