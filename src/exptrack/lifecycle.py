"""lifecycle.py — submit, monitor, and fetch artifacts for one experiment.

:func:`run_experiment` drives the whole flow for ``exp run``::

    build script → upload → sbatch → record → poll → settle → fetch

:func:`fetch_experiment` repeats the artifact step on demand for a recorded
experiment (``exp fetch``), optionally with overrides and as a dry run.

Typical usage::

    from exptrack.lifecycle import fetch_experiment

    fetch_experiment(store, 3, executor=SSHExecutor(), transfer=RsyncTransfer(),
                     patterns=[r"\\.json$"], dry_run=True)
"""
from __future__ import annotations

__all__ = [
    "ARTIFACT_SETTLE_DELAY",
    "run_experiment",
    "sync_artifact_sources",
    "fetch_source",
    "fetch_experiment",
]

import logging
import os
import posixpath
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Sequence

from exptrack.config import ArtifactSource, RunParameters, expand_local_path
from exptrack.discovery import discover_files
from exptrack.exceptions import ArtifactSyncError, ConfigError, ExpError, MonitoringCancelled
from exptrack.experiment import Experiment, build_snapshot, utcnow
from exptrack.git import get_local_git_info, lookup_git_info
from exptrack.monitor import poll_until_terminal
from exptrack.patterns import combine_patterns, compile_patterns, filter_paths, split_patterns
from exptrack.remote import RemoteExecutor, run_build_script, upload_script
from exptrack.submit import expand_log_path, submit_job
from exptrack.transfer import BulkCopy

if TYPE_CHECKING:
    from exptrack.audit import AuditLogger
    from exptrack.store import ExperimentStore

logger = logging.getLogger(__name__)

#: Seconds to wait after the job finishes before listing its output.
ARTIFACT_SETTLE_DELAY = 10.0


def _combined_patterns(params: RunParameters) -> str:
    """Persisted pattern string: every source's patterns, else the top-level ones."""
    flattened = [p for s in params.artifact_sources for p in s.patterns]
    return combine_patterns(flattened) or combine_patterns(params.artifact_patterns)


def run_experiment(
    params: RunParameters,
    *,
    store: ExperimentStore,
    executor: RemoteExecutor,
    transfer: BulkCopy,
    audit: AuditLogger | None = None,
    sleep: Callable[[float], None] = time.sleep,
    cancel: threading.Event | None = None,
    settle_delay: float = ARTIFACT_SETTLE_DELAY,
    local_git: Callable[[], tuple[str, str]] = get_local_git_info,
) -> Experiment:
    """Submit the job described by *params* and see it through to the end.

    Returns
    -------
    Experiment
        The final record (terminal status, sync time when artifacts were
        fetched).

    Raises
    ------
    ConfigError
        For local problems found before submission (missing build script,
        unusable artifact destination, ...).  A per-experiment destination
        that cannot be created after submission is recorded on the
        experiment as well.
    RemoteCommandError
        If the build script or upload fails.
    SubmissionError
        If sbatch fails.
    ArtifactSyncError
        If the job finished but its artifacts could not be fetched.  The
        error is also stored on the experiment.
    MonitoringCancelled
        If *cancel* is set.  Before sbatch nothing is submitted or recorded;
        afterwards the record keeps its last polled status and no artifacts
        are fetched.
    """
    def check_cancel(stage: str) -> None:
        if cancel is not None and cancel.is_set():
            raise MonitoringCancelled(f"Run of {params.name!r} cancelled {stage}")

    def pause(seconds: float) -> None:
        if cancel is None:
            sleep(seconds)
        elif cancel.wait(seconds):
            check_cancel("while waiting for artifacts")

    if params.artifact_dest is not None:
        base = Path(params.artifact_dest)
        try:
            base.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigError(f"Cannot create artifact destination {base}: {exc}") from exc
    if params.build_script:
        run_build_script(executor, params.remote, params.build_script)
    if params.script_local:
        upload_script(executor, params.remote, params.script_local, params.script)
    check_cancel("before submission")

    log_template = params.log_template
    job_id, output = submit_job(executor, params.remote, log_template, params.script, params.args)
    log_path = expand_log_path(log_template, job_id)

    git_dirs = []
    script_dir = posixpath.dirname(params.script)
    if script_dir and script_dir != ".":
        git_dirs.append(script_dir)
    if params.artifact_remote:
        git_dirs.append(params.artifact_remote)
    commit, branch = lookup_git_info(executor, params.remote, git_dirs, local=local_git)

    sources = list(params.artifact_sources)
    experiment = Experiment(
        name=params.name,
        remote=params.remote,
        script_path=params.script,
        args=" ".join(params.args),
        git_commit=commit,
        git_branch=branch,
        job_id=job_id,
        job_status="SUBMITTED",
        log_path=log_path,
        created_at=utcnow(),
        artifact_remote=sources[0].path if sources else (params.artifact_remote or ""),
        artifact_dest=str(params.artifact_dest) if params.artifact_dest else "",
        artifact_sources=sources,
        artifact_pattern=_combined_patterns(params),
        artifact_since_start=params.artifact_since_start,
        config_snapshot=build_snapshot(
            params,
            artifact_dest=str(params.artifact_dest or ""),
            git_commit=commit,
            git_branch=branch,
        ),
    )
    exp_id = store.create(experiment)

    if params.artifact_dest is not None:
        # one subdirectory per experiment so concurrent runs never share files
        dest = Path(params.artifact_dest) / str(exp_id)
        try:
            dest.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            message = f"Cannot create artifact destination {dest}: {exc}"
            store.record_artifact_sync(exp_id, None, message)
            raise ConfigError(message) from exc
        experiment.artifact_dest = str(dest)
        experiment.config_snapshot = build_snapshot(
            params, artifact_dest=str(dest), git_commit=commit, git_branch=branch
        )
        store.set_artifact_dest(exp_id, experiment.artifact_dest, experiment.config_snapshot)

    logger.info("Submitted job %s via ssh: %s", job_id, output.strip())
    logger.info("Recorded experiment %d locally; remote log at %s", exp_id, log_path)
    if sources:
        logger.info("Artifacts: %s -> %s", sources[0].path, experiment.artifact_dest)
    if audit is not None:
        audit.log("submitted", experiment, detail=log_path, remote=params.remote)

    poll_until_terminal(
        experiment,
        executor=executor,
        store=store,
        interval=params.poll_interval,
        audit=audit,
        sleep=sleep,
        cancel=cancel,
    )

    sources = experiment.effective_artifact_sources()
    if not sources or not experiment.artifact_dest:
        logger.info("No artifact paths configured for this experiment; skipping automatic fetch.")
        return experiment

    logger.info("Job finished; fetching artifacts from %d source(s)", len(sources))
    check_cancel("before fetching artifacts")
    pause(settle_delay)
    try:
        sync_artifact_sources(
            experiment,
            sources,
            experiment.artifact_dest,
            since_start=experiment.artifact_since_start,
            executor=executor,
            transfer=transfer,
            sleep=pause,
        )
    except MonitoringCancelled:
        raise
    except ExpError as exc:
        logger.error("Artifact sync failed: %s", exc)
        experiment.artifact_last_error = str(exc)
        store.record_artifact_sync(exp_id, None, str(exc))
        if audit is not None:
            audit.log("sync_error", experiment, detail=str(exc))
        raise ArtifactSyncError(f"Artifact sync for experiment {exp_id} failed: {exc}") from exc

    experiment.artifact_last_sync = utcnow()
    experiment.artifact_last_error = ""
    store.record_artifact_sync(exp_id, experiment.artifact_last_sync, "")
    if audit is not None:
        audit.log("artifacts_synced", experiment, detail=experiment.artifact_dest)
    logger.info("Artifacts stored under %s", experiment.artifact_dest)
    return experiment


def fetch_source(
    experiment: Experiment,
    source: ArtifactSource,
    dest: str | Path,
    *,
    since_start: bool,
    executor: RemoteExecutor,
    transfer: BulkCopy,
    dry_run: bool = False,
    sleep: Callable[[float], None] = time.sleep,
) -> list[str]:
    """Discover, filter, and copy the files of one source.

    Returns
    -------
    list[str]
        Relative paths that matched the source's patterns (copied unless
        *dry_run*).

    Raises
    ------
    ConfigError
        On a relative source path, a malformed pattern, or a since-start
        filter without a recorded start time.  Raised before any remote call.
    RemoteCommandError
        If listing fails.
    TransferError
        If rsync fails.
    """
    root = source.path
    if not root:
        raise ConfigError("Artifact source has an empty path")
    if not root.startswith("/"):
        raise ConfigError(f"Remote path {root!r} must be absolute so rsync can address the files")
    compiled = compile_patterns(source.patterns)

    since = None
    if since_start:
        if experiment.created_at is None:
            raise ConfigError(
                f"Experiment {experiment.id} has no recorded start time; "
                "cannot apply the since-start filter"
            )
        since = experiment.created_at

    files = discover_files(executor, experiment.remote, root, since, sleep=sleep)
    matched = filter_paths(compiled, root, files)
    if not matched:
        logger.info("No files matched the provided filters under %s; nothing to copy.", root)
        return []

    logger.info("Matched %d file(s) under %s", len(matched), root)
    if dry_run:
        return matched

    transfer.copy(experiment.remote, root, matched, dest)
    return matched


def sync_artifact_sources(
    experiment: Experiment,
    sources: Sequence[ArtifactSource],
    dest: str | Path,
    *,
    since_start: bool,
    executor: RemoteExecutor,
    transfer: BulkCopy,
    dry_run: bool = False,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, list[str]]:
    """Fetch every source in order into *dest*; the first failure aborts the rest.

    Returns a mapping of source path to the matched relative paths.
    """
    if not sources:
        logger.info("No artifact sources to process; nothing to copy.")
        return {}
    results: dict[str, list[str]] = {}
    for source in sources:
        logger.info("Fetching artifacts from %s", source.path)
        results[source.path] = fetch_source(
            experiment,
            source,
            dest,
            since_start=since_start,
            executor=executor,
            transfer=transfer,
            dry_run=dry_run,
            sleep=sleep,
        )
    return results


def fetch_experiment(
    store: ExperimentStore,
    exp_id: int | str,
    *,
    executor: RemoteExecutor,
    transfer: BulkCopy,
    remote_path: str | None = None,
    dest: str | Path | None = None,
    patterns: Sequence[str] | None = None,
    since_start: bool | None = None,
    dry_run: bool = False,
    audit: AuditLogger | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, list[str]]:
    """Fetch artifacts for a recorded experiment, with optional overrides.

    Parameters
    ----------
    remote_path:
        Absolute remote directory replacing the recorded sources; it keeps
        the recorded patterns.
    dest:
        Local destination; defaults to the recorded destination.
    patterns:
        Filters replacing the patterns of every source.
    since_start:
        Overrides the recorded since-start preference.
    dry_run:
        Only list the matching files; nothing is copied or recorded.

    Raises
    ------
    ExperimentNotFound
        If *exp_id* is unknown.
    ConfigError
        If the experiment has no remote host, no sources, or no destination,
        or an override is invalid.
    RemoteCommandError, TransferError
        If discovery or the transfer fails; the error is recorded on the
        experiment first.
    """
    experiment = store.load(exp_id)
    if not experiment.remote:
        raise ConfigError(f"Experiment {exp_id} has an empty remote host")
    if remote_path and not remote_path.startswith("/"):
        raise ConfigError("remote-path must be absolute so rsync can address files precisely")

    dest = str(dest) if dest else experiment.artifact_dest
    if not dest:
        raise ConfigError(
            f"dest is required and no artifact destination is recorded for experiment {exp_id}"
        )
    dest = str(expand_local_path(dest))

    if since_start is None:
        since_start = experiment.artifact_since_start

    sources = experiment.effective_artifact_sources()
    if remote_path:
        sources = [ArtifactSource(remote_path, tuple(split_patterns(experiment.artifact_pattern)))]
    if not sources:
        raise ConfigError(
            f"No artifact sources recorded for experiment {exp_id}; use --remote-path"
        )
    override = [p.strip() for p in patterns or () if p.strip()]
    if override:
        sources = [ArtifactSource(s.path, tuple(override)) for s in sources]
    # config problems are reported, not recorded as sync failures
    for source in sources:
        compile_patterns(source.patterns)

    try:
        results = sync_artifact_sources(
            experiment,
            sources,
            dest,
            since_start=since_start,
            executor=executor,
            transfer=transfer,
            dry_run=dry_run,
            sleep=sleep,
        )
    except ExpError as exc:
        store.record_artifact_sync(experiment.id, None, str(exc))
        if audit is not None:
            audit.log("sync_error", experiment, detail=str(exc))
        raise

    if dry_run:
        if audit is not None:
            matched = sum(len(v) for v in results.values())
            audit.log("dry_run", experiment, detail=f"{matched} file(s) would be copied")
        return results

    store.record_artifact_sync(experiment.id, utcnow(), "")
    if audit is not None:
        audit.log("artifacts_synced", experiment, detail=os.fspath(dest))
    return results
