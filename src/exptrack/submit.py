from __future__ import annotations

__all__ = ["submit_job", "expand_log_path"]

import logging
from typing import Sequence

from exptrack.exceptions import RemoteCommandError, SubmissionError
from exptrack.remote import RemoteExecutor

logger = logging.getLogger(__name__)


def submit_job(
    executor: RemoteExecutor,
    remote: str,
    log_template: str,
    script: str,
    args: Sequence[str] = (),
) -> tuple[str, str]:
    """Submit *script* to Slurm on *remote* via ``sbatch``.

    The job's stdout goes to *log_template*; Slurm substitutes the job id
    for ``%j``.  Submission is attempted exactly once.

    Parameters
    ----------
    executor:
        Remote executor used to reach the login node.
    remote:
        ``user@host`` of the login node.
    log_template:
        Remote path passed as ``--output``.
    script:
        Remote path of the batch script.
    args:
        Arguments appended after the script path.

    Returns
    -------
    tuple[str, str]
        The job id and the raw sbatch output.

    Raises
    ------
    SubmissionError
        If sbatch exits non-zero or prints nothing.
    """
    cmd = ["sbatch", f"--output={log_template}", script, *args]
    logger.info("Submitting on %s: %s", remote, " ".join(cmd))
    try:
        result = executor.run(remote, cmd)
    except RemoteCommandError as exc:
        raise SubmissionError(f"ssh/sbatch on {remote} failed: {exc}") from exc
    output = result.combined
    if not result.ok:
        raise SubmissionError(
            f"ssh/sbatch on {remote} exited with status {result.returncode}. "
            f"Output: {output.strip()!r}"
        )
    # sbatch output: "Submitted batch job 12345"
    tokens = output.split()
    if not tokens:
        raise SubmissionError(f"Unable to parse sbatch output: {output!r}")
    job_id = tokens[-1]
    logger.info("Submitted job %s on %s", job_id, remote)
    return job_id, output


def expand_log_path(log_template: str, job_id: str) -> str:
    """Return the log path Slurm will write for *job_id*."""
    return log_template.replace("%j", job_id)
