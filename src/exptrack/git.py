from __future__ import annotations

__all__ = ["get_local_git_info", "get_remote_git_info", "lookup_git_info"]

import logging
import shlex
import subprocess
from typing import Callable, Iterable

from exptrack.exceptions import RemoteCommandError
from exptrack.remote import RemoteExecutor, check_result, run_remote_shell

logger = logging.getLogger(__name__)


def _git_output(args: list[str]) -> str:
    try:
        result = subprocess.run(["git", *args], capture_output=True, text=True, check=True)
    except (subprocess.CalledProcessError, FileNotFoundError) as exc:
        logger.debug("git %s failed: %s", " ".join(args), exc)
        return ""
    return result.stdout.strip()


def get_local_git_info() -> tuple[str, str]:
    """Return (commit, branch) of the current working directory, or empty strings."""
    return _git_output(["rev-parse", "HEAD"]), _git_output(["rev-parse", "--abbrev-ref", "HEAD"])


def get_remote_git_info(executor: RemoteExecutor, remote: str, git_dir: str) -> tuple[str, str]:
    """Return (commit, branch) of the repository containing *git_dir* on *remote*.

    Raises
    ------
    RemoteCommandError
        If *git_dir* is not inside a repository or the host is unreachable.
    """
    values = []
    for git_cmd in ("git rev-parse HEAD", "git rev-parse --abbrev-ref HEAD"):
        script = f"cd {shlex.quote(git_dir)} && env GIT_DISCOVERY_ACROSS_FILESYSTEM=1 {git_cmd}"
        result = check_result(run_remote_shell(executor, remote, script), remote, git_cmd)
        values.append(result.stdout.strip())
    return values[0], values[1]


def lookup_git_info(
    executor: RemoteExecutor,
    remote: str,
    candidate_dirs: Iterable[str],
    local: Callable[[], tuple[str, str]] = get_local_git_info,
) -> tuple[str, str]:
    """Try each remote directory in turn; fall back to the local repository."""
    for git_dir in candidate_dirs:
        if not git_dir:
            continue
        try:
            commit, branch = get_remote_git_info(executor, remote, git_dir)
        except RemoteCommandError as exc:
            logger.warning("Unable to read remote git info from %s:%s: %s", remote, git_dir, exc)
            continue
        logger.info("Remote git info from %s:%s: commit=%s branch=%s", remote, git_dir, commit, branch)
        return commit, branch
    logger.warning("Unable to determine remote git directory; recording local git metadata")
    return local()
