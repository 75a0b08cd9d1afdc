"""remote.py — running commands on the cluster login node.

Everything exptrack does remotely (``sbatch``, ``squeue``, ``sacct``,
``find``, ``git``) goes through a :class:`RemoteExecutor`.  The production
implementation shells out to ``ssh``/``scp``; tests pass a stub with the
same two methods.

Typical usage::

    from exptrack.remote import SSHExecutor, run_remote_shell

    executor = SSHExecutor()
    result = executor.run("me@login01", ["squeue", "-h", "-j", "123", "-o", "%T"])
    listing = run_remote_shell(executor, "me@login01", "cd /data && ls")
"""
from __future__ import annotations

__all__ = [
    "CommandResult",
    "RemoteExecutor",
    "SSHExecutor",
    "check_result",
    "run_remote_shell",
    "run_build_script",
    "upload_script",
]

import logging
import os
import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence

from exptrack.exceptions import ConfigError, RemoteCommandError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Exit status and captured output of one remote command."""

    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def combined(self) -> str:
        """stdout followed by stderr, the way a terminal would show them."""
        return self.stdout + self.stderr


class RemoteExecutor(Protocol):
    """Capability to run a program on a named remote host."""

    def run(
        self, host: str, argv: Sequence[str], input_text: str | None = None
    ) -> CommandResult:
        ...

    def upload(self, host: str, local_path: Path, remote_path: str) -> CommandResult:
        ...


class SSHExecutor:
    """Run remote commands through the local ``ssh`` and ``scp`` binaries.

    Parameters
    ----------
    ssh_options:
        Extra options placed before the host, e.g. ``("-o", "BatchMode=yes")``.
    """

    def __init__(self, ssh_options: Sequence[str] = (), ssh: str = "ssh", scp: str = "scp") -> None:
        self.ssh_options = tuple(ssh_options)
        self.ssh = ssh
        self.scp = scp

    def build_command(self, host: str, argv: Sequence[str]) -> list[str]:
        """Return the local ssh command line for running *argv* on *host*.

        ssh joins its trailing arguments into a single string for the remote
        login shell, so every element is quoted here to survive that pass.
        """
        remote_cmd = " ".join(shlex.quote(str(a)) for a in argv)
        return [self.ssh, *self.ssh_options, host, remote_cmd]

    def run(
        self, host: str, argv: Sequence[str], input_text: str | None = None
    ) -> CommandResult:
        """Run *argv* on *host* and capture its output.

        A non-zero exit is reported through :attr:`CommandResult.returncode`;
        only a missing ``ssh`` binary raises.

        Raises
        ------
        RemoteCommandError
            If the ssh client cannot be started.
        """
        cmd = self.build_command(host, argv)
        logger.debug("ssh: %s", " ".join(cmd))
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, input=input_text)
        except OSError as exc:
            raise RemoteCommandError(
                f"Could not run {self.ssh!r} for {host}: {exc}",
                host=host,
                command=" ".join(argv),
            ) from exc
        return CommandResult(proc.returncode, proc.stdout or "", proc.stderr or "")

    def upload(self, host: str, local_path: Path, remote_path: str) -> CommandResult:
        """Copy *local_path* to ``host:remote_path`` with scp."""
        cmd = [self.scp, *self.ssh_options, str(local_path), f"{host}:{remote_path}"]
        logger.debug("scp: %s", " ".join(cmd))
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as exc:
            raise RemoteCommandError(
                f"Could not run {self.scp!r} for {host}: {exc}",
                host=host,
                command=" ".join(cmd),
            ) from exc
        return CommandResult(proc.returncode, proc.stdout or "", proc.stderr or "")


def check_result(result: CommandResult, host: str, command: str) -> CommandResult:
    """Raise :class:`RemoteCommandError` unless *result* exited with status 0."""
    if not result.ok:
        raise RemoteCommandError(
            f"{command} on {host} exited with status {result.returncode}: "
            f"{result.combined.strip() or '(no output)'}",
            host=host,
            command=command,
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )
    return result


def run_remote_shell(executor: RemoteExecutor, host: str, script: str) -> CommandResult:
    """Run *script* with ``bash -lc`` so the user's login environment is loaded."""
    return executor.run(host, ["bash", "-lc", script])


def upload_script(
    executor: RemoteExecutor, host: str, local_path: str | Path, remote_path: str
) -> None:
    """Upload the local batch script to *remote_path* before submission.

    Raises
    ------
    ConfigError
        If the local file does not exist or no remote path is given.
    RemoteCommandError
        If scp fails.
    """
    if not remote_path:
        raise ConfigError("A remote script path (--script) is required with --script-local")
    local = Path(local_path).expanduser().absolute()
    if not local.is_file():
        raise ConfigError(f"script-local {local} does not exist or is not a file")
    logger.info("Uploading %s to %s:%s", local, host, remote_path)
    result = executor.upload(host, local, remote_path)
    check_result(result, host, f"scp {local} {host}:{remote_path}")


def run_build_script(executor: RemoteExecutor, host: str, local_path: str | Path) -> CommandResult:
    """Copy a local build script to a temp file on *host*, run it, and remove it.

    The script body travels inside a quoted heredoc, so no separate upload
    step is needed.

    Raises
    ------
    ConfigError
        If *local_path* is missing or is a directory.
    RemoteCommandError
        If the build exits non-zero.
    """
    local = Path(local_path).expanduser().absolute()
    if not local.exists():
        raise ConfigError(f"build-script {local} does not exist")
    if local.is_dir():
        raise ConfigError(f"build-script {local} is a directory")
    body = local.read_text()
    if not body.endswith("\n"):
        body += "\n"

    stamp = time.time_ns()
    remote_path = shlex.quote(f"/tmp/exp-build-{stamp}-{os.getpid()}.sh")
    marker = f"EXP_BUILD_{stamp}"
    script = (
        "set -eo pipefail; "
        f"cat > {remote_path} <<'{marker}'\n"
        f"{body}"
        f"{marker}\n"
        f"chmod +x {remote_path}\n"
        f"bash {remote_path}\n"
        f"rm -f {remote_path}\n"
    )
    logger.info("Running build script %s on %s", local, host)
    result = run_remote_shell(executor, host, script)
    for line in result.combined.splitlines():
        logger.info("[build] %s", line)
    return check_result(result, host, f"build script {local}")
