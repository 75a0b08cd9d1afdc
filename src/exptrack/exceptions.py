"""exceptions.py — error types raised by exptrack.

Configuration problems are reported before any remote command runs; remote
and transfer failures carry enough context (host, command, output) for the
CLI to print a single descriptive message.
"""
from __future__ import annotations

__all__ = [
    "ExpError",
    "ConfigError",
    "RemoteCommandError",
    "SubmissionError",
    "TransferError",
    "ArtifactSyncError",
    "ExperimentNotFound",
    "StoreError",
    "MonitoringCancelled",
]


class ExpError(Exception):
    """Base class for all exptrack errors."""


class ConfigError(ExpError, ValueError):
    """Missing or invalid run parameter, pattern, path, or config file."""


class RemoteCommandError(ExpError, RuntimeError):
    """A command run on the remote host could not be executed or exited non-zero."""

    def __init__(
        self,
        message: str,
        *,
        host: str = "",
        command: str = "",
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.host = host
        self.command = command
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class SubmissionError(ExpError, RuntimeError):
    """``sbatch`` failed or its output did not contain a job id."""


class TransferError(ExpError, RuntimeError):
    """The bulk-copy utility failed for an artifact source."""


class ArtifactSyncError(ExpError, RuntimeError):
    """Artifact synchronization failed after the job finished."""


class ExperimentNotFound(ExpError, LookupError):
    """No experiment with the requested id exists in the store."""


class StoreError(ExpError, RuntimeError):
    """The experiment store could not be locked for writing."""


class MonitoringCancelled(ExpError):
    """A run or its status polling was stopped through the cancellation token."""
