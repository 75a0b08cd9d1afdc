from __future__ import annotations

__all__ = ["RsyncTransfer", "BulkCopy"]

import logging
import os
import subprocess
from pathlib import Path
from typing import Protocol, Sequence

from exptrack.exceptions import TransferError

logger = logging.getLogger(__name__)


class BulkCopy(Protocol):
    """Capability to copy a manifest of relative paths from a remote root."""

    def copy(self, host: str, root: str, files: Sequence[str], dest: str | Path) -> None:
        ...


class RsyncTransfer:
    """Copy artifact files with ``rsync --files-from=-``.

    The manifest is written to rsync's stdin rather than the command line,
    so large result sets never hit argument-length limits.
    """

    def __init__(self, rsync: str = "rsync", options: Sequence[str] = ("-av",)) -> None:
        self.rsync = rsync
        self.options = tuple(options)

    def build_command(self, host: str, root: str, dest: Path) -> list[str]:
        source_root = root.rstrip("/")
        return [self.rsync, *self.options, "--files-from=-", f"{host}:{source_root}/", str(dest)]

    def copy(self, host: str, root: str, files: Sequence[str], dest: str | Path) -> None:
        """Copy *files* (relative to *root* on *host*) into *dest*.

        Raises
        ------
        TransferError
            If rsync cannot be started or exits non-zero.
        """
        if not files:
            return
        dest = Path(os.path.abspath(Path(dest).expanduser()))
        try:
            dest.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise TransferError(f"Cannot create destination {dest}: {exc}") from exc

        cmd = self.build_command(host, root, dest)
        manifest = "\n".join(files) + "\n"
        logger.info("Starting rsync: %s (%d file(s))", " ".join(cmd), len(files))
        try:
            # rsync's progress output goes straight to the terminal
            result = subprocess.run(cmd, input=manifest, text=True)
        except OSError as exc:
            raise TransferError(f"Could not run {self.rsync!r}: {exc}") from exc
        if result.returncode != 0:
            raise TransferError(
                f"rsync from {host}:{root} to {dest} failed with exit status {result.returncode}"
            )
