"""discovery.py — listing candidate artifact files on the remote host.

Files are listed with ``find . -type f`` from the source root, so results are
relative paths.  Right after a job finishes the remote filesystem may not yet
show its output, so listing is retried: first restricted to files modified
since the experiment started (minus a grace period for clock skew), then
without the time filter.
"""
from __future__ import annotations

__all__ = [
    "SINCE_START_GRACE_PERIOD",
    "LISTING_ATTEMPTS",
    "LISTING_RETRY_DELAY",
    "ListingStrategy",
    "listing_strategies",
    "build_listing_command",
    "parse_listing",
    "list_remote_files",
    "discover_files",
]

import logging
import shlex
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, NamedTuple, Sequence

from exptrack.remote import RemoteExecutor, check_result, run_remote_shell

logger = logging.getLogger(__name__)

#: Subtracted from the since-start cutoff to absorb clock skew and mtime granularity.
SINCE_START_GRACE_PERIOD = timedelta(minutes=2)

LISTING_ATTEMPTS = 6
LISTING_RETRY_DELAY = 3.0


class ListingStrategy(NamedTuple):
    """One way of listing a source, tried up to ``max_attempts`` times."""

    label: str
    since: datetime | None
    max_attempts: int = LISTING_ATTEMPTS
    delay: float = LISTING_RETRY_DELAY


def listing_strategies(since: datetime | None) -> list[ListingStrategy]:
    """Return the strategies to try, in order."""
    strategies = [ListingStrategy("without time filter", None)]
    if since is not None:
        strategies.insert(0, ListingStrategy("since-start window", since))
    return strategies


def build_listing_command(root: str, since: datetime | None = None) -> str:
    """Return the shell command listing regular files under *root*.

    With *since*, only files modified after ``since - SINCE_START_GRACE_PERIOD``
    are listed.
    """
    cmd = f"cd {shlex.quote(root)} && find . -type f"
    if since is not None:
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        cutoff = int((since - SINCE_START_GRACE_PERIOD).timestamp())
        cmd += f" -newermt {shlex.quote(f'@{cutoff}')}"
    return cmd + " -print"


def parse_listing(output: str) -> list[str]:
    """Turn ``find`` output into paths relative to the root."""
    files = []
    for line in output.splitlines():
        line = line.strip()
        if not line or line == ".":
            continue
        if line.startswith("./"):
            line = line[2:]
        files.append(line)
    return files


def list_remote_files(
    executor: RemoteExecutor, host: str, root: str, since: datetime | None = None
) -> list[str]:
    """List files under *root* on *host* once.

    Raises
    ------
    RemoteCommandError
        If the listing command fails (e.g. *root* does not exist).
    """
    cmd = build_listing_command(root, since)
    result = check_result(run_remote_shell(executor, host, cmd), host, cmd)
    return parse_listing(result.stdout)


def discover_files(
    executor: RemoteExecutor,
    host: str,
    root: str,
    since: datetime | None = None,
    *,
    strategies: Sequence[ListingStrategy] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> list[str]:
    """Return the files under *root*, retrying while the listing is empty.

    Strategies are tried in order; within each, up to ``max_attempts``
    listings are made with ``delay`` seconds between them.  The first
    non-empty listing is returned.  An empty list after every attempt means
    there is nothing to copy, not an error.
    """
    if strategies is None:
        strategies = listing_strategies(since)
    for strategy in strategies:
        for attempt in range(strategy.max_attempts):
            if attempt > 0:
                sleep(strategy.delay)
            logger.info(
                "Listing %s:%s (%s, attempt %d)", host, root, strategy.label, attempt + 1
            )
            files = list_remote_files(executor, host, root, strategy.since)
            if files:
                logger.info("Found %d file(s) under %s", len(files), root)
                return files
    logger.info(
        "Remote listing produced no files under %s (command: %s)",
        root,
        build_listing_command(root),
    )
    return []
