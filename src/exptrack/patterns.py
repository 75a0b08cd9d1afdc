"""patterns.py — artifact filter expressions.

Filters are Python regular expressions applied with :func:`re.search`.  A
discovered file is kept when any expression matches its path relative to the
source root, its basename, or the absolute remote path, so a filter can be
written against whichever form is most convenient::

    compiled = compile_patterns([r"\\.json$", r"^logs/"])
    keep = filter_paths(compiled, "/data/out", ["a.json", "b.txt", "logs/x"])
    # -> ["a.json", "logs/x"]

Patterns are persisted as a single newline-joined string; see
:func:`combine_patterns` and :func:`split_patterns`.
"""
from __future__ import annotations

__all__ = [
    "compile_patterns",
    "pattern_matches",
    "filter_paths",
    "normalize_patterns",
    "ensure_patterns",
    "combine_patterns",
    "split_patterns",
]

import posixpath
import re
from typing import Iterable, Sequence

from exptrack.exceptions import ConfigError


def compile_patterns(patterns: Iterable[str] | None) -> list[re.Pattern]:
    """Compile filter expressions, skipping blank entries.

    Raises
    ------
    ConfigError
        If any pattern is not a valid regular expression.
    """
    compiled = []
    for pattern in patterns or ():
        pattern = pattern.strip()
        if not pattern:
            continue
        try:
            compiled.append(re.compile(pattern))
        except re.error as exc:
            raise ConfigError(f"Invalid artifact pattern {pattern!r}: {exc}") from exc
    return compiled


def pattern_matches(compiled: Sequence[re.Pattern], remote_root: str, rel: str) -> bool:
    """Return True if *rel* passes the filter list.

    An empty list accepts everything.
    """
    if not compiled:
        return True
    full = posixpath.join(remote_root, rel) if remote_root else rel
    base = posixpath.basename(rel)
    for regex in compiled:
        if regex.search(rel) or regex.search(base) or regex.search(full):
            return True
    return False


def filter_paths(
    compiled: Sequence[re.Pattern], remote_root: str, paths: Iterable[str]
) -> list[str]:
    """Return the paths accepted by *compiled*, preserving discovery order."""
    return [rel for rel in paths if pattern_matches(compiled, remote_root, rel)]


def normalize_patterns(single: str | None, many: Iterable[str] | None) -> list[str]:
    """Merge the list form and the legacy single-pattern form of a config entry."""
    result = ensure_patterns(many)
    if single and single.strip():
        result.append(single.strip())
    return result


def ensure_patterns(patterns: Iterable[str] | None) -> list[str]:
    """Strip patterns and drop the empty ones."""
    return [p.strip() for p in patterns or () if p and p.strip()]


def combine_patterns(patterns: Iterable[str] | None) -> str:
    """Join patterns into their persisted newline-separated form."""
    return "\n".join(ensure_patterns(patterns))


def split_patterns(combined: str | None) -> list[str]:
    """Inverse of :func:`combine_patterns`."""
    if not combined:
        return []
    return ensure_patterns(combined.splitlines())
