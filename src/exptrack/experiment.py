from __future__ import annotations

__all__ = ["Experiment", "build_snapshot", "utcnow", "format_ts", "parse_ts"]

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from exptrack.config import ArtifactSource, RunParameters
from exptrack.patterns import split_patterns


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def format_ts(ts: datetime | None) -> str:
    """Serialize a timestamp as ISO-8601 UTC; ``None`` becomes ``""``."""
    if ts is None:
        return ""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="seconds")


def parse_ts(text: str | None) -> datetime | None:
    """Inverse of :func:`format_ts`; unparsable or empty text gives ``None``."""
    if not text:
        return None
    try:
        ts = datetime.fromisoformat(str(text))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass
class Experiment:
    """One submission of a batch script, as recorded in the local store."""

    name: str
    remote: str
    script_path: str
    job_id: str
    log_path: str
    id: int | None = None
    args: str = ""
    git_commit: str = ""
    git_branch: str = ""
    job_status: str = "SUBMITTED"
    created_at: datetime | None = None
    completed_at: datetime | None = None

    # Artifact settings. artifact_remote is the first source path, kept for display
    # and for records that predate per-source configuration.
    artifact_remote: str = ""
    artifact_dest: str = ""
    artifact_sources: list[ArtifactSource] = field(default_factory=list)
    artifact_pattern: str = ""  # newline-joined
    artifact_since_start: bool = False
    artifact_last_sync: datetime | None = None
    artifact_last_error: str = ""

    config_snapshot: str = ""

    def effective_artifact_sources(self) -> list[ArtifactSource]:
        """Return the sources to sync.

        Explicit sources win; otherwise a recorded ``artifact_remote`` is
        treated as a single source filtered by ``artifact_pattern``.
        """
        if self.artifact_sources:
            return list(self.artifact_sources)
        if not self.artifact_remote:
            return []
        return [ArtifactSource(self.artifact_remote, tuple(split_patterns(self.artifact_pattern)))]

    def snapshot(self) -> dict[str, Any]:
        """Return the parsed config snapshot, or an empty dict."""
        if not self.config_snapshot:
            return {}
        try:
            data = json.loads(self.config_snapshot)
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}


def build_snapshot(
    params: RunParameters,
    *,
    artifact_dest: str = "",
    git_commit: str = "",
    git_branch: str = "",
) -> str:
    """Serialize the resolved run parameters stored alongside an experiment."""
    data: dict[str, Any] = {
        "name": params.name,
        "remote": params.remote,
        "log_dir": params.log_dir,
        "script": params.script,
        "artifact_remote": params.artifact_remote or "",
        "artifact_dest": artifact_dest,
        "artifact_pattern": "\n".join(params.artifact_patterns),
        "artifact_since_start": params.artifact_since_start,
        "poll_interval": f"{params.poll_interval:g}s",
        "args": list(params.args),
    }
    if params.build_script:
        data["build_script"] = params.build_script
    if params.artifact_patterns:
        data["artifact_patterns"] = list(params.artifact_patterns)
    if params.artifact_sources:
        data["artifact_sources"] = [s.to_dict() for s in params.artifact_sources]
    if params.config_file is not None:
        data["config_file"] = str(params.config_file)
    if params.profile:
        data["profile"] = params.profile
    if git_commit:
        data["git_commit"] = git_commit
    if git_branch:
        data["git_branch"] = git_branch
    return json.dumps(data)
