from __future__ import annotations

__all__ = [
    "ArtifactSource",
    "RunProfile",
    "ExpConfig",
    "RunParameters",
    "DEFAULT_POLL_INTERVAL",
    "default_home",
    "expand_local_path",
    "load_run_file",
    "parse_duration",
    "resolve_run_parameters",
]

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, Sequence

import yaml

from exptrack.exceptions import ConfigError
from exptrack.patterns import compile_patterns, ensure_patterns, normalize_patterns

#: Seconds between status polls when no poll_interval is configured.
DEFAULT_POLL_INTERVAL = 30.0

_CONFIG_FILENAMES = ("config.yaml", "config.yml", "config.json")

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


@dataclass(frozen=True)
class ArtifactSource:
    """A remote directory tree to sync and the filters applied to it."""

    path: str  # absolute path on the remote host
    patterns: tuple[str, ...] = ()

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ArtifactSource":
        """Build a source from a config entry (``path`` + ``artifact_patterns``)."""
        if not isinstance(data, Mapping):
            raise ConfigError(f"Artifact source must be a mapping, got {data!r}")
        unknown = set(data) - {"path", "artifact_patterns", "patterns"}
        if unknown:
            raise ConfigError(f"Unknown artifact source key(s): {sorted(unknown)}")
        patterns = data.get("artifact_patterns", data.get("patterns")) or []
        if isinstance(patterns, str):
            patterns = [patterns]
        return cls(path=str(data.get("path") or ""), patterns=tuple(ensure_patterns(patterns)))

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "artifact_patterns": list(self.patterns)}


@dataclass
class RunProfile:
    """One layer of run settings: CLI flags, a run file, a profile, or defaults.

    Every field is optional; ``None`` (or an empty list) means "not set in
    this layer" and lets the next layer supply the value.
    """

    name: str | None = None
    profile: str | None = None
    remote: str | None = None
    log_dir: str | None = None
    script: str | None = None
    build_script: str | None = None
    script_local: str | None = None
    artifact_remote: str | None = None
    artifact_dest: str | None = None
    artifact_sources: list[ArtifactSource] = field(default_factory=list)
    artifact_patterns: list[str] = field(default_factory=list)
    artifact_pattern: str | None = None
    artifact_since_start: bool | None = None
    poll_interval: str | None = None
    args: list[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None, source: str = "config") -> "RunProfile":
        """Build a profile from a parsed YAML/JSON mapping.

        Raises
        ------
        ConfigError
            If *data* is not a mapping or contains unknown keys.
        """
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise ConfigError(f"{source}: expected a mapping, got {type(data).__name__}")
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"{source}: unknown key(s) {sorted(unknown)}")

        # YAML nulls fall back to the dataclass defaults.
        values = {k: v for k, v in data.items() if v is not None}
        if "artifact_sources" in values:
            values["artifact_sources"] = [
                ArtifactSource.from_mapping(s) for s in values["artifact_sources"]
            ]
        for key in ("artifact_patterns", "args"):
            if isinstance(values.get(key), str):
                values[key] = [values[key]]
            if key in values:
                values[key] = [str(v) for v in values[key]]
        for key in ("name", "profile", "remote", "log_dir", "script", "build_script",
                    "script_local", "artifact_remote", "artifact_dest", "artifact_pattern",
                    "poll_interval"):
            if key in values:
                values[key] = str(values[key])
        return cls(**values)

    def patterns(self) -> list[str]:
        return normalize_patterns(self.artifact_pattern, self.artifact_patterns)


def default_home() -> Path:
    """Return the exptrack home directory (``$EXP_HOME`` or ``~/.exp``)."""
    env = os.environ.get("EXP_HOME")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".exp"


@dataclass
class ExpConfig:
    """Local paths plus the defaults and named profiles from the config file."""

    home: Path = field(default_factory=default_home)

    # Experiment store (parquet). Defaults to <home>/experiments.parquet.
    state_file: Path | None = None

    # JSONL audit log. Defaults to <home>/audit.jsonl.
    log_file: Path | None = None

    defaults: RunProfile = field(default_factory=RunProfile)
    profiles: dict[str, RunProfile] = field(default_factory=dict)

    # Config file the values were read from, if any.
    path: Path | None = None

    def __post_init__(self) -> None:
        self.home = Path(self.home)
        if self.state_file is None:
            self.state_file = self.home / "experiments.parquet"
        if self.log_file is None:
            self.log_file = self.home / "audit.jsonl"

    def get_profile(self, name: str) -> RunProfile:
        """Look up a named profile."""
        try:
            return self.profiles[name]
        except KeyError:
            where = self.path if self.path is not None else self.home / "config.(yaml|json)"
            raise ConfigError(f"Profile {name!r} not found in {where}") from None

    @classmethod
    def load(cls, home: str | Path | None = None) -> "ExpConfig":
        """Load ``config.yaml``/``config.yml``/``config.json`` from *home*.

        The first existing file wins.  Without a config file the built-in
        defaults are returned.
        """
        home = Path(home).expanduser() if home is not None else default_home()
        for filename in _CONFIG_FILENAMES:
            candidate = home / filename
            if candidate.exists():
                return cls.from_yaml(candidate, home=home)
        return cls(home=home)

    @classmethod
    def from_yaml(cls, path: str | Path, home: str | Path | None = None) -> "ExpConfig":
        """Load config from a YAML (or JSON) file, overriding defaults.

        Raises
        ------
        ConfigError
            If the file contains invalid YAML syntax or unknown keys.
        FileNotFoundError
            If *path* does not exist.
        """
        path = Path(path)
        with open(path) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
        if not isinstance(data, Mapping):
            raise ConfigError(f"{path}: top level must be a mapping")

        unknown = set(data) - {"defaults", "profiles", "state_file", "log_file"}
        if unknown:
            raise ConfigError(f"{path}: unknown key(s) {sorted(unknown)}")

        kwargs: dict[str, Any] = {"path": path}
        if home is not None:
            kwargs["home"] = Path(home)
        for key in ("state_file", "log_file"):
            if data.get(key) is not None:
                kwargs[key] = Path(data[key]).expanduser()
        kwargs["defaults"] = RunProfile.from_mapping(data.get("defaults"), f"{path}: defaults")
        profiles = data.get("profiles") or {}
        if not isinstance(profiles, Mapping):
            raise ConfigError(f"{path}: profiles must be a mapping of name to settings")
        kwargs["profiles"] = {
            str(name): RunProfile.from_mapping(prof, f"{path}: profile {name}")
            for name, prof in profiles.items()
        }
        return cls(**kwargs)


def load_run_file(path: str | Path) -> RunProfile:
    """Load a per-run YAML/JSON file describing a single experiment."""
    path = Path(path)
    with open(path) as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    return RunProfile.from_mapping(data, str(path))


def parse_duration(value: str | float | int) -> float:
    """Parse ``"45s"``, ``"2m"``, ``"1h30m"``, ``"500ms"`` or bare seconds.

    Raises
    ------
    ConfigError
        If *value* is not a positive duration.
    """
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.strip()
        try:
            seconds = float(text)
        except ValueError:
            matches = _DURATION_RE.findall(text)
            if not matches or "".join(n + u for n, u in matches) != text:
                raise ConfigError(f"Invalid duration {value!r} (expected e.g. 45s, 2m, 1h30m)") from None
            seconds = sum(float(n) * _DURATION_UNITS[u] for n, u in matches)
    if seconds <= 0:
        raise ConfigError(f"Duration must be positive, got {value!r}")
    return seconds


def expand_local_path(path: str | Path | None) -> Path | None:
    """Expand ``~`` and make *path* absolute; ``None``/empty stays ``None``."""
    if path is None or str(path) == "":
        return None
    return Path(os.path.abspath(Path(path).expanduser()))


@dataclass(frozen=True)
class RunParameters:
    """Fully resolved, validated settings for one ``exp run`` invocation."""

    name: str
    remote: str
    log_dir: str
    script: str
    args: tuple[str, ...] = ()
    build_script: str | None = None
    script_local: str | None = None
    artifact_remote: str | None = None
    artifact_dest: Path | None = None
    artifact_sources: tuple[ArtifactSource, ...] = ()
    artifact_patterns: tuple[str, ...] = ()
    artifact_since_start: bool = True
    poll_interval: float = DEFAULT_POLL_INTERVAL
    profile: str | None = None
    config_file: Path | None = None

    @property
    def log_template(self) -> str:
        """Remote sbatch ``--output`` template; Slurm expands ``%j``."""
        return f"{self.log_dir.rstrip('/')}/{self.name}-%j.out"


def _first(layers: Sequence[RunProfile], attr: str) -> Any:
    """Return the first layer value that is set (not None, not empty)."""
    for layer in layers:
        value = getattr(layer, attr)
        if value is not None and value != "" and value != []:
            return value
    return None


def resolve_run_parameters(
    config: ExpConfig | None = None,
    *,
    flags: RunProfile | None = None,
    run_file: RunProfile | None = None,
    profile_name: str | None = None,
    config_file: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> RunParameters:
    """Merge the settings layers into one :class:`RunParameters`.

    Precedence is CLI flags > per-run file > named profile > config defaults;
    each field is taken from the first layer that sets it.  ``EXP_REMOTE``
    from *env* is the last fallback for the remote host.  The function has
    no side effects: paths are checked, not created.

    Raises
    ------
    ConfigError
        On a missing required value, unknown profile, non-absolute artifact
        path, inconsistent artifact settings, bad poll interval, or a
        malformed filter pattern.
    """
    config = config if config is not None else ExpConfig()
    flags = flags or RunProfile()
    env = os.environ if env is None else env

    profile_name = profile_name or flags.profile or (run_file.profile if run_file else None)
    layers: list[RunProfile] = [flags]
    if run_file is not None:
        layers.append(run_file)
    if profile_name:
        layers.append(config.get_profile(profile_name))
    layers.append(config.defaults)

    name = _first(layers, "name")
    remote = _first(layers, "remote") or env.get("EXP_REMOTE")
    log_dir = _first(layers, "log_dir")
    script = _first(layers, "script")
    missing = [
        flag for flag, value in (
            ("--remote", remote), ("--name", name), ("--log-dir", log_dir), ("--script", script),
        ) if not value
    ]
    if missing:
        raise ConfigError(
            f"Missing required setting(s): {', '.join(missing)} "
            "(pass them as flags, in --config-file, in a profile, or set EXP_REMOTE)"
        )

    artifact_remote = _first(layers, "artifact_remote")
    artifact_dest = _first(layers, "artifact_dest")
    explicit_sources = _first(layers, "artifact_sources") or []
    patterns: list[str] = []
    for layer in layers:
        patterns = layer.patterns()
        if patterns:
            break

    if artifact_remote and not artifact_remote.startswith("/"):
        raise ConfigError(
            f"artifact_remote {artifact_remote!r} must be an absolute path on the remote host"
        )
    if not explicit_sources and bool(artifact_remote) != bool(artifact_dest):
        raise ConfigError(
            "artifact_remote and artifact_dest must be provided together "
            "(or specify artifact_sources)"
        )

    sources = list(explicit_sources)
    if not sources and artifact_remote:
        sources = [ArtifactSource(artifact_remote, tuple(patterns))]
    if artifact_dest and not sources:
        raise ConfigError("Artifact sources are required when artifact_dest is set")
    for i, source in enumerate(sources, start=1):
        if not source.path:
            raise ConfigError(f"Artifact source {i} has an empty path")
        if not source.path.startswith("/"):
            raise ConfigError(f"Artifact source path {source.path!r} must be absolute")
        compile_patterns(source.patterns)
    compile_patterns(patterns)

    since_start = _first(layers, "artifact_since_start")
    interval = _first(layers, "poll_interval")

    args = flags.args or (run_file.args if run_file is not None else [])

    return RunParameters(
        name=name,
        remote=remote,
        log_dir=log_dir,
        script=script,
        args=tuple(args),
        build_script=_first(layers, "build_script"),
        script_local=_first(layers, "script_local"),
        artifact_remote=artifact_remote,
        artifact_dest=expand_local_path(artifact_dest),
        artifact_sources=tuple(sources),
        artifact_patterns=tuple(patterns),
        artifact_since_start=True if since_start is None else bool(since_start),
        poll_interval=DEFAULT_POLL_INTERVAL if interval is None else parse_duration(interval),
        profile=profile_name,
        config_file=config_file,
    )
