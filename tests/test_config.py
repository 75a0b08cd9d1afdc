from pathlib import Path

import pytest

from exptrack.config import (
    DEFAULT_POLL_INTERVAL,
    ArtifactSource,
    ExpConfig,
    RunProfile,
    expand_local_path,
    load_run_file,
    parse_duration,
    resolve_run_parameters,
)
from exptrack.exceptions import ConfigError

REQUIRED = dict(remote="u@h", name="run1", log_dir="/logs", script="/a/b.sh")


def flags(**kwargs):
    return RunProfile(**kwargs)


# ---------------------------------------------------------------------------
# ExpConfig defaults
# ---------------------------------------------------------------------------


def test_defaults_under_home(tmp_path):
    cfg = ExpConfig(home=tmp_path)
    assert cfg.state_file == tmp_path / "experiments.parquet"
    assert cfg.log_file == tmp_path / "audit.jsonl"
    assert cfg.profiles == {}
    assert cfg.path is None


def test_home_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("EXP_HOME", str(tmp_path / "custom"))
    assert ExpConfig().home == tmp_path / "custom"


def test_load_without_file(tmp_path):
    cfg = ExpConfig.load(tmp_path)
    assert cfg.path is None
    assert cfg.defaults == RunProfile()


# ---------------------------------------------------------------------------
# ExpConfig.from_yaml / load
# ---------------------------------------------------------------------------


def test_from_yaml_profiles_and_defaults(tmp_path):
    yaml_file = tmp_path / "config.yaml"
    yaml_file.write_text(
        "defaults:\n"
        "  remote: me@login01\n"
        "  log_dir: /home/me/logs\n"
        "  poll_interval: 45s\n"
        "profiles:\n"
        "  bigann:\n"
        "    script: /home/me/run.sh\n"
        "    artifact_remote: /scratch/me/out\n"
        "    artifact_dest: ~/results\n"
        "    artifact_patterns:\n"
        "      - '\\.json$'\n"
        "    artifact_since_start: false\n"
    )
    cfg = ExpConfig.from_yaml(yaml_file, home=tmp_path)
    assert cfg.path == yaml_file
    assert cfg.defaults.remote == "me@login01"
    assert cfg.defaults.poll_interval == "45s"
    prof = cfg.get_profile("bigann")
    assert prof.artifact_patterns == ["\\.json$"]
    assert prof.artifact_since_start is False


def test_load_prefers_yaml_over_json(tmp_path):
    (tmp_path / "config.yaml").write_text("defaults:\n  remote: from-yaml\n")
    (tmp_path / "config.json").write_text('{"defaults": {"remote": "from-json"}}')
    assert ExpConfig.load(tmp_path).defaults.remote == "from-yaml"


def test_load_reads_json(tmp_path):
    (tmp_path / "config.json").write_text('{"profiles": {"p": {"name": "x"}}}')
    cfg = ExpConfig.load(tmp_path)
    assert cfg.get_profile("p").name == "x"


def test_from_yaml_overrides_state_and_log_file(tmp_path):
    yaml_file = tmp_path / "config.yaml"
    yaml_file.write_text(
        f"state_file: {tmp_path / 'db.parquet'}\n"
        f"log_file: {tmp_path / 'log.jsonl'}\n"
    )
    cfg = ExpConfig.from_yaml(yaml_file, home=tmp_path)
    assert cfg.state_file == tmp_path / "db.parquet"
    assert cfg.log_file == tmp_path / "log.jsonl"


def test_from_yaml_empty_file(tmp_path):
    yaml_file = tmp_path / "config.yaml"
    yaml_file.write_text("")
    cfg = ExpConfig.from_yaml(yaml_file, home=tmp_path)
    assert cfg.defaults == RunProfile()


def test_from_yaml_unknown_top_level_key(tmp_path):
    yaml_file = tmp_path / "config.yaml"
    yaml_file.write_text("defaults: {}\nfrobnicate: true\n")
    with pytest.raises(ConfigError, match="frobnicate"):
        ExpConfig.from_yaml(yaml_file)


def test_from_yaml_unknown_profile_key(tmp_path):
    yaml_file = tmp_path / "config.yaml"
    yaml_file.write_text("profiles:\n  p:\n    partition: gpu\n")
    with pytest.raises(ConfigError, match="partition"):
        ExpConfig.from_yaml(yaml_file)


def test_from_yaml_invalid_syntax(tmp_path):
    yaml_file = tmp_path / "config.yaml"
    yaml_file.write_text("defaults: [unclosed\n")
    with pytest.raises(ConfigError, match="Invalid YAML"):
        ExpConfig.from_yaml(yaml_file)


def test_from_yaml_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        ExpConfig.from_yaml(tmp_path / "nope.yaml")


def test_get_profile_unknown(tmp_path):
    with pytest.raises(ConfigError, match="'ghost' not found"):
        ExpConfig(home=tmp_path).get_profile("ghost")


# ---------------------------------------------------------------------------
# RunProfile / ArtifactSource
# ---------------------------------------------------------------------------


def test_profile_coerces_scalars_and_lists():
    prof = RunProfile.from_mapping({"name": 7, "args": "--fast", "artifact_patterns": "x$"})
    assert prof.name == "7"
    assert prof.args == ["--fast"]
    assert prof.artifact_patterns == ["x$"]


def test_profile_null_values_are_unset():
    prof = RunProfile.from_mapping({"remote": None, "args": None})
    assert prof.remote is None
    assert prof.args == []


def test_profile_rejects_non_mapping():
    with pytest.raises(ConfigError, match="expected a mapping"):
        RunProfile.from_mapping(["remote"])


def test_profile_patterns_merge_single_and_list():
    prof = RunProfile(artifact_pattern="b", artifact_patterns=["a"])
    assert prof.patterns() == ["a", "b"]


def test_artifact_source_from_mapping():
    source = ArtifactSource.from_mapping({"path": "/data", "artifact_patterns": ["a", " "]})
    assert source == ArtifactSource("/data", ("a",))
    assert source.to_dict() == {"path": "/data", "artifact_patterns": ["a"]}


def test_artifact_source_unknown_key():
    with pytest.raises(ConfigError, match="dest"):
        ArtifactSource.from_mapping({"path": "/data", "dest": "/x"})


# ---------------------------------------------------------------------------
# load_run_file
# ---------------------------------------------------------------------------


def test_load_run_file(tmp_path):
    run_file = tmp_path / "run.yaml"
    run_file.write_text(
        "name: sweep\n"
        "args: ['--k', '100']\n"
        "artifact_sources:\n"
        "  - path: /data/a\n"
        "    artifact_patterns: ['json$']\n"
        "  - path: /data/b\n"
    )
    prof = load_run_file(run_file)
    assert prof.name == "sweep"
    assert prof.args == ["--k", "100"]
    assert prof.artifact_sources == [
        ArtifactSource("/data/a", ("json$",)),
        ArtifactSource("/data/b", ()),
    ]


# ---------------------------------------------------------------------------
# parse_duration / expand_local_path
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "value, seconds",
    [("45s", 45.0), ("2m", 120.0), ("1h30m", 5400.0), ("500ms", 0.5), ("10", 10.0), (3, 3.0)],
)
def test_parse_duration(value, seconds):
    assert parse_duration(value) == seconds


@pytest.mark.parametrize("value", ["", "fast", "10x", "0s", "-5", 0])
def test_parse_duration_invalid(value):
    with pytest.raises(ConfigError):
        parse_duration(value)


def test_expand_local_path(monkeypatch, tmp_path):
    monkeypatch.setenv("HOME", str(tmp_path))
    assert expand_local_path("~/out") == tmp_path / "out"
    assert expand_local_path("") is None
    assert expand_local_path(None) is None
    assert expand_local_path("rel").is_absolute()


# ---------------------------------------------------------------------------
# resolve_run_parameters — precedence
# ---------------------------------------------------------------------------


def test_resolve_minimal(cfg):
    params = resolve_run_parameters(cfg, flags=flags(**REQUIRED), env={})
    assert params.name == "run1"
    assert params.poll_interval == DEFAULT_POLL_INTERVAL
    assert params.artifact_since_start is True
    assert params.artifact_sources == ()
    assert params.artifact_dest is None
    assert params.log_template == "/logs/run1-%j.out"


def test_log_template_strips_trailing_slash(cfg):
    params = resolve_run_parameters(cfg, flags=flags(**{**REQUIRED, "log_dir": "/logs/"}), env={})
    assert params.log_template == "/logs/run1-%j.out"


def test_precedence_flags_over_run_file_over_profile_over_defaults(cfg):
    cfg.defaults = RunProfile(remote="d@h", name="d", log_dir="/d", script="/d.sh", poll_interval="1s")
    cfg.profiles["p"] = RunProfile(remote="p@h", name="p", log_dir="/p")
    run_file = RunProfile(remote="r@h", name="r")
    params = resolve_run_parameters(
        cfg, flags=flags(remote="f@h"), run_file=run_file, profile_name="p", env={}
    )
    assert params.remote == "f@h"
    assert params.name == "r"
    assert params.log_dir == "/p"
    assert params.script == "/d.sh"
    assert params.poll_interval == 1.0
    assert params.profile == "p"


def test_profile_named_in_run_file(cfg):
    cfg.profiles["p"] = RunProfile(script="/from-profile.sh")
    run_file = RunProfile(profile="p", remote="u@h", name="n", log_dir="/l")
    params = resolve_run_parameters(cfg, run_file=run_file, env={})
    assert params.script == "/from-profile.sh"


def test_unknown_profile(cfg):
    with pytest.raises(ConfigError, match="not found"):
        resolve_run_parameters(cfg, flags=flags(**REQUIRED), profile_name="ghost", env={})


def test_remote_from_env_is_last_fallback(cfg):
    required = {k: v for k, v in REQUIRED.items() if k != "remote"}
    params = resolve_run_parameters(cfg, flags=flags(**required), env={"EXP_REMOTE": "env@h"})
    assert params.remote == "env@h"
    params = resolve_run_parameters(
        cfg, flags=flags(**REQUIRED), env={"EXP_REMOTE": "env@h"}
    )
    assert params.remote == "u@h"


def test_missing_required_lists_flags(cfg):
    with pytest.raises(ConfigError) as excinfo:
        resolve_run_parameters(cfg, flags=flags(name="n"), env={})
    message = str(excinfo.value)
    assert "--remote" in message
    assert "--log-dir" in message
    assert "--script" in message
    assert "--name" not in message


def test_args_from_flags_replace_run_file(cfg):
    run_file = RunProfile(args=["--from-file"])
    params = resolve_run_parameters(cfg, flags=flags(**REQUIRED, args=["--cli"]), run_file=run_file, env={})
    assert params.args == ("--cli",)
    params = resolve_run_parameters(cfg, flags=flags(**REQUIRED), run_file=run_file, env={})
    assert params.args == ("--from-file",)


def test_since_start_false_survives_lower_layer_true(cfg):
    cfg.defaults = RunProfile(artifact_since_start=True)
    params = resolve_run_parameters(
        cfg, flags=flags(**REQUIRED, artifact_since_start=False), env={}
    )
    assert params.artifact_since_start is False


def test_invalid_poll_interval(cfg):
    with pytest.raises(ConfigError, match="Invalid duration"):
        resolve_run_parameters(cfg, flags=flags(**REQUIRED, poll_interval="soon"), env={})


# ---------------------------------------------------------------------------
# resolve_run_parameters — artifact validation
# ---------------------------------------------------------------------------


def test_artifact_remote_synthesizes_single_source(cfg, tmp_path):
    params = resolve_run_parameters(
        cfg,
        flags=flags(
            **REQUIRED,
            artifact_remote="/data/out",
            artifact_dest=str(tmp_path / "dest"),
            artifact_patterns=["\\.json$"],
        ),
        env={},
    )
    assert params.artifact_sources == (ArtifactSource("/data/out", ("\\.json$",)),)
    assert params.artifact_dest == tmp_path / "dest"
    assert not (tmp_path / "dest").exists()


def test_artifact_remote_must_be_absolute(cfg):
    with pytest.raises(ConfigError, match="absolute"):
        resolve_run_parameters(
            cfg, flags=flags(**REQUIRED, artifact_remote="data/out", artifact_dest="/tmp/x"), env={}
        )


@pytest.mark.parametrize(
    "extra", [{"artifact_remote": "/data/out"}, {"artifact_dest": "/tmp/x"}]
)
def test_artifact_remote_and_dest_together(cfg, extra):
    with pytest.raises(ConfigError, match="together"):
        resolve_run_parameters(cfg, flags=flags(**REQUIRED, **extra), env={})


def test_explicit_sources_need_no_artifact_remote(cfg):
    sources = [ArtifactSource("/a", ()), ArtifactSource("/b", ("x$",))]
    run_file = RunProfile(artifact_sources=sources, artifact_dest="/tmp/dest")
    params = resolve_run_parameters(cfg, flags=flags(**REQUIRED), run_file=run_file, env={})
    assert params.artifact_sources == tuple(sources)


def test_relative_source_path_rejected(cfg):
    run_file = RunProfile(artifact_sources=[ArtifactSource("rel", ())], artifact_dest="/tmp/d")
    with pytest.raises(ConfigError, match="must be absolute"):
        resolve_run_parameters(cfg, flags=flags(**REQUIRED), run_file=run_file, env={})


def test_empty_source_path_rejected(cfg):
    run_file = RunProfile(artifact_sources=[ArtifactSource("", ())], artifact_dest="/tmp/d")
    with pytest.raises(ConfigError, match="empty path"):
        resolve_run_parameters(cfg, flags=flags(**REQUIRED), run_file=run_file, env={})


def test_malformed_pattern_rejected(cfg):
    with pytest.raises(ConfigError, match="Invalid artifact pattern"):
        resolve_run_parameters(
            cfg,
            flags=flags(
                **REQUIRED, artifact_remote="/d", artifact_dest="/tmp/x", artifact_patterns=["("]
            ),
            env={},
        )


def test_config_file_recorded(cfg, tmp_path):
    params = resolve_run_parameters(
        cfg, flags=flags(**REQUIRED), config_file=tmp_path / "run.yaml", env={}
    )
    assert params.config_file == Path(tmp_path / "run.yaml")
