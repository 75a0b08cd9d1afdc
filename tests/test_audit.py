"""Tests for audit.py — AuditLogger and get_logger()."""
import json

import pytest

from exptrack.audit import AUDIT_EVENTS, AuditLogger, get_logger
from exptrack.config import ExpConfig


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def log_file(tmp_path):
    return tmp_path / "audit.jsonl"


@pytest.fixture
def audit(log_file):
    return AuditLogger(log_file)


@pytest.fixture
def experiment(make_experiment):
    exp = make_experiment(name="bigann", job_id="12345")
    exp.id = 3
    return exp


def read_entries(log_file):
    return [json.loads(line) for line in log_file.read_text().splitlines()]


# ---------------------------------------------------------------------------
# AuditLogger — file creation
# ---------------------------------------------------------------------------


def test_log_creates_file(audit, log_file, experiment):
    audit.log("submitted", experiment)
    assert log_file.exists()


def test_log_creates_parent_dirs(tmp_path, experiment):
    deep = tmp_path / "a" / "b" / "audit.jsonl"
    AuditLogger(deep).log("submitted", experiment)
    assert deep.exists()


# ---------------------------------------------------------------------------
# AuditLogger — JSONL structure
# ---------------------------------------------------------------------------


def test_entry_copies_experiment_identity(audit, log_file, experiment):
    audit.log("submitted", experiment, detail="/logs/x.out")
    (entry,) = read_entries(log_file)
    assert entry["event"] == "submitted"
    assert entry["experiment_id"] == 3
    assert entry["name"] == "bigann"
    assert entry["job_id"] == "12345"
    assert entry["detail"] == "/logs/x.out"
    assert "ts" in entry


def test_status_fields_only_on_status_change(audit, log_file, experiment):
    audit.log("status_change", experiment, old_status="PENDING", new_status="RUNNING")
    audit.log("artifacts_synced", experiment, detail="/dest/3")
    change, synced = read_entries(log_file)
    assert (change["old_status"], change["new_status"]) == ("PENDING", "RUNNING")
    assert "old_status" not in synced


def test_entry_without_experiment(audit, log_file):
    audit.log("dry_run")
    (entry,) = read_entries(log_file)
    assert entry["experiment_id"] is None
    assert entry["job_id"] is None
    assert entry["name"] == ""


def test_log_appends(audit, log_file, experiment):
    audit.log("submitted", experiment)
    audit.log("artifacts_synced", experiment, detail="/dest/1")
    assert [e["event"] for e in read_entries(log_file)] == ["submitted", "artifacts_synced"]


def test_log_extra_fields(audit, log_file, experiment):
    audit.log("submitted", experiment, remote="u@h")
    assert read_entries(log_file)[0]["remote"] == "u@h"


def test_log_timestamp_is_utc(audit, log_file, experiment):
    audit.log("dry_run", experiment)
    assert read_entries(log_file)[0]["ts"].endswith("+00:00")


def test_log_unknown_event_rejected(audit, log_file):
    with pytest.raises(ValueError, match="Unknown audit event"):
        audit.log("exploded")
    assert not log_file.exists()


def test_all_events_accepted(audit, log_file):
    for event in sorted(AUDIT_EVENTS):
        audit.log(event)
    assert len(read_entries(log_file)) == len(AUDIT_EVENTS)


# ---------------------------------------------------------------------------
# get_logger
# ---------------------------------------------------------------------------


def test_get_logger_uses_config_log_file(tmp_path):
    cfg = ExpConfig(home=tmp_path, log_file=tmp_path / "custom.jsonl")
    assert get_logger(cfg).log_file == tmp_path / "custom.jsonl"


def test_get_logger_default_under_home(tmp_path):
    assert get_logger(ExpConfig(home=tmp_path)).log_file == tmp_path / "audit.jsonl"


def test_get_logger_ignores_state_file_location(tmp_path):
    cfg = ExpConfig(home=tmp_path / "home", state_file=tmp_path / "elsewhere" / "state.parquet")
    assert get_logger(cfg).log_file == tmp_path / "home" / "audit.jsonl"
