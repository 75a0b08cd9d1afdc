from datetime import datetime, timezone

import pytest

from exptrack.config import ExpConfig
from exptrack.experiment import Experiment
from exptrack.remote import CommandResult
from exptrack.store import ExperimentStore


# ---------------------------------------------------------------------------
# Stub remote executor
# ---------------------------------------------------------------------------

def _command_key(argv) -> str:
    """Classify a remote command: program name, or find/git for bash -lc scripts."""
    if list(argv[:2]) == ["bash", "-lc"]:
        script = argv[2]
        if "find . -type f" in script:
            return "find"
        if "git rev-parse" in script:
            return "git"
        return "bash"
    return argv[0]


class FakeExecutor:
    """Scripted RemoteExecutor.

    *responses* maps a command key (``sbatch``, ``squeue``, ``sacct``,
    ``find``, ``git``, ``bash``) to a list of :class:`CommandResult` or
    exceptions, consumed in order; the last entry repeats once the list is
    exhausted.  Unscripted commands fail with status 127.
    """

    def __init__(self, responses=None):
        self.responses = {k: list(v) for k, v in (responses or {}).items()}
        self.calls = []
        self.uploads = []

    def run(self, host, argv, input_text=None):
        argv = list(argv)
        self.calls.append((host, argv))
        queue = self.responses.get(_command_key(argv))
        if not queue:
            return CommandResult(127, "", f"{argv[0]}: command not found")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    def upload(self, host, local_path, remote_path):
        self.uploads.append((host, local_path, remote_path))
        return CommandResult(0)

    def calls_for(self, key):
        return [argv for _, argv in self.calls if _command_key(argv) == key]


def ok(stdout="", stderr=""):
    return CommandResult(0, stdout, stderr)


def failed(returncode=1, stderr="boom"):
    return CommandResult(returncode, "", stderr)


class FakeTransfer:
    """BulkCopy stub recording every copy() call."""

    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def copy(self, host, root, files, dest):
        self.calls.append({"host": host, "root": root, "files": list(files), "dest": str(dest)})
        if self.error is not None:
            raise self.error


class SleepRecorder:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def cfg(tmp_path):
    """ExpConfig rooted in a temporary home directory."""
    return ExpConfig(home=tmp_path / "home")


@pytest.fixture
def store(tmp_path):
    return ExperimentStore(tmp_path / "home" / "experiments.parquet")


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def make_experiment():
    def _make(**kwargs):
        defaults = dict(
            name="run1",
            remote="user@host",
            script_path="/a/b.sh",
            job_id="4242",
            log_path="/logs/run1-4242.out",
            created_at=datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc),
        )
        defaults.update(kwargs)
        return Experiment(**defaults)

    return _make
