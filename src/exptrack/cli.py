from __future__ import annotations

import json
import logging
import posixpath
import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import click

from exptrack.audit import get_logger
from exptrack.config import ExpConfig, RunProfile, load_run_file, resolve_run_parameters
from exptrack.exceptions import ExpError
from exptrack.lifecycle import fetch_experiment, run_experiment
from exptrack.patterns import split_patterns
from exptrack.remote import SSHExecutor
from exptrack.store import ExperimentStore
from exptrack.transfer import RsyncTransfer

logger = logging.getLogger(__name__)


@contextmanager
def _cancel_on_signal() -> Iterator[threading.Event]:
    """Yield an event that is set on SIGINT/SIGTERM, restoring the old handlers after."""
    cancel = threading.Event()

    def handler(signum, frame):  # noqa: ARG001
        logger.warning("Received signal %d; stopping before the next remote step", signum)
        cancel.set()

    previous = {}
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            previous[sig] = signal.signal(sig, handler)
    except ValueError:  # not in the main thread
        pass
    try:
        yield cancel
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


@click.group()
@click.option(
    "--home",
    "home",
    default=None,
    envvar="EXP_HOME",
    metavar="DIR",
    help="Directory holding config.(yaml|json), the experiment store and the audit log. Default: ~/.exp",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, home: str | None, verbose: bool) -> None:
    """exp: submit Slurm experiments over ssh, monitor them, and fetch their artifacts."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    try:
        config = ExpConfig.load(home)
    except ExpError as exc:
        raise click.ClickException(str(exc)) from exc
    ctx.obj["config"] = config


@main.command(context_settings={"ignore_unknown_options": True})
@click.option("--remote", default=None, metavar="USER@HOST", help="Remote login host for ssh.")
@click.option("--name", default=None, help="Logical name for the experiment.")
@click.option("--log-dir", "log_dir", default=None, metavar="REMOTE_DIR", help="Remote directory for sbatch logs.")
@click.option("--script", default=None, metavar="REMOTE_PATH", help="Remote path of the sbatch script.")
@click.option(
    "--build-script",
    "build_script",
    default=None,
    metavar="LOCAL_PATH",
    help="Local script executed on the remote host before submitting.",
)
@click.option(
    "--script-local",
    "script_local",
    default=None,
    metavar="LOCAL_PATH",
    help="Local sbatch script uploaded to --script before submitting.",
)
@click.option(
    "--artifact-remote",
    "artifact_remote",
    default=None,
    metavar="REMOTE_DIR",
    help="Remote directory tree to sync after the job completes.",
)
@click.option(
    "--artifact-dest",
    "artifact_dest",
    default=None,
    metavar="LOCAL_DIR",
    help="Local directory for downloaded artifacts (a per-experiment subdirectory is created).",
)
@click.option(
    "--artifact-pattern",
    "artifact_patterns",
    multiple=True,
    metavar="REGEX",
    help="Regex filter for artifact paths; may be repeated.",
)
@click.option("--config-file", "config_file", default=None, metavar="PATH", help="YAML/JSON file describing this run.")
@click.option("--profile", default=None, help="Profile from the config file to use as defaults.")
@click.option(
    "--artifact-since-start/--no-artifact-since-start",
    "since_start",
    default=None,
    help="Only copy files newer than the experiment start. Default: on.",
)
@click.option("--poll-interval", "poll_interval", default=None, metavar="DURATION", help="Status poll interval (e.g. 45s, 2m).")
@click.argument("script_args", nargs=-1, type=click.UNPROCESSED)
@click.pass_context
def run(
    ctx: click.Context,
    remote: str | None,
    name: str | None,
    log_dir: str | None,
    script: str | None,
    build_script: str | None,
    script_local: str | None,
    artifact_remote: str | None,
    artifact_dest: str | None,
    artifact_patterns: tuple[str, ...],
    config_file: str | None,
    profile: str | None,
    since_start: bool | None,
    poll_interval: str | None,
    script_args: tuple[str, ...],
) -> None:
    """Submit a job with sbatch, monitor it, and fetch its artifacts.

    Arguments after `--` are passed to the remote script.
    """
    config: ExpConfig = ctx.obj["config"]
    flags = RunProfile(
        name=name,
        profile=profile,
        remote=remote,
        log_dir=log_dir,
        script=script,
        build_script=build_script,
        script_local=script_local,
        artifact_remote=artifact_remote,
        artifact_dest=artifact_dest,
        artifact_patterns=list(artifact_patterns),
        artifact_since_start=since_start,
        poll_interval=poll_interval,
        args=list(script_args),
    )
    try:
        run_file = None
        config_path = None
        if config_file:
            config_path = Path(config_file).expanduser().absolute()
            run_file = load_run_file(config_path)
        params = resolve_run_parameters(
            config, flags=flags, run_file=run_file, config_file=config_path
        )
        with _cancel_on_signal() as cancel:
            experiment = run_experiment(
                params,
                store=ExperimentStore(config.state_file),
                executor=SSHExecutor(),
                transfer=RsyncTransfer(),
                audit=get_logger(config),
                cancel=cancel,
            )
    except (ExpError, FileNotFoundError) as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Experiment {experiment.id}: job {experiment.job_id} finished as {experiment.job_status}.")
    if experiment.artifact_last_sync is not None:
        click.echo(f"Artifacts stored under {experiment.artifact_dest}")


@main.command(name="list")
@click.pass_context
def list_cmd(ctx: click.Context) -> None:
    """List recorded experiments, newest first."""
    config: ExpConfig = ctx.obj["config"]
    table = ExperimentStore(config.state_file).list_experiments()

    if table.empty:
        click.echo("No experiments recorded yet.")
        return

    click.echo(table.to_string(index=False))


def _show_line(label: str, value: object) -> None:
    click.echo(f"{label:<13}{value}")


@main.command()
@click.argument("exp_id")
@click.pass_context
def show(ctx: click.Context, exp_id: str) -> None:
    """Show details of one experiment."""
    config: ExpConfig = ctx.obj["config"]
    try:
        exp = ExperimentStore(config.state_file).load(exp_id)
    except ExpError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Experiment {exp.id}")
    click.echo("-------------")
    _show_line("Name:", exp.name)
    _show_line("Remote:", exp.remote)
    _show_line("Job ID:", exp.job_id)
    _show_line("Job status:", exp.job_status)
    _show_line("Script:", exp.script_path)
    _show_line("Args:", exp.args)
    _show_line("Git commit:", exp.git_commit)
    _show_line("Git branch:", exp.git_branch)
    _show_line("Remote log:", exp.log_path)
    _show_line("Created at:", exp.created_at.isoformat() if exp.created_at else "(unknown)")
    if exp.completed_at is not None:
        _show_line("Completed:", exp.completed_at.isoformat())

    sources = exp.effective_artifact_sources()
    if sources:
        click.echo("Artifacts")
        click.echo(f"  Dest:      {exp.artifact_dest}")
        for source in sources:
            click.echo(f"  Remote:    {source.path}")
            if not source.patterns:
                click.echo("  Pattern:   (none)")
            elif len(source.patterns) == 1:
                click.echo(f"  Pattern:   {source.patterns[0]}")
            else:
                click.echo("  Patterns:")
                for pattern in source.patterns:
                    click.echo(f"    - {pattern}")
        click.echo(f"  Since start filter: {exp.artifact_since_start}")
        if exp.artifact_last_sync is not None:
            click.echo(f"  Last sync: {exp.artifact_last_sync.isoformat()}")
        if exp.artifact_last_error:
            click.echo(f"  Last error: {exp.artifact_last_error}")
    elif exp.artifact_pattern:
        click.echo(f"Patterns:    {', '.join(split_patterns(exp.artifact_pattern))}")

    snapshot = exp.snapshot()
    if snapshot:
        click.echo("Config snapshot:")
        click.echo("  " + json.dumps(snapshot, indent=2).replace("\n", "\n  "))


@main.command()
@click.argument("exp_id")
@click.option("--remote-path", "remote_path", default=None, metavar="REMOTE_DIR", help="Absolute remote directory to copy (defaults to the recorded sources).")
@click.option("--dest", default=None, metavar="LOCAL_DIR", help="Local destination (defaults to the recorded destination).")
@click.option("--pattern", "patterns", multiple=True, metavar="REGEX", help="Regex filter replacing the recorded patterns; may be repeated.")
@click.option(
    "--since-start/--no-since-start",
    "since_start",
    default=None,
    help="Only include files newer than the experiment start (defaults to the recorded preference).",
)
@click.option("--dry-run", is_flag=True, help="Only list files that would be copied.")
@click.pass_context
def fetch(
    ctx: click.Context,
    exp_id: str,
    remote_path: str | None,
    dest: str | None,
    patterns: tuple[str, ...],
    since_start: bool | None,
    dry_run: bool,
) -> None:
    """Download an experiment's artifacts with rsync."""
    config: ExpConfig = ctx.obj["config"]
    try:
        results = fetch_experiment(
            ExperimentStore(config.state_file),
            exp_id,
            executor=SSHExecutor(),
            transfer=RsyncTransfer(),
            remote_path=remote_path,
            dest=dest,
            patterns=list(patterns),
            since_start=since_start,
            dry_run=dry_run,
            audit=get_logger(config),
        )
    except ExpError as exc:
        raise click.ClickException(str(exc)) from exc

    matched = sum(len(files) for files in results.values())
    if dry_run:
        for root, files in results.items():
            for rel in files:
                click.echo(posixpath.join(root, rel))
        click.echo(f"[DRY RUN] {matched} file(s) would be copied.")
    else:
        click.echo(f"Fetch complete. {matched} file(s) matched.")
