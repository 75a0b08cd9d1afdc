"""exptrack — submit Slurm experiments over ssh and bring their results home.

Submits a batch script with ``sbatch`` on a remote login node, records the
experiment locally, polls ``squeue``/``sacct`` until the job leaves the
queue, and then rsyncs the matching result files into a per-experiment
directory.

Typical usage::

    from exptrack.config import ExpConfig, RunProfile, resolve_run_parameters
    from exptrack.lifecycle import run_experiment
    from exptrack.remote import SSHExecutor
    from exptrack.store import ExperimentStore
    from exptrack.transfer import RsyncTransfer

    cfg    = ExpConfig.load()
    params = resolve_run_parameters(cfg, flags=RunProfile(name="run1"), profile_name="cluster")
    exp    = run_experiment(
        params,
        store=ExperimentStore(cfg.state_file),
        executor=SSHExecutor(),
        transfer=RsyncTransfer(),
    )
"""

__version__ = "0.1.0"
