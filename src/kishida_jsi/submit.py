from __future__ import annotations

__all__ = ["copy_job_inputs", "submit_job", "resubmit_job", "run_analysis", "parse_exclude"]

import logging
import shutil
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING

from kishida_jsi.config import JSIConfig
from kishida_jsi.errors import PreconditionError, UserAbort
from kishida_jsi.jobs import JobRequest, JobSpec
from kishida_jsi.layout import job_dir, worker_dir
from kishida_jsi.prepare import Confirm, prepare_job

if TYPE_CHECKING:
    from kishida_jsi.audit import AuditLogger

logger = logging.getLogger(__name__)


def _batch_script(config: JSIConfig, worker: str, project: str, job: str) -> Path:
    """Return the job's batch script, checking the job has been prepared."""
    jdir = job_dir(config, worker, project, job)
    if not jdir.is_dir():
        raise PreconditionError(f"Job folder {jdir} does not exist. Prepare the job first.")
    script = worker_dir(config, worker, project) / f"{job}.sh"
    if not script.is_file():
        raise PreconditionError(f"Cannot find batch script {script}.")
    return script


def copy_job_inputs(config: JSIConfig, worker: str, project: str, job: str, script_name: str) -> list[Path]:
    """Copy the batch script and analysis script into the job folder.

    Both may have been edited since the job was prepared; the copies in the
    job folder are the versions that were submitted.
    """
    wdir = worker_dir(config, worker, project)
    copied = []
    for name in (script_name, f"{job}.sh"):
        src = wdir / name
        if not src.is_file():
            raise PreconditionError(f"Cannot find {name} in {wdir}.")
        copied.append(Path(shutil.copy2(src, wdir / job / name)))
    return copied


def parse_exclude(config: JSIConfig, exclude: list[str] | tuple[str, ...] | None) -> str | None:
    """Return the ``--exclude`` flag for a list of node IDs, or None.

    Node IDs are fixed-width digit strings (``005``, ``021``, ``125``).

    Raises
    ------
    PreconditionError
        If any ID is not made of exactly ``config.node_id_width`` digits.
    """
    if not exclude:
        return None
    width = config.node_id_width
    bad = [n for n in exclude if len(n) != width or not n.isdigit()]
    if bad:
        example = ", ".join(str(i).zfill(width) for i in (5, 21, 125))
        raise PreconditionError(
            f"Excluded nodes must be {width}-digit IDs, e.g. {example}; got {bad}."
        )
    return f"--exclude={config.node_prefix}[{','.join(exclude)}]"


def _sbatch(
    cmd: list[str],
    config: JSIConfig,
    event: str,
    dry_run: bool,
    audit: AuditLogger | None,
    ids: dict[str, str],
) -> str | None:
    """Run an sbatch command line and return the job ID.

    Raises
    ------
    RuntimeError
        If sbatch exits successfully but its stdout does not match the
        expected ``"Submitted batch job <ID>"`` format.
    subprocess.CalledProcessError
        If sbatch exits with a non-zero status.
    """
    if dry_run:
        logger.info("[DRY RUN] Would submit: %s", " ".join(cmd))
        print(f"[DRY RUN] Would submit: {' '.join(cmd)}")
        if audit is not None:
            audit.log("dry_run", detail=" ".join(cmd), **ids)
        return None
    logger.info("Submitting: %s", " ".join(cmd))
    print(f"Submitting: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd, capture_output=True, text=True, check=True, cwd=Path(config.root)
        )
    except subprocess.CalledProcessError as e:
        if audit is not None:
            audit.log("error", detail=f"{e}: {(e.stderr or '').strip()}", **ids)
        raise
    # sbatch stdout: "Submitted batch job 12345"
    output = result.stdout.strip()
    if not output.startswith("Submitted batch job "):
        raise RuntimeError(
            f"Unexpected sbatch output: {output!r}. "
            "Expected format: 'Submitted batch job <ID>'"
        )
    job_id = output.split()[-1]
    if audit is not None:
        audit.log(event, job_id=job_id, **ids)
    return job_id


def submit_job(
    config: JSIConfig,
    worker: str,
    project: str,
    job: str,
    script_name: str,
    dry_run: bool = False,
    audit: AuditLogger | None = None,
) -> str | None:
    """Submit a prepared job's batch script to Slurm.

    The batch script and analysis script are copied into the job folder
    first, then ``sbatch <script>`` runs with ``config.root`` as working
    directory.

    Returns
    -------
    str or None
        The Slurm job ID string on success, or *None* for dry runs.
    """
    script = _batch_script(config, worker, project, job)
    if not dry_run:
        copy_job_inputs(config, worker, project, job, script_name)
    cmd = [config.sbatch_command, str(script.resolve())]
    ids = {"worker": worker, "project": project, "job": job}
    return _sbatch(cmd, config, "submitted", dry_run, audit, ids)


def resubmit_job(
    config: JSIConfig,
    worker: str,
    project: str,
    job: str,
    script_name: str,
    confirm: Confirm,
    exclude: list[str] | tuple[str, ...] | None = None,
    dry_run: bool = False,
    audit: AuditLogger | None = None,
) -> str | None:
    """Run an already prepared job again with the same settings.

    Meant for jobs that failed or ended early.  Nodes listed in *exclude*
    are passed to ``sbatch --exclude``.  If the rerun succeeds it overwrites
    whatever the first run left in the job folder.

    Raises
    ------
    PreconditionError
        If the job was never prepared or an excluded node ID is malformed.
    UserAbort
        If *confirm* returns False.
    """
    exclude_flag = parse_exclude(config, exclude)
    script = _batch_script(config, worker, project, job)

    message = (
        "WARNING: resubmission is meant for jobs that failed or ended prematurely. "
        f"If the resubmitted job succeeds it WILL overwrite anything in {job_dir(config, worker, project, job)}.\n"
        f"You are about to rerun {script_name} over the {job} job folders "
        f"with the settings found in {config.dirs_file}/{config.prefs_file}."
    )
    if not confirm(message):
        raise UserAbort("Job resubmission aborted by worker.")

    cmd = [config.sbatch_command]
    if exclude_flag:
        cmd.append(exclude_flag)
    cmd.append(str(script.resolve()))
    ids = {"worker": worker, "project": project, "job": job}
    return _sbatch(cmd, config, "resubmitted", dry_run, audit, ids)


def run_analysis(
    request: JobRequest,
    config: JSIConfig,
    confirm: Confirm,
    dry_run: bool = False,
    audit: AuditLogger | None = None,
) -> tuple[JobSpec, str | None]:
    """Prepare a job and submit it straight away."""
    spec = prepare_job(request, config, confirm=confirm, audit=audit)
    job_id = submit_job(
        config, spec.worker, spec.project, spec.job, spec.script_name,
        dry_run=dry_run, audit=audit,
    )
    return spec, job_id
