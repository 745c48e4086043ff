from __future__ import annotations

__all__ = [
    "Confirm",
    "prompt_confirm",
    "check_job_inputs",
    "create_job_folder",
    "copy_control_files",
    "prepare_job",
]

import logging
import re
import shutil
from collections import Counter
from pathlib import Path
from typing import TYPE_CHECKING, Callable

import click

from kishida_jsi.config import JSIConfig
from kishida_jsi.errors import PreconditionError, UserAbort
from kishida_jsi.inputs import pref_value, read_dirs, read_prefs, resolve_target
from kishida_jsi.jobs import JobRequest, JobSpec
from kishida_jsi.layout import area_dir, job_dir, worker_dir
from kishida_jsi.script import extension_matches, parse_script_type, write_batch_script
from kishida_jsi.snapshot import SnapshotStore, take_snapshots

if TYPE_CHECKING:
    from kishida_jsi.audit import AuditLogger

logger = logging.getLogger(__name__)

# Type alias for the confirmation capability: (message) -> proceed?
Confirm = Callable[[str], bool]

_JOB_NAME = re.compile(r"^[A-Za-z0-9_]+$")


def prompt_confirm(message: str) -> bool:
    """Ask the operator to confirm on the terminal.

    Only ``y`` or ``n`` (any case) are accepted; anything else repeats the
    question.
    """
    click.echo(message)
    while True:
        answer = click.prompt(
            "Are you sure you want to proceed? (y/n)", default="", show_default=False
        ).strip().upper()
        if answer == "Y":
            return True
        if answer == "N":
            return False
        click.echo("Unexpected input. Please enter either (y) or (n).")


def check_job_inputs(request: JobRequest, config: JSIConfig) -> JobSpec:
    """Validate *request* against the filesystem and return the job it describes.

    Checks run in a fixed order and stop at the first failure, so the error
    names the first precondition that does not hold.  Nothing is written.

    Raises
    ------
    PreconditionError
        If any check fails.
    """
    if not _JOB_NAME.match(request.job):
        raise PreconditionError("Job name can only contain letters, numbers, and underscores.")
    if int(request.threads) < 1:
        raise PreconditionError(f"Thread count must be at least 1, got {request.threads}.")

    # Project and worker in every storage area
    for area, root in config.areas.items():
        if not (root / request.project).is_dir():
            raise PreconditionError(f"Project {request.project} not found in /{area}.")
    for area in config.areas:
        if not area_dir(config, area, request.project, request.worker).is_dir():
            raise PreconditionError(
                f"Worker {request.worker} does not exist in /{area}. "
                "Please run the new worker setup first."
            )

    wdir = worker_dir(config, request.worker, request.project)
    if not (wdir / request.script_name).is_file():
        raise PreconditionError(f"Cannot find script file {request.script_name} in {wdir}.")

    script_type = parse_script_type(request.script_type)
    if not extension_matches(request.script_name, script_type):
        raise PreconditionError(
            f"Script {request.script_name} is not a {script_type.value} script; "
            "script name and script type do not match."
        )

    prefs_path = wdir / config.prefs_file
    dirs_path = wdir / config.dirs_file
    if not prefs_path.is_file():
        raise PreconditionError(f"Cannot find {config.prefs_file} file.")
    if not dirs_path.is_file():
        raise PreconditionError(f"Cannot find {config.dirs_file} file.")

    prefs = read_prefs(prefs_path, config.pref_keys)
    if prefs["value"].isna().all():
        raise PreconditionError(f"Please fill in your {config.prefs_file} file.")

    dirs = read_dirs(dirs_path)
    if not dirs:
        raise PreconditionError(f"No directories listed in {config.dirs_file}.")
    missing = [d for d in dirs if not resolve_target(config.root, d).is_dir()]
    if missing:
        raise PreconditionError(f"Some or all directories not found: {missing}.")

    if pref_value(prefs, "--job-name") != request.job:
        raise PreconditionError(
            f"Job name in {config.prefs_file} does not match job name {request.job!r}."
        )

    if (wdir / request.job).exists():
        raise PreconditionError(f"Job {request.job} already exists.")

    return JobSpec(
        worker=request.worker,
        project=request.project,
        job=request.job,
        script_name=request.script_name,
        script_type=script_type,
        dirs=tuple(dirs),
        prefs=prefs,
        email=request.email or None,
        threads=int(request.threads),
    )


def create_job_folder(spec: JobSpec, config: JSIConfig) -> Path:
    """Create the job folder with one subfolder per target directory.

    Subfolders are named after the target directory's last path component.
    Targets that share a base name share a subfolder.

    Raises
    ------
    PreconditionError
        If the job folder already exists.
    """
    jdir = job_dir(config, spec.worker, spec.project, spec.job)
    if jdir.exists():
        raise PreconditionError("A directory with that job name already exists.")
    jdir.mkdir()

    shared = sorted(name for name, n in Counter(spec.data_folders).items() if n > 1)
    if shared:
        logger.warning("Target directories share base name(s) %s; their output lands in one subfolder.", shared)
    for name in spec.data_folders:
        (jdir / name).mkdir(exist_ok=True)
    return jdir


def copy_control_files(spec: JobSpec, config: JSIConfig) -> list[Path]:
    """Copy prefs, dirs, analysis script and batch script into the job folder."""
    wdir = worker_dir(config, spec.worker, spec.project)
    jdir = wdir / spec.job
    copied = []
    for name in (config.dirs_file, config.prefs_file, spec.script_name, f"{spec.job}.sh"):
        src = wdir / name
        if src.exists():
            copied.append(Path(shutil.copy2(src, jdir / name)))
    return copied


def prepare_job(
    request: JobRequest,
    config: JSIConfig,
    confirm: Confirm,
    audit: AuditLogger | None = None,
) -> JobSpec:
    """Validate, confirm, then build the batch script, job folder and snapshots.

    Every check in :func:`check_job_inputs` completes before the operator
    is asked to confirm, and nothing is written before the answer is yes.
    The ``before`` snapshots are the last thing taken so they reflect the
    target directories as they are at submission time.

    Raises
    ------
    PreconditionError
        If validation fails, or if writing the job files or snapshotting a
        target directory fails.  In the latter case the batch script and job
        folder written so far are removed first.
    UserAbort
        If *confirm* returns False.
    """
    logger.info("Checking input files...")
    spec = check_job_inputs(request, config)

    message = (
        f"Ready to build the Slurm script for job {spec.job} "
        f"over {len(spec.dirs)} director{'y' if len(spec.dirs) == 1 else 'ies'}."
    )
    if not confirm(message):
        raise UserAbort("Job preparation aborted by worker.")

    logger.info("Creating Slurm script and building job folders...")
    ids = {"worker": spec.worker, "project": spec.project, "job": spec.job}
    script = worker_dir(config, spec.worker, spec.project) / f"{spec.job}.sh"
    jdir: Path | None = None
    try:
        write_batch_script(spec, config)
        jdir = create_job_folder(spec, config)
        copy_control_files(spec, config)
        store = SnapshotStore(jdir / config.snapshots_folder)
        take_snapshots((resolve_target(config.root, d) for d in spec.dirs), store, audit=audit, **ids)
    except (OSError, ValueError) as exc:
        _discard_partial_job(script, jdir)
        raise PreconditionError(
            f"Could not prepare job {spec.job}: {exc}. Nothing was kept; fix the problem and prepare again."
        ) from exc

    if audit is not None:
        audit.log("prepared", detail=f"{spec.script_type.value} {spec.script_name}", **ids)
    return spec


def _discard_partial_job(script: Path, jdir: Path | None) -> None:
    """Remove what a failed preparation wrote, so the job can be prepared again."""
    if jdir is not None and jdir.exists():
        shutil.rmtree(jdir, ignore_errors=True)
    script.unlink(missing_ok=True)
    logger.warning("Removed partial job files %s and %s", script, jdir)
