from __future__ import annotations

import functools
import logging
import subprocess
from pathlib import Path

import click

from kishida_jsi.archive import archive_worker
from kishida_jsi.audit import get_logger
from kishida_jsi.config import JSIConfig
from kishida_jsi.errors import JSIError
from kishida_jsi.jobs import JobRequest
from kishida_jsi.layout import setup_worker
from kishida_jsi.ledger import job_folders, load_state, record, save_state
from kishida_jsi.prepare import prepare_job, prompt_confirm
from kishida_jsi.reconcile import reconcile_job
from kishida_jsi.submit import resubmit_job, run_analysis, submit_job

_SQUEUE_HINT = "Enter:\n squeue -u [your_user_name]\nin the terminal to see the status of your running jobs."


def _confirm(yes: bool):
    return (lambda message: True) if yes else prompt_confirm


def _update_ledger(config: JSIConfig, worker: str, project: str, job: str, status: str, job_id: str | None = None) -> None:
    state = load_state(config)
    save_state(record(state, worker, project, job, status, job_id=job_id), config)


def _report_errors(fn):
    """Turn operator-facing errors into a one-line message and exit status 1."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except JSIError as exc:
            raise click.ClickException(str(exc)) from exc
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or "").strip()
            raise click.ClickException(f"sbatch failed: {detail or exc}") from exc
        except (RuntimeError, OSError) as exc:
            raise click.ClickException(str(exc)) from exc

    return wrapper


def _job_options(fn):
    for option in reversed([
        click.option("--email", default=None, metavar="ADDRESS", help="Mail address notified when the job ends."),
        click.option("--threads", default=1, show_default=True, type=click.IntRange(min=1),
                     help="Value exported as OMP_NUM_THREADS."),
        click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation."),
    ]):
        fn = option(fn)
    return fn


@click.group()
@click.option(
    "--config",
    "config_path",
    default=None,
    metavar="PATH",
    help="Path to YAML config file. Uses built-in defaults if omitted.",
)
@click.option(
    "--root",
    "root",
    default=None,
    metavar="DIR",
    help="Folder holding the original/final/scratch areas. Overrides config file.",
)
@click.option("--verbose", "-v", is_flag=True, help="Log debug messages.")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, root: str | None, verbose: bool) -> None:
    """kishida-jsi: Slurm job submission interface with output reconciliation."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    config = JSIConfig.from_yaml(config_path) if config_path else JSIConfig()
    if root is not None:
        config.root = Path(root)
    ctx.obj["config"] = config


@main.command()
@click.argument("worker")
@click.argument("project")
@click.pass_context
@_report_errors
def setup(ctx: click.Context, worker: str, project: str) -> None:
    """Create worker folders, to_archive, and template prefs/dirs files."""
    config: JSIConfig = ctx.obj["config"]
    created = setup_worker(config, worker, project, audit=get_logger(config))
    for path in created:
        click.echo(f"  created {path}")
    click.echo("Setup complete.")
    click.echo("Please put your R/MATLAB script in scratch/project/worker before proceeding.")


@main.command()
@click.argument("worker")
@click.argument("project")
@click.argument("job")
@click.argument("script_name")
@click.argument("script_type", type=click.Choice(["R", "MATLAB"], case_sensitive=False))
@_job_options
@click.pass_context
@_report_errors
def prepare(ctx, worker, project, job, script_name, script_type, email, threads, yes) -> None:
    """Build the Slurm script and job folder and snapshot the target directories."""
    config: JSIConfig = ctx.obj["config"]
    request = JobRequest(worker, project, job, script_name, script_type, email=email, threads=threads)
    spec = prepare_job(request, config, confirm=_confirm(yes), audit=get_logger(config))
    _update_ledger(config, worker, project, job, "prepared")
    click.echo(f"Job {spec.job} prepared over {len(spec.dirs)} directory(ies).")
    click.echo(f"Review scratch/{project}/{worker}/{job}.sh, then run `submit` to queue it.")


@main.command()
@click.argument("worker")
@click.argument("project")
@click.argument("job")
@click.argument("script_name")
@click.option("--dry-run", is_flag=True, help="Print what would be submitted without submitting.")
@click.pass_context
@_report_errors
def submit(ctx, worker, project, job, script_name, dry_run) -> None:
    """Submit a prepared job to Slurm."""
    config: JSIConfig = ctx.obj["config"]
    job_id = submit_job(config, worker, project, job, script_name, dry_run=dry_run, audit=get_logger(config))
    if dry_run:
        return
    _update_ledger(config, worker, project, job, "submitted", job_id=job_id)
    click.echo(f"{job} submitted to Slurm queue (job {job_id}).")
    click.echo(_SQUEUE_HINT)


@main.command()
@click.argument("worker")
@click.argument("project")
@click.argument("job")
@click.argument("script_name")
@click.argument("script_type", type=click.Choice(["R", "MATLAB"], case_sensitive=False))
@_job_options
@click.option("--dry-run", is_flag=True, help="Prepare the job but only print the sbatch command.")
@click.pass_context
@_report_errors
def run(ctx, worker, project, job, script_name, script_type, email, threads, yes, dry_run) -> None:
    """Prepare a job and submit it straight away."""
    config: JSIConfig = ctx.obj["config"]
    request = JobRequest(worker, project, job, script_name, script_type, email=email, threads=threads)
    _, job_id = run_analysis(request, config, confirm=_confirm(yes), dry_run=dry_run, audit=get_logger(config))
    if dry_run:
        _update_ledger(config, worker, project, job, "prepared")
        return
    _update_ledger(config, worker, project, job, "submitted", job_id=job_id)
    click.echo(f"{job} submitted to Slurm queue (job {job_id}).")
    click.echo(_SQUEUE_HINT)


@main.command()
@click.argument("worker")
@click.argument("project")
@click.argument("job")
@click.argument("script_name")
@click.option(
    "--exclude",
    multiple=True,
    metavar="NODE",
    help="Node ID to keep the job off (e.g. 005). Repeat for several nodes.",
)
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
@click.option("--dry-run", is_flag=True, help="Print what would be submitted without submitting.")
@click.pass_context
@_report_errors
def resubmit(ctx, worker, project, job, script_name, exclude, yes, dry_run) -> None:
    """Rerun a prepared job with the same settings, optionally avoiding nodes."""
    config: JSIConfig = ctx.obj["config"]
    job_id = resubmit_job(
        config, worker, project, job, script_name,
        confirm=_confirm(yes), exclude=list(exclude), dry_run=dry_run, audit=get_logger(config),
    )
    if dry_run:
        return
    _update_ledger(config, worker, project, job, "resubmitted", job_id=job_id)
    click.echo(f"{job} resubmitted to Slurm queue (job {job_id}).")
    click.echo(_SQUEUE_HINT)


@main.command()
@click.argument("worker")
@click.argument("project")
@click.argument("job")
@click.pass_context
@_report_errors
def reconcile(ctx, worker, project, job) -> None:
    """Move files the finished job wrote into its target directories into the job folder."""
    config: JSIConfig = ctx.obj["config"]
    result = reconcile_job(config, worker, project, job, audit=get_logger(config))

    click.echo(f"{result.moved_count} file(s) moved to job folders in /{config.scratch_area}.")
    for src, dst in result.collisions:
        click.echo(f"  not moved (destination exists): {src} -> {dst}")
    if result.resumed:
        click.echo(f"  directories already reconciled earlier: {result.resumed}")
    for index, reason in result.failures.items():
        click.echo(f"  directory #{index} not reconciled: {reason}")

    if not result.complete:
        raise click.ClickException(
            f"{len(result.failures)} directory(ies) could not be reconciled; snapshots kept for diagnosis."
        )
    _update_ledger(config, worker, project, job, "reconciled")


@main.command()
@click.argument("worker")
@click.argument("project")
@click.pass_context
@_report_errors
def archive(ctx, worker, project) -> None:
    """Copy the worker's to_archive folder into the final area."""
    config: JSIConfig = ctx.obj["config"]
    result = archive_worker(config, worker, project, audit=get_logger(config))
    for path in result.skipped:
        click.echo(f"  skipped (already archived): {path.name}")
    for path, reason in result.failed.items():
        click.echo(f"  failed: {path.name}: {reason}")
    if result.failed:
        raise click.ClickException(f"{len(result.failed)} entry(ies) could not be archived.")
    click.echo(f"Files successfully archived ({len(result.copied)} copied).")


@main.command()
@click.argument("worker")
@click.argument("project")
@click.pass_context
def status(ctx: click.Context, worker: str, project: str) -> None:
    """Show the worker's job folders and their recorded state."""
    config: JSIConfig = ctx.obj["config"]
    folders = job_folders(config, worker, project)

    if folders.empty:
        click.echo("No jobs found.")
        return

    state = load_state(config)
    state = state[(state["worker"] == worker) & (state["project"] == project)]
    table = folders.merge(state[["job", "job_id", "status"]], on="job", how="left")
    click.echo(table.to_string(index=False))


@main.command()
@click.argument("worker")
@click.argument("project")
@click.argument("job", required=False)
@click.pass_context
def history(ctx: click.Context, worker: str, project: str, job: str | None) -> None:
    """Show the audit trail of a worker, or of one job folder."""
    config: JSIConfig = ctx.obj["config"]
    filters = {"worker": worker, "project": project}
    if job is not None:
        filters["job"] = job
    trail = get_logger(config).events(**filters)

    if trail.empty:
        click.echo("No events recorded.")
        return

    trail = trail.assign(ts=trail["ts"].dt.strftime("%Y-%m-%d %H:%M:%S"))
    click.echo(trail[["ts", "event", "job", "job_id", "detail"]].fillna("").to_string(index=False))
