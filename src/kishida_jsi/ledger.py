from __future__ import annotations

__all__ = ["STATUSES", "load_state", "save_state", "record", "job_folders"]

from datetime import datetime, timezone
from pathlib import Path

import pandas as pd

from kishida_jsi.config import JSIConfig
from kishida_jsi.layout import worker_dir

STATUSES = ("prepared", "submitted", "resubmitted", "reconciled")

# Columns and dtypes for the ledger parquet file
_STATE_COLUMNS = {
    "worker": "object",
    "project": "object",
    "job": "object",
    "job_id": "object",
    "status": "object",
    "updated_at": "datetime64[ns, UTC]",
}

_KEY = ["worker", "project", "job"]


def load_state(config: JSIConfig) -> pd.DataFrame:
    """Load the ledger parquet file.

    Returns an empty DataFrame with the correct schema if the file does not exist.
    """
    path = config.get_state_file()
    if not Path(path).exists():
        return _empty_state()
    return pd.read_parquet(path)


def save_state(state: pd.DataFrame, config: JSIConfig) -> None:
    """Persist the ledger DataFrame to the parquet state file."""
    path = config.get_state_file()
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    state.to_parquet(path, index=False)


def record(
    state: pd.DataFrame,
    worker: str,
    project: str,
    job: str,
    status: str,
    job_id: str | None = None,
) -> pd.DataFrame:
    """Return a copy of *state* with the row for one job set to *status*.

    The job ID of an existing row is kept when *job_id* is None, so a
    ``reconciled`` update does not erase the ID of the submission.
    """
    if status not in STATUSES:
        raise ValueError(f"Unknown job status {status!r}; expected one of {STATUSES}")
    mask = (state["worker"] == worker) & (state["project"] == project) & (state["job"] == job)
    if job_id is None and mask.any():
        job_id = state.loc[mask, "job_id"].iloc[-1]
    row = pd.DataFrame([{
        "worker": worker,
        "project": project,
        "job": job,
        "job_id": job_id,
        "status": status,
        "updated_at": pd.Timestamp(datetime.now(tz=timezone.utc)),
    }]).astype(_STATE_COLUMNS)
    parts = [df for df in (state[~mask], row) if not df.empty]
    return pd.concat(parts, ignore_index=True).sort_values(_KEY).reset_index(drop=True)


def job_folders(config: JSIConfig, worker: str, project: str) -> pd.DataFrame:
    """List the job folders of a worker and whether reconciliation is pending.

    A job folder is recognised by its copy of ``dirs.txt``; reconciliation is
    pending while its ``snapshots`` folder exists.
    """
    wdir = worker_dir(config, worker, project)
    rows = []
    if wdir.is_dir():
        for path in sorted(p for p in wdir.iterdir() if p.is_dir()):
            if not (path / config.dirs_file).is_file():
                continue
            rows.append({
                "job": path.name,
                "pending_reconciliation": (path / config.snapshots_folder).is_dir(),
            })
    return pd.DataFrame(rows, columns=["job", "pending_reconciliation"])


def _empty_state() -> pd.DataFrame:
    """Return an empty DataFrame with the correct ledger schema and dtypes."""
    return pd.DataFrame(
        {col: pd.Series(dtype=dtype) for col, dtype in _STATE_COLUMNS.items()}
    )
