"""audit.py — per-job trail of everything the interface did on disk or in Slurm.

Preparing a job, snapshotting its target directories, submitting it and
moving its output are spread over several invocations, often days apart.
The audit file ties them together: one JSON object per line, each stamped
with the worker, project and job folder it concerns, so the history of a
job folder can be read back in order with :meth:`AuditLogger.events`.

Events and the extra keys they carry:

- ``setup``: worker folders created (*detail* lists the paths)
- ``prepared``: batch script and job folder written
- ``snapshot``: before snapshot saved; ``index``, ``n_entries``
- ``submitted``: ``job_id`` of the sbatch submission
- ``resubmitted``: ``job_id`` of the rerun
- ``dry_run``: sbatch command that would have run
- ``moved``: one new entry moved into the job folder; ``index``
- ``collision``: new entry left in place, destination exists; ``index``
- ``reconcile_error``: one directory not reconciled; ``index``
- ``reconciled``: end of a reconciliation; ``moved``, ``complete``
- ``archived``: one ``to_archive`` entry copied to the final area
- ``archive_error``: one ``to_archive`` entry failed to copy
- ``error``: sbatch exited non-zero (*detail* holds stderr)

Typical usage::

    from kishida_jsi.audit import get_logger

    audit = get_logger(config)
    audit.log("moved", worker="alice", project="study1", job="run_01",
              detail="original/study1/alice/A/y.txt -> ...", index=1)
    trail = audit.events(worker="alice", job="run_01")
"""
from __future__ import annotations

__all__ = ["AUDIT_EVENTS", "AuditLogger", "get_logger"]

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pandas as pd

from kishida_jsi.config import JSIConfig

logger = logging.getLogger(__name__)

AUDIT_EVENTS = frozenset(
    {
        "setup",
        "prepared",
        "snapshot",
        "submitted",
        "resubmitted",
        "dry_run",
        "moved",
        "collision",
        "reconcile_error",
        "reconciled",
        "archived",
        "archive_error",
        "error",
    }
)

# Keys present on every line, in file order
_FIELDS = ["ts", "event", "worker", "project", "job", "job_id", "detail"]


class AuditLogger:
    """Append-only JSON Lines trail for one lab root.

    Parameters
    ----------
    log_file:
        Path to the JSONL file.  It and its parent folders are created on
        the first write.
    """

    def __init__(self, log_file: Path) -> None:
        self.log_file = log_file

    def log(
        self,
        event: str,
        *,
        worker: str = "",
        project: str = "",
        job: str = "",
        job_id: str | None = None,
        detail: str = "",
        **extra: Any,
    ) -> None:
        """Append one event line.

        *job* is empty for worker-level events (``setup``, ``archived``).
        *extra* holds the event-specific keys listed in the module
        docstring; paths and other non-JSON values are written as strings.

        Raises
        ------
        ValueError
            If *event* is not in :data:`AUDIT_EVENTS`.
        """
        if event not in AUDIT_EVENTS:
            raise ValueError(f"Unknown audit event {event!r}")
        entry: dict[str, Any] = {
            "ts": datetime.now(tz=timezone.utc).isoformat(),
            "event": event,
            "worker": worker,
            "project": project,
            "job": job,
            "job_id": job_id,
            "detail": detail,
            **extra,
        }
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        with self.log_file.open("a") as fh:
            fh.write(json.dumps(entry, default=str) + "\n")
        logger.debug("audit %s: %s/%s/%s %s", event, project, worker, job, detail)

    def events(self, **filters: str) -> pd.DataFrame:
        """Return logged events as a DataFrame, oldest first.

        Keyword arguments keep only rows whose column equals the value,
        e.g. ``events(worker="alice", project="study1", job="run_01")``.
        ``ts`` is parsed to UTC timestamps; event-specific keys become
        extra columns, empty where an event does not carry them.
        """
        if not self.log_file.exists():
            return pd.DataFrame(columns=_FIELDS)
        frame = pd.read_json(self.log_file, lines=True, dtype=False, convert_dates=False)
        frame["ts"] = pd.to_datetime(frame["ts"], utc=True, format="ISO8601")
        for key, value in filters.items():
            frame = frame[frame[key] == value]
        return frame.reset_index(drop=True)


def get_logger(config: JSIConfig) -> AuditLogger:
    """Return the :class:`AuditLogger` for *config*.

    Writes to ``config.log_file`` when set, else ``<root>/.jsi_audit.jsonl``.
    """
    return AuditLogger(config.get_log_file())
