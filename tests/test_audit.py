"""Tests for audit.py — the per-job JSONL trail."""
import json
from pathlib import Path

import pandas as pd
import pytest

from kishida_jsi.audit import AUDIT_EVENTS, AuditLogger, get_logger
from kishida_jsi.config import JSIConfig
from kishida_jsi.prepare import prepare_job
from kishida_jsi.reconcile import reconcile_job

from conftest import JOB, PROJECT, WORKER, always_yes


@pytest.fixture
def log_file(tmp_path):
    return tmp_path / "logs" / "audit.jsonl"


@pytest.fixture
def audit(log_file):
    return AuditLogger(log_file)


def read_lines(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


# ---------------------------------------------------------------------------
# log
# ---------------------------------------------------------------------------


def test_first_event_creates_file_and_folders(audit, log_file):
    audit.log("setup", worker=WORKER, project=PROJECT, detail="scratch/study1/alice")
    assert log_file.exists()


def test_event_identifies_job_folder(audit, log_file):
    audit.log("submitted", worker=WORKER, project=PROJECT, job=JOB, job_id="42")
    (entry,) = read_lines(log_file)
    assert {k: entry[k] for k in ("event", "worker", "project", "job", "job_id")} == {
        "event": "submitted", "worker": WORKER, "project": PROJECT, "job": JOB, "job_id": "42",
    }
    pd.Timestamp(entry["ts"])


def test_worker_level_event_has_no_job(audit, log_file):
    audit.log("archived", worker=WORKER, project=PROJECT, detail="to_archive/x -> final/x")
    (entry,) = read_lines(log_file)
    assert entry["job"] == ""
    assert entry["job_id"] is None


def test_snapshot_event_extras(audit, log_file):
    audit.log("snapshot", job=JOB, detail="/lab/original/study1/alice/A", index=1, n_entries=12)
    (entry,) = read_lines(log_file)
    assert (entry["index"], entry["n_entries"]) == (1, 12)


def test_paths_written_as_strings(audit, log_file):
    audit.log("moved", job=JOB, detail="a -> b", src=Path("/lab/A/y.txt"))
    assert read_lines(log_file)[0]["src"] == "/lab/A/y.txt"


def test_unknown_event_rejected(audit, log_file):
    with pytest.raises(ValueError, match="Unknown audit event"):
        audit.log("queued", job=JOB)
    assert not log_file.exists()


def test_every_event_accepted(audit, log_file):
    for event in sorted(AUDIT_EVENTS):
        audit.log(event)
    assert [e["event"] for e in read_lines(log_file)] == sorted(AUDIT_EVENTS)


# ---------------------------------------------------------------------------
# events
# ---------------------------------------------------------------------------


def test_events_without_file_is_empty(audit):
    trail = audit.events()
    assert trail.empty
    assert {"ts", "event", "job", "job_id"} <= set(trail.columns)


def test_events_filters_by_job_folder(audit):
    audit.log("prepared", worker=WORKER, project=PROJECT, job=JOB)
    audit.log("prepared", worker=WORKER, project=PROJECT, job="run_02")
    audit.log("submitted", worker=WORKER, project=PROJECT, job=JOB, job_id="7")
    audit.log("prepared", worker="bob", project=PROJECT, job=JOB)

    trail = audit.events(worker=WORKER, project=PROJECT, job=JOB)

    assert list(trail["event"]) == ["prepared", "submitted"]
    assert trail["job_id"].iloc[-1] == "7"
    assert str(trail["ts"].dt.tz) == "UTC"
    assert trail["ts"].is_monotonic_increasing


def test_events_keeps_event_specific_columns(audit):
    audit.log("reconciled", job=JOB, moved=3, complete=True)
    trail = audit.events(job=JOB)
    assert trail.loc[0, "moved"] == 3
    assert bool(trail.loc[0, "complete"]) is True


def test_trail_of_prepared_and_reconciled_job(cfg, data_dir, request_r):
    audit = get_logger(cfg)
    prepare_job(request_r, cfg, confirm=always_yes, audit=audit)
    (data_dir / "A" / "y.txt").write_text("out")
    reconcile_job(cfg, WORKER, PROJECT, JOB, audit=audit)

    trail = audit.events(worker=WORKER, job=JOB)

    assert list(trail["event"]) == ["snapshot", "snapshot", "prepared", "moved", "reconciled"]
    snapshots = trail[trail["event"] == "snapshot"]
    assert list(snapshots["index"]) == [1, 2]
    assert list(snapshots["n_entries"]) == [1, 0]


# ---------------------------------------------------------------------------
# get_logger
# ---------------------------------------------------------------------------


def test_get_logger_defaults_to_root(tmp_path):
    assert get_logger(JSIConfig(root=tmp_path)).log_file == tmp_path / ".jsi_audit.jsonl"


def test_get_logger_uses_log_file_when_set(tmp_path):
    log_path = tmp_path / "custom_audit.jsonl"
    assert get_logger(JSIConfig(root=tmp_path, log_file=log_path)).log_file == log_path
