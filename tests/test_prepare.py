"""Tests for prepare.py — input validation, job folders and prepare_job()."""
import json
from dataclasses import replace
from pathlib import Path
from unittest.mock import patch

import pytest

from kishida_jsi.audit import AuditLogger
from kishida_jsi.errors import PreconditionError, UserAbort
from kishida_jsi.prepare import check_job_inputs, create_job_folder, prepare_job, prompt_confirm
from kishida_jsi.script import ScriptType
from kishida_jsi.snapshot import DirectorySnapshot, SnapshotStore

from conftest import JOB, PROJECT, WORKER, always_no, always_yes, write_dirs, write_prefs


def snapshot_of_tree(root):
    """Sorted list of every path below *root*, used to assert nothing changed."""
    return sorted(str(p.relative_to(root)) for p in root.rglob("*"))


# ---------------------------------------------------------------------------
# check_job_inputs — success
# ---------------------------------------------------------------------------


def test_check_returns_spec(cfg, request_r):
    spec = check_job_inputs(request_r, cfg)
    assert spec.job == JOB
    assert spec.script_type is ScriptType.R
    assert spec.dirs == (f"/original/{PROJECT}/{WORKER}/A", f"/original/{PROJECT}/{WORKER}/B")
    assert spec.data_folders == ["A", "B"]
    assert spec.threads == 1


def test_check_matlab(cfg, wdir, request_r):
    (wdir / "model.m").write_text("disp(1)\n")
    spec = check_job_inputs(replace(request_r, script_name="model.m", script_type="matlab"), cfg)
    assert spec.script_type is ScriptType.MATLAB


def test_check_writes_nothing(cfg, lab_root, request_r):
    before = snapshot_of_tree(lab_root)
    check_job_inputs(request_r, cfg)
    assert snapshot_of_tree(lab_root) == before


# ---------------------------------------------------------------------------
# check_job_inputs — each precondition
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("job", ["bad-name", "has space", "dot.name", ""])
def test_check_job_name_charset(cfg, request_r, job):
    with pytest.raises(PreconditionError, match="letters, numbers, and underscores"):
        check_job_inputs(replace(request_r, job=job), cfg)


def test_check_threads_positive(cfg, request_r):
    with pytest.raises(PreconditionError, match="Thread count"):
        check_job_inputs(replace(request_r, threads=0), cfg)


@pytest.mark.parametrize("area", ["original", "final", "scratch"])
def test_check_project_missing_in_area(cfg, lab_root, request_r, area):
    for other in ("original", "final", "scratch"):
        if other != area:
            (lab_root / other / "nope" / WORKER).mkdir(parents=True)
    with pytest.raises(PreconditionError, match=f"Project nope not found in /{area}"):
        check_job_inputs(replace(request_r, project="nope"), cfg)


@pytest.mark.parametrize("area", ["original", "final", "scratch"])
def test_check_worker_missing_in_area(cfg, lab_root, request_r, area):
    for other in ("original", "final", "scratch"):
        if other != area:
            (lab_root / other / PROJECT / "bob").mkdir()
    with pytest.raises(PreconditionError, match=f"Worker bob does not exist in /{area}"):
        check_job_inputs(replace(request_r, worker="bob"), cfg)


def test_check_script_missing(cfg, request_r):
    with pytest.raises(PreconditionError, match="Cannot find script file"):
        check_job_inputs(replace(request_r, script_name="other.R"), cfg)


def test_check_script_type_unknown(cfg, request_r):
    with pytest.raises(PreconditionError, match="not recognized"):
        check_job_inputs(replace(request_r, script_type="python"), cfg)


def test_check_script_type_extension_mismatch(cfg, request_r):
    with pytest.raises(PreconditionError, match="do not match"):
        check_job_inputs(replace(request_r, script_type="MATLAB"), cfg)


def test_check_prefs_missing(cfg, wdir, request_r):
    (wdir / "prefs.txt").unlink()
    with pytest.raises(PreconditionError, match="Cannot find prefs.txt"):
        check_job_inputs(request_r, cfg)


def test_check_dirs_missing(cfg, wdir, request_r):
    (wdir / "dirs.txt").unlink()
    with pytest.raises(PreconditionError, match="Cannot find dirs.txt"):
        check_job_inputs(request_r, cfg)


def test_check_prefs_all_blank(cfg, wdir, request_r):
    (wdir / "prefs.txt").write_text("".join(f"{k}=\n" for k in cfg.pref_keys))
    with pytest.raises(PreconditionError, match="fill in your prefs.txt"):
        check_job_inputs(request_r, cfg)


def test_check_dirs_empty(cfg, wdir, request_r):
    (wdir / "dirs.txt").write_text("\n\n")
    with pytest.raises(PreconditionError, match="No directories"):
        check_job_inputs(request_r, cfg)


def test_check_target_directory_missing(cfg, wdir, request_r):
    write_dirs(wdir / "dirs.txt", f"/original/{PROJECT}/{WORKER}/A", f"/original/{PROJECT}/{WORKER}/Z")
    with pytest.raises(PreconditionError, match="directories not found.*Z"):
        check_job_inputs(request_r, cfg)


def test_check_job_name_pref_mismatch(cfg, wdir, request_r):
    write_prefs(wdir / "prefs.txt", job="old_job")
    with pytest.raises(PreconditionError, match="does not match job name"):
        check_job_inputs(request_r, cfg)


def test_check_job_already_exists(cfg, wdir, request_r):
    (wdir / JOB).mkdir()
    with pytest.raises(PreconditionError, match="already exists"):
        check_job_inputs(request_r, cfg)


# ---------------------------------------------------------------------------
# create_job_folder
# ---------------------------------------------------------------------------


def test_create_job_folder_subfolders(cfg, wdir, request_r):
    spec = check_job_inputs(request_r, cfg)
    jdir = create_job_folder(spec, cfg)
    assert jdir == wdir / JOB
    assert sorted(p.name for p in jdir.iterdir()) == ["A", "B"]


def test_create_job_folder_refuses_existing(cfg, wdir, request_r):
    spec = check_job_inputs(request_r, cfg)
    (wdir / JOB).mkdir()
    with pytest.raises(PreconditionError, match="already exists"):
        create_job_folder(spec, cfg)


def test_create_job_folder_shared_basename(cfg, lab_root, wdir, request_r, caplog):
    for parent in ("p1", "p2"):
        (lab_root / "original" / PROJECT / WORKER / parent / "data").mkdir(parents=True)
    write_dirs(
        wdir / "dirs.txt",
        f"/original/{PROJECT}/{WORKER}/p1/data",
        f"/original/{PROJECT}/{WORKER}/p2/data",
    )
    spec = check_job_inputs(request_r, cfg)
    jdir = create_job_folder(spec, cfg)
    assert [p.name for p in jdir.iterdir()] == ["data"]
    assert "share base name" in caplog.text


# ---------------------------------------------------------------------------
# prepare_job
# ---------------------------------------------------------------------------


def test_prepare_job_materializes_everything(cfg, wdir, request_r):
    prepare_job(request_r, cfg, confirm=always_yes)
    jdir = wdir / JOB
    assert (wdir / f"{JOB}.sh").is_file()
    for name in ("prefs.txt", "dirs.txt", "fit.R", f"{JOB}.sh"):
        assert (jdir / name).is_file(), name
    assert (jdir / "A").is_dir()
    assert (jdir / "B").is_dir()
    assert (jdir / "snapshots").is_dir()


def test_prepare_job_takes_before_snapshots(cfg, wdir, data_dir, request_r):
    prepare_job(request_r, cfg, confirm=always_yes)
    store = SnapshotStore(wdir / JOB / "snapshots")
    assert store.indices("before") == [1, 2]
    first = store.load(1, "before")
    assert first.path == (data_dir / "A").resolve()
    assert set(first.entries) == {"x.txt"}
    assert len(store.load(2, "before").entries) == 0


def test_prepare_job_decline_writes_nothing(cfg, lab_root, request_r):
    before = snapshot_of_tree(lab_root)
    with pytest.raises(UserAbort, match="aborted"):
        prepare_job(request_r, cfg, confirm=always_no)
    assert snapshot_of_tree(lab_root) == before


def test_prepare_job_validation_precedes_confirmation(cfg, wdir, request_r):
    asked = []
    (wdir / "prefs.txt").write_text("--job-name=run_01\n")
    with pytest.raises(PreconditionError):
        prepare_job(request_r, cfg, confirm=lambda msg: asked.append(msg) or True)
    assert asked == []


def test_prepare_job_bad_prefs_no_mutation(cfg, lab_root, wdir, request_r):
    with (wdir / "prefs.txt").open("a") as fh:
        fh.write("--partition=long\n")
    before = snapshot_of_tree(lab_root)
    with pytest.raises(PreconditionError):
        prepare_job(request_r, cfg, confirm=always_yes)
    assert snapshot_of_tree(lab_root) == before


def unreadable_b(real_take):
    """DirectorySnapshot.take stand-in that cannot read target directory B."""

    def take(path):
        if Path(path).name == "B":
            raise PermissionError(13, "Permission denied", str(Path(path) / "private"))
        return real_take(path)

    return take


def test_prepare_job_snapshot_failure_removes_partial_job(cfg, lab_root, wdir, request_r):
    before = snapshot_of_tree(lab_root)
    with patch.object(DirectorySnapshot, "take", side_effect=unreadable_b(DirectorySnapshot.take)):
        with pytest.raises(PreconditionError, match="Permission denied.*private"):
            prepare_job(request_r, cfg, confirm=always_yes)
    assert not (wdir / JOB).exists()
    assert not (wdir / f"{JOB}.sh").exists()
    assert snapshot_of_tree(lab_root) == before


def test_prepare_job_can_be_retried_after_failure(cfg, wdir, request_r):
    with patch.object(DirectorySnapshot, "take", side_effect=unreadable_b(DirectorySnapshot.take)):
        with pytest.raises(PreconditionError):
            prepare_job(request_r, cfg, confirm=always_yes)
    prepare_job(request_r, cfg, confirm=always_yes)
    assert SnapshotStore(wdir / JOB / "snapshots").indices("before") == [1, 2]


def test_prepare_job_copy_failure_removes_partial_job(cfg, wdir, request_r):
    with patch("kishida_jsi.prepare.copy_control_files", side_effect=OSError(28, "No space left on device")):
        with pytest.raises(PreconditionError, match="No space left"):
            prepare_job(request_r, cfg, confirm=always_yes)
    assert not (wdir / JOB).exists()
    assert not (wdir / f"{JOB}.sh").exists()


def test_prepare_job_audit(cfg, lab_root, request_r):
    audit = AuditLogger(lab_root / "audit.jsonl")
    prepare_job(request_r, cfg, confirm=always_yes, audit=audit)
    events = [json.loads(line)["event"] for line in (lab_root / "audit.jsonl").read_text().splitlines()]
    assert events == ["snapshot", "snapshot", "prepared"]


# ---------------------------------------------------------------------------
# prompt_confirm
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("answers,expected", [
    (["y"], True), (["Y"], True), (["n"], False), (["N"], False),
    (["maybe", "", "yes", "y"], True),
    (["x", "n"], False),
])
def test_prompt_confirm(answers, expected, capsys):
    with patch("click.prompt", side_effect=answers) as mock_prompt:
        assert prompt_confirm("Proceed?") is expected
    assert mock_prompt.call_count == len(answers)
    out = capsys.readouterr().out
    assert out.count("Unexpected input") == len(answers) - 1
