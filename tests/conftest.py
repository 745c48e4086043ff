import pytest

from kishida_jsi.config import JSIConfig
from kishida_jsi.jobs import JobRequest


WORKER = "alice"
PROJECT = "study1"
JOB = "run_01"


# ---------------------------------------------------------------------------
# Shared file helpers
# ---------------------------------------------------------------------------

def write_prefs(path, job=JOB, **overrides) -> None:
    """Write a prefs.txt with every required key.

    Keyword arguments override values, using ``_`` for ``-`` in the key
    (``cpus_per_task="4"`` → ``--cpus-per-task=4``).  Pass ``None`` to leave
    a value blank.
    """
    values = {
        "--cpus-per-task": "4",
        "--job-name": job,
        "--mem-per-cpu": "2G",
        "--nodes": "1",
        "--ntasks": None,
        "--ntasks-per-core": None,
        "--ntasks-per-node": None,
        "--time": "01:00:00",
    }
    for key, value in overrides.items():
        values["--" + key.replace("_", "-")] = value
    path.write_text("".join(f"{k}={v or ''}\n" for k, v in values.items()))


def write_dirs(path, *dirs) -> None:
    path.write_text("\n".join(dirs) + "\n")


# ---------------------------------------------------------------------------
# Filesystem-backed fake lab root
# ---------------------------------------------------------------------------

@pytest.fixture
def lab_root(tmp_path):
    """Create a minimal original/final/scratch tree.

    Layout:
      original/study1/alice/A   — holds x.txt
      original/study1/alice/B   — empty
      final/study1/alice
      scratch/study1/alice      — prefs.txt, dirs.txt (A, B), fit.R, to_archive/
    """
    for area in ("original", "final", "scratch"):
        (tmp_path / area / PROJECT / WORKER).mkdir(parents=True)

    data = tmp_path / "original" / PROJECT / WORKER
    (data / "A").mkdir()
    (data / "A" / "x.txt").write_text("raw data\n")
    (data / "B").mkdir()

    wdir = tmp_path / "scratch" / PROJECT / WORKER
    (wdir / "to_archive").mkdir()
    (wdir / "fit.R").write_text("print('hello')\n")
    write_prefs(wdir / "prefs.txt")
    write_dirs(wdir / "dirs.txt", f"/original/{PROJECT}/{WORKER}/A", f"/original/{PROJECT}/{WORKER}/B")
    return tmp_path


@pytest.fixture
def cfg(lab_root):
    """JSIConfig rooted at lab_root."""
    return JSIConfig(root=lab_root)


@pytest.fixture
def wdir(lab_root):
    """The worker's scratch folder."""
    return lab_root / "scratch" / PROJECT / WORKER


@pytest.fixture
def data_dir(lab_root):
    """The worker's origin data folder holding A and B."""
    return lab_root / "original" / PROJECT / WORKER


@pytest.fixture
def request_r():
    return JobRequest(WORKER, PROJECT, JOB, "fit.R", "R")


def always_yes(message):
    return True


def always_no(message):
    return False
