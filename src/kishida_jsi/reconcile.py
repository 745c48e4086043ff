"""reconcile.py — move the files a finished job produced into its job folder.

For each directory in the job's own copy of ``dirs.txt`` the reconciler
takes a fresh ``after`` snapshot, compares it by entry name with the
``before`` snapshot stored under the same ordinal index, and moves every
entry that appeared in between to ``<job>/<basename(dir)>/<entry>``.

Entries that existed before submission are never moved, even if the job
rewrote them.  A destination that already exists is left alone and the
source entry stays where it is; both are reported.

Each directory is committed in the snapshot catalog as soon as its entries
have been handled, so a reconciliation that is interrupted can simply be
run again: committed directories are skipped, and entries already moved are
no longer in their source directory.  The snapshots folder is deleted only
when every directory has been reconciled; its absence is what makes a
second reconciliation of the same job fail.

Typical usage::

    from kishida_jsi.reconcile import reconcile_job

    result = reconcile_job(config, "alice", "study1", "run_01", audit=audit)
    print(f"{result.moved_count} file(s) moved")
"""
from __future__ import annotations

__all__ = ["ReconcileResult", "reconcile_directory", "reconcile_job"]

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from kishida_jsi.config import JSIConfig
from kishida_jsi.errors import ReconciliationError
from kishida_jsi.inputs import read_dirs, resolve_target
from kishida_jsi.layout import job_dir
from kishida_jsi.snapshot import DirectorySnapshot, SnapshotStore

if TYPE_CHECKING:
    from kishida_jsi.audit import AuditLogger

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Outcome of reconciling one job."""

    moved: list[tuple[Path, Path]] = field(default_factory=list)
    collisions: list[tuple[Path, Path]] = field(default_factory=list)
    failures: dict[int, str] = field(default_factory=dict)  # index → reason
    resumed: list[int] = field(default_factory=list)  # indices committed by an earlier run
    complete: bool = False  # snapshots folder removed

    @property
    def moved_count(self) -> int:
        return len(self.moved)

    @property
    def ok(self) -> bool:
        return self.complete and not self.collisions


def reconcile_directory(
    before: DirectorySnapshot,
    after: DirectorySnapshot,
    dest: Path,
) -> tuple[list[tuple[Path, Path]], list[tuple[Path, Path]], list[tuple[Path, str]]]:
    """Move entries new in *after* from its directory into *dest*.

    Relative paths are preserved below *dest*, so a file that appeared in
    an existing subdirectory ``sub/`` lands in ``dest/sub/``.  A new
    directory is moved as a whole.  An entry that cannot be moved stays
    where it is and the remaining entries are still tried.

    Returns
    -------
    tuple
        ``(moved, collisions, errors)``.  *moved* and *collisions* list
        ``(source, destination)`` pairs; *errors* lists ``(source, reason)``.
    """
    moved: list[tuple[Path, Path]] = []
    collisions: list[tuple[Path, Path]] = []
    errors: list[tuple[Path, str]] = []
    for entry in after.top_level_new_entries(before):
        src = after.path / PurePosixPath(entry)
        dst = dest / PurePosixPath(entry)
        if not src.exists() and not src.is_symlink():
            logger.warning("New entry %s vanished before it could be moved", src)
            continue
        if dst.exists() or dst.is_symlink():
            logger.warning("Not moving %s: %s already exists", src, dst)
            collisions.append((src, dst))
            continue
        try:
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(src), str(dst))
        except OSError as exc:
            logger.error("Could not move %s -> %s: %s", src, dst, exc)
            errors.append((src, str(exc)))
            continue
        logger.debug("Moved %s -> %s", src, dst)
        moved.append((src, dst))
    return moved, collisions, errors


def reconcile_job(
    config: JSIConfig,
    worker: str,
    project: str,
    job: str,
    audit: AuditLogger | None = None,
) -> ReconcileResult:
    """Move every file the job created in its target directories into the job folder.

    Directories are matched to their ``before`` snapshots by position in the
    job's ``dirs.txt``; the path recorded with the snapshot must also match,
    otherwise that directory is left untouched.  A directory whose snapshot
    is missing, unreadable or mismatched, or with an entry that could not
    be moved, is recorded in :attr:`ReconcileResult.failures`, is left
    uncommitted so a later run retries it, and the remaining directories
    are still processed.

    Raises
    ------
    ReconciliationError
        If the job folder does not exist, or holds no snapshots because the
        job was never prepared or has already been reconciled.
    """
    jdir = job_dir(config, worker, project, job)
    if not jdir.is_dir():
        raise ReconciliationError(f"Job folder {jdir} does not exist.")
    store = SnapshotStore(jdir / config.snapshots_folder)
    if not store.exists():
        raise ReconciliationError(
            f"No snapshots found for job {job}. "
            "It was either never prepared or has already been reconciled."
        )
    dirs_path = jdir / config.dirs_file
    if not dirs_path.is_file():
        raise ReconciliationError(f"Job folder {jdir} has no copy of {config.dirs_file}.")

    ids = {"worker": worker, "project": project, "job": job}
    result = ReconcileResult()
    root = Path(config.root)

    def _fail(index: int, target: Path, reason: str) -> None:
        logger.error("Directory #%d (%s) not reconciled: %s", index, target, reason)
        result.failures[index] = reason
        if audit is not None:
            audit.log("reconcile_error", detail=reason, index=index, **ids)

    for index, entry in enumerate(read_dirs(dirs_path), start=1):
        target = resolve_target(root, entry)
        if store.is_committed(index):
            logger.info("Directory #%d (%s) already reconciled, skipping", index, target)
            result.resumed.append(index)
            continue
        try:
            before = store.load(index, "before")
            if before.path != target:
                raise ReconciliationError(
                    f"before snapshot #{index} was taken of {before.path}, not {target}"
                )
            after = DirectorySnapshot.take(target)
            store.save(index, "after", after)
        except (ReconciliationError, OSError) as exc:
            _fail(index, target, str(exc))
            continue

        dest = jdir / PurePosixPath(entry.rstrip("/")).name
        moved, collisions, errors = reconcile_directory(before, after, dest)

        logger.info("Directory #%d (%s): %d new entr%s moved", index, target, len(moved), "y" if len(moved) == 1 else "ies")
        result.moved.extend(moved)
        result.collisions.extend(collisions)
        if audit is not None:
            for src, dst in moved:
                audit.log("moved", detail=f"{src} -> {dst}", index=index, **ids)
            for src, dst in collisions:
                audit.log("collision", detail=f"{src} -> {dst}", index=index, **ids)

        if errors:
            src, reason = errors[0]
            _fail(index, target, f"{len(errors)} entr{'y' if len(errors) == 1 else 'ies'} could not be moved, first {src}: {reason}")
            continue
        store.mark_committed(index)

    if result.failures:
        logger.warning(
            "Keeping %s: %d director%s could not be reconciled",
            store.folder, len(result.failures), "y" if len(result.failures) == 1 else "ies",
        )
    else:
        store.clear()
        result.complete = True

    if audit is not None:
        audit.log(
            "reconciled",
            detail=f"{result.moved_count} moved, {len(result.collisions)} collision(s), "
                   f"{len(result.failures)} failure(s)",
            moved=result.moved_count,
            complete=result.complete,
            **ids,
        )
    return result
