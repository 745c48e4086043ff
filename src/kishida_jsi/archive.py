from __future__ import annotations

__all__ = ["ArchiveResult", "archive_worker"]

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from kishida_jsi.config import JSIConfig
from kishida_jsi.errors import PreconditionError
from kishida_jsi.layout import area_dir, worker_dir

if TYPE_CHECKING:
    from kishida_jsi.audit import AuditLogger

logger = logging.getLogger(__name__)


@dataclass
class ArchiveResult:
    copied: list[Path] = field(default_factory=list)
    skipped: list[Path] = field(default_factory=list)  # destination already present
    failed: dict[Path, str] = field(default_factory=dict)


def archive_worker(
    config: JSIConfig,
    worker: str,
    project: str,
    audit: AuditLogger | None = None,
) -> ArchiveResult:
    """Copy everything in the worker's ``to_archive`` folder into the final area.

    Each top-level entry is copied recursively to
    ``final/<project>/<worker>/<entry>``.  Sources are never removed and an
    entry that already exists at the destination is skipped rather than
    overwritten.  A failure copying one entry does not stop the others.

    Raises
    ------
    PreconditionError
        If the ``to_archive`` folder or the worker's final folder is missing.
    """
    source = worker_dir(config, worker, project) / config.archive_folder
    dest = area_dir(config, config.final_area, project, worker)
    if not source.is_dir():
        raise PreconditionError(f"Cannot find {source}. Please run the new worker setup first.")
    if not dest.is_dir():
        raise PreconditionError(f"Worker {worker} does not exist in /{config.final_area}.")

    ids = {"worker": worker, "project": project}
    result = ArchiveResult()
    for entry in sorted(source.iterdir()):
        target = dest / entry.name
        if target.exists():
            logger.warning("Not archiving %s: %s already exists", entry, target)
            result.skipped.append(entry)
            continue
        try:
            if entry.is_dir():
                shutil.copytree(entry, target, symlinks=True)
            else:
                shutil.copy2(entry, target)
        except (OSError, shutil.Error) as exc:
            logger.error("Failed to archive %s: %s", entry, exc)
            result.failed[entry] = str(exc)
            if audit is not None:
                audit.log("archive_error", detail=f"{entry}: {exc}", **ids)
            continue
        result.copied.append(target)
        if audit is not None:
            audit.log("archived", detail=f"{entry} -> {target}", **ids)

    logger.info(
        "Archived %d entr%s to %s", len(result.copied), "y" if len(result.copied) == 1 else "ies", dest
    )
    return result
