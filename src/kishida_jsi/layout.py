from __future__ import annotations

__all__ = ["area_dir", "worker_dir", "job_dir", "setup_worker"]

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from kishida_jsi.config import JSIConfig
from kishida_jsi.errors import PreconditionError

if TYPE_CHECKING:
    from kishida_jsi.audit import AuditLogger

logger = logging.getLogger(__name__)


def area_dir(config: JSIConfig, area: str, project: str, worker: str | None = None) -> Path:
    """Return ``<root>/<area>/<project>[/<worker>]``."""
    path = config.root / area / project
    return path / worker if worker is not None else path


def worker_dir(config: JSIConfig, worker: str, project: str) -> Path:
    """Return the worker's scratch folder, where control files live."""
    return area_dir(config, config.scratch_area, project, worker)


def job_dir(config: JSIConfig, worker: str, project: str, job: str) -> Path:
    return worker_dir(config, worker, project) / job


def setup_worker(
    config: JSIConfig,
    worker: str,
    project: str,
    audit: AuditLogger | None = None,
) -> list[Path]:
    """Create the worker folders and template control files for a project.

    The project must already exist in all three storage areas.  Missing
    worker folders are created in the scratch and final areas (the origin
    area is managed by whoever deposits the raw data), along with a
    ``to_archive`` folder, a ``prefs.txt`` template listing every required
    key and an empty ``dirs.txt``.  Existing files are never overwritten.

    Returns
    -------
    list[Path]
        Every folder or file created, in creation order.

    Raises
    ------
    PreconditionError
        If the project is missing from any storage area.
    """
    for area, root in config.areas.items():
        if not (root / project).is_dir():
            raise PreconditionError(f"Project {project} not found in /{area}.")

    created: list[Path] = []
    for area in (config.scratch_area, config.final_area):
        path = area_dir(config, area, project, worker)
        if not path.is_dir():
            path.mkdir()
            created.append(path)
            logger.info("Directory created for worker %s in /%s.", worker, area)

    wdir = worker_dir(config, worker, project)
    archive = wdir / config.archive_folder
    if not archive.is_dir():
        archive.mkdir()
        created.append(archive)

    prefs = wdir / config.prefs_file
    if not prefs.exists():
        prefs.write_text("".join(f"{key}=\n" for key in config.pref_keys))
        created.append(prefs)

    dirs = wdir / config.dirs_file
    if not dirs.exists():
        dirs.write_text("")
        created.append(dirs)

    if audit is not None:
        audit.log(
            "setup",
            worker=worker,
            project=project,
            detail=", ".join(str(p) for p in created),
        )
    return created
