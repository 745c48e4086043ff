from __future__ import annotations

__all__ = ["JobRequest", "JobSpec"]

from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

import pandas as pd

if TYPE_CHECKING:
    from kishida_jsi.script import ScriptType


@dataclass
class JobRequest:
    """What the operator asked for, before any validation."""

    worker: str
    project: str
    job: str
    script_name: str
    script_type: str  # "R" or "MATLAB", case-insensitive
    email: str | None = None
    threads: int = 1  # exported as OMP_NUM_THREADS


@dataclass(frozen=True, eq=False)
class JobSpec:
    """A validated job: the request plus the control-file contents it was built from."""

    worker: str
    project: str
    job: str
    script_name: str
    script_type: ScriptType
    dirs: tuple[str, ...]
    prefs: pd.DataFrame
    email: str | None = None
    threads: int = 1

    @property
    def data_folders(self) -> list[str]:
        """Job subfolder name for each target directory, in ``dirs`` order."""
        return [PurePosixPath(d.rstrip("/")).name for d in self.dirs]
