from __future__ import annotations

__all__ = ["DEFAULT_PREF_KEYS", "JSIConfig"]

from dataclasses import dataclass, field
from pathlib import Path

import yaml


# Slurm directives every prefs.txt must list, in template order.
DEFAULT_PREF_KEYS: list[str] = [
    "--cpus-per-task",
    "--job-name",
    "--mem-per-cpu",
    "--nodes",
    "--ntasks",
    "--ntasks-per-core",
    "--ntasks-per-node",
    "--time",
]


@dataclass
class JSIConfig:
    """All path conventions and settings in one place."""

    # Invocation root holding the three storage areas
    root: Path = field(default_factory=lambda: Path("."))

    # Storage areas: raw data, long-term output, working area
    origin_area: str = "original"
    final_area: str = "final"
    scratch_area: str = "scratch"

    # Control files and folders inside scratch/<project>/<worker>
    prefs_file: str = "prefs.txt"
    dirs_file: str = "dirs.txt"
    archive_folder: str = "to_archive"
    snapshots_folder: str = "snapshots"  # inside the job folder

    # Required keys of prefs.txt
    pref_keys: list[str] = field(default_factory=lambda: list(DEFAULT_PREF_KEYS))

    # Slurm settings
    sbatch_command: str = "sbatch"
    mail_type: str = "END"
    node_prefix: str = "demon"  # --exclude=demon[005,021]
    node_id_width: int = 3

    # Job ledger parquet. Defaults to <root>/.jsi_state.parquet at runtime.
    state_file: Path | None = None

    # JSONL audit log path. Defaults to <root>/.jsi_audit.jsonl at runtime.
    log_file: Path | None = None

    def __post_init__(self) -> None:
        """Validate area names and the required preference keys.

        Raises
        ------
        ValueError
            If an area name is empty or shared by two areas, if
            ``pref_keys`` has duplicates or lacks ``--job-name``, or if
            ``node_id_width`` is not positive.
        """
        areas = [self.origin_area, self.final_area, self.scratch_area]
        if not all(areas):
            raise ValueError(f"Storage area names must be non-empty, got {areas}")
        if len(set(areas)) != len(areas):
            raise ValueError(f"Storage area names must be distinct, got {areas}")
        if len(set(self.pref_keys)) != len(self.pref_keys):
            raise ValueError(f"Duplicate entries in pref_keys: {self.pref_keys}")
        if "--job-name" not in self.pref_keys:
            raise ValueError("pref_keys must include '--job-name'")
        if self.node_id_width <= 0:
            raise ValueError(f"node_id_width must be positive, got {self.node_id_width}")

    @property
    def origin_root(self) -> Path:
        return self.root / self.origin_area

    @property
    def final_root(self) -> Path:
        return self.root / self.final_area

    @property
    def scratch_root(self) -> Path:
        return self.root / self.scratch_area

    @property
    def areas(self) -> dict[str, Path]:
        """Storage area label → root path, in validation order."""
        return {
            self.origin_area: self.origin_root,
            self.final_area: self.final_root,
            self.scratch_area: self.scratch_root,
        }

    def get_state_file(self) -> Path:
        if self.state_file is not None:
            return self.state_file
        return self.root / ".jsi_state.parquet"

    def get_log_file(self) -> Path:
        if self.log_file is not None:
            return self.log_file
        return self.root / ".jsi_audit.jsonl"

    @classmethod
    def from_yaml(cls, path: str | Path) -> "JSIConfig":
        """Load config from a YAML file, overriding defaults.

        Raises
        ------
        ValueError
            If the file contains invalid YAML syntax.
        FileNotFoundError
            If *path* does not exist.
        """
        with open(path) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ValueError(f"Invalid YAML in {path}: {exc}") from exc

        for key in ("root", "state_file", "log_file"):
            if data.get(key) is not None:
                data[key] = Path(data[key])

        return cls(**data)
