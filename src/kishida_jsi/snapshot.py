"""snapshot.py — point-in-time fingerprints of target data directories.

Analysis scripts write their output next to the data they read, so the
only way to tell which files a job produced is to compare what a directory
held before submission with what it holds after the job finished.  A
:class:`DirectorySnapshot` records every entry below a directory together
with its size and modification time; a :class:`SnapshotStore` persists
snapshots inside the job folder so the comparison can happen in a later
process, hours or days after submission.

Snapshots are keyed by the ordinal position of the directory in the job's
``dirs.txt`` (1-based) and a phase (``before`` / ``after``).  The catalog
also records the canonical path each snapshot was taken of, so the
reconciler can refuse to compare snapshots of two different directories
that happen to share a base name.
"""
from __future__ import annotations

__all__ = [
    "EntrySignature",
    "DirectorySnapshot",
    "SnapshotStore",
    "take_snapshots",
]

import logging
import os
import shutil
import stat
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from types import MappingProxyType
from typing import TYPE_CHECKING, Iterable, Mapping, NamedTuple

import pandas as pd

from kishida_jsi.errors import SnapshotCorruptError, SnapshotMissingError

if TYPE_CHECKING:
    from kishida_jsi.audit import AuditLogger

logger = logging.getLogger(__name__)

PHASES = ("before", "after")

# Columns and dtypes of a persisted snapshot entry table.
# Entry names are stored as raw file-system bytes (os.fsencode) so names
# that are not valid UTF-8 survive the parquet round trip.
_ENTRY_COLUMNS = {
    "entry": "object",
    "size": "int64",
    "mtime_ns": "int64",
    "is_dir": "bool",
}

# Columns and dtypes of the store catalog
_CATALOG_COLUMNS = {
    "index": "int64",
    "phase": "object",
    "path": "object",  # os.fsencode bytes, like entry names
    "taken_at": "datetime64[ns, UTC]",
    "n_entries": "int64",
    "committed": "bool",
}

_CATALOG_FILE = "catalog.parquet"


class EntrySignature(NamedTuple):
    """Identity of one directory entry at snapshot time."""

    size: int
    mtime_ns: int
    is_dir: bool


@dataclass(frozen=True)
class DirectorySnapshot:
    """Immutable fingerprint of everything below one directory.

    ``entries`` maps the POSIX path of each entry relative to ``path`` to
    its :class:`EntrySignature`.  Directories and files are both recorded;
    symbolic links are recorded but not followed.
    """

    path: Path
    entries: Mapping[str, EntrySignature]
    taken_at: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "entries", MappingProxyType(dict(self.entries)))

    @classmethod
    def take(cls, path: str | Path) -> "DirectorySnapshot":
        """Walk *path* recursively and record every entry below it.

        Raises
        ------
        FileNotFoundError
            If *path* does not exist.
        NotADirectoryError
            If *path* is not a directory.
        """
        root = Path(path).resolve()
        if not root.exists():
            raise FileNotFoundError(f"Cannot snapshot missing directory {root}")
        if not root.is_dir():
            raise NotADirectoryError(f"Cannot snapshot {root}: not a directory")

        def _raise(exc: OSError) -> None:
            raise exc

        entries: dict[str, EntrySignature] = {}
        for dirpath, dirnames, filenames in os.walk(root, onerror=_raise):
            for name in dirnames + filenames:
                full = Path(dirpath) / name
                st = full.lstat()
                rel = full.relative_to(root).as_posix()
                entries[rel] = EntrySignature(st.st_size, st.st_mtime_ns, stat.S_ISDIR(st.st_mode))

        return cls(path=root, entries=entries, taken_at=datetime.now(tz=timezone.utc))

    def new_entries(self, before: "DirectorySnapshot") -> list[str]:
        """Return entry names present here but absent from *before*, sorted.

        Only names are compared: an entry that existed in *before* and has
        since been rewritten is not new.
        """
        return sorted(set(self.entries) - set(before.entries))

    def top_level_new_entries(self, before: "DirectorySnapshot") -> list[str]:
        """Like :meth:`new_entries` but with entries inside a new directory dropped.

        Moving a new directory carries its contents along, so each new
        subtree is reported once, by its top-most path.
        """
        new = self.new_entries(before)
        new_set = set(new)
        return [
            e for e in new
            if not any(str(parent) in new_set for parent in PurePosixPath(e).parents)
        ]

    def to_frame(self) -> pd.DataFrame:
        """Return the entries as a DataFrame with the persisted schema."""
        if not self.entries:
            return _empty(_ENTRY_COLUMNS)
        frame = pd.DataFrame(
            [(os.fsencode(name), *sig) for name, sig in self.entries.items()],
            columns=list(_ENTRY_COLUMNS),
        )
        return frame.astype(_ENTRY_COLUMNS)

    @classmethod
    def from_frame(cls, frame: pd.DataFrame, path: str | Path, taken_at: datetime) -> "DirectorySnapshot":
        entries = {
            os.fsdecode(row.entry): EntrySignature(int(row.size), int(row.mtime_ns), bool(row.is_dir))
            for row in frame.itertuples(index=False)
        }
        return cls(path=Path(path), entries=entries, taken_at=taken_at)


class SnapshotStore:
    """Key-value store of snapshots inside a job folder.

    Keys are ``(index, phase)``; each value is one parquet entry table.  A
    catalog parquet holds the canonical directory path and timestamp for
    every key plus a per-index ``committed`` flag that the reconciler sets
    once a directory's new files have been moved.  The store lives exactly
    as long as reconciliation is pending; :meth:`clear` removes it.

    Parameters
    ----------
    folder:
        The ``snapshots`` folder inside the job folder.
    """

    def __init__(self, folder: Path) -> None:
        self.folder = Path(folder)

    @property
    def catalog_file(self) -> Path:
        return self.folder / _CATALOG_FILE

    def exists(self) -> bool:
        return self.folder.is_dir()

    def entry_file(self, index: int, phase: str) -> Path:
        return self.folder / f"{phase}_{index:03d}.parquet"

    def load_catalog(self) -> pd.DataFrame:
        """Return the catalog, or an empty one when nothing has been saved."""
        if not self.catalog_file.exists():
            return _empty(_CATALOG_COLUMNS)
        try:
            return pd.read_parquet(self.catalog_file)
        except (OSError, ValueError) as exc:
            raise SnapshotCorruptError(f"Snapshot catalog {self.catalog_file} is unreadable: {exc}") from exc

    def _save_catalog(self, catalog: pd.DataFrame) -> None:
        catalog.sort_values(["index", "phase"]).reset_index(drop=True).to_parquet(
            self.catalog_file, index=False
        )

    def save(self, index: int, phase: str, snapshot: DirectorySnapshot) -> Path:
        """Persist *snapshot* under ``(index, phase)`` and return its file.

        A ``before`` snapshot is never replaced; ``after`` snapshots are,
        so an interrupted reconciliation can be re-run.

        Raises
        ------
        ValueError
            For an unknown phase, or when a ``before`` snapshot for *index*
            is already stored.
        """
        if phase not in PHASES:
            raise ValueError(f"Unknown snapshot phase {phase!r}; expected one of {PHASES}")
        self.folder.mkdir(parents=True, exist_ok=True)
        catalog = self.load_catalog()
        existing = (catalog["index"] == index) & (catalog["phase"] == phase)
        if phase == "before" and existing.any():
            raise ValueError(f"A before snapshot is already stored for directory #{index}")

        target = self.entry_file(index, phase)
        snapshot.to_frame().to_parquet(target, index=False)

        row = pd.DataFrame([{
            "index": index,
            "phase": phase,
            "path": os.fsencode(str(snapshot.path)),
            "taken_at": pd.Timestamp(snapshot.taken_at),
            "n_entries": len(snapshot.entries),
            "committed": False,
        }]).astype(_CATALOG_COLUMNS)
        parts = [df for df in (catalog[~existing], row) if not df.empty]
        self._save_catalog(pd.concat(parts, ignore_index=True))
        logger.debug("Saved %s snapshot #%d of %s (%d entries)", phase, index, snapshot.path, len(snapshot.entries))
        return target

    def load(self, index: int, phase: str = "before") -> DirectorySnapshot:
        """Read back the snapshot stored under ``(index, phase)``.

        Raises
        ------
        SnapshotMissingError
            If no snapshot is catalogued for the key or its file is gone.
        SnapshotCorruptError
            If the catalog or the entry table cannot be read.
        """
        catalog = self.load_catalog()
        match = catalog[(catalog["index"] == index) & (catalog["phase"] == phase)]
        target = self.entry_file(index, phase)
        if match.empty or not target.exists():
            raise SnapshotMissingError(f"No {phase} snapshot stored for directory #{index} in {self.folder}")
        try:
            frame = pd.read_parquet(target)
            missing = set(_ENTRY_COLUMNS) - set(frame.columns)
            if missing:
                raise ValueError(f"missing column(s) {sorted(missing)}")
            row = match.iloc[0]
            return DirectorySnapshot.from_frame(frame, os.fsdecode(row["path"]), row["taken_at"].to_pydatetime())
        except (OSError, ValueError) as exc:
            raise SnapshotCorruptError(f"{phase} snapshot for directory #{index} is unreadable: {exc}") from exc

    def indices(self, phase: str = "before") -> list[int]:
        catalog = self.load_catalog()
        return sorted(int(i) for i in catalog.loc[catalog["phase"] == phase, "index"])

    def is_committed(self, index: int) -> bool:
        catalog = self.load_catalog()
        return bool(catalog.loc[catalog["index"] == index, "committed"].any())

    def mark_committed(self, index: int) -> None:
        """Record that every new entry of directory *index* has been handled."""
        catalog = self.load_catalog()
        mask = catalog["index"] == index
        if not mask.any():
            raise SnapshotMissingError(f"No snapshot stored for directory #{index} in {self.folder}")
        catalog.loc[mask, "committed"] = True
        self._save_catalog(catalog)

    def clear(self) -> None:
        """Delete the store.  Reconciliation is complete once this returns."""
        if self.folder.exists():
            shutil.rmtree(self.folder)


def take_snapshots(
    targets: Iterable[Path],
    store: SnapshotStore,
    audit: AuditLogger | None = None,
    **ids: str,
) -> list[DirectorySnapshot]:
    """Snapshot every target directory and save it as ``before``.

    *targets* are absolute directory paths in ``dirs.txt`` order; snapshot
    ``i`` (1-based) belongs to the ``i``-th target.  *ids* (``worker``,
    ``project``, ``job``) are passed through to the audit log.
    """
    snapshots = []
    for index, target in enumerate(targets, start=1):
        snap = DirectorySnapshot.take(target)
        store.save(index, "before", snap)
        snapshots.append(snap)
        logger.info("Snapshot #%d: %s (%d entries)", index, snap.path, len(snap.entries))
        if audit is not None:
            audit.log("snapshot", detail=str(snap.path), index=index, n_entries=len(snap.entries), **ids)
    return snapshots


def _empty(columns: dict[str, str]) -> pd.DataFrame:
    """Return an empty DataFrame with the given schema and dtypes."""
    return pd.DataFrame({col: pd.Series(dtype=dtype) for col, dtype in columns.items()})
