from __future__ import annotations

__all__ = ["read_prefs", "complete_prefs", "pref_value", "read_dirs", "resolve_target"]

from pathlib import Path

import pandas as pd

from kishida_jsi.errors import PreconditionError

_PREF_COLUMNS = ["pref_var", "value"]


def read_prefs(path: str | Path, required_keys: list[str]) -> pd.DataFrame:
    """Parse a ``prefs.txt`` file into a two-column table.

    Each non-blank line is ``key=value``; the line is split on the first
    ``=`` so values may themselves contain ``=``.  A blank value is stored as
    ``NA``.  The set of keys must equal *required_keys* exactly.

    Returns
    -------
    pd.DataFrame
        Columns ``pref_var`` and ``value``, one row per line in file order.

    Raises
    ------
    PreconditionError
        On a line without ``=``, an empty or repeated key, or when keys are
        missing from or extra to *required_keys*.
    """
    rows = []
    for lineno, raw in enumerate(Path(path).read_text().splitlines(), start=1):
        line = raw.strip()
        if not line:
            continue
        key, sep, value = line.partition("=")
        key, value = key.strip(), value.strip()
        if not sep or not key:
            raise PreconditionError(
                f"Malformed line {lineno} in {Path(path).name}: {raw!r} (expected key=value)."
            )
        rows.append({"pref_var": key, "value": value or None})

    prefs = pd.DataFrame(rows, columns=_PREF_COLUMNS)

    duplicated = sorted(set(prefs.loc[prefs["pref_var"].duplicated(), "pref_var"]))
    if duplicated:
        raise PreconditionError(f"Parameters repeated in prefs file: {duplicated}.")

    found = set(prefs["pref_var"])
    missing = [k for k in required_keys if k not in found]
    extra = sorted(found - set(required_keys))
    if missing or extra:
        raise PreconditionError(
            "Parameters in prefs file missing or incorrect. "
            f"Missing: {missing}. Unexpected: {extra}."
        )
    return prefs


def complete_prefs(prefs: pd.DataFrame) -> pd.DataFrame:
    """Return only the rows whose value was filled in, keeping file order."""
    return prefs.dropna(subset=["value"]).reset_index(drop=True)


def pref_value(prefs: pd.DataFrame, key: str) -> str | None:
    """Return the value of *key*, or ``None`` when blank or absent."""
    match = prefs.loc[prefs["pref_var"] == key, "value"]
    if match.empty or pd.isna(match.iloc[0]):
        return None
    return str(match.iloc[0])


def read_dirs(path: str | Path) -> list[str]:
    """Return the target directories listed in a ``dirs.txt`` file.

    One path per line; surrounding whitespace is stripped and blank lines
    are ignored.
    """
    return [line.strip() for line in Path(path).read_text().splitlines() if line.strip()]


def resolve_target(root: Path, entry: str) -> Path:
    """Return the absolute path of a ``dirs.txt`` entry.

    Entries are relative to the invocation root.  A leading ``/`` is part of
    the historic ``dirs.txt`` convention (``/original/study1/alice/data``)
    and still means "relative to root".
    """
    return (Path(root) / entry.lstrip("/")).resolve()
