from __future__ import annotations

__all__ = ["ScriptType", "parse_script_type", "extension_matches", "build_batch_script", "write_batch_script"]

import enum
import logging
import shlex
from pathlib import Path
from typing import Callable

from kishida_jsi.config import JSIConfig
from kishida_jsi.errors import PreconditionError
from kishida_jsi.inputs import complete_prefs, resolve_target
from kishida_jsi.jobs import JobSpec
from kishida_jsi.layout import job_dir, worker_dir

logger = logging.getLogger(__name__)


class ScriptType(str, enum.Enum):
    R = "R"
    MATLAB = "MATLAB"


# ---------------------------------------------------------------------------
# Interpreter registry
# ---------------------------------------------------------------------------

# Maps script type → (accepted lower-case extensions, invocation builder)
# Builder signature: (absolute script path) -> shell command line
_INTERPRETERS: dict[ScriptType, tuple[tuple[str, ...], Callable[[Path], str]]] = {}


def _register_interpreter(script_type: ScriptType, *extensions: str):
    """Decorator to register how a script type is invoked from the batch script."""

    def decorator(fn: Callable[[Path], str]) -> Callable[[Path], str]:
        _INTERPRETERS[script_type] = (extensions, fn)
        return fn

    return decorator


@_register_interpreter(ScriptType.R, ".r")
def _invoke_r(script: Path) -> str:
    return f"Rscript {shlex.quote(str(script))}"


@_register_interpreter(ScriptType.MATLAB, ".m")
def _invoke_matlab(script: Path) -> str:
    return f"matlab -nodesktop -nosplash -r \"run('{script}'); quit\""


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def parse_script_type(value: str | ScriptType) -> ScriptType:
    """Return the :class:`ScriptType` named by *value* (case-insensitive).

    Raises
    ------
    PreconditionError
        If *value* is not a registered script type.
    """
    try:
        return ScriptType(str(getattr(value, "value", value)).upper())
    except ValueError:
        known = ", ".join(t.value for t in _INTERPRETERS)
        raise PreconditionError(
            f"Script format {value!r} not recognized. Please submit {known} scripts only."
        ) from None


def extension_matches(script_name: str, script_type: ScriptType) -> bool:
    """Return True if *script_name* has an extension registered for *script_type*."""
    extensions, _ = _INTERPRETERS[script_type]
    return Path(script_name).suffix.lower() in extensions


def build_batch_script(spec: JobSpec, config: JSIConfig) -> str:
    """Render the Slurm batch script for *spec*.

    The script carries one ``#SBATCH`` directive per filled-in preference,
    log directives pointing into the job folder, optional mail directives,
    the ``OMP_NUM_THREADS`` export, and then one block per target directory
    that changes into the directory, runs the analysis script there and
    changes back.  All paths are absolute so the script does not depend on
    the directory ``sbatch`` is called from.
    """
    root = Path(config.root).resolve()
    jdir = job_dir(config, spec.worker, spec.project, spec.job).resolve()
    analysis = (worker_dir(config, spec.worker, spec.project) / spec.script_name).resolve()
    _, invoke = _INTERPRETERS[spec.script_type]

    lines = ["#!/bin/bash"]
    for row in complete_prefs(spec.prefs).itertuples(index=False):
        lines.append(f"#SBATCH {row.pref_var}={row.value}")
    lines.append(f"#SBATCH --output={jdir}/{spec.job}_%J.out")
    lines.append(f"#SBATCH --error={jdir}/{spec.job}_%J.err")
    if spec.email:
        lines.append(f"#SBATCH --mail-type={config.mail_type}")
        lines.append(f"#SBATCH --mail-user={spec.email}")
    lines += ["", "set -x", "", f"export OMP_NUM_THREADS={spec.threads}", ""]

    for entry in spec.dirs:
        target = resolve_target(root, entry)
        lines += [f"cd {shlex.quote(str(target))}", invoke(analysis), "cd -", ""]

    lines += ["wait", "exit"]
    return "\n".join(lines) + "\n"


def write_batch_script(spec: JobSpec, config: JSIConfig) -> Path:
    """Write ``<job>.sh`` into the worker's scratch folder and return its path."""
    path = worker_dir(config, spec.worker, spec.project) / f"{spec.job}.sh"
    path.write_text(build_batch_script(spec, config))
    path.chmod(0o755)
    logger.info("Wrote batch script %s", path)
    return path
