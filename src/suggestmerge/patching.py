from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
import tempfile

from suggestmerge.observability import log_event
from suggestmerge.shell import _preview, run, run_command


LOGGER = logging.getLogger("suggestmerge.patching")


class PatchApplyError(RuntimeError):
    pass


def apply_patch(original: str, patch: str, *, file_path: str) -> str:
    """Apply a single-file unified diff to `original` and return the patched text.

    The patch is handed to `git apply` inside a throwaway repository, so context
    lines must match exactly, but hunks are located by content rather than by their
    header position. Hunk line counts are recounted, which tolerates bodies whose
    blank trailing context was trimmed.

    Review comments never carry the `\\ No newline at end of file` marker, so a file
    without a final newline is patched as if it had one and the newline is dropped
    again afterwards.
    """
    relative = _safe_relative_path(file_path)
    missing_final_newline = bool(original) and not original.endswith("\n")
    with tempfile.TemporaryDirectory(prefix="suggestmerge-patch-") as tmp:
        workdir = Path(tmp)
        target = workdir.joinpath(*relative.parts)
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("w", encoding="utf-8", newline="") as fh:
            fh.write(original + "\n" if missing_final_newline else original)

        run(["git", "init", "--quiet", str(workdir)])
        result = run_command(
            [
                "git",
                "-C",
                str(workdir),
                "apply",
                "--recount",
                "--unidiff-zero",
                "--whitespace=nowarn",
                "-",
            ],
            input_text=patch,
        )
        if not result.ok:
            log_event(
                LOGGER,
                "patch_rejected",
                file_path=file_path,
                exit_code=result.returncode,
                stderr=_preview(result.stderr),
            )
            raise PatchApplyError(
                f"patch does not apply to {file_path}: {result.stderr.strip() or 'unknown error'}"
            )

        if not target.exists():
            raise PatchApplyError(f"patch removed {file_path}; deletions are not supported")
        with target.open(encoding="utf-8", newline="") as fh:
            patched = fh.read()
        if missing_final_newline and patched.endswith("\n"):
            patched = patched[:-1]

    log_event(LOGGER, "patch_applied", file_path=file_path, changed=patched != original)
    return patched


def _safe_relative_path(file_path: str) -> PurePosixPath:
    path = PurePosixPath(file_path)
    if path.is_absolute() or not path.parts or ".." in path.parts:
        raise PatchApplyError(f"refusing to patch unsafe path {file_path!r}")
    return path
