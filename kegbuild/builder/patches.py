from __future__ import annotations
from typing import (
    IO,
    Iterable,
    Mapping,
)

import logging
import pathlib
import re
import subprocess

from kegbuild import errors
from kegbuild import recipes
from kegbuild import tools

from .environment import expand


logger = logging.getLogger(__name__)


def _read(path: pathlib.Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="surrogateescape")
    except FileNotFoundError:
        raise errors.PatchMismatchError(path, "file does not exist") from None


def _write(path: pathlib.Path, text: str) -> None:
    path.write_text(text, encoding="utf-8", errors="surrogateescape")


def apply_patch(
    source_dir: pathlib.Path,
    op: recipes.PatchOp,
    *,
    variables: Mapping[str, str],
    output: IO[bytes] | None = None,
) -> int:
    """Apply one patch operation and return the number of changes made.

    Raises PatchMismatchError when the operation does not apply, which
    means the recipe is stale relative to the source.
    """
    if op.kind == "diff":
        return _apply_diff(source_dir, pathlib.Path(op.path), output=output)

    path = source_dir / op.path
    text = _read(path)
    assert op.replacement is not None

    if op.kind == "append":
        addition = expand(op.replacement, variables)
        if text and not text.endswith("\n"):
            text += "\n"
        if not addition.endswith("\n"):
            addition += "\n"
        _write(path, text + addition)
        return 1

    assert op.match is not None
    replacement = expand(op.replacement, variables)

    if op.kind == "replace":
        count = text.count(op.match)
        if count:
            text = text.replace(op.match, replacement)
    else:
        text, count = re.subn(
            op.match, replacement, text, flags=re.MULTILINE
        )

    if not count:
        raise errors.PatchMismatchError(
            op.path, f"no match for {op.match!r}"
        )

    _write(path, text)
    return count


def _apply_diff(
    source_dir: pathlib.Path,
    diff: pathlib.Path,
    *,
    output: IO[bytes] | None,
) -> int:
    if not diff.exists():
        raise errors.PatchMismatchError(diff, "patch file does not exist")
    try:
        tools.cmd(
            "patch",
            "-p1",
            "--forward",
            "--batch",
            "-i",
            diff,
            cwd=source_dir,
            output=output,
        )
    except subprocess.CalledProcessError as e:
        raise errors.PatchMismatchError(
            diff, f"does not apply (patch exited with {e.returncode})"
        ) from None
    except FileNotFoundError:
        raise errors.RequirementError(
            "the patch utility is required to apply diff patches"
        ) from None
    return 1


def apply_patches(
    source_dir: pathlib.Path,
    patches: Iterable[recipes.PatchOp],
    *,
    variables: Mapping[str, str],
    output: IO[bytes] | None = None,
) -> None:
    for op in patches:
        count = apply_patch(
            source_dir, op, variables=variables, output=output
        )
        logger.info(f"Patched: {op.describe()} ({count} change(s))")
