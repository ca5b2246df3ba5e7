from __future__ import annotations
from typing import (
    Iterable,
    Sequence,
)

import pathlib


class KegbuildError(Exception):
    """Base class for all fatal kegbuild errors."""

    stage = "kegbuild"
    exit_code = 1


class ConfigError(KegbuildError):
    stage = "config"
    exit_code = 2


class RecipeError(KegbuildError):
    stage = "recipe"
    exit_code = 2


class UnknownOptionError(RecipeError):
    def __init__(self, recipe: str, option: str) -> None:
        super().__init__(f"{recipe} has no option named {option!r}")
        self.recipe = recipe
        self.option = option


class ResolutionError(KegbuildError):
    stage = "resolve"
    exit_code = 3


class CycleError(ResolutionError):
    def __init__(self, members: Sequence[str]) -> None:
        super().__init__(
            "dependency cycle detected: " + " -> ".join(members)
        )
        self.members = tuple(members)


class MissingDependencyError(ResolutionError):
    def __init__(
        self,
        name: str,
        required_by: str,
        constraint: str | None = None,
    ) -> None:
        if constraint:
            msg = (
                f"no recipe satisfies {name} ({constraint}), "
                f"required by {required_by}"
            )
        else:
            msg = f"no recipe named {name!r}, required by {required_by}"
        super().__init__(msg)
        self.name = name
        self.required_by = required_by
        self.constraint = constraint


class RequirementError(KegbuildError):
    stage = "requirements"
    exit_code = 3


class FetchError(KegbuildError):
    stage = "fetch"
    exit_code = 4

    def __init__(
        self, name: str, attempts: Iterable[tuple[str, str]]
    ) -> None:
        self.name = name
        self.attempts = list(attempts)
        lines = [f"could not fetch {name}"]
        for url, reason in self.attempts:
            lines.append(f"  {url}: {reason}")
        super().__init__("\n".join(lines))


class PatchMismatchError(KegbuildError):
    stage = "patch"
    exit_code = 5

    def __init__(self, path: str | pathlib.Path, detail: str) -> None:
        super().__init__(f"{path}: {detail}")
        self.path = pathlib.Path(path)
        self.detail = detail


class BuildStepError(KegbuildError):
    stage = "build"
    exit_code = 6

    def __init__(
        self,
        step: str,
        command: Sequence[str],
        returncode: int,
        log_path: pathlib.Path | None = None,
    ) -> None:
        cmd_line = " ".join(command)
        msg = f"{step}: {cmd_line} failed with exit code {returncode}"
        if log_path is not None:
            msg += f" (see {log_path})"
        super().__init__(msg)
        self.step = step
        self.command = tuple(command)
        self.returncode = returncode
        self.log_path = log_path


class InstalledTestError(KegbuildError):
    stage = "test"
    exit_code = 7


class InstallError(KegbuildError):
    stage = "install"
    exit_code = 8


class BuildCancelled(KegbuildError):
    stage = "build"
    exit_code = 130


class TestFailureWarning(UserWarning):
    """Test suite failures of an otherwise successful build.

    These are collected and reported, never raised: flaky numerical test
    suites must not block installation.
    """

    __test__ = False

    def __init__(
        self,
        recipe: str,
        fail_count: int | None,
        log_path: pathlib.Path,
    ) -> None:
        if fail_count is None:
            detail = "no test summary found"
        else:
            detail = f"FAIL {fail_count}"
        super().__init__(
            f"Some tests of {recipe} failed ({detail}). "
            f"Details are given in {log_path}."
        )
        self.recipe = recipe
        self.fail_count = fail_count
        self.log_path = log_path
