from __future__ import annotations
from typing import (
    Mapping,
)

import dataclasses
import logging
import os
import pathlib
import re
import subprocess

from kegbuild import config
from kegbuild import errors
from kegbuild import recipes
from kegbuild import tools

from . import environment
from . import install


logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True, kw_only=True)
class TestReport:
    """Outcome of a recipe's check commands.

    A report never decides whether the build is installed; failed checks
    only ever produce a warning.
    """

    __test__ = False

    passed: bool
    log_path: pathlib.Path
    #: Failure count from the summary line, None when no summary was found
    fail_count: int | None
    #: Exit codes of the check commands, in order
    returncodes: tuple[int, ...] = ()
    #: Additional logs worth keeping alongside the main one
    extra_logs: tuple[pathlib.Path, ...] = ()

    def to_warning(
        self, recipe: recipes.Recipe, log_path: pathlib.Path | None = None
    ) -> errors.TestFailureWarning | None:
        if self.passed:
            return None
        return errors.TestFailureWarning(
            recipe.name, self.fail_count, log_path or self.log_path
        )


def parse_summary(text: str, pattern: str) -> int | None:
    """Return the failure count of the last summary line in *text*."""
    last = None
    for m in re.finditer(pattern, text, re.IGNORECASE | re.MULTILINE):
        last = m
    if last is None:
        return None
    return int(last.group(1))


def run_checks(
    recipe: recipes.Recipe,
    source_dir: pathlib.Path,
    *,
    env: Mapping[str, str],
    variables: Mapping[str, str],
) -> TestReport:
    spec = recipe.test
    log_path = source_dir / spec.log
    log_path.parent.mkdir(parents=True, exist_ok=True)

    returncodes = []
    with open(log_path, "wb") as log:
        for command in spec.commands:
            argv = [environment.expand(a, variables) for a in command]
            try:
                rc = tools.cmd(
                    *argv,
                    cwd=source_dir,
                    env=env,
                    output=log,
                    errors_are_fatal=False,
                )
            except OSError as e:
                log.write(f"{argv[0]}: {e}\n".encode())
                rc = 127
            if rc != 0:
                logger.warning(
                    f"{' '.join(argv)} exited with {rc}, continuing"
                )
            returncodes.append(rc)

    text = log_path.read_text(encoding="utf-8", errors="replace")
    fail_count = parse_summary(text, spec.summary_pattern)

    extra_logs = tuple(
        source_dir / p
        for p in spec.extra_logs
        if (source_dir / p).is_file()
    )

    return TestReport(
        passed=fail_count == 0,
        log_path=log_path,
        fail_count=fail_count,
        returncodes=tuple(returncodes),
        extra_logs=extra_logs,
    )


def run_installed_tests(
    settings: config.Settings,
    recipe: recipes.Recipe,
) -> int:
    """Smoke-test an installed keg; return the number of commands run."""
    prefix = settings.keg_path(recipe.name, recipe.version)
    if not prefix.is_dir():
        raise errors.InstalledTestError(f"{recipe} is not installed")

    features: Mapping[str, bool] = recipe.default_features()
    try:
        receipt = install.read_receipt(prefix)
    except errors.InstallError as e:
        raise errors.InstalledTestError(str(e)) from e
    if receipt is not None:
        features = receipt.get("features", features)

    variables = environment.template_variables(settings, recipe, ())
    env = dict(os.environ)
    env["PATH"] = environment.search_path(settings, [str(prefix / "bin")])

    commands = recipe.get_installed_tests(features)
    for command in commands:
        argv = [environment.expand(a, variables) for a in command]
        try:
            tools.cmd(*argv, cwd=prefix, env=env)
        except subprocess.CalledProcessError as e:
            raise errors.InstalledTestError(
                f"{' '.join(argv)} failed with exit code {e.returncode}"
            ) from None
        except OSError as e:
            raise errors.InstalledTestError(f"{argv[0]}: {e}") from None

    return len(commands)
