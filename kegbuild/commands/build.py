from __future__ import annotations
from typing import (
    TYPE_CHECKING,
)

import dataclasses
import os
import pathlib
import tempfile
import threading

from cleo.helpers import argument, option
from cleo.io.outputs.output import Verbosity

from kegbuild import builder
from kegbuild import config
from kegbuild import recipes

from . import base

if TYPE_CHECKING:
    from cleo.io.inputs.option import Option


class Build(base.Command):
    name = "build"
    description = "Build and install the specified recipe"
    help = (
        "Resolves the dependencies of a recipe, then fetches, patches, "
        "builds and installs every recipe that is not installed yet.\n\n"
        "Recipe options are toggled with <comment>--with-NAME</comment> "
        "and <comment>--without-NAME</comment>; they apply to the "
        "requested recipe only."
    )
    arguments = [
        argument(
            "name",
            description="Recipe to build",
        ),
    ]
    base_options = [
        option(
            "jobs",
            "j",
            description="Parallel jobs passed to make (0 means all CPUs)",
            flag=False,
        ),
        option(
            "workers",
            description="Number of recipes to build at the same time",
            flag=False,
            default="1",
        ),
        option(
            "test",
            description="Run the recipe's checks",
            flag=True,
        ),
        option(
            "no-test",
            description="Skip the recipe's checks",
            flag=True,
        ),
        option(
            "keepwork",
            description="Do not remove the work directory",
            flag=True,
        ),
        option(
            "reinstall",
            description="Rebuild and replace the recipe if installed",
            flag=True,
        ),
    ]

    def __init__(
        self,
        settings: config.Settings,
        registry: recipes.Registry,
    ) -> None:
        self._features = registry.all_options()
        self.options = self.base_options + self._feature_options()
        super().__init__(settings, registry)

    def _feature_options(self) -> list[Option]:
        result = []
        for name, opt in self._features.items():
            about = opt.description or name
            result.append(
                option(f"with-{name}", description=f"Build with {about}")
            )
            result.append(
                option(
                    f"without-{name}", description=f"Build without {about}"
                )
            )
        return result

    def handle(self) -> int:
        name = self.argument("name")
        keepwork = self.option("keepwork")

        if self.option("test") and self.option("no-test"):
            self.line_error(
                "<error>--test and --no-test are mutually exclusive</error>"
            )
            return 2
        run_tests = None
        if self.option("test"):
            run_tests = True
        elif self.option("no-test"):
            run_tests = False

        settings = self._settings
        jobs = self.option("jobs")
        if jobs is not None:
            settings = dataclasses.replace(
                settings, jobs=config.parse_jobs(jobs, "--jobs")
            )
        workers = config.parse_jobs(self.option("workers"), "--workers")

        with_ = [f for f in self._features if self.option(f"with-{f}")]
        without = [f for f in self._features if self.option(f"without-{f}")]

        plan = recipes.resolve(
            self._registry, name, with_=with_, without=without
        )
        self.line(
            f"Build order: <comment>{' '.join(plan.names())}</comment>",
            verbosity=Verbosity.VERBOSE,
        )

        if keepwork:
            workdir = tempfile.mkdtemp(prefix="kegbuild.")
        else:
            tempdir = tempfile.TemporaryDirectory(prefix="kegbuild.")
            workdir = tempdir.name

        os.chmod(workdir, 0o755)

        try:
            results = builder.run_plan(
                builder.BuildRequest(
                    settings=settings,
                    plan=plan,
                    workdir=pathlib.Path(workdir),
                    io=self.io,
                    run_tests=run_tests,
                    workers=workers,
                    reinstall=self.option("reinstall"),
                    cancel=threading.Event(),
                ),
            )
        finally:
            if keepwork:
                self.line(f"Work directory kept in <comment>{workdir}</>")
            else:
                tempdir.cleanup()

        for result in results:
            if result.skipped:
                self.line(f"{result.recipe} is already installed")
            else:
                self.line(
                    f"<info>Installed</info> {result.recipe} "
                    f"to <comment>{result.prefix}</comment>"
                )
            for warning in result.warnings:
                self.line_error(f"<fg=yellow>{warning}</>")

        return 0
