from __future__ import annotations
from typing import (
    TYPE_CHECKING,
    Callable,
    NamedTuple,
)

import concurrent.futures
import dataclasses
import datetime
import graphlib
import logging
import pathlib
import subprocess
import tarfile
import threading
import zipfile

from kegbuild import config
from kegbuild import errors
from kegbuild import recipes
from kegbuild import tools
from kegbuild.recipes import sources

from . import environment
from . import install
from . import patches
from . import testing

if TYPE_CHECKING:
    from cleo.io.io import IO


logger = logging.getLogger(__name__)


class BuildRequest(NamedTuple):
    settings: config.Settings
    plan: recipes.BuildPlan
    workdir: pathlib.Path
    io: IO | None = None
    fetcher: sources.Fetcher | None = None
    #: Run the target's checks; None defers to the recipe's default
    run_tests: bool | None = None
    #: Number of independent recipes built at the same time
    workers: int = 1
    reinstall: bool = False
    #: Set to stop running builds at the next step boundary
    cancel: threading.Event | None = None


@dataclasses.dataclass
class BuildResult:
    recipe: recipes.Recipe
    prefix: pathlib.Path
    skipped: bool = False
    test_report: testing.TestReport | None = None
    warnings: list[errors.TestFailureWarning] = dataclasses.field(
        default_factory=list
    )


class Build:
    """The fetch, patch, build, test and install pipeline of one recipe.

    Everything up to the final install writes only to a per-recipe scratch
    directory under the request's workdir.  The install itself is
    all-or-nothing, see :class:`install.Installer`.
    """

    def __init__(
        self,
        request: BuildRequest,
        recipe: recipes.Recipe,
        *,
        fetcher: sources.Fetcher,
        installer: install.Installer,
    ) -> None:
        self._request = request
        self._settings = request.settings
        self._recipe = recipe
        self._fetcher = fetcher
        self._installer = installer
        self._features = request.plan.features_for(recipe)
        self._deps = request.plan.closure_of(recipe)

        self._scratch = request.workdir / recipe.unique_name
        self._srcdir = self._scratch / "src"
        self._logdir = self._scratch / "logs"
        self._destdir = self._scratch / "image"
        self._step_count = 0

        self._variables = environment.template_variables(
            self._settings,
            recipe,
            self._deps,
            destdir=self._destdir,
            srcdir=self._srcdir,
        )

    @property
    def recipe(self) -> recipes.Recipe:
        return self._recipe

    @property
    def prefix(self) -> pathlib.Path:
        return self._installer.prefix_for(self._recipe)

    @property
    def source_dir(self) -> pathlib.Path:
        return self._srcdir

    @property
    def tests_enabled(self) -> bool:
        if self._recipe is not self._request.plan.target:
            return False
        if not self._recipe.test.commands:
            return False
        if self._request.run_tests is None:
            return self._recipe.test.default
        return self._request.run_tests

    def run(self) -> BuildResult:
        io = self._request.io
        if io is not None:
            io.write_line(f"<info>Building {self._recipe}</info>")
        logger.info(f"Building {self._recipe} in {self._scratch}")

        self._scratch.mkdir(parents=True, exist_ok=True)
        self._logdir.mkdir(exist_ok=True)

        self.prepare_source()
        env = self.get_build_env()
        self.configure(env)
        self.compile(env)

        report = None
        if self.tests_enabled:
            report = self.run_checks(env)

        self.stage_install(env)
        return self.install(report)

    def _check_cancelled(self) -> None:
        cancel = self._request.cancel
        if cancel is not None and cancel.is_set():
            raise errors.BuildCancelled(f"build of {self._recipe} cancelled")

    def prepare_source(self) -> None:
        self._check_cancelled()
        recipe = self._recipe
        archive = self._fetcher.fetch(recipe.name, recipe.source)
        try:
            sources.unpack(archive, self._srcdir)
        except (
            ValueError, OSError, tarfile.TarError, zipfile.BadZipFile
        ) as e:
            raise errors.FetchError(
                recipe.name, [(str(archive), f"cannot unpack: {e}")]
            ) from e

        if recipe.patches:
            with open(self._logdir / "patch.log", "ab") as log:
                patches.apply_patches(
                    self._srcdir,
                    recipe.patches,
                    variables=self._variables,
                    output=log,
                )

    def get_build_env(self) -> dict[str, str]:
        return environment.build_env(
            self._settings,
            self._recipe,
            self._features,
            self._deps,
            self._variables,
        )

    def get_configure_args(self) -> list[str]:
        return [
            environment.expand(arg, self._variables)
            for arg in self._recipe.get_configure_args(self._features)
        ]

    def configure(self, env: dict[str, str]) -> None:
        spec = self._recipe.build
        for command in spec.prepare:
            argv = [environment.expand(a, self._variables) for a in command]
            self._run_step("prepare", argv, env)

        if spec.configure:
            self._run_step(
                "configure",
                [spec.configure, *self.get_configure_args()],
                env,
            )

    def compile(self, env: dict[str, str]) -> None:
        make = env.get("MAKE", "make")
        targets = [
            environment.expand(t, self._variables)
            for t in self._recipe.build.make_targets
        ]
        self._run_step("make", [make, *targets], env)

    def run_checks(self, env: dict[str, str]) -> testing.TestReport:
        self._check_cancelled()
        logger.info(f"Running checks of {self._recipe}")
        return testing.run_checks(
            self._recipe,
            self._srcdir,
            env=env,
            variables=self._variables,
        )

    def stage_install(self, env: dict[str, str]) -> None:
        make = env.get("MAKE", "make")
        targets = [
            environment.expand(t, self._variables)
            for t in self._recipe.build.install_targets
        ]
        if targets:
            self._run_step(
                "install", [make, *targets, f"DESTDIR={self._destdir}"], env
            )

    def get_image_prefix(self) -> pathlib.Path:
        prefix = self.prefix
        return self._destdir / prefix.relative_to(prefix.anchor)

    def install(self, report: testing.TestReport | None) -> BuildResult:
        self._check_cancelled()
        recipe = self._recipe
        logs: list[pathlib.Path] = []
        if report is not None:
            logs.append(report.log_path)
            logs.extend(report.extra_logs)

        build_only = {
            d.canonical_name
            for d in recipe.active_dependencies(self._features)
            if d.is_build_only
        }
        receipt = {
            "name": recipe.name,
            "version": recipe.version,
            "features": dict(self._features),
            "dependencies": [
                d.name
                for d in self._deps
                if d.canonical_name not in build_only
            ],
            "build_dependencies": [
                d.name for d in self._deps if d.canonical_name in build_only
            ],
            "keg_only": recipe.keg_only,
            "installed_at": datetime.datetime.now(
                tz=datetime.timezone.utc
            ).isoformat(),
        }
        if report is not None:
            receipt["tests"] = {
                "passed": report.passed,
                "fail_count": report.fail_count,
            }

        prefix = self._installer.install(
            recipe,
            self.get_image_prefix(),
            logs=logs,
            receipt=receipt,
            replace=self._request.reinstall,
        )

        result = BuildResult(recipe=recipe, prefix=prefix, test_report=report)
        if report is not None:
            warning = report.to_warning(recipe, prefix / report.log_path.name)
            if warning is not None:
                logger.info(str(warning))
                result.warnings.append(warning)
        return result

    def _run_step(
        self, step: str, argv: list[str], env: dict[str, str]
    ) -> None:
        self._check_cancelled()
        self._step_count += 1
        log_path = self._logdir / f"{self._step_count:02d}.{step}.log"
        with open(log_path, "ab") as log:
            try:
                tools.cmd(*argv, cwd=self._srcdir, env=env, output=log)
            except subprocess.CalledProcessError as e:
                raise errors.BuildStepError(
                    step, argv, e.returncode, log_path
                ) from None
            except PermissionError:
                raise errors.BuildStepError(
                    step, argv, 126, log_path
                ) from None
            except FileNotFoundError:
                raise errors.BuildStepError(
                    step, argv, 127, log_path
                ) from None


def check_requirements(
    plan: recipes.BuildPlan, settings: config.Settings
) -> None:
    """Fail before any side effect if a required executable is missing."""
    for recipe in plan:
        features = plan.features_for(recipe)
        for req in recipe.active_requirements(features):
            variables = environment.template_variables(
                settings, recipe, plan.closure_of(recipe)
            )
            prepends = [
                environment.expand(p, variables)
                for p in recipe.get_path_prepends(features)
            ]
            found = environment.find_executable(
                settings, req.executable, prepends
            )
            if found is None:
                msg = req.message or f"{req.executable} is required"
                if req.when is not None:
                    msg += f" (needed for --{req.when})"
                raise errors.RequirementError(f"{recipe.name}: {msg}")
            logger.debug(f"{recipe.name}: found {req.executable} at {found}")


def run_plan(request: BuildRequest) -> list[BuildResult]:
    """Build every recipe of the plan that is not installed yet."""
    settings = request.settings
    plan = request.plan
    check_requirements(plan, settings)

    installer = install.Installer(settings)
    fetcher = request.fetcher
    if fetcher is None:
        fetcher = sources.Fetcher(settings.cache_dir, io=request.io)

    def build_one(recipe: recipes.Recipe) -> BuildResult:
        rebuild = request.reinstall and recipe is plan.target
        if installer.is_installed(recipe) and not rebuild:
            logger.info(f"{recipe} is already installed")
            return BuildResult(
                recipe=recipe,
                prefix=installer.prefix_for(recipe),
                skipped=True,
            )
        build = Build(request, recipe, fetcher=fetcher, installer=installer)
        return build.run()

    if request.workers <= 1:
        return [build_one(recipe) for recipe in plan]
    else:
        return _run_concurrently(request, build_one)


def _run_concurrently(
    request: BuildRequest,
    build_one: Callable[[recipes.Recipe], BuildResult],
) -> list[BuildResult]:
    plan = request.plan
    sorter = graphlib.TopologicalSorter(plan.graph())
    sorter.prepare()

    results: dict[str, BuildResult] = {}
    failure: BaseException | None = None
    pool = concurrent.futures.ThreadPoolExecutor(
        max_workers=request.workers, thread_name_prefix="kegbuild"
    )
    running: dict[concurrent.futures.Future[BuildResult], str] = {}

    try:
        while sorter.is_active():
            if failure is None:
                for key in sorter.get_ready():
                    future = pool.submit(build_one, plan.get(key))
                    running[future] = key
            if not running:
                break
            done, _ = concurrent.futures.wait(
                running, return_when=concurrent.futures.FIRST_COMPLETED
            )
            for future in done:
                key = running.pop(future)
                try:
                    results[key] = future.result()
                except BaseException as e:
                    if failure is None:
                        failure = e
                else:
                    sorter.done(key)
    except BaseException:
        if request.cancel is not None:
            request.cancel.set()
        tools.terminate_all()
        raise
    finally:
        pool.shutdown(wait=True)

    if failure is not None:
        raise failure

    return [results[recipe.canonical_name] for recipe in plan]
