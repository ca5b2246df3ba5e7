from __future__ import annotations
from typing import (
    Any,
    Mapping,
)

import dataclasses
import os
import pathlib

import tomli

from . import errors


@dataclasses.dataclass(frozen=True, kw_only=True)
class Settings:
    #: Root of the installation tree (holds Cellar/, opt/, bin/, ...)
    root: pathlib.Path
    #: Root of the content-addressed download cache
    cache_dir: pathlib.Path
    #: Recipe directories, in declaration order
    registry: tuple[pathlib.Path, ...] = ()
    #: Extra directories searched for external build tools
    tool_paths: tuple[pathlib.Path, ...] = ()
    #: Default build parallelism
    jobs: int = 1

    @property
    def cellar(self) -> pathlib.Path:
        return self.root / "Cellar"

    @property
    def opt_root(self) -> pathlib.Path:
        return self.root / "opt"

    def keg_path(self, name: str, version: str) -> pathlib.Path:
        return self.cellar / name / version

    def opt_path(self, name: str) -> pathlib.Path:
        return self.opt_root / name


def _default_root(env: Mapping[str, str]) -> pathlib.Path:
    home = pathlib.Path(env.get("HOME", pathlib.Path.home()))
    return home / ".local" / "kegbuild"


def _default_cache(env: Mapping[str, str]) -> pathlib.Path:
    cachehome = env.get("XDG_CACHE_HOME")
    if cachehome:
        return pathlib.Path(cachehome) / "kegbuild"
    home = pathlib.Path(env.get("HOME", pathlib.Path.home()))
    return home / ".cache" / "kegbuild"


def config_file(env: Mapping[str, str]) -> pathlib.Path:
    explicit = env.get("KEGBUILD_CONFIG")
    if explicit:
        return pathlib.Path(explicit)
    confhome = env.get("XDG_CONFIG_HOME")
    if confhome:
        base = pathlib.Path(confhome)
    else:
        home = pathlib.Path(env.get("HOME", pathlib.Path.home()))
        base = home / ".config"
    return base / "kegbuild" / "config.toml"


def _path_list(value: Any, origin: str) -> tuple[pathlib.Path, ...]:
    if isinstance(value, str):
        items = [p for p in value.split(os.pathsep) if p]
    elif isinstance(value, list) and all(isinstance(v, str) for v in value):
        items = value
    else:
        raise errors.ConfigError(
            f"{origin}: expected a list of paths, got {value!r}"
        )
    return tuple(pathlib.Path(p).expanduser() for p in items)


def parse_jobs(value: Any, origin: str) -> int:
    try:
        jobs = int(value)
    except (TypeError, ValueError):
        raise errors.ConfigError(
            f"{origin}: expected an integer, got {value!r}"
        ) from None
    if jobs < 0:
        raise errors.ConfigError(f"{origin}: must not be negative")
    if jobs == 0:
        jobs = os.cpu_count() or 1
    return jobs


def read_config_file(path: pathlib.Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, "rb") as f:
            return tomli.load(f)
    except tomli.TOMLDecodeError as e:
        raise errors.ConfigError(f"{path}: {e}") from e


def load(
    env: Mapping[str, str] | None = None,
    **overrides: Any,
) -> Settings:
    """Resolve settings from defaults, the config file and the environment.

    Keyword *overrides* (e.g. from command line options) take precedence
    over everything else.  ``None`` values are ignored.
    """
    if env is None:
        env = os.environ

    path = config_file(env)
    data = read_config_file(path)
    unknown = set(data) - {f.name for f in dataclasses.fields(Settings)}
    if unknown:
        raise errors.ConfigError(
            f"{path}: unknown settings: {', '.join(sorted(unknown))}"
        )

    root = pathlib.Path(data.get("root", _default_root(env)))
    cache_dir = pathlib.Path(data.get("cache_dir", _default_cache(env)))
    registry = _path_list(data.get("registry", []), str(path))
    tool_paths = _path_list(data.get("tool_paths", []), str(path))
    jobs = parse_jobs(data.get("jobs", 1), str(path))

    if env.get("KEGBUILD_ROOT"):
        root = pathlib.Path(env["KEGBUILD_ROOT"])
    if env.get("KEGBUILD_CACHE"):
        cache_dir = pathlib.Path(env["KEGBUILD_CACHE"])
    if env.get("KEGBUILD_REGISTRY"):
        registry = _path_list(env["KEGBUILD_REGISTRY"], "KEGBUILD_REGISTRY")
    if env.get("KEGBUILD_TOOL_PATH"):
        tool_paths = _path_list(
            env["KEGBUILD_TOOL_PATH"], "KEGBUILD_TOOL_PATH"
        )
    if env.get("KEGBUILD_JOBS"):
        jobs = parse_jobs(env["KEGBUILD_JOBS"], "KEGBUILD_JOBS")

    settings = Settings(
        root=root.expanduser(),
        cache_dir=cache_dir.expanduser(),
        registry=registry,
        tool_paths=tool_paths,
        jobs=jobs,
    )

    overrides = {k: v for k, v in overrides.items() if v is not None}
    if "jobs" in overrides:
        overrides["jobs"] = parse_jobs(overrides["jobs"], "--jobs")
    if overrides:
        settings = dataclasses.replace(settings, **overrides)

    return settings
