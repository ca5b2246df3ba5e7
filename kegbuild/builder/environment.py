from __future__ import annotations
from typing import (
    Iterable,
    Mapping,
)

import os
import pathlib
import shutil

from kegbuild import config
from kegbuild import errors
from kegbuild import recipes
from kegbuild import tools


#: Per-dependency template variables and the keg subdirectory they name.
DEP_ASPECTS = {
    "opt": "",
    "bin": "bin",
    "lib": "lib",
    "include": "include",
    "share": "share",
}


def expand(text: str, variables: Mapping[str, str]) -> str:
    try:
        return tools.format_template(text, variables)
    except KeyError as e:
        raise errors.RecipeError(
            f"unknown template variable @@{{{e.args[0]}}} in {text!r}"
        ) from None
    except ValueError as e:
        raise errors.RecipeError(f"invalid template {text!r}: {e}") from None


def template_variables(
    settings: config.Settings,
    recipe: recipes.Recipe,
    deps: Iterable[recipes.Recipe],
    *,
    destdir: pathlib.Path | None = None,
    srcdir: pathlib.Path | None = None,
) -> dict[str, str]:
    variables = {
        "name": recipe.name,
        "version": recipe.version,
        "prefix": str(settings.keg_path(recipe.name, recipe.version)),
        "opt_prefix": str(settings.opt_path(recipe.name)),
        "root": str(settings.root),
        "jobs": str(settings.jobs),
    }
    if destdir is not None:
        variables["destdir"] = str(destdir)
    if srcdir is not None:
        variables["srcdir"] = str(srcdir)

    for dep in deps:
        opt = settings.opt_path(dep.name)
        for aspect, subdir in DEP_ASPECTS.items():
            path = str(opt / subdir) if subdir else str(opt)
            variables[f"{aspect}:{dep.name}"] = path
            variables[f"{aspect}:{dep.canonical_name}"] = path

    return variables


def _append_flags(
    env: dict[str, str], var: str, flags: list[str], sep: str = " "
) -> None:
    if not flags:
        return
    current = env.get(var)
    if current:
        flags = [current] + flags
    env[var] = sep.join(flags)


def search_path(
    settings: config.Settings,
    prepend: Iterable[str] = (),
    base: Mapping[str, str] | None = None,
) -> str:
    if base is None:
        base = os.environ
    parts = list(prepend)
    parts.extend(str(p) for p in settings.tool_paths)
    parts.append(base.get("PATH", os.defpath))
    return os.pathsep.join(parts)


def build_env(
    settings: config.Settings,
    recipe: recipes.Recipe,
    features: Mapping[str, bool],
    deps: Iterable[recipes.Recipe],
    variables: Mapping[str, str],
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Assemble the environment for the external build commands.

    Dependency kegs are made visible through their opt links: ``bin`` on
    PATH, ``include`` in CPPFLAGS, ``lib`` in LDFLAGS and the pkg-config
    directories in PKG_CONFIG_PATH.  Feature-gated path prepends and the
    configured tool paths come before everything else on PATH.
    """
    if base is None:
        base = os.environ
    env = dict(base)

    dep_bins = []
    cppflags = []
    ldflags = []
    pkgconfig = []
    for dep in deps:
        opt = settings.opt_path(dep.name)
        dep_bins.append(str(opt / "bin"))
        cppflags.append(f"-I{opt / 'include'}")
        ldflags.append(f"-L{opt / 'lib'}")
        pkgconfig.append(str(opt / "lib" / "pkgconfig"))
        pkgconfig.append(str(opt / "share" / "pkgconfig"))

    prepends = [
        expand(p, variables) for p in recipe.get_path_prepends(features)
    ]
    env["PATH"] = search_path(settings, prepends + dep_bins, base)
    _append_flags(env, "CPPFLAGS", cppflags)
    _append_flags(env, "LDFLAGS", ldflags)
    _append_flags(env, "PKG_CONFIG_PATH", pkgconfig, sep=os.pathsep)
    if settings.jobs > 1:
        env["MAKEFLAGS"] = f"-j{settings.jobs}"

    for var, value in recipe.build.env.items():
        env[var] = expand(value, variables)

    return env


def find_executable(
    settings: config.Settings,
    executable: str,
    prepend: Iterable[str] = (),
) -> str | None:
    if os.path.isabs(executable):
        if os.path.isfile(executable) and os.access(executable, os.X_OK):
            return executable
        return None
    return shutil.which(executable, path=search_path(settings, prepend))
