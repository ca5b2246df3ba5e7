from __future__ import annotations

import os
import pathlib

import pytest

from kegbuild import config
from kegbuild import errors


@pytest.fixture
def env(tmp_path: pathlib.Path) -> dict[str, str]:
    return {
        "HOME": str(tmp_path / "home"),
        "XDG_CONFIG_HOME": str(tmp_path / "config"),
    }


def _write_config(env, text):
    path = pathlib.Path(env["XDG_CONFIG_HOME"]) / "kegbuild" / "config.toml"
    path.parent.mkdir(parents=True)
    path.write_text(text)
    return path


def test_defaults(env, tmp_path):
    settings = config.load(env)

    home = tmp_path / "home"
    assert settings.root == home / ".local" / "kegbuild"
    assert settings.cache_dir == home / ".cache" / "kegbuild"
    assert settings.registry == ()
    assert settings.jobs == 1
    assert settings.cellar == settings.root / "Cellar"
    assert settings.keg_path("octave", "4.2.1") == (
        settings.root / "Cellar" / "octave" / "4.2.1"
    )
    assert settings.opt_path("octave") == settings.root / "opt" / "octave"


def test_xdg_cache_home(env, tmp_path):
    env["XDG_CACHE_HOME"] = str(tmp_path / "xdg-cache")
    assert config.load(env).cache_dir == tmp_path / "xdg-cache" / "kegbuild"


def test_config_file(env, tmp_path):
    _write_config(
        env,
        f"""
root = "{tmp_path / 'kegs'}"
registry = ["{tmp_path / 'recipes'}", "{tmp_path / 'more'}"]
jobs = 4
""",
    )
    settings = config.load(env)

    assert settings.root == tmp_path / "kegs"
    assert settings.registry == (tmp_path / "recipes", tmp_path / "more")
    assert settings.jobs == 4


def test_environment_beats_config_file(env, tmp_path):
    _write_config(env, f'root = "{tmp_path / "from-file"}"\njobs = 2\n')
    env.update(
        {
            "KEGBUILD_ROOT": str(tmp_path / "from-env"),
            "KEGBUILD_JOBS": "3",
            "KEGBUILD_REGISTRY": os.pathsep.join(
                [str(tmp_path / "a"), str(tmp_path / "b")]
            ),
            "KEGBUILD_TOOL_PATH": str(tmp_path / "tools"),
            "KEGBUILD_CACHE": str(tmp_path / "cache"),
        }
    )
    settings = config.load(env)

    assert settings.root == tmp_path / "from-env"
    assert settings.jobs == 3
    assert settings.registry == (tmp_path / "a", tmp_path / "b")
    assert settings.tool_paths == (tmp_path / "tools",)
    assert settings.cache_dir == tmp_path / "cache"


def test_overrides_beat_everything(env, tmp_path):
    env["KEGBUILD_JOBS"] = "3"
    settings = config.load(env, jobs="5", root=None)
    assert settings.jobs == 5
    assert settings.root == tmp_path / "home" / ".local" / "kegbuild"


def test_explicit_config_path(env, tmp_path):
    path = tmp_path / "elsewhere.toml"
    path.write_text("jobs = 6\n")
    env["KEGBUILD_CONFIG"] = str(path)
    assert config.load(env).jobs == 6


def test_zero_jobs_means_all_cpus(env):
    env["KEGBUILD_JOBS"] = "0"
    assert config.load(env).jobs == (os.cpu_count() or 1)


@pytest.mark.parametrize("value", ["many", "-1"])
def test_invalid_jobs(env, value):
    env["KEGBUILD_JOBS"] = value
    with pytest.raises(errors.ConfigError, match="KEGBUILD_JOBS"):
        config.load(env)


def test_unknown_setting(env):
    _write_config(env, "colour = 'blue'\n")
    with pytest.raises(errors.ConfigError, match="unknown settings: colour"):
        config.load(env)


def test_broken_config_file(env):
    path = _write_config(env, "jobs = \n")
    with pytest.raises(errors.ConfigError) as excinfo:
        config.load(env)
    assert str(path) in str(excinfo.value)
    assert excinfo.value.exit_code == 2


def test_registry_must_be_paths(env):
    _write_config(env, "registry = 3\n")
    with pytest.raises(errors.ConfigError, match="list of paths"):
        config.load(env)
