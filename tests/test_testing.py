from __future__ import annotations

import json
import os
import pathlib

import pytest

from conftest import write_script

from kegbuild import errors
from kegbuild import recipes
from kegbuild.builder import install
from kegbuild.builder import testing


PATTERN = recipes.TestSpec().summary_pattern


@pytest.mark.parametrize(
    "text, expected",
    [
        ("  PASS 11\n  FAIL 0\n", 0),
        ("  PASS 9\n  FAIL 2\n", 2),
        ("fail 3\n", 3),
        ("FAIL 4\n...\nFAIL 1\n", 1),
        ("all good\n", None),
        ("", None),
        ("Summary: FAIL 0 somewhere in a line\n", None),
    ],
)
def test_parse_summary(text, expected):
    assert testing.parse_summary(text, PATTERN) == expected


def _recipe(commands, **test_fields):
    return recipes.parse_recipe(
        {
            "name": "octave",
            "version": "4.2.1",
            "source": {
                "url": "https://example.org/octave-4.2.1.tar.gz",
                "csum": "0" * 64,
            },
            "test": {"commands": commands, **test_fields},
        }
    )


def _run(recipe, src):
    return testing.run_checks(
        recipe, src, env=dict(os.environ), variables={"name": "octave"}
    )


def test_clean_run(tmp_path: pathlib.Path):
    recipe = _recipe([["sh", "-c", "echo '  PASS 10'; echo '  FAIL 0'"]])
    report = _run(recipe, tmp_path)

    assert report.passed
    assert report.fail_count == 0
    assert report.returncodes == (0,)
    assert report.to_warning(recipe) is None
    assert "PASS 10" in report.log_path.read_text()


def test_failures_give_a_warning(tmp_path: pathlib.Path):
    recipe = _recipe(
        [
            ["sh", "-c", "echo '  FAIL 2'; exit 2"],
            ["sh", "-c", "echo 'fntests' > fntests.log"],
        ],
        log="test/make-check.log",
        extra_logs=["fntests.log", "missing.log"],
    )
    report = _run(recipe, tmp_path)

    assert not report.passed
    assert report.fail_count == 2
    assert report.returncodes == (2, 0)
    assert report.log_path == tmp_path / "test" / "make-check.log"
    assert report.extra_logs == (tmp_path / "fntests.log",)

    warning = report.to_warning(recipe, pathlib.Path("/kegs/make-check.log"))
    assert isinstance(warning, errors.TestFailureWarning)
    assert warning.fail_count == 2
    assert str(warning) == (
        "Some tests of octave failed (FAIL 2). "
        "Details are given in /kegs/make-check.log."
    )


def test_missing_summary_is_a_failure(tmp_path: pathlib.Path):
    recipe = _recipe([["sh", "-c", "echo 'segfault'"]])
    report = _run(recipe, tmp_path)

    assert not report.passed
    assert report.fail_count is None
    assert "no test summary found" in str(report.to_warning(recipe))


def test_missing_test_tool_is_recorded(tmp_path: pathlib.Path):
    recipe = _recipe([["no-such-test-runner-kegbuild"]])
    report = _run(recipe, tmp_path)
    assert report.returncodes == (127,)
    assert not report.passed


def test_custom_summary_pattern(tmp_path: pathlib.Path):
    recipe = _recipe(
        [["sh", "-c", "echo '# FAIL:  0'"]],
        summary_pattern=r"^#\s*FAIL:\s*(\d+)",
    )
    assert _run(recipe, tmp_path).passed


class TestInstalledTests:
    @pytest.fixture
    def recipe(self):
        return recipes.parse_recipe(
            {
                "name": "octave",
                "version": "4.2.1",
                "source": {
                    "url": "https://example.org/octave-4.2.1.tar.gz",
                    "csum": "0" * 64,
                },
                "options": {"java": {}},
                "test": {
                    "installed": [
                        {"command": ["octave", "--eval", "1"]},
                        {
                            "command": ["octave", "--java"],
                            "when": "with-java",
                        },
                    ]
                },
            }
        )

    def _install(self, settings, recipe, script, features):
        prefix = settings.keg_path(recipe.name, recipe.version)
        (prefix / "bin").mkdir(parents=True)
        write_script(prefix / "bin" / "octave", script)
        (prefix / install.RECEIPT_NAME).write_text(
            json.dumps({"features": features})
        )
        return prefix

    def test_passing(self, settings, recipe):
        self._install(
            settings, recipe, "#!/bin/sh\nexit 0\n", {"java": True}
        )
        assert testing.run_installed_tests(settings, recipe) == 2

    def test_features_come_from_the_receipt(self, settings, recipe):
        self._install(
            settings,
            recipe,
            '#!/bin/sh\n[ "$1" = "--java" ] && exit 1\nexit 0\n',
            {"java": False},
        )
        assert testing.run_installed_tests(settings, recipe) == 1

    def test_failing(self, settings, recipe):
        self._install(
            settings, recipe, "#!/bin/sh\nexit 3\n", {"java": False}
        )
        with pytest.raises(errors.InstalledTestError) as excinfo:
            testing.run_installed_tests(settings, recipe)
        assert excinfo.value.exit_code == 7
        assert "exit code 3" in str(excinfo.value)

    def test_not_installed(self, settings, recipe):
        with pytest.raises(errors.InstalledTestError, match="not installed"):
            testing.run_installed_tests(settings, recipe)

    def test_corrupt_receipt(self, settings, recipe):
        prefix = self._install(
            settings, recipe, "#!/bin/sh\nexit 0\n", {"java": True}
        )
        (prefix / install.RECEIPT_NAME).write_text('{"features": ')
        with pytest.raises(errors.InstalledTestError, match="corrupt") as e:
            testing.run_installed_tests(settings, recipe)
        assert e.value.exit_code == 7
