"""
Shared fixtures: throwaway install roots, tarballs and fake build tools.
"""

from __future__ import annotations

import hashlib
import io
import logging
import pathlib
import tarfile

import pytest
import requests

from kegbuild import config
from kegbuild import recipes


CONFIGURE = r"""#!/bin/sh
echo "$@" > configure.args
for arg in "$@"; do
    case "$arg" in
        --prefix=*) echo "${arg#--prefix=}" > prefix.txt ;;
    esac
done
"""

# Stands in for make: builds nothing, runs a fake test suite on "check"
# and installs one executable named after the recipe on "install".
FAKE_MAKE = r"""#!/bin/sh
echo "fake make $*"
if [ -n "$FAKE_MAKE_FAIL" ]; then
    echo "error: $FAKE_MAKE_FAIL" >&2
    exit 2
fi
destdir=""
for arg in "$@"; do
    case "$arg" in
        DESTDIR=*) destdir="${arg#DESTDIR=}" ;;
    esac
done
for arg in "$@"; do
    case "$arg" in
        check)
            echo "fntests ran" > fntests.log
            if [ -z "$FAKE_NO_SUMMARY" ]; then
                echo "  PASS     10"
                echo "  FAIL      ${FAKE_FAILS:-0}"
            fi
            ;;
        install)
            prefix=$(cat prefix.txt)
            name=$(basename "$(dirname "$prefix")")
            mkdir -p "$destdir$prefix/bin" "$destdir$prefix/share/doc"
            printf '#!/bin/sh\necho hello from %s\n' "$name" \
                > "$destdir$prefix/bin/$name"
            chmod +x "$destdir$prefix/bin/$name"
            echo "$name" > "$destdir$prefix/share/doc/$name.txt"
            ;;
    esac
done
touch built
"""


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def write_script(path: pathlib.Path, text: str) -> pathlib.Path:
    path.write_text(text)
    path.chmod(0o755)
    return path


def write_tarball(
    path: pathlib.Path,
    topdir: str,
    files: dict[str, tuple[str, int]],
) -> bytes:
    with tarfile.open(path, "w:gz") as tf:
        info = tarfile.TarInfo(topdir)
        info.type = tarfile.DIRTYPE
        info.mode = 0o755
        tf.addfile(info)
        for name, (content, mode) in files.items():
            data = content.encode()
            info = tarfile.TarInfo(f"{topdir}/{name}")
            info.size = len(data)
            info.mode = mode
            tf.addfile(info, io.BytesIO(data))
    return path.read_bytes()


class FakeResponse:
    def __init__(self, content: bytes = b"", status: int = 200) -> None:
        self._content = content
        self.status_code = status
        self.headers = {"content-length": str(len(content))}

    def __enter__(self) -> FakeResponse:
        return self

    def __exit__(self, *exc: object) -> None:
        pass

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error")

    def iter_content(self, chunk_size: int = 1):
        for i in range(0, len(self._content), chunk_size):
            yield self._content[i : i + chunk_size]


class FakeSession:
    """Serves canned responses; unknown URLs fail to connect."""

    def __init__(self, responses: dict[str, FakeResponse] | None = None):
        self.responses = responses or {}
        self.calls: list[str] = []

    def get(self, url: str, stream: bool = False) -> FakeResponse:
        self.calls.append(url)
        response = self.responses.get(url)
        if response is None:
            raise requests.ConnectionError(f"cannot connect to {url}")
        return response


@pytest.fixture(autouse=True)
def _reset_kegbuild_logger():
    yield
    logger = logging.getLogger("kegbuild")
    logger.handlers = []
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def tools_dir(tmp_path: pathlib.Path) -> pathlib.Path:
    tools = tmp_path / "tools"
    tools.mkdir()
    write_script(tools / "make", FAKE_MAKE)
    return tools


@pytest.fixture
def settings(tmp_path: pathlib.Path, tools_dir: pathlib.Path):
    return config.Settings(
        root=tmp_path / "root",
        cache_dir=tmp_path / "cache",
        registry=(tmp_path / "recipes",),
        tool_paths=(tools_dir,),
        jobs=1,
    )


@pytest.fixture
def make_source(tmp_path: pathlib.Path):
    """Build a source tarball and return its ``[source]`` table."""
    distdir = tmp_path / "dist"
    distdir.mkdir()

    def factory(
        name: str,
        version: str = "1.0",
        files: dict[str, tuple[str, int]] | None = None,
    ) -> dict[str, str]:
        if files is None:
            files = {
                "configure": (CONFIGURE, 0o755),
                "README": ("hello world\n", 0o644),
            }
        archive = distdir / f"{name}-{version}.tar.gz"
        data = write_tarball(archive, f"{name}-{version}", files)
        return {"url": archive.as_uri(), "csum": sha256(data)}

    return factory


@pytest.fixture
def make_recipe(make_source):
    """Parse a recipe with a working source tarball."""

    def factory(name: str, version: str = "1.0", **fields) -> recipes.Recipe:
        data = {
            "name": name,
            "version": version,
            "source": make_source(name, version),
        }
        data.update(fields)
        return recipes.parse_recipe(data)

    return factory
