from __future__ import annotations

import json
import os
import pathlib

import pytest

from kegbuild import errors
from kegbuild import recipes
from kegbuild.builder import install


def _recipe(name="gnuplot", version="5.2", **fields):
    data = {
        "name": name,
        "version": version,
        "source": {
            "url": f"https://example.org/{name}-{version}.tar.gz",
            "csum": "0" * 64,
        },
    }
    data.update(fields)
    return recipes.parse_recipe(data)


def _image(tmp_path: pathlib.Path, files: dict[str, str]) -> pathlib.Path:
    image = tmp_path / "image"
    for name, content in files.items():
        path = image / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    image.mkdir(exist_ok=True)
    return image


def _entries(root: pathlib.Path) -> set[str]:
    if not root.exists():
        return set()
    return {str(p.relative_to(root)) for p in root.rglob("*")}


FILES = {
    "bin/gnuplot": "#!/bin/sh\n",
    "share/gnuplot/5.2/gnuplot.gih": "help\n",
    "lib/libgnuplot.a": "archive\n",
}


def test_install_publishes_keg_and_links(settings, tmp_path):
    recipe = _recipe()
    log = tmp_path / "make-check.log"
    log.write_text("FAIL 0\n")

    prefix = install.Installer(settings).install(
        recipe,
        _image(tmp_path, FILES),
        logs=[log],
        receipt={"features": {}},
    )

    root = settings.root
    assert prefix == root / "Cellar" / "gnuplot" / "5.2"
    assert (prefix / "bin" / "gnuplot").read_text() == "#!/bin/sh\n"
    assert (prefix / "make-check.log").read_text() == "FAIL 0\n"
    assert install.read_receipt(prefix) == {"features": {}}

    opt = root / "opt" / "gnuplot"
    assert opt.is_symlink()
    assert opt.resolve() == prefix.resolve()

    link = root / "bin" / "gnuplot"
    assert link.is_symlink()
    assert pathlib.Path(os.readlink(link)) == prefix / "bin" / "gnuplot"
    assert (root / "share" / "gnuplot" / "5.2").is_dir()
    assert not (root / "share" / "gnuplot").is_symlink()
    assert (root / "lib" / "libgnuplot.a").is_symlink()

    leftovers = [p.name for p in prefix.parent.iterdir()]
    assert leftovers == ["5.2"]


def test_keg_only_gets_no_shared_links(settings, tmp_path):
    recipe = _recipe(keg_only="conflicts with gnuplot")
    prefix = install.Installer(settings).install(
        recipe, _image(tmp_path, FILES)
    )

    assert (prefix / "bin" / "gnuplot").exists()
    assert (settings.root / "opt" / "gnuplot").is_symlink()
    assert not (settings.root / "bin").exists()


def test_already_installed(settings, tmp_path):
    installer = install.Installer(settings)
    recipe = _recipe()
    installer.install(recipe, _image(tmp_path, FILES))
    assert installer.is_installed(recipe)

    with pytest.raises(errors.InstallError, match="already installed"):
        installer.install(recipe, _image(tmp_path, FILES))


def test_empty_image(settings, tmp_path):
    with pytest.raises(errors.InstallError, match="did not populate"):
        install.Installer(settings).install(_recipe(), tmp_path / "none")
    assert not (settings.root / "Cellar" / "gnuplot" / "5.2").exists()


def test_link_conflict_rolls_back(settings, tmp_path):
    installer = install.Installer(settings)
    shared_bin = settings.root / "bin"
    shared_bin.mkdir(parents=True)
    (shared_bin / "gnuplot").write_text("someone else's\n")
    before = _entries(settings.root)

    with pytest.raises(errors.InstallError, match="already exists"):
        installer.install(_recipe(), _image(tmp_path, FILES))

    created = _entries(settings.root) - before
    assert created <= {"Cellar", "Cellar/gnuplot", "opt"}
    assert not (settings.root / "opt" / "gnuplot").is_symlink()
    assert not (settings.root / "lib").exists()
    assert (shared_bin / "gnuplot").read_text() == "someone else's\n"


def test_reinstall_replaces_keg(settings, tmp_path):
    installer = install.Installer(settings)
    recipe = _recipe()
    installer.install(recipe, _image(tmp_path / "old", FILES))

    new_files = {"bin/gnuplot": "#!/bin/sh\n# new\n"}
    prefix = installer.install(
        recipe, _image(tmp_path / "new", new_files), replace=True
    )

    assert (prefix / "bin" / "gnuplot").read_text() == "#!/bin/sh\n# new\n"
    assert not (prefix / "lib").exists()
    assert not (settings.root / "lib" / "libgnuplot.a").is_symlink()
    assert (settings.root / "bin" / "gnuplot").is_symlink()
    assert [p.name for p in prefix.parent.iterdir()] == ["5.2"]


def test_failed_reinstall_keeps_old_keg(settings, tmp_path):
    installer = install.Installer(settings)
    recipe = _recipe()
    prefix = installer.install(recipe, _image(tmp_path / "old", FILES))
    (settings.root / "bin" / "gnuplot-x11").write_text("in the way\n")

    new_files = {
        "bin/gnuplot": "#!/bin/sh\n# new\n",
        "bin/gnuplot-x11": "#!/bin/sh\n",
    }
    with pytest.raises(errors.InstallError):
        installer.install(
            recipe, _image(tmp_path / "new", new_files), replace=True
        )

    assert (prefix / "bin" / "gnuplot").read_text() == "#!/bin/sh\n"
    assert (prefix / "lib" / "libgnuplot.a").exists()
    assert (settings.root / "bin" / "gnuplot").is_symlink()
    assert (settings.root / "lib" / "libgnuplot.a").is_symlink()
    assert (settings.root / "opt" / "gnuplot").resolve() == prefix.resolve()
    assert [p.name for p in prefix.parent.iterdir()] == ["5.2"]


def test_receipt_round_trip(settings, tmp_path):
    receipt = {"features": {"java": False}, "dependencies": ["openblas"]}
    prefix = install.Installer(settings).install(
        _recipe(), _image(tmp_path, FILES), receipt=receipt
    )
    data = json.loads((prefix / install.RECEIPT_NAME).read_text())
    assert data == receipt


def test_corrupt_receipt(tmp_path):
    (tmp_path / install.RECEIPT_NAME).write_text("not json")
    with pytest.raises(errors.InstallError, match="corrupt"):
        install.read_receipt(tmp_path)
    assert install.read_receipt(tmp_path / "missing") is None
