from __future__ import annotations
from typing import (
    Any,
    Iterable,
    Mapping,
)

import json
import logging
import os
import pathlib
import shutil
import tempfile
import threading

from kegbuild import config
from kegbuild import errors
from kegbuild import recipes


logger = logging.getLogger(__name__)

RECEIPT_NAME = "INSTALL_RECEIPT.json"

#: Keg subdirectories linked into the shared tree for non-keg-only recipes
LINKED_DIRS = ("bin", "lib", "include", "share")


def read_receipt(prefix: pathlib.Path) -> dict[str, Any] | None:
    path = prefix / RECEIPT_NAME
    if not path.exists():
        return None
    with open(path, "r") as f:
        try:
            return json.load(f)  # type: ignore[no-any-return]
        except ValueError as e:
            raise errors.InstallError(f"{path} is corrupt: {e}") from e


class _Transaction:
    """Filesystem changes made while publishing a keg, for rollback."""

    def __init__(self) -> None:
        self.links: list[pathlib.Path] = []
        self.dirs: list[pathlib.Path] = []
        self.removed_links: list[tuple[pathlib.Path, str]] = []
        self.opt_link: pathlib.Path | None = None
        self.opt_previous: str | None = None

    def rollback(self) -> None:
        for link in reversed(self.links):
            if link.is_symlink():
                link.unlink()
        for d in reversed(self.dirs):
            try:
                d.rmdir()
            except OSError:
                pass
        for link, target in self.removed_links:
            if not link.exists() and not link.is_symlink():
                link.symlink_to(target)
        if self.opt_link is not None:
            if self.opt_link.is_symlink():
                self.opt_link.unlink()
            if self.opt_previous is not None:
                self.opt_link.symlink_to(self.opt_previous)


class Installer:
    def __init__(self, settings: config.Settings) -> None:
        self._settings = settings
        # Held while a keg is published into the shared link tree
        self._lock = threading.Lock()

    def prefix_for(self, recipe: recipes.Recipe) -> pathlib.Path:
        return self._settings.keg_path(recipe.name, recipe.version)

    def is_installed(self, recipe: recipes.Recipe) -> bool:
        return self.prefix_for(recipe).is_dir()

    def install(
        self,
        recipe: recipes.Recipe,
        image: pathlib.Path,
        *,
        logs: Iterable[pathlib.Path] = (),
        receipt: Mapping[str, Any] | None = None,
        replace: bool = False,
    ) -> pathlib.Path:
        """Publish the staged *image* as the keg of *recipe*.

        The keg appears all at once: files are copied into a hidden staging
        directory next to the final prefix, which is then renamed into
        place.  On any failure every change is undone, so a failed install
        leaves no trace and a failed reinstall leaves the old keg intact.
        """
        with self._lock:
            return self._install(
                recipe, image, logs=logs, receipt=receipt, replace=replace
            )

    def _install(
        self,
        recipe: recipes.Recipe,
        image: pathlib.Path,
        *,
        logs: Iterable[pathlib.Path],
        receipt: Mapping[str, Any] | None,
        replace: bool,
    ) -> pathlib.Path:
        prefix = self.prefix_for(recipe)
        if prefix.exists() and not replace:
            raise errors.InstallError(
                f"{recipe} is already installed in {prefix}"
            )
        if not image.is_dir():
            raise errors.InstallError(
                f"the install step of {recipe} did not populate {image}"
            )

        keg_dir = prefix.parent
        keg_dir.mkdir(parents=True, exist_ok=True)
        partial = f".{recipe.version}.partial-"
        staging = pathlib.Path(tempfile.mkdtemp(prefix=partial, dir=keg_dir))
        old: pathlib.Path | None = None
        published = False
        txn = _Transaction()

        try:
            logger.info(f"Copying {image} to {staging}")
            shutil.copytree(
                image, staging, symlinks=True, dirs_exist_ok=True
            )
            for log in logs:
                logger.info(f"Keeping {log.name}")
                shutil.copy2(log, staging / log.name)
            if receipt is not None:
                with open(staging / RECEIPT_NAME, "w") as f:
                    json.dump(receipt, f, indent=2, sort_keys=True)

            if prefix.exists():
                txn.removed_links = self._unlink_shared(prefix)
                old = keg_dir / f".{recipe.version}.old-{staging.name}"
                os.rename(prefix, old)
            os.rename(staging, prefix)
            published = True

            self._link_opt(recipe, prefix, txn)
            if recipe.keg_only:
                reason = recipe.keg_only_reason or "keg-only"
                logger.info(
                    f"{recipe.name} is keg-only ({reason}), not linking"
                )
            else:
                for subdir in LINKED_DIRS:
                    self._link_tree(
                        prefix / subdir, self._settings.root / subdir, txn
                    )
        except BaseException as e:
            logger.error(f"Installing {recipe} failed, rolling back")
            txn.rollback()
            if published:
                shutil.rmtree(prefix, ignore_errors=True)
            if old is not None:
                os.rename(old, prefix)
            shutil.rmtree(staging, ignore_errors=True)
            if isinstance(e, OSError):
                raise errors.InstallError(
                    f"could not install {recipe}: {e}"
                ) from e
            raise

        if old is not None:
            shutil.rmtree(old, ignore_errors=True)

        logger.info(f"Installed {recipe} to {prefix}")
        return prefix

    def _link_opt(
        self,
        recipe: recipes.Recipe,
        prefix: pathlib.Path,
        txn: _Transaction,
    ) -> None:
        opt = self._settings.opt_path(recipe.name)
        opt.parent.mkdir(parents=True, exist_ok=True)
        if opt.is_symlink():
            txn.opt_previous = os.readlink(opt)
        elif opt.exists():
            raise errors.InstallError(f"{opt} exists and is not a symlink")

        tmp = opt.with_name(f".{opt.name}.tmp")
        if tmp.is_symlink():
            tmp.unlink()
        tmp.symlink_to(prefix)
        txn.opt_link = opt
        os.replace(tmp, opt)

    def _link_tree(
        self,
        src: pathlib.Path,
        dest: pathlib.Path,
        txn: _Transaction,
    ) -> None:
        if not src.is_dir() or src.is_symlink():
            return
        if not dest.exists():
            dest.mkdir(parents=True)
            txn.dirs.append(dest)
        for entry in sorted(src.iterdir()):
            link = dest / entry.name
            if entry.is_dir() and not entry.is_symlink():
                if link.is_symlink() or (link.exists() and not link.is_dir()):
                    raise errors.InstallError(
                        f"cannot link {entry}: {link} is in the way"
                    )
                self._link_tree(entry, link, txn)
            elif link.is_symlink() or link.exists():
                if link.is_symlink() and os.readlink(link) == str(entry):
                    continue
                raise errors.InstallError(
                    f"cannot link {entry}: {link} already exists"
                )
            else:
                link.symlink_to(entry)
                txn.links.append(link)

    def _unlink_shared(
        self, prefix: pathlib.Path
    ) -> list[tuple[pathlib.Path, str]]:
        removed = []
        for subdir in LINKED_DIRS:
            shared = self._settings.root / subdir
            if not shared.is_dir():
                continue
            for dirpath, dirnames, filenames in os.walk(shared):
                for name in dirnames + filenames:
                    path = pathlib.Path(dirpath) / name
                    if not path.is_symlink():
                        continue
                    target = os.readlink(path)
                    if pathlib.Path(target).is_relative_to(prefix):
                        path.unlink()
                        removed.append((path, target))
        return removed
