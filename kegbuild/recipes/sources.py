from __future__ import annotations
from typing import (
    TYPE_CHECKING,
    BinaryIO,
    Iterator,
)

import hashlib
import logging
import os
import pathlib
import shutil
import tarfile
import tempfile
import threading
import urllib.parse
import urllib.request
import zipfile

import requests

from cleo.ui import progress_bar

from kegbuild import cache
from kegbuild import errors

from . import base

if TYPE_CHECKING:
    from cleo.io import io as cleo_io


logger = logging.getLogger(__name__)

_locks_guard = threading.Lock()
_key_locks: dict[str, threading.Lock] = {}


def _lock_for(key: str) -> threading.Lock:
    with _locks_guard:
        lock = _key_locks.get(key)
        if lock is None:
            lock = _key_locks[key] = threading.Lock()
        return lock


class HashVerification:
    def __init__(self, algorithm: str, hash_value: str) -> None:
        self.algorithm = algorithm
        self._hash_value = hash_value.lower()

    def digest(self, path: pathlib.Path) -> str:
        hashfunc = hashlib.new(self.algorithm)
        with open(path, "rb") as f:
            while True:
                chunk = f.read(1024 * 1024)
                if not chunk:
                    break
                hashfunc.update(chunk)
        return hashfunc.hexdigest()

    def verify(self, path: pathlib.Path) -> None:
        actual = self.digest(path)
        if actual != self._hash_value:
            raise ValueError(
                f"{self.algorithm} mismatch: expected {self._hash_value}, "
                f"got {actual}"
            )


class Fetcher:
    """Downloads and verifies source archives.

    Verified archives live in a content-addressed cache, so a repeated
    fetch of the same checksum never touches the network.  The cache may
    be shared by concurrent builds: readers only ever see fully verified
    files, and each key has at most one writer at a time.
    """

    def __init__(
        self,
        cache_root: pathlib.Path,
        *,
        session: requests.Session | None = None,
        io: cleo_io.IO | None = None,
    ) -> None:
        self._cache_root = cache_root
        if session is None:
            session = requests.Session()
        self._session = session
        self._io = io

    def cached_path(self, source: base.Source) -> pathlib.Path:
        key = cache.distfile_key(source.csum_algo, source.csum)
        distfiles = cache.distfiles_dir(self._cache_root)
        return distfiles / key / source.filename

    def fetch(self, name: str, source: base.Source) -> pathlib.Path:
        verification = HashVerification(source.csum_algo, source.csum)
        destination = self.cached_path(source)

        with _lock_for(str(destination)):
            if destination.exists():
                try:
                    verification.verify(destination)
                except ValueError:
                    logger.warning(
                        f"Cached {destination.name} exists, but does not "
                        f"pass verification.  Downloading anew."
                    )
                    destination.unlink()
                else:
                    logger.info(f"Using cached {destination}")
                    return destination

            attempts: list[tuple[str, str]] = []
            for url in source.urls:
                try:
                    tmp = self._download(url, destination.parent.parent)
                except (requests.RequestException, OSError) as e:
                    logger.warning(f"Download of {url} failed: {e}")
                    attempts.append((url, str(e)))
                    continue

                try:
                    verification.verify(tmp)
                except ValueError as e:
                    tmp.unlink()
                    logger.warning(f"{url} failed verification: {e}")
                    attempts.append((url, str(e)))
                    continue

                destination.parent.mkdir(exist_ok=True)
                os.replace(tmp, destination)
                return destination

        raise errors.FetchError(name, attempts)

    def _download(self, url: str, tmpdir: pathlib.Path) -> pathlib.Path:
        fd, tmpname = tempfile.mkstemp(prefix=".partial-", dir=tmpdir)
        tmp = pathlib.Path(tmpname)
        try:
            with os.fdopen(fd, "wb") as f:
                parts = urllib.parse.urlparse(url)
                if parts.scheme == "file":
                    local = urllib.request.url2pathname(parts.path)
                    logger.info(f"Copying {local}")
                    with open(local, "rb") as src:
                        shutil.copyfileobj(src, f)
                else:
                    self._download_http(url, f)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

        return tmp

    def _download_http(self, url: str, f: BinaryIO) -> None:
        with self._session.get(url, stream=True) as req:
            req.raise_for_status()
            length = int(req.headers.get("content-length", 0))

            if self._io is not None:
                self._io.write_line(f"Downloading <info>{url}</>")
                progress = progress_bar.ProgressBar(self._io, max=length)
                progress.start(length)
            else:
                logger.info(f"Downloading {url}")
                progress = None

            try:
                for chunk in req.iter_content(chunk_size=4096):
                    if chunk:
                        if progress is not None:
                            progress.advance(len(chunk))
                        f.write(chunk)
            finally:
                if progress is not None:
                    progress.finish()
                    self._io.write_line("")


def unpack(
    archive: pathlib.Path,
    dest: pathlib.Path,
    *,
    strip_components: int = 1,
) -> None:
    if not dest.exists():
        dest.mkdir(parents=True)

    if tarfile.is_tarfile(archive):
        unpack_tar(archive, dest, strip_components=strip_components)
    elif zipfile.is_zipfile(archive):
        unpack_zip(archive, dest, strip_components=strip_components)
    else:
        raise ValueError(f"{archive.name} is not a supported archive")


def _strip(name: str, strip_components: int) -> pathlib.PurePosixPath | None:
    member_parts = pathlib.PurePosixPath(name).parts
    if len(member_parts) <= strip_components:
        return None
    return pathlib.PurePosixPath(*member_parts[strip_components:])


def _stripped_members(
    tf: tarfile.TarFile, strip_components: int
) -> Iterator[tarfile.TarInfo]:
    for member in tf.getmembers():
        if strip_components:
            path = _strip(member.name, strip_components)
            if path is None:
                continue
            member.name = str(path)
            if member.islnk():
                link = _strip(member.linkname, strip_components)
                if link is None:
                    continue
                member.linkname = str(link)
        yield member


def unpack_tar(
    archive: pathlib.Path,
    dest: pathlib.Path,
    *,
    strip_components: int,
) -> None:
    with tarfile.open(archive, "r:*") as tf:
        members = list(_stripped_members(tf, strip_components))
        tf.extractall(dest, members=members, filter="tar")


def unpack_zip(
    archive: pathlib.Path,
    dest: pathlib.Path,
    *,
    strip_components: int,
) -> None:
    with zipfile.ZipFile(archive) as zf:
        for member in zf.infolist():
            if strip_components:
                relpath = _strip(member.filename, strip_components)
                if relpath is None:
                    continue
            else:
                relpath = pathlib.PurePosixPath(member.filename)
            if relpath.is_absolute() or ".." in relpath.parts:
                raise ValueError(
                    f"{archive.name}: refusing to extract {member.filename}"
                )
            targetpath = dest / relpath
            if member.is_dir():
                targetpath.mkdir(parents=True, exist_ok=True)
            else:
                targetpath.parent.mkdir(parents=True, exist_ok=True)
                with open(targetpath, "wb") as df, zf.open(member) as sf:
                    shutil.copyfileobj(sf, df)
                mode = member.external_attr >> 16
                if mode & 0o111:
                    targetpath.chmod(targetpath.stat().st_mode | 0o111)
