import pathlib


def cachedir(root: pathlib.Path) -> pathlib.Path:
    root.mkdir(parents=True, exist_ok=True)

    return root


def distfiles_dir(root: pathlib.Path) -> pathlib.Path:
    distfiles = cachedir(root) / "distfiles"
    distfiles.mkdir(exist_ok=True)
    return distfiles


def distfile_key(algorithm: str, digest: str) -> str:
    return f"{algorithm}-{digest.lower()}"
