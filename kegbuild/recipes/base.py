from __future__ import annotations
from typing import (
    Any,
    Iterable,
    Literal,
    Mapping,
)

import dataclasses
import enum
import hashlib
import pathlib
import re
import types
import urllib.parse

import packaging.utils
import tomli

from poetry.core.constraints import version as poetry_constr

from kegbuild import errors


canonicalize_name = packaging.utils.canonicalize_name

PatchKind = Literal["replace", "regex", "append", "diff"]

DEFAULT_SUMMARY_PATTERN = r"^\s*FAIL\s*(\d+)"


class DependencyKind(enum.Enum):
    BUILD = "build"
    RUNTIME = "runtime"
    OPTIONAL = "optional"


@dataclasses.dataclass(frozen=True)
class Condition:
    """A ``with-<feature>`` or ``without-<feature>`` predicate."""

    feature: str
    enabled: bool

    @classmethod
    def parse(cls, text: str) -> Condition:
        if text.startswith("with-"):
            return cls(text[len("with-") :], True)
        elif text.startswith("without-"):
            return cls(text[len("without-") :], False)
        else:
            raise ValueError(
                f"invalid condition {text!r}: expected "
                f"'with-<feature>' or 'without-<feature>'"
            )

    def holds(self, features: Mapping[str, bool]) -> bool:
        return features.get(self.feature, False) is self.enabled

    def __str__(self) -> str:
        prefix = "with" if self.enabled else "without"
        return f"{prefix}-{self.feature}"


@dataclasses.dataclass(frozen=True, kw_only=True)
class Dependency:
    name: str
    kind: DependencyKind = DependencyKind.RUNTIME
    #: Option that enables an optional dependency
    feature: str | None = None
    #: Version constraint, e.g. ">=1.8"
    constraint: str | None = None

    @property
    def canonical_name(self) -> packaging.utils.NormalizedName:
        return canonicalize_name(self.name)

    @property
    def is_build_only(self) -> bool:
        return self.kind is DependencyKind.BUILD

    def is_active(self, features: Mapping[str, bool]) -> bool:
        if self.kind is DependencyKind.OPTIONAL:
            assert self.feature is not None
            return features.get(self.feature, False)
        return True

    def allows(self, version: str) -> bool:
        if not self.constraint:
            return True
        constraint = poetry_constr.parse_constraint(self.constraint)
        return constraint.allows(poetry_constr.Version.parse(version))


@dataclasses.dataclass(frozen=True, kw_only=True)
class Option:
    name: str
    description: str = ""
    default: bool = True


@dataclasses.dataclass(frozen=True, kw_only=True)
class Requirement:
    executable: str
    when: Condition | None = None
    message: str = ""


@dataclasses.dataclass(frozen=True, kw_only=True)
class Source:
    url: str
    csum: str
    csum_algo: str = "sha256"
    mirrors: tuple[str, ...] = ()

    @property
    def urls(self) -> tuple[str, ...]:
        return (self.url,) + self.mirrors

    @property
    def filename(self) -> str:
        path = urllib.parse.urlparse(self.url).path
        return path.rstrip("/").rpartition("/")[2]


@dataclasses.dataclass(frozen=True, kw_only=True)
class PatchOp:
    kind: PatchKind
    #: File to patch, or the diff file for ``kind == "diff"``
    path: pathlib.PurePath
    #: Literal text or regular expression to look for
    match: str | None = None
    #: Replacement text, or the text to append
    replacement: str | None = None

    def describe(self) -> str:
        if self.kind == "diff":
            return f"diff {self.path.name}"
        elif self.kind == "append":
            return f"append to {self.path}"
        else:
            return f"{self.kind} {self.match!r} in {self.path}"


@dataclasses.dataclass(frozen=True, kw_only=True)
class ConditionalArgs:
    when: Condition
    args: tuple[str, ...]


@dataclasses.dataclass(frozen=True, kw_only=True)
class PathPrepend:
    path: str
    when: Condition | None = None


@dataclasses.dataclass(frozen=True, kw_only=True)
class BuildSpec:
    prepare: tuple[tuple[str, ...], ...] = ()
    #: Configure script, relative to the source tree; empty to skip
    configure: str = "./configure"
    configure_args: tuple[str, ...] = ("--prefix=@@prefix",)
    conditional_args: tuple[ConditionalArgs, ...] = ()
    make_targets: tuple[str, ...] = ()
    install_targets: tuple[str, ...] = ("install",)
    env: Mapping[str, str] = dataclasses.field(
        default_factory=lambda: types.MappingProxyType({})
    )
    path_prepend: tuple[PathPrepend, ...] = ()


@dataclasses.dataclass(frozen=True, kw_only=True)
class InstalledTest:
    command: tuple[str, ...]
    when: Condition | None = None


@dataclasses.dataclass(frozen=True, kw_only=True)
class TestSpec:
    __test__ = False

    #: Whether checks run when the request does not say
    default: bool = True
    commands: tuple[tuple[str, ...], ...] = ()
    #: Combined check output, relative to the source tree
    log: str = "make-check.log"
    extra_logs: tuple[str, ...] = ()
    summary_pattern: str = DEFAULT_SUMMARY_PATTERN
    installed: tuple[InstalledTest, ...] = ()


@dataclasses.dataclass(frozen=True, kw_only=True)
class Recipe:
    name: str
    version: str
    source: Source
    description: str = ""
    homepage: str = ""
    dependencies: tuple[Dependency, ...] = ()
    options: Mapping[str, Option] = dataclasses.field(
        default_factory=lambda: types.MappingProxyType({})
    )
    requirements: tuple[Requirement, ...] = ()
    patches: tuple[PatchOp, ...] = ()
    build: BuildSpec = BuildSpec()
    test: TestSpec = TestSpec()
    keg_only: bool = False
    keg_only_reason: str | None = None
    #: File the recipe was loaded from
    path: pathlib.Path | None = dataclasses.field(default=None, compare=False)

    def __str__(self) -> str:
        return f"{self.name} {self.version}"

    @property
    def canonical_name(self) -> packaging.utils.NormalizedName:
        return canonicalize_name(self.name)

    @property
    def unique_name(self) -> str:
        return f"{self.name}-{self.version}"

    def default_features(self) -> dict[str, bool]:
        return {name: opt.default for name, opt in self.options.items()}

    def resolve_features(
        self,
        with_: Iterable[str] = (),
        without: Iterable[str] = (),
    ) -> Mapping[str, bool]:
        with_ = set(with_)
        without = set(without)
        for name in sorted(with_ | without):
            if name not in self.options:
                raise errors.UnknownOptionError(self.name, name)
        both = with_ & without
        if both:
            raise errors.RecipeError(
                f"{self.name}: both --with and --without given for "
                f"{', '.join(sorted(both))}"
            )

        features = self.default_features()
        features.update(dict.fromkeys(with_, True))
        features.update(dict.fromkeys(without, False))
        return types.MappingProxyType(features)

    def active_dependencies(
        self, features: Mapping[str, bool]
    ) -> tuple[Dependency, ...]:
        return tuple(d for d in self.dependencies if d.is_active(features))

    def active_requirements(
        self, features: Mapping[str, bool]
    ) -> tuple[Requirement, ...]:
        return tuple(
            r
            for r in self.requirements
            if r.when is None or r.when.holds(features)
        )

    def get_configure_args(self, features: Mapping[str, bool]) -> list[str]:
        args = list(self.build.configure_args)
        for cond in self.build.conditional_args:
            if cond.when.holds(features):
                args.extend(cond.args)
        return args

    def get_path_prepends(self, features: Mapping[str, bool]) -> list[str]:
        return [
            p.path
            for p in self.build.path_prepend
            if p.when is None or p.when.holds(features)
        ]

    def get_installed_tests(
        self, features: Mapping[str, bool]
    ) -> list[tuple[str, ...]]:
        return [
            t.command
            for t in self.test.installed
            if t.when is None or t.when.holds(features)
        ]


class _Reader:
    """Typed access to one table of a recipe document."""

    def __init__(self, data: Mapping[str, Any], where: str) -> None:
        if not isinstance(data, Mapping):
            raise errors.RecipeError(f"{where}: expected a table")
        self._data = data
        self._where = where
        self._seen: set[str] = set()

    def error(self, msg: str) -> errors.RecipeError:
        return errors.RecipeError(f"{self._where}: {msg}")

    def get(
        self,
        key: str,
        type_: type | tuple[type, ...],
        default: Any,
    ) -> Any:
        self._seen.add(key)
        value = self._data.get(key, default)
        if value is not default and not isinstance(value, type_):
            raise self.error(f"{key!r} has the wrong type")
        return value

    def require(self, key: str, type_: type | tuple[type, ...]) -> Any:
        if key not in self._data:
            raise self.error(f"missing required key {key!r}")
        return self.get(key, type_, None)

    def strings(
        self, key: str, default: tuple[str, ...] = ()
    ) -> tuple[str, ...]:
        value = self.get(key, list, None)
        if value is None:
            return default
        if not all(isinstance(v, str) for v in value):
            raise self.error(f"{key!r} must be a list of strings")
        return tuple(value)

    def commands(self, key: str) -> tuple[tuple[str, ...], ...]:
        value = self.get(key, list, [])
        cmds = []
        for cmd in value:
            if (
                not isinstance(cmd, list)
                or not cmd
                or not all(isinstance(c, str) for c in cmd)
            ):
                raise self.error(
                    f"{key!r} must be a list of non-empty argument lists"
                )
            cmds.append(tuple(cmd))
        return tuple(cmds)

    def condition(self, key: str) -> Condition | None:
        text = self.get(key, str, None)
        if text is None:
            return None
        try:
            return Condition.parse(text)
        except ValueError as e:
            raise self.error(str(e)) from None

    def tables(self, key: str) -> list[_Reader]:
        value = self.get(key, list, [])
        return [
            _Reader(item, f"{self._where}: {key}[{i}]")
            for i, item in enumerate(value)
        ]

    def table(self, key: str) -> _Reader:
        return _Reader(self.get(key, dict, {}), f"{self._where}: [{key}]")

    def check_unknown(self) -> None:
        unknown = set(self._data) - self._seen
        if unknown:
            raise self.error(f"unknown keys: {', '.join(sorted(unknown))}")


def _parse_source(r: _Reader) -> Source:
    url = r.require("url", str)
    csum = r.require("csum", str)
    algo = r.get("csum_algo", str, "sha256")
    if algo not in hashlib.algorithms_available:
        raise r.error(f"unsupported checksum algorithm {algo!r}")
    if not re.fullmatch(r"[0-9a-fA-F]+", csum):
        raise r.error(f"checksum {csum!r} is not a hex digest")
    if len(csum) != hashlib.new(algo).digest_size * 2:
        raise r.error(f"checksum {csum!r} has the wrong length for {algo}")
    mirrors = r.strings("mirrors")
    r.check_unknown()
    return Source(url=url, csum=csum.lower(), csum_algo=algo, mirrors=mirrors)


def _parse_dependency(r: _Reader, options: Mapping[str, Option]) -> Dependency:
    name = r.require("name", str)
    kind_name = r.get("kind", str, "runtime")
    try:
        kind = DependencyKind(kind_name)
    except ValueError:
        raise r.error(f"invalid dependency kind {kind_name!r}") from None
    feature = r.get("feature", str, None)
    if kind is DependencyKind.OPTIONAL:
        if feature is None:
            raise r.error(f"optional dependency {name!r} needs a feature")
        if feature not in options:
            raise r.error(f"feature {feature!r} is not a declared option")
    elif feature is not None:
        raise r.error("only optional dependencies take a feature")
    constraint = r.get("version", str, None)
    if constraint is not None:
        try:
            poetry_constr.parse_constraint(constraint)
        except ValueError as e:
            raise r.error(f"invalid version constraint: {e}") from None
    r.check_unknown()
    return Dependency(
        name=name, kind=kind, feature=feature, constraint=constraint
    )


def _parse_patch(r: _Reader, recipe_dir: pathlib.Path | None) -> PatchOp:
    diff = r.get("diff", str, None)
    if diff is not None:
        diff_path = pathlib.Path(diff)
        if recipe_dir is not None and not diff_path.is_absolute():
            diff_path = recipe_dir / diff_path
        r.check_unknown()
        return PatchOp(kind="diff", path=diff_path)

    path = pathlib.PurePosixPath(r.require("file", str))
    if path.is_absolute() or ".." in path.parts:
        raise r.error(f"patched file {str(path)!r} must be inside the source")
    find = r.get("find", str, None)
    pattern = r.get("pattern", str, None)
    append = r.get("append", str, None)
    replace = r.get("replace", str, None)

    given = [v for v in (find, pattern, append) if v is not None]
    if len(given) != 1:
        raise r.error(
            "exactly one of 'find', 'pattern' or 'append' is required"
        )

    op: PatchOp
    if append is not None:
        if replace is not None:
            raise r.error("'append' does not take 'replace'")
        op = PatchOp(kind="append", path=path, replacement=append)
    elif replace is None:
        raise r.error("'replace' is required")
    elif find is not None:
        if not find:
            raise r.error("'find' must not be empty")
        op = PatchOp(
            kind="replace", path=path, match=find, replacement=replace
        )
    else:
        assert pattern is not None
        try:
            re.compile(pattern)
        except re.error as e:
            raise r.error(f"invalid pattern: {e}") from None
        op = PatchOp(
            kind="regex", path=path, match=pattern, replacement=replace
        )

    r.check_unknown()
    return op


def _parse_build(r: _Reader) -> BuildSpec:
    conditional = []
    for cr in r.tables("conditional_args"):
        when = cr.condition("when")
        if when is None:
            raise cr.error("missing required key 'when'")
        conditional.append(ConditionalArgs(when=when, args=cr.strings("args")))
        cr.check_unknown()

    prepends = []
    for pr in r.tables("path_prepend"):
        prepends.append(
            PathPrepend(
                path=pr.require("path", str), when=pr.condition("when")
            )
        )
        pr.check_unknown()

    env = r.get("env", dict, {})
    if not all(isinstance(v, str) for v in env.values()):
        raise r.error("'env' values must be strings")

    spec = BuildSpec(
        prepare=r.commands("prepare"),
        configure=r.get("configure", str, "./configure"),
        configure_args=r.strings(
            "configure_args", BuildSpec.configure_args
        ),
        conditional_args=tuple(conditional),
        make_targets=r.strings("make_targets"),
        install_targets=r.strings(
            "install_targets", BuildSpec.install_targets
        ),
        env=types.MappingProxyType(dict(env)),
        path_prepend=tuple(prepends),
    )
    r.check_unknown()
    return spec


def _parse_test(r: _Reader) -> TestSpec:
    pattern = r.get("summary_pattern", str, DEFAULT_SUMMARY_PATTERN)
    try:
        compiled = re.compile(pattern)
    except re.error as e:
        raise r.error(f"invalid summary_pattern: {e}") from None
    if compiled.groups < 1:
        raise r.error("summary_pattern must capture the failure count")

    installed = []
    for ir in r.tables("installed"):
        installed.append(
            InstalledTest(
                command=ir.strings("command"), when=ir.condition("when")
            )
        )
        if not installed[-1].command:
            raise ir.error("'command' must not be empty")
        ir.check_unknown()

    spec = TestSpec(
        default=r.get("default", bool, True),
        commands=r.commands("commands"),
        log=r.get("log", str, "make-check.log"),
        extra_logs=r.strings("extra_logs"),
        summary_pattern=pattern,
        installed=tuple(installed),
    )
    r.check_unknown()
    return spec


def parse_recipe(
    data: Mapping[str, Any],
    *,
    path: pathlib.Path | None = None,
) -> Recipe:
    where = str(path) if path is not None else "<recipe>"
    r = _Reader(data, where)

    name = r.require("name", str)
    version = r.require("version", str)
    try:
        poetry_constr.Version.parse(version)
    except ValueError:
        raise r.error(f"invalid version {version!r}") from None

    options: dict[str, Option] = {}
    opts = r.get("options", dict, {})
    for opt_name, opt_data in opts.items():
        orr = _Reader(opt_data, f"{where}: [options.{opt_name}]")
        options[opt_name] = Option(
            name=opt_name,
            description=orr.get("description", str, ""),
            default=orr.get("default", bool, True),
        )
        orr.check_unknown()

    recipe_dir = path.parent if path is not None else None

    keg_only = r.get("keg_only", (bool, str), False)
    if isinstance(keg_only, str):
        keg_only_reason: str | None = keg_only
        keg_only = True
    else:
        keg_only_reason = None

    requirements = []
    for rr in r.tables("requirements"):
        requirements.append(
            Requirement(
                executable=rr.require("executable", str),
                when=rr.condition("when"),
                message=rr.get("message", str, ""),
            )
        )
        rr.check_unknown()

    dependencies = tuple(
        _parse_dependency(dr, options) for dr in r.tables("depends_on")
    )
    seen: set[str] = set()
    for dep in dependencies:
        if dep.canonical_name in seen:
            raise r.error(f"dependency {dep.name!r} is declared twice")
        seen.add(dep.canonical_name)
    if canonicalize_name(name) in seen:
        raise r.error(f"{name} depends on itself")

    recipe = Recipe(
        name=name,
        version=version,
        description=r.get("description", str, ""),
        homepage=r.get("homepage", str, ""),
        source=_parse_source(r.table("source")),
        dependencies=dependencies,
        options=types.MappingProxyType(options),
        requirements=tuple(requirements),
        patches=tuple(
            _parse_patch(pr, recipe_dir) for pr in r.tables("patches")
        ),
        build=_parse_build(r.table("build")),
        test=_parse_test(r.table("test")),
        keg_only=keg_only,
        keg_only_reason=keg_only_reason,
        path=path,
    )

    r.check_unknown()
    _check_conditions(r, recipe)
    return recipe


def _check_conditions(r: _Reader, recipe: Recipe) -> None:
    conditions = [
        *(c.when for c in recipe.build.conditional_args),
        *(p.when for p in recipe.build.path_prepend),
        *(q.when for q in recipe.requirements),
        *(t.when for t in recipe.test.installed),
    ]
    for when in conditions:
        if when is not None and when.feature not in recipe.options:
            raise r.error(
                f"condition {str(when)!r}: feature {when.feature!r} "
                f"is not a declared option"
            )


def load_recipe(path: pathlib.Path) -> Recipe:
    try:
        with open(path, "rb") as f:
            data = tomli.load(f)
    except tomli.TOMLDecodeError as e:
        raise errors.RecipeError(f"{path}: {e}") from e
    return parse_recipe(data, path=path)
