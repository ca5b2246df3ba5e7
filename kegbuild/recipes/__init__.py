# flake8: noqa

from .base import (
    BuildSpec,
    Condition,
    Dependency,
    DependencyKind,
    InstalledTest,
    Option,
    PatchOp,
    Recipe,
    Requirement,
    Source,
    TestSpec,
    canonicalize_name,
    load_recipe,
    parse_recipe,
)
from .repository import Registry
from .topological import BuildPlan, resolve


__all__ = (
    "BuildPlan",
    "BuildSpec",
    "Condition",
    "Dependency",
    "DependencyKind",
    "InstalledTest",
    "Option",
    "PatchOp",
    "Recipe",
    "Registry",
    "Requirement",
    "Source",
    "TestSpec",
    "canonicalize_name",
    "load_recipe",
    "parse_recipe",
    "resolve",
)
