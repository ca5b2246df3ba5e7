from __future__ import annotations
from typing import (
    Iterable,
    Iterator,
    Mapping,
)

import dataclasses
import types

from kegbuild import errors

from . import base
from . import repository


@dataclasses.dataclass(frozen=True)
class BuildPlan:
    """Recipes in build order; every dependency precedes its dependents."""

    target: base.Recipe
    recipes: tuple[base.Recipe, ...]
    #: Resolved option values, by canonical recipe name
    features: Mapping[str, Mapping[str, bool]]
    #: Active dependency edges, by canonical recipe name
    edges: Mapping[str, tuple[base.Dependency, ...]]

    def __iter__(self) -> Iterator[base.Recipe]:
        return iter(self.recipes)

    def __len__(self) -> int:
        return len(self.recipes)

    def names(self) -> list[str]:
        return [r.name for r in self.recipes]

    def get(self, name: str) -> base.Recipe:
        key = base.canonicalize_name(name)
        for recipe in self.recipes:
            if recipe.canonical_name == key:
                return recipe
        raise LookupError(f"{name} is not part of the build plan")

    def features_for(self, recipe: base.Recipe) -> Mapping[str, bool]:
        return self.features[recipe.canonical_name]

    def dependencies_of(
        self, recipe: base.Recipe
    ) -> list[tuple[base.Dependency, base.Recipe]]:
        return [
            (dep, self.get(dep.name))
            for dep in self.edges[recipe.canonical_name]
        ]

    def closure_of(self, recipe: base.Recipe) -> list[base.Recipe]:
        """All transitive dependencies of *recipe*, in plan order."""
        needed: set[str] = set()
        pending = [recipe.canonical_name]
        while pending:
            key = pending.pop()
            for dep in self.edges[key]:
                if dep.canonical_name not in needed:
                    needed.add(dep.canonical_name)
                    pending.append(dep.canonical_name)
        return [r for r in self.recipes if r.canonical_name in needed]

    def graph(self) -> dict[str, set[str]]:
        return {
            key: {dep.canonical_name for dep in deps}
            for key, deps in self.edges.items()
        }


def resolve(
    registry: repository.Registry,
    name: str,
    *,
    with_: Iterable[str] = (),
    without: Iterable[str] = (),
) -> BuildPlan:
    target = registry.get(name)
    if target is None:
        raise errors.MissingDependencyError(name, "the build request")

    features: dict[str, Mapping[str, bool]] = {
        target.canonical_name: target.resolve_features(with_, without),
    }
    edges: dict[str, tuple[base.Dependency, ...]] = {}

    visiting: list[base.Recipe] = []
    visited: set[str] = set()
    order: list[base.Recipe] = []

    def visit(recipe: base.Recipe) -> None:
        key = recipe.canonical_name
        for i, item in enumerate(visiting):
            if item.canonical_name == key:
                members = [r.name for r in visiting[i:]] + [recipe.name]
                raise errors.CycleError(members)
        if key in visited:
            return

        visiting.append(recipe)
        if key not in features:
            features[key] = types.MappingProxyType(
                recipe.default_features()
            )
        active = recipe.active_dependencies(features[key])
        for dep in active:
            dep_recipe = registry.get(dep.name)
            if dep_recipe is None:
                raise errors.MissingDependencyError(dep.name, recipe.name)
            if not dep.allows(dep_recipe.version):
                raise errors.MissingDependencyError(
                    dep.name, recipe.name, dep.constraint
                )
            visit(dep_recipe)

        edges[key] = active
        visiting.pop()
        visited.add(key)
        order.append(recipe)

    visit(target)

    return BuildPlan(
        target=target,
        recipes=tuple(order),
        features=types.MappingProxyType(features),
        edges=types.MappingProxyType(edges),
    )
