from __future__ import annotations
from typing import (
    Iterable,
    Iterator,
)

import logging
import pathlib

from kegbuild import errors

from . import base


logger = logging.getLogger(__name__)


class Registry:
    """The full, read-only recipe set.

    Iteration yields recipes in declaration order: registry directories in
    the order given, and files within a directory sorted by name.
    """

    def __init__(self, recipes: Iterable[base.Recipe] = ()) -> None:
        self._recipes: dict[str, base.Recipe] = {}
        for recipe in recipes:
            self.add(recipe)

    def add(self, recipe: base.Recipe) -> None:
        key = recipe.canonical_name
        existing = self._recipes.get(key)
        if existing is not None:
            raise errors.RecipeError(
                f"recipe {recipe.name!r} is defined twice "
                f"({existing.path} and {recipe.path})"
            )
        self._recipes[key] = recipe

    @classmethod
    def load(cls, paths: Iterable[pathlib.Path]) -> Registry:
        registry = cls()
        for path in paths:
            if not path.is_dir():
                logger.warning(f"Recipe directory {path} does not exist")
                continue
            for recipe_file in sorted(path.glob("*.toml")):
                logger.debug(f"Loading recipe {recipe_file}")
                registry.add(base.load_recipe(recipe_file))
        return registry

    def get(self, name: str) -> base.Recipe | None:
        return self._recipes.get(base.canonicalize_name(name))

    def __getitem__(self, name: str) -> base.Recipe:
        recipe = self.get(name)
        if recipe is None:
            raise KeyError(name)
        return recipe

    def __contains__(self, name: object) -> bool:
        return (
            isinstance(name, str)
            and base.canonicalize_name(name) in self._recipes
        )

    def __iter__(self) -> Iterator[base.Recipe]:
        return iter(self._recipes.values())

    def __len__(self) -> int:
        return len(self._recipes)

    def all_options(self) -> dict[str, base.Option]:
        """Every option declared by any recipe, first declaration wins."""
        options: dict[str, base.Option] = {}
        for recipe in self:
            for name, opt in recipe.options.items():
                options.setdefault(name, opt)
        return options
