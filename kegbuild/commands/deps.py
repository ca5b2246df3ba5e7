from __future__ import annotations

from cleo.helpers import argument, option
from cleo.io.outputs.output import Verbosity

from kegbuild import recipes

from . import base


class Deps(base.Command):
    name = "deps"
    description = "Show the build order of a recipe and its dependencies"
    arguments = [
        argument(
            "name",
            description="Recipe to resolve",
        ),
    ]
    options = [
        option(
            "with",
            description="Enable an option of the recipe",
            flag=False,
            multiple=True,
        ),
        option(
            "without",
            description="Disable an option of the recipe",
            flag=False,
            multiple=True,
        ),
        option(
            "tree",
            description="Show the dependency edges of every recipe",
            flag=True,
        ),
    ]

    def handle(self) -> int:
        plan = recipes.resolve(
            self._registry,
            self.argument("name"),
            with_=self.option("with"),
            without=self.option("without"),
        )

        installed = 0
        for recipe in plan:
            prefix = self._settings.keg_path(recipe.name, recipe.version)
            if prefix.is_dir():
                installed += 1
                mark = " <comment>(installed)</comment>"
            else:
                mark = ""
            self.line(f"{recipe.name} <info>{recipe.version}</info>{mark}")

            if self.option("tree"):
                for dep, dep_recipe in plan.dependencies_of(recipe):
                    self.line(
                        f"  {dep_recipe.name} ({dep.kind.value})"
                    )

        features = plan.features_for(plan.target)
        if features:
            enabled = ", ".join(
                f"{k}={'on' if v else 'off'}"
                for k, v in sorted(features.items())
            )
            self.line(f"Options of {plan.target.name}: {enabled}")

        self.line(
            f"{len(plan)} recipe(s), {installed} already installed",
            verbosity=Verbosity.VERBOSE,
        )
        return 0
