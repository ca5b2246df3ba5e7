from __future__ import annotations

from cleo.helpers import argument

from kegbuild import builder
from kegbuild import errors

from . import base


class Test(base.Command):
    name = "test"
    description = "Run the smoke tests of an installed recipe"
    arguments = [
        argument(
            "name",
            description="Installed recipe to test",
        ),
    ]

    def handle(self) -> int:
        name = self.argument("name")
        recipe = self._registry.get(name)
        if recipe is None:
            raise errors.MissingDependencyError(name, "the test request")

        count = builder.run_installed_tests(self._settings, recipe)
        if count:
            self.line(f"<info>{count} test(s) of {recipe} passed</info>")
        else:
            self.line(f"{recipe} has no installed tests")
        return 0
