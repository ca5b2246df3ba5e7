from __future__ import annotations
from typing import (
    TYPE_CHECKING,
)

import sys

from cleo.application import Application as BaseApplication
from cleo.formatters.style import Style

import kegbuild

from . import commands as kegbuild_commands
from . import config
from . import errors
from . import recipes

if TYPE_CHECKING:
    from cleo.io.inputs.input import Input
    from cleo.io.io import IO
    from cleo.io.outputs.output import Output


class App(BaseApplication):
    def __init__(
        self,
        settings: config.Settings,
        registry: recipes.Registry,
    ) -> None:
        super().__init__(kegbuild.__name__, kegbuild.__version__)
        for cmd_name in kegbuild_commands.__all__:
            cmd = getattr(kegbuild_commands, cmd_name)
            self.add(cmd(settings, registry))

    def create_io(
        self,
        input: Input | None = None,
        output: Output | None = None,
        error_output: Output | None = None,
    ) -> IO:
        io = super().create_io(input, output, error_output)
        io.output.formatter.set_style("info", Style("blue").bold())
        io.error_output.formatter.set_style("info", Style("blue").bold())
        return io


def main() -> int:
    try:
        settings = config.load()
        registry = recipes.Registry.load(settings.registry)
    except errors.KegbuildError as e:
        print(f"{e.stage} failed: {e}", file=sys.stderr)
        return e.exit_code

    app = App(settings, registry)
    return app.run()
