from __future__ import annotations
from typing import (
    TYPE_CHECKING,
    ClassVar,
)

import logging

from cleo.commands.command import Command as BaseCommand
from cleo.formatters.formatter import Formatter
from poetry.console.logging.io_formatter import IOFormatter
from poetry.console.logging.io_handler import IOHandler

from kegbuild import errors

if TYPE_CHECKING:
    from cleo.io.io import IO

    from kegbuild import config
    from kegbuild import recipes


class Command(BaseCommand):

    _loggers: ClassVar[list[str]] = ["kegbuild"]

    def __init__(
        self,
        settings: config.Settings,
        registry: recipes.Registry,
    ) -> None:
        self._settings = settings
        self._registry = registry
        super().__init__()

    def execute(self, io: IO) -> int:
        self._io = io

        for logger in self._loggers:
            self.register_logger(logging.getLogger(logger))

        try:
            return self.handle()
        except errors.KegbuildError as e:
            io.write_error_line(
                f"<error>{e.stage} failed: {Formatter.escape(str(e))}</error>"
            )
            return e.exit_code
        except KeyboardInterrupt:
            io.write_error_line("<error>Interrupted</error>")
            return 130

    def register_logger(self, logger: logging.Logger) -> None:
        handler = IOHandler(self.io)
        handler.setFormatter(IOFormatter())
        logger.handlers = [handler]
        logger.propagate = False

        io = self.io
        level = logging.WARNING
        if io.is_debug():
            level = logging.DEBUG
        elif io.is_very_verbose() or io.is_verbose():
            level = logging.INFO

        logger.setLevel(level)
