from .cmd import cmd, terminate_all
from .template import format_template

__all__ = (
    "cmd",
    "format_template",
    "terminate_all",
)
