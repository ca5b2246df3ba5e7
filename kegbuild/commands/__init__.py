from .build import Build
from .deps import Deps
from .test import Test

commands = [
    Build,
    Deps,
    Test,
]

__all__ = [cmd.__name__ for cmd in commands]
