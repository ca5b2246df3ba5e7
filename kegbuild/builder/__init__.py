from __future__ import annotations

from .base import (
    Build,
    BuildRequest,
    BuildResult,
    check_requirements,
    run_plan,
)
from .install import Installer, read_receipt
from .testing import TestReport, parse_summary, run_installed_tests


__all__ = (
    "Build",
    "BuildRequest",
    "BuildResult",
    "Installer",
    "TestReport",
    "check_requirements",
    "parse_summary",
    "read_receipt",
    "run_installed_tests",
    "run_plan",
)
