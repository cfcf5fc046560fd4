"""Test orchestration engine."""

from .catalog import TestCatalog
from .run_manager import RunManager

__all__ = ["RunManager", "TestCatalog"]
