"""
Unit tests for package importability.

Each module is imported in a fresh interpreter so that an import cycle
cannot be hidden by modules the test session already loaded.
"""

import importlib
import pkgutil
import subprocess
import sys

import pytest

import dr.billvault

MODULES = sorted(
    info.name for info in pkgutil.walk_packages(dr.billvault.__path__, prefix="dr.billvault.")
)

ENTRY_POINTS = [
    ("dr.billvault.tools.cli", "main"),
    ("dr.billvault.main", "main"),
    ("dr.billvault.api.replica_server", "main"),
]


class TestImports:
    """Every module and console script imports on its own."""

    def test_modules_discovered(self):
        assert "dr.billvault.catalog.arena" in MODULES
        assert "dr.billvault.integrity.verifier" in MODULES

    @pytest.mark.parametrize("module", MODULES)
    def test_module_imports_in_fresh_interpreter(self, module):
        completed = subprocess.run(
            [sys.executable, "-c", f"import {module}"],
            capture_output=True,
            text=True,
            timeout=60,
        )
        assert completed.returncode == 0, completed.stderr

    @pytest.mark.parametrize("module,attribute", ENTRY_POINTS)
    def test_console_script_targets(self, module, attribute):
        assert callable(getattr(importlib.import_module(module), attribute))
