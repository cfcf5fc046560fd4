"""Device diagnostics backend: test catalog, run orchestration and history."""

__version__ = "0.1.0"
