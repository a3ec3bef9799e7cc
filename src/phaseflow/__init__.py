"""Phase-by-phase workflow engine for long-running generation tasks."""

__version__ = "0.1.0"
