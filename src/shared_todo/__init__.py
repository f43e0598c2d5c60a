"""Shared task list with a client-side sync engine."""

__version__ = "0.1.0"
