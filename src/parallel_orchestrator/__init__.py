"""Parallel task orchestration with crash-safe session state."""

__version__ = "0.1.0"
