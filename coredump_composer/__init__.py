"""Gather a core dump and its container runtime details into one zip archive."""

__version__ = "9.0.0"