"""Buckle launcher: starts and supervises the Buckle server."""

__version__ = "0.1.0"
