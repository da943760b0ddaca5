"""Deferred Pinterest pin publishing scheduler."""

__version__ = "0.1.0"
