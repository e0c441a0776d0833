"""Resolve video URLs into directly fetchable formats and stream their bytes."""

from .version import __version__

__all__ = ["__version__"]
