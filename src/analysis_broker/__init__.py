"""analysis-broker: Cached, quota-limited gateway to an external analysis CLI."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("analysis-broker")
except PackageNotFoundError:
    __version__ = "0.1.0"

__all__ = ["__version__"]
