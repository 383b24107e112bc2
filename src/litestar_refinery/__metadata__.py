"""Version and name of the installed ``litestar-refinery`` distribution."""

from __future__ import annotations

from importlib.metadata import metadata, version

__all__ = ("DISTRIBUTION", "__project__", "__version__")

DISTRIBUTION = "litestar-refinery"

__version__ = version(DISTRIBUTION)
"""Installed version, read from the package metadata."""
__project__ = metadata(DISTRIBUTION)["Name"]
"""Distribution name as recorded in the package metadata."""
