"""Partition-aware clone and resize engine for disks and disk images."""

from .__version__ import __version__


__all__ = ["__version__"]
