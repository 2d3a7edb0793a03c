"""Version information for disk-cloner."""

__version__ = "0.4.0"
