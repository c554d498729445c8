"""Rate-aware tweet cache and display selector."""

__version__ = "0.1.0"
