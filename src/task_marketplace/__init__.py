"""Task discovery, provider matching and booking execution core."""

__version__ = "0.1.0"
