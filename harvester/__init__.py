"""Adaptive tiled harvesting of capped WFS feature services."""

__version__ = "0.1.0"
