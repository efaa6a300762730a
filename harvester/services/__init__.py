"""Service utilities exposed by the ``harvester.services`` package."""

from .pipeline import HarvestResult, run_harvest
from .tiling import Extent, TileGrid

__all__ = ["Extent", "HarvestResult", "TileGrid", "run_harvest"]
