from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List, Tuple

COORD_PRECISION = 6
DEFAULT_STEP = 0.01
DEFAULT_SRS = "EPSG:4326"


def round_coord(value: float, decimals: int = COORD_PRECISION) -> float:
    rounded = round(value, decimals)
    # Normalise -0.0 so identifiers never contain "-0.0".
    return rounded + 0.0


def _format_coord(value: float) -> str:
    return repr(value)


@dataclass(frozen=True)
class Extent:
    """Area of interest in longitude/latitude degrees."""

    west: float
    south: float
    east: float
    north: float

    def __post_init__(self) -> None:
        _validate_bounds(north=self.north, south=self.south, east=self.east, west=self.west)

    @property
    def width(self) -> float:
        return self.east - self.west

    @property
    def height(self) -> float:
        return self.north - self.south


@dataclass(frozen=True)
class BoundingBox:
    south: float
    west: float
    north: float
    east: float

    def __post_init__(self) -> None:
        for name in ("south", "west", "north", "east"):
            object.__setattr__(self, name, round_coord(getattr(self, name)))

    @property
    def token(self) -> str:
        return "_".join(
            _format_coord(value) for value in (self.south, self.west, self.north, self.east)
        )

    def wfs_value(self, srs: str = DEFAULT_SRS) -> str:
        # WFS 2.0 uses latitude/longitude axis order for EPSG:4326.
        coords = ",".join(
            _format_coord(value) for value in (self.south, self.west, self.north, self.east)
        )
        return f"{coords},{srs}"

    @property
    def width(self) -> float:
        return self.east - self.west

    @property
    def height(self) -> float:
        return self.north - self.south


@dataclass(frozen=True)
class Tile:
    """A query region with an identifier derived from its root bounds and quadrant path."""

    bbox: BoundingBox
    tile_id: str
    root_index: int
    depth: int = 0
    path: Tuple[int, ...] = field(default=())

    @classmethod
    def root(cls, bbox: BoundingBox, root_index: int) -> "Tile":
        return cls(bbox=bbox, tile_id=bbox.token, root_index=root_index)

    def child(self, bbox: BoundingBox, quadrant: int) -> "Tile":
        return Tile(
            bbox=bbox,
            tile_id=f"{self.tile_id}_{quadrant}",
            root_index=self.root_index,
            depth=self.depth + 1,
            path=self.path + (quadrant,),
        )

    @property
    def is_root(self) -> bool:
        return self.depth == 0


class TileGrid:
    """Regular grid of ``step``-sized tiles covering an extent.

    Rows advance south to north and columns west to east. The last row and
    column are not clipped, so tiles may reach past the far edges of the
    extent. Coordinates are computed from the row/column index rather than by
    accumulating ``step`` so repeated runs produce identical identifiers.
    """

    def __init__(self, extent: Extent, step: float = DEFAULT_STEP) -> None:
        if step <= 0:
            raise ValueError("Tile step must be a positive number of degrees.")
        self.extent = extent
        self.step = step

    @property
    def rows(self) -> int:
        return _axis_count(self.extent.height, self.step)

    @property
    def columns(self) -> int:
        return _axis_count(self.extent.width, self.step)

    def __len__(self) -> int:
        return self.rows * self.columns

    def tiles(self) -> List[Tile]:
        tiles: List[Tile] = []
        for row in range(self.rows):
            south = self.extent.south + row * self.step
            for column in range(self.columns):
                west = self.extent.west + column * self.step
                bbox = BoundingBox(
                    south=south,
                    west=west,
                    north=south + self.step,
                    east=west + self.step,
                )
                tiles.append(Tile.root(bbox, len(tiles)))
        return tiles


def split_bbox(bbox: BoundingBox) -> Tuple[BoundingBox, BoundingBox, BoundingBox, BoundingBox]:
    """Split ``bbox`` into southwest, southeast, northwest and northeast quadrants."""

    mid_lat = (bbox.south + bbox.north) / 2
    mid_lon = (bbox.west + bbox.east) / 2
    return (
        BoundingBox(south=bbox.south, west=bbox.west, north=mid_lat, east=mid_lon),
        BoundingBox(south=bbox.south, west=mid_lon, north=mid_lat, east=bbox.east),
        BoundingBox(south=mid_lat, west=bbox.west, north=bbox.north, east=mid_lon),
        BoundingBox(south=mid_lat, west=mid_lon, north=bbox.north, east=bbox.east),
    )


def split_tile(tile: Tile) -> List[Tile]:
    return [tile.child(bbox, index) for index, bbox in enumerate(split_bbox(tile.bbox))]


def _axis_count(span: float, step: float) -> int:
    # Rounding absorbs float noise such as 0.2 / 0.05 == 4.000000000000001.
    return max(0, math.ceil(round(span / step, 9)))


def _validate_bounds(*, north: float, south: float, east: float, west: float) -> None:
    if north <= south:
        raise ValueError("North latitude must be greater than south latitude.")
    if east <= west:
        raise ValueError("East longitude must be greater than west longitude.")
    if north > 90.0 or south < -90.0:
        raise ValueError("Latitudes must be within -90 and 90 degrees.")
    if east > 180.0 or west < -180.0:
        raise ValueError("Longitudes must be within -180 and 180 degrees.")
