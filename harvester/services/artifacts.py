from __future__ import annotations

from pathlib import Path
from typing import List

from .tiling import Tile

ARTIFACT_PREFIX = "tile_"
ARTIFACT_EXTENSION = ".gpkg"
RAW_EXTENSION = ".gml"


class ArtifactStore:
    """Deterministically named per-tile files under one directory.

    A tile's raw GML download and its converted GeoPackage are both named
    after the tile identifier, so a rerun finds earlier artifacts and skips
    the request.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def artifact_path(self, tile: Tile) -> Path:
        return self._path(tile.tile_id, ARTIFACT_EXTENSION)

    def raw_path(self, tile: Tile) -> Path:
        return self._path(tile.tile_id, RAW_EXTENSION)

    def exists(self, tile: Tile) -> bool:
        return self.artifact_path(tile).is_file()

    def write_raw(self, tile: Tile, payload: bytes) -> Path:
        raw_path = self.raw_path(tile)
        raw_path.write_bytes(payload)
        return raw_path

    def discard_raw(self, tile: Tile) -> None:
        self.raw_path(tile).unlink(missing_ok=True)

    def discard_artifact(self, tile: Tile) -> None:
        self.artifact_path(tile).unlink(missing_ok=True)

    def list_artifacts(self) -> List[Path]:
        """Artifacts currently on disk, sorted by name."""

        pattern = f"{ARTIFACT_PREFIX}*{ARTIFACT_EXTENSION}"
        return sorted(path for path in self.root.glob(pattern) if path.is_file())

    def _path(self, tile_id: str, extension: str) -> Path:
        return self.root / f"{ARTIFACT_PREFIX}{tile_id}{self._normalize_extension(extension)}"

    @staticmethod
    def _normalize_extension(extension: str) -> str:
        return extension if extension.startswith(".") else f".{extension}"
