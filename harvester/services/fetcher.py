from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Sequence, TypeVar

from ..config import HarvestSettings
from . import ledger
from .artifacts import ArtifactStore
from .ogr import OgrToolkit
from .tiling import Tile, split_tile
from .wfs import RetryingFetcher, build_getfeature_params, count_features, request_url

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConversionError(Exception):
    """Raised when a fetched tile payload cannot be turned into a GeoPackage."""


class RootDispatchLimiter:
    """Admission control for root tile tasks.

    Only the initial dispatch of grid tiles goes through the limiter. The
    quadrant fetches a saturated tile spawns run outside it, so one root
    tile may have up to ``4 ** max_depth`` requests in flight.
    """

    def __init__(self, max_concurrent: int) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self.in_flight = 0
        self.peak_in_flight = 0

    async def run(self, task_factory: Callable[[], Awaitable[T]]) -> T:
        async with self._semaphore:
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            try:
                return await task_factory()
            finally:
                self.in_flight -= 1


class AdaptiveTileFetcher:
    """Fetch a tile, splitting it into quadrants while responses look capped.

    ``fetch_tile`` never raises: a tile whose request or conversion fails is
    logged and contributes no artifacts, leaving its siblings untouched.
    """

    def __init__(
        self,
        requester: RetryingFetcher,
        store: ArtifactStore,
        toolkit: OgrToolkit,
        settings: HarvestSettings,
        *,
        run_id: int | None = None,
        total_roots: int = 0,
    ) -> None:
        self.requester = requester
        self.store = store
        self.toolkit = toolkit
        self.settings = settings
        self.run_id = run_id
        self.total_roots = total_roots
        self.headers: Dict[str, str] = {"User-Agent": settings.user_agent}

    def is_saturated(self, feature_count: int, tile: Tile) -> bool:
        return (
            feature_count >= self.settings.saturation_threshold
            and tile.depth < self.settings.max_depth
        )

    async def fetch_tile(self, tile: Tile) -> List[Path]:
        prefix = self._progress_prefix(tile)
        artifact_path = self.store.artifact_path(tile)

        if self.store.exists(tile):
            logger.info("%s Tile %s already exists", prefix, tile.tile_id)
            self._record(tile, ledger.TILE_CACHED, artifact_path=str(artifact_path))
            return [artifact_path]

        params = build_getfeature_params(tile.bbox, self.settings)
        url = request_url(self.settings.base_url, params)

        try:
            logger.info("%s Fetching tile %s (depth %d)", prefix, tile.tile_id, tile.depth)
            response = await self.requester.fetch(
                self.settings.base_url, params=params, headers=self.headers
            )
            feature_count = count_features(response.text, self.settings.typename)
            logger.info("%s Tile %s returned %d features", prefix, tile.tile_id, feature_count)

            saturated = self.is_saturated(feature_count, tile)
            if not saturated:
                await self._convert(tile, response.content)
        except Exception as exc:
            logger.error("Tile %s failed: %s for %s", tile.tile_id, exc, url)
            self._record(tile, ledger.TILE_FAILED, detail=f"{exc} ({url})")
            return []

        if not saturated:
            self._record(
                tile,
                ledger.TILE_CONVERTED,
                feature_count=feature_count,
                artifact_path=str(artifact_path),
            )
            return [artifact_path]

        logger.info(
            "%s Tile %s has %d features (threshold %d). Splitting...",
            prefix,
            tile.tile_id,
            feature_count,
            self.settings.saturation_threshold,
        )
        self._record(tile, ledger.TILE_SPLIT, feature_count=feature_count)
        children = split_tile(tile)
        results = await asyncio.gather(*(self.fetch_tile(child) for child in children))
        return [path for paths in results for path in paths]

    async def _convert(self, tile: Tile, payload: bytes) -> None:
        raw_path = self.store.write_raw(tile, payload)
        artifact_path = self.store.artifact_path(tile)
        try:
            logger.info("%s Converting tile %s to GPKG...", self._progress_prefix(tile), tile.tile_id)
            await self.toolkit.convert_gml(
                raw_path,
                artifact_path,
                layer_name=self.settings.layer_name,
                srs=self.settings.srs_name,
            )
            if not artifact_path.is_file():
                raise ConversionError(f"ogr2ogr did not create {artifact_path.name}")
        except Exception as exc:
            self.store.discard_artifact(tile)
            if isinstance(exc, ConversionError):
                raise
            raise ConversionError(str(exc)) from exc
        finally:
            self.store.discard_raw(tile)

    def _progress_prefix(self, tile: Tile) -> str:
        total = self.total_roots or "?"
        return f"[{tile.root_index + 1}/{total}]"

    def _record(self, tile: Tile, status: str, **details: object) -> None:
        # Bookkeeping problems must not cost the tile or its siblings.
        try:
            ledger.record_tile_event(
                self.run_id,
                tile_id=tile.tile_id,
                root_index=tile.root_index,
                depth=tile.depth,
                status=status,
                **details,
            )
        except Exception as exc:
            logger.warning("Could not record tile %s as %s: %s", tile.tile_id, status, exc)


async def dispatch_root_tiles(
    fetcher: AdaptiveTileFetcher,
    tiles: Sequence[Tile],
    limiter: RootDispatchLimiter,
) -> List[Path]:
    """Fetch every root tile under ``limiter`` and flatten the produced artifacts."""

    results = await asyncio.gather(
        *(limiter.run(lambda tile=tile: fetcher.fetch_tile(tile)) for tile in tiles)
    )
    return [path for paths in results for path in paths]
