from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator

import httpx

from ..config import HarvestSettings, load_settings
from ..database import DATA_DIR
from . import ledger
from .artifacts import ArtifactStore
from .fetcher import AdaptiveTileFetcher, RootDispatchLimiter, dispatch_root_tiles
from .merge import MergeCoordinator, MergeError
from .ogr import OgrToolkit
from .tiling import Extent, TileGrid
from .validation import ParallelValidator
from .wfs import RetryingFetcher, Sleep

logger = logging.getLogger(__name__)

TILES_DIRNAME = "tiles"


@dataclass
class HarvestResult:
    tile_count: int
    artifact_count: int
    valid_count: int
    merged_path: Path
    output_path: Path


async def run_harvest(
    extent: Extent,
    settings: HarvestSettings | None = None,
    *,
    run_id: int | None = None,
    data_dir: Path | None = None,
    client: httpx.AsyncClient | None = None,
    toolkit: OgrToolkit | None = None,
    sleep: Sleep = asyncio.sleep,
) -> HarvestResult:
    """Fetch every tile covering ``extent`` and merge the results into one GeoPackage.

    Tile failures are logged and skipped. A merge failure marks the run as
    failed and raises :class:`MergeError`.
    """

    settings = settings or load_settings()
    data_dir = data_dir or DATA_DIR
    toolkit = toolkit or OgrToolkit(ogr2ogr=settings.ogr2ogr, ogrinfo=settings.ogrinfo)
    store = ArtifactStore(data_dir / TILES_DIRNAME)

    tiles = TileGrid(extent, settings.step).tiles()
    logger.info("Generated %d tiles at %.4f° step", len(tiles), settings.step)
    ledger.update_run(run_id, status=ledger.RUN_RUNNING, tile_count=len(tiles))

    async with _client_scope(client, settings) as http_client:
        requester = RetryingFetcher(
            http_client,
            max_attempts=settings.max_attempts,
            base_delay=settings.retry_base_delay,
            sleep=sleep,
        )
        fetcher = AdaptiveTileFetcher(
            requester,
            store,
            toolkit,
            settings,
            run_id=run_id,
            total_roots=len(tiles),
        )
        limiter = RootDispatchLimiter(settings.max_concurrent)
        produced = await dispatch_root_tiles(fetcher, tiles, limiter)

    logger.info("Done fetching: %d artifacts from %d root tiles", len(produced), len(tiles))

    # Validation works from what is on disk, which also covers artifacts from
    # earlier interrupted runs.
    validator = ParallelValidator(
        store,
        toolkit,
        layer_name=settings.layer_name,
        chunk_size=settings.validation_chunk_size,
    )
    valid = await validator.validate()

    coordinator = MergeCoordinator(
        toolkit,
        output_dir=data_dir,
        output_name=settings.output_name,
        layer_name=settings.layer_name,
        dedup_key=settings.dedup_key,
        batch_size=settings.merge_batch_size,
    )
    try:
        merged = await coordinator.merge(valid)
    except MergeError as exc:
        logger.error("Merge failed: %s", exc)
        ledger.update_run(
            run_id,
            status=ledger.RUN_FAILED,
            artifact_count=len(produced),
            valid_count=len(valid),
            error=str(exc),
        )
        raise

    ledger.update_run(
        run_id,
        status=ledger.RUN_COMPLETED,
        artifact_count=len(produced),
        valid_count=len(valid),
        output_path=str(merged.output_path),
    )
    logger.info("All tiles processed and merged into %s", merged.output_path)
    return HarvestResult(
        tile_count=len(tiles),
        artifact_count=len(produced),
        valid_count=len(valid),
        merged_path=merged.merged_path,
        output_path=merged.output_path,
    )


@asynccontextmanager
async def _client_scope(
    client: httpx.AsyncClient | None, settings: HarvestSettings
) -> AsyncIterator[httpx.AsyncClient]:
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(
        timeout=httpx.Timeout(settings.request_timeout),
        headers={"User-Agent": settings.user_agent},
    ) as owned_client:
        yield owned_client
