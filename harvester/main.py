from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Dict, List, Set

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException
from pydantic import BaseModel
from sqlmodel import Session, select

from . import __version__
from .config import load_settings
from .database import get_session, init_db
from .models import ApiUsageStat, HarvestRun
from .services import ledger
from .services.merge import MergeError
from .services.pipeline import run_harvest
from .services.tiling import Extent

app = FastAPI(title="WFS Tile Harvester", version=__version__)

logger = logging.getLogger(__name__)

# Default area: central Brussels.
DEFAULT_EXTENT = {
    "west": 4.2,
    "south": 50.8,
    "east": 4.4,
    "north": 50.9,
}


class HarvestRequest(BaseModel):
    west: float = DEFAULT_EXTENT["west"]
    south: float = DEFAULT_EXTENT["south"]
    east: float = DEFAULT_EXTENT["east"]
    north: float = DEFAULT_EXTENT["north"]
    step: float | None = None


_active_runs: Set[int] = set()
_run_lock = asyncio.Lock()


async def _unregister_run(run_id: int) -> None:
    async with _run_lock:
        _active_runs.discard(run_id)


async def _execute_run(run_id: int, extent: Extent, step: float | None) -> None:
    settings = load_settings()
    if step is not None:
        settings = replace(settings, step=step)
    try:
        await run_harvest(extent, settings, run_id=run_id)
    except MergeError:
        # run_harvest already marked the run as failed.
        pass
    except Exception as exc:
        logger.exception("Harvest run %s failed: %s", run_id, exc)
        ledger.update_run(run_id, status=ledger.RUN_FAILED, error=str(exc))
    finally:
        await _unregister_run(run_id)


@app.on_event("startup")
def on_startup() -> None:
    init_db()


@app.post("/harvests", status_code=202)
async def start_harvest(request: HarvestRequest, background_tasks: BackgroundTasks) -> Dict[str, object]:
    try:
        extent = Extent(
            west=request.west,
            south=request.south,
            east=request.east,
            north=request.north,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if request.step is not None and request.step <= 0:
        raise HTTPException(status_code=400, detail="step must be a positive number of degrees")

    step = request.step if request.step is not None else load_settings().step
    async with _run_lock:
        if _active_runs:
            raise HTTPException(status_code=409, detail="A harvest is already in progress")
        run_id = ledger.create_run(
            west=extent.west,
            south=extent.south,
            east=extent.east,
            north=extent.north,
            step=step,
        )
        _active_runs.add(run_id)
    background_tasks.add_task(_execute_run, run_id, extent, step)
    return {"run_id": run_id, "status": ledger.RUN_PENDING}


@app.get("/harvests")
def list_harvests(session: Session = Depends(get_session)) -> List[Dict[str, object]]:
    runs = session.exec(select(HarvestRun).order_by(HarvestRun.id.desc())).all()
    return [_run_payload(run) for run in runs]


@app.get("/harvests/{run_id}")
def read_harvest(run_id: int, session: Session = Depends(get_session)) -> Dict[str, object]:
    run = session.get(HarvestRun, run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Harvest run not found")
    payload = _run_payload(run)
    payload["tiles"] = ledger.tile_status_counts(run_id)
    payload["failures"] = ledger.tile_failures(run_id)
    return payload


@app.get("/usage")
def read_usage(session: Session = Depends(get_session)) -> List[Dict[str, object]]:
    stats = session.exec(select(ApiUsageStat).order_by(ApiUsageStat.provider)).all()
    return [
        {
            "provider": stat.provider,
            "request_count": stat.request_count,
            "last_used_at": stat.last_used_at,
        }
        for stat in stats
    ]


def _run_payload(run: HarvestRun) -> Dict[str, object]:
    return {
        "id": run.id,
        "extent": {"west": run.west, "south": run.south, "east": run.east, "north": run.north},
        "step": run.step,
        "status": run.status,
        "tile_count": run.tile_count,
        "artifact_count": run.artifact_count,
        "valid_count": run.valid_count,
        "output_path": run.output_path,
        "error": run.error,
        "created_at": run.created_at,
        "finished_at": run.finished_at,
    }
