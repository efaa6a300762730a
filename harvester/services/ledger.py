"""Progress bookkeeping for harvest runs.

Tile outcomes, run summaries and remote request counters are persisted in
the SQLite database configured in :mod:`harvester.database` so a run can be
inspected (and resumed) after the process exits.
"""

from __future__ import annotations

from collections import Counter
from datetime import UTC, datetime
from typing import Dict, List

from sqlmodel import select

from .. import database
from ..models import ApiUsageStat, HarvestRun, TileRecord

TILE_CACHED = "cached"
TILE_SPLIT = "split"
TILE_CONVERTED = "converted"
TILE_FAILED = "failed"

RUN_PENDING = "pending"
RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"

_tables_ready = False


def _ensure_tables() -> None:
    global _tables_ready
    if not _tables_ready:
        database.init_db()
        _tables_ready = True


def reset_table_cache() -> None:
    """Force the next ledger call to re-run ``init_db`` (used after swapping engines)."""

    global _tables_ready
    _tables_ready = False


def record_api_usage(provider: str, *, increment: int = 1) -> None:
    """Increment the request counter for the given feature service host."""

    if increment <= 0:
        return

    _ensure_tables()
    with database.session_scope() as session:
        usage = session.exec(
            select(ApiUsageStat).where(ApiUsageStat.provider == provider)
        ).one_or_none()
        now = datetime.now(UTC)
        if usage is None:
            session.add(ApiUsageStat(provider=provider, request_count=increment, last_used_at=now))
        else:
            usage.request_count += increment
            usage.last_used_at = now
        session.commit()


def record_tile_event(
    run_id: int | None,
    *,
    tile_id: str,
    root_index: int,
    depth: int,
    status: str,
    feature_count: int | None = None,
    artifact_path: str | None = None,
    detail: str | None = None,
) -> None:
    if run_id is None:
        return

    _ensure_tables()
    with database.session_scope() as session:
        session.add(
            TileRecord(
                run_id=run_id,
                tile_id=tile_id,
                root_index=root_index,
                depth=depth,
                status=status,
                feature_count=feature_count,
                artifact_path=artifact_path,
                detail=detail,
            )
        )
        session.commit()


def create_run(*, west: float, south: float, east: float, north: float, step: float) -> int:
    _ensure_tables()
    with database.session_scope() as session:
        run = HarvestRun(west=west, south=south, east=east, north=north, step=step)
        session.add(run)
        session.commit()
        session.refresh(run)
        return run.id


def update_run(run_id: int | None, **changes: object) -> None:
    """Apply ``changes`` to the stored run; terminal statuses also stamp ``finished_at``."""

    if run_id is None:
        return

    _ensure_tables()
    with database.session_scope() as session:
        run = session.get(HarvestRun, run_id)
        if run is None:
            return
        for key, value in changes.items():
            setattr(run, key, value)
        if changes.get("status") in {RUN_COMPLETED, RUN_FAILED}:
            run.finished_at = datetime.now(UTC)
        session.add(run)
        session.commit()


def tile_status_counts(run_id: int) -> Dict[str, int]:
    _ensure_tables()
    with database.session_scope() as session:
        statuses = session.exec(
            select(TileRecord.status).where(TileRecord.run_id == run_id)
        ).all()
    return dict(Counter(statuses))


def tile_failures(run_id: int, *, limit: int = 20) -> List[Dict[str, object]]:
    _ensure_tables()
    with database.session_scope() as session:
        records = session.exec(
            select(TileRecord)
            .where(TileRecord.run_id == run_id, TileRecord.status == TILE_FAILED)
            .order_by(TileRecord.id)
            .limit(limit)
        ).all()
        return [
            {"tile_id": record.tile_id, "depth": record.depth, "detail": record.detail}
            for record in records
        ]
