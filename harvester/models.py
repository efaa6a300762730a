from __future__ import annotations

from datetime import UTC, datetime
from typing import Optional

from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(UTC)


class HarvestRun(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    west: float
    south: float
    east: float
    north: float
    step: float
    status: str = Field(default="pending", index=True)
    tile_count: int = 0
    artifact_count: int = 0
    valid_count: int = 0
    output_path: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None


class TileRecord(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    run_id: Optional[int] = Field(default=None, foreign_key="harvestrun.id", index=True)
    tile_id: str = Field(index=True)
    root_index: int
    depth: int = 0
    status: str
    feature_count: Optional[int] = None
    artifact_path: Optional[str] = None
    detail: Optional[str] = None
    updated_at: datetime = Field(default_factory=_utcnow)


class ApiUsageStat(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    provider: str = Field(index=True, unique=True)
    request_count: int = 0
    last_used_at: Optional[datetime] = None
