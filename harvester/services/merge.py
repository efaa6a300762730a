"""Batch merge of validated tile artifacts into one deduplicated GeoPackage.

Artifacts are grouped into batches; each batch becomes an OGR VRT union
layer that ``ogr2ogr`` appends into a staging GeoPackage. A single SQL pass
then keeps one feature per identifier. Neighbouring tiles and quadrant
subdivision both return features that straddle tile edges, so the merged
layer contains duplicates until that pass runs.

Staging files are renamed onto the final paths only after every step
succeeded, so a failed merge never leaves a partial dataset behind.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence

from .ogr import OgrCommandError, OgrToolkit

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000
STAGING_MARKER = ".partial"


class MergeError(Exception):
    """Raised when the merged dataset cannot be produced."""


@dataclass
class MergeResult:
    merged_path: Path
    output_path: Path
    batch_count: int
    artifact_count: int


def build_union_vrt(paths: Sequence[Path], layer_name: str) -> str:
    """Render an OGR VRT document that unions ``layer_name`` from every path."""

    root = ET.Element("OGRVRTDataSource")
    union = ET.SubElement(root, "OGRVRTUnionLayer", name=layer_name)
    for index, path in enumerate(paths):
        source = ET.SubElement(union, "OGRVRTLayer", name=f"{layer_name}_{index}")
        ET.SubElement(source, "SrcDataSource").text = str(Path(path).resolve())
        ET.SubElement(source, "SrcLayer").text = layer_name
    return ET.tostring(root, encoding="unicode")


def build_dedup_query(layer_name: str, key: str, *, id_column: str = "fid") -> str:
    """SQL keeping the row with the lowest ``id_column`` for every ``key`` value.

    Rows without a key cannot be matched to one another and are all kept.
    """

    layer = _quote_identifier(layer_name)
    quoted_key = _quote_identifier(key)
    return (
        f"SELECT * FROM {layer} WHERE {quoted_key} IS NULL OR {id_column} IN "
        f"(SELECT MIN({id_column}) FROM {layer} GROUP BY {quoted_key})"
    )


def batched(paths: Sequence[Path], size: int) -> List[List[Path]]:
    if size < 1:
        raise ValueError("batch size must be at least 1")
    return [list(paths[start : start + size]) for start in range(0, len(paths), size)]


class MergeCoordinator:
    def __init__(
        self,
        toolkit: OgrToolkit,
        *,
        output_dir: Path,
        output_name: str,
        layer_name: str,
        dedup_key: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self.toolkit = toolkit
        self.output_dir = output_dir
        self.output_name = output_name
        self.layer_name = layer_name
        self.dedup_key = dedup_key
        self.batch_size = batch_size

    @property
    def merged_path(self) -> Path:
        return self.output_dir / f"{self.output_name}_merged.gpkg"

    @property
    def output_path(self) -> Path:
        return self.output_dir / f"{self.output_name}.gpkg"

    async def merge(self, paths: Sequence[Path]) -> MergeResult:
        if not paths:
            raise MergeError("No valid artifacts to merge.")

        self.output_dir.mkdir(parents=True, exist_ok=True)
        merged_staging = _staging_path(self.merged_path)
        output_staging = _staging_path(self.output_path)
        _remove(merged_staging, output_staging)

        batches = batched(list(paths), self.batch_size)
        try:
            for index, batch in enumerate(batches):
                await self._merge_batch(batch, index, len(batches), merged_staging)

            logger.info("Deduplicating %s on '%s'...", self.merged_path.name, self.dedup_key)
            await self.toolkit.export_sql(
                merged_staging,
                output_staging,
                sql=build_dedup_query(self.layer_name, self.dedup_key),
                layer_name=self.layer_name,
            )
            merged_staging.replace(self.merged_path)
            output_staging.replace(self.output_path)
        except (OgrCommandError, OSError) as exc:
            _remove(merged_staging, output_staging)
            raise MergeError(str(exc) or exc.__class__.__name__) from exc

        logger.info(
            "Merged %d artifacts in %d batches into %s",
            len(paths),
            len(batches),
            self.output_path,
        )
        return MergeResult(
            merged_path=self.merged_path,
            output_path=self.output_path,
            batch_count=len(batches),
            artifact_count=len(paths),
        )

    async def _merge_batch(
        self, batch: Sequence[Path], index: int, total: int, destination: Path
    ) -> None:
        vrt_path = self.output_dir / f"{self.output_name}_batch_{index}.vrt"
        vrt_path.write_text(build_union_vrt(batch, self.layer_name), encoding="utf-8")
        logger.info("[%d/%d] Merging batch of %d artifacts...", index + 1, total, len(batch))
        try:
            await self.toolkit.append_vrt(
                vrt_path,
                destination,
                layer_name=self.layer_name,
                append=index > 0,
            )
        finally:
            vrt_path.unlink(missing_ok=True)


def _staging_path(path: Path) -> Path:
    # GDAL expects the .gpkg suffix, so the marker goes before it.
    return path.with_name(f"{path.stem}{STAGING_MARKER}{path.suffix}")


def _remove(*paths: Path) -> None:
    for path in paths:
        path.unlink(missing_ok=True)


def _quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'
