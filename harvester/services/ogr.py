"""Async wrappers around the GDAL/OGR command line tools.

All vector conversion, layer probing and merging is delegated to
``ogr2ogr`` and ``ogrinfo`` running as child processes, so the event loop
stays free while GDAL works.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence

logger = logging.getLogger(__name__)

# GML3 from the cadastral WFS arrives latitude-first; swap to longitude-first
# while writing the GeoPackage.
AXIS_SWAP_PIPELINE = "+proj=pipeline +step +proj=axisswap +order=2,1"


class OgrCommandError(RuntimeError):
    """Raised when an ``ogr2ogr`` / ``ogrinfo`` invocation exits with an error."""

    def __init__(self, command: Sequence[str], returncode: int, stderr: str) -> None:
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        tail = stderr.strip()[-200:] or "(no stderr)"
        super().__init__(f"{self.command[0]} exited with status {returncode}: {tail}")


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


class OgrToolkit:
    def __init__(self, *, ogr2ogr: str = "ogr2ogr", ogrinfo: str = "ogrinfo") -> None:
        self.ogr2ogr = ogr2ogr
        self.ogrinfo = ogrinfo

    async def run(self, command: Sequence[str], *, context: str, check: bool = True) -> CommandResult:
        started = time.monotonic()
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        result = CommandResult(
            returncode=process.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        elapsed = time.monotonic() - started
        if result.returncode != 0:
            if check:
                logger.error(
                    "%s [%s]: failed after %.1fs - %s",
                    command[0],
                    context,
                    elapsed,
                    result.stderr.strip()[:200],
                )
                raise OgrCommandError(command, result.returncode, result.stderr)
            return result
        logger.debug("%s [%s]: done in %.1fs", command[0], context, elapsed)
        return result

    async def convert_gml(
        self,
        source: Path,
        destination: Path,
        *,
        layer_name: str,
        srs: str = "EPSG:4326",
    ) -> None:
        command = [
            self.ogr2ogr,
            "-f",
            "GPKG",
            "-s_srs",
            srs,
            "-t_srs",
            srs,
            "-ct",
            AXIS_SWAP_PIPELINE,
            str(destination),
            str(source),
            "-nln",
            layer_name,
        ]
        await self.run(command, context=f"convert {source.name}")

    async def has_layer(self, dataset: Path, layer_name: str) -> bool:
        command = [self.ogrinfo, "-ro", "-so", str(dataset), layer_name]
        result = await self.run(command, context=f"probe {dataset.name}", check=False)
        return result.returncode == 0

    async def append_vrt(
        self,
        vrt_path: Path,
        destination: Path,
        *,
        layer_name: str,
        append: bool,
    ) -> None:
        command: List[str] = [self.ogr2ogr, "-f", "GPKG"]
        if append:
            command += ["-update", "-append"]
        command += [str(destination), str(vrt_path), "-nln", layer_name, layer_name]
        await self.run(command, context=f"merge {vrt_path.name}")

    async def export_sql(
        self,
        source: Path,
        destination: Path,
        *,
        sql: str,
        layer_name: str,
    ) -> None:
        command = [
            self.ogr2ogr,
            "-f",
            "GPKG",
            str(destination),
            str(source),
            "-dialect",
            "SQLite",
            "-sql",
            sql,
            "-nln",
            layer_name,
        ]
        await self.run(command, context=f"query {source.name}")
