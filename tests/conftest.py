import asyncio
import os
import tempfile
from pathlib import Path

import httpx
import pytest

os.environ.setdefault("HARVEST_DATA_DIR", tempfile.mkdtemp(prefix="harvest-tests-"))

from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import create_engine  # noqa: E402

import harvester.database as database  # noqa: E402
from harvester.services import ledger  # noqa: E402
from harvester.services.ogr import OgrCommandError  # noqa: E402

TYPENAME = "CL:Cadastral_parcel"


@pytest.fixture(autouse=True)
def memory_database(monkeypatch):
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    monkeypatch.setattr(database, "engine", engine)
    ledger.reset_table_cache()
    yield engine
    ledger.reset_table_cache()


def gml_payload(count: int, *, start: int = 0) -> str:
    members = "".join(
        f'<wfs:member><{TYPENAME} gml:id="parcel.{index}">'
        f"<CL:CaPaKey>{index}</CL:CaPaKey>"
        f"</{TYPENAME}></wfs:member>"
        for index in range(start, start + count)
    )
    return (
        '<wfs:FeatureCollection numberMatched="unknown" '
        f'numberReturned="{count}">{members}</wfs:FeatureCollection>'
    )


class FakeWfsClient:
    """Stands in for ``httpx.AsyncClient``; ``handler(params)`` returns (status, body)."""

    def __init__(self, handler, *, delay: float = 0.0):
        self.handler = handler
        self.delay = delay
        self.calls = []
        self.in_flight = 0
        self.peak_in_flight = 0

    async def get(self, url, params=None, headers=None):
        params = dict(params or {})
        self.calls.append({"url": url, "params": params, "headers": dict(headers or {})})
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.handler(params)
            if isinstance(outcome, Exception):
                raise outcome
            status, body = outcome
        finally:
            self.in_flight -= 1
        return httpx.Response(status, text=body, request=httpx.Request("GET", url, params=params))

    def bboxes(self):
        return [call["params"]["bbox"] for call in self.calls]


class FakeToolkit:
    """Records GDAL operations and writes plain files instead of GeoPackages."""

    def __init__(
        self,
        *,
        missing_layers=(),
        broken=(),
        fail_convert=(),
        fail_batch=None,
        fail_query=False,
        probe_delay=0.0,
    ):
        self.missing_layers = set(missing_layers)
        self.broken = set(broken)
        self.fail_convert = set(fail_convert)
        self.fail_batch = fail_batch
        self.fail_query = fail_query
        self.probe_delay = probe_delay
        self.converted = []
        self.probed = []
        self.appends = []
        self.queries = []
        self.probes_in_flight = 0
        self.peak_probes = 0

    async def convert_gml(self, source, destination, *, layer_name, srs="EPSG:4326"):
        if destination.name in self.fail_convert:
            destination.write_text("partial")
            raise OgrCommandError(["ogr2ogr"], 1, "ERROR 1: unable to open datasource")
        destination.write_text(Path(source).read_text())
        self.converted.append(destination)

    async def has_layer(self, dataset, layer_name):
        self.probes_in_flight += 1
        self.peak_probes = max(self.peak_probes, self.probes_in_flight)
        try:
            await asyncio.sleep(self.probe_delay)
            self.probed.append(dataset)
            if dataset.name in self.broken:
                raise OgrCommandError(["ogrinfo"], 1, "ERROR 4: not a GeoPackage")
            return dataset.name not in self.missing_layers
        finally:
            self.probes_in_flight -= 1

    async def append_vrt(self, vrt_path, destination, *, layer_name, append):
        batch_index = len(self.appends)
        self.appends.append({"vrt": vrt_path.read_text(), "append": append, "layer": layer_name})
        if self.fail_batch is not None and batch_index == self.fail_batch:
            raise OgrCommandError(["ogr2ogr"], 1, "ERROR 1: failed to append batch")
        with destination.open("a", encoding="utf-8") as handle:
            handle.write(f"batch {batch_index}\n")

    async def export_sql(self, source, destination, *, sql, layer_name):
        self.queries.append(sql)
        if self.fail_query:
            raise OgrCommandError(["ogr2ogr"], 1, "ERROR 1: no such column")
        destination.write_text(Path(source).read_text())


async def no_sleep(delay):
    return None


@pytest.fixture
def toolkit():
    return FakeToolkit()
