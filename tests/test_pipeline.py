import asyncio
from dataclasses import replace

import pytest

from conftest import FakeToolkit, FakeWfsClient, gml_payload, no_sleep
from harvester.config import HarvestSettings
from harvester.database import session_scope
from harvester.models import HarvestRun
from harvester.services import ledger
from harvester.services.merge import MergeError
from harvester.services.pipeline import run_harvest
from harvester.services.tiling import Extent, TileGrid

SAMPLE_EXTENT = Extent(west=4.2, south=50.8, east=4.4, north=50.9)
SETTINGS = replace(HarvestSettings(base_url="http://wfs.example.test/WFSServer"), step=0.05)


def _handler_saturating(first_tile):
    saturated = first_tile.bbox.wfs_value()

    def handler(params):
        if params["bbox"] == saturated:
            return 200, gml_payload(600)
        return 200, gml_payload(8)

    return handler


def _new_run():
    return ledger.create_run(
        west=SAMPLE_EXTENT.west,
        south=SAMPLE_EXTENT.south,
        east=SAMPLE_EXTENT.east,
        north=SAMPLE_EXTENT.north,
        step=SETTINGS.step,
    )


def _load_run(run_id):
    with session_scope() as session:
        run = session.get(HarvestRun, run_id)
        session.expunge(run)
        return run


def test_harvest_fetches_splits_validates_and_merges(tmp_path, toolkit):
    tiles = TileGrid(SAMPLE_EXTENT, SETTINGS.step).tiles()
    client = FakeWfsClient(_handler_saturating(tiles[0]))
    run_id = _new_run()

    result = asyncio.run(
        run_harvest(
            SAMPLE_EXTENT,
            SETTINGS,
            run_id=run_id,
            data_dir=tmp_path,
            client=client,
            toolkit=toolkit,
            sleep=no_sleep,
        )
    )

    assert result.tile_count == 8
    assert result.artifact_count == 7 + 4
    assert result.valid_count == 11
    assert len(client.calls) == 8 + 4
    assert result.output_path == tmp_path / "parcels.gpkg"
    assert result.output_path.is_file()
    assert result.merged_path.is_file()
    assert toolkit.queries and "GROUP BY \"CaPaKey\"" in toolkit.queries[0]
    assert not list((tmp_path / "tiles").glob("*.gml"))

    run = _load_run(run_id)
    assert run.status == ledger.RUN_COMPLETED
    assert run.tile_count == 8
    assert run.valid_count == 11
    assert run.output_path == str(result.output_path)
    assert run.finished_at is not None
    assert ledger.tile_status_counts(run_id) == {
        ledger.TILE_SPLIT: 1,
        ledger.TILE_CONVERTED: 11,
    }


def test_rerun_reuses_artifacts_without_requests(tmp_path):
    first_client = FakeWfsClient(lambda params: (200, gml_payload(8)))
    asyncio.run(
        run_harvest(
            SAMPLE_EXTENT,
            SETTINGS,
            data_dir=tmp_path,
            client=first_client,
            toolkit=FakeToolkit(),
            sleep=no_sleep,
        )
    )

    second_client = FakeWfsClient(lambda params: (500, "should not be called"))
    run_id = _new_run()
    result = asyncio.run(
        run_harvest(
            SAMPLE_EXTENT,
            SETTINGS,
            run_id=run_id,
            data_dir=tmp_path,
            client=second_client,
            toolkit=FakeToolkit(),
            sleep=no_sleep,
        )
    )

    assert len(first_client.calls) == 8
    assert second_client.calls == []
    assert result.artifact_count == 8
    assert ledger.tile_status_counts(run_id) == {ledger.TILE_CACHED: 8}


def test_rerun_refetches_split_roots_only(tmp_path):
    tiles = TileGrid(SAMPLE_EXTENT, SETTINGS.step).tiles()
    handler = _handler_saturating(tiles[0])
    asyncio.run(
        run_harvest(
            SAMPLE_EXTENT,
            SETTINGS,
            data_dir=tmp_path,
            client=FakeWfsClient(handler),
            toolkit=FakeToolkit(),
            sleep=no_sleep,
        )
    )

    second_client = FakeWfsClient(handler)
    result = asyncio.run(
        run_harvest(
            SAMPLE_EXTENT,
            SETTINGS,
            data_dir=tmp_path,
            client=second_client,
            toolkit=FakeToolkit(),
            sleep=no_sleep,
        )
    )

    # A split root has no artifact of its own, so only its probe request repeats.
    assert second_client.bboxes() == [tiles[0].bbox.wfs_value()]
    assert result.artifact_count == 11


def test_failed_tiles_are_skipped_and_the_rest_merged(tmp_path, toolkit):
    tiles = TileGrid(SAMPLE_EXTENT, SETTINGS.step).tiles()
    broken = tiles[5].bbox.wfs_value()
    client = FakeWfsClient(
        lambda params: (503, "down") if params["bbox"] == broken else (200, gml_payload(4))
    )
    run_id = _new_run()

    result = asyncio.run(
        run_harvest(
            SAMPLE_EXTENT,
            SETTINGS,
            run_id=run_id,
            data_dir=tmp_path,
            client=client,
            toolkit=toolkit,
            sleep=no_sleep,
        )
    )

    assert result.artifact_count == 7
    assert ledger.tile_status_counts(run_id)[ledger.TILE_FAILED] == 1
    failure = ledger.tile_failures(run_id)[0]
    assert failure["tile_id"] == tiles[5].tile_id
    assert _load_run(run_id).status == ledger.RUN_COMPLETED


def test_merge_failure_marks_run_failed(tmp_path):
    client = FakeWfsClient(lambda params: (200, gml_payload(2)))
    run_id = _new_run()

    with pytest.raises(MergeError):
        asyncio.run(
            run_harvest(
                SAMPLE_EXTENT,
                SETTINGS,
                run_id=run_id,
                data_dir=tmp_path,
                client=client,
                toolkit=FakeToolkit(fail_batch=0),
                sleep=no_sleep,
            )
        )

    run = _load_run(run_id)
    assert run.status == ledger.RUN_FAILED
    assert run.error
    assert run.artifact_count == 8
    assert not (tmp_path / "parcels.gpkg").exists()
