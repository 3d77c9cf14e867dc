from datetime import timedelta

import pytest

from event_import.core.exceptions import NotFoundError
from event_import.db.models import Catalog, Dataset, ImportFile
from event_import.domain.imports.jobs import create_import_job
from event_import.domain.imports.progress import ProgressTracker, build_progress_report, stage_percentage
from event_import.domain.imports.stages import ProcessingStage


@pytest.fixture
def sources(session):
    catalog = Catalog(name="c")
    session.add(catalog)
    session.flush()
    dataset = Dataset(catalog_id=catalog.id, name="events")
    import_file = ImportFile(catalog_id=catalog.id, file_name="events.xlsx", content=b"x", status="processing")
    session.add_all([dataset, import_file])
    session.flush()
    return import_file, dataset.id


def _job(session, sources, stage=ProcessingStage.DETECT_SCHEMA, sheet_name="Sheet1"):
    return create_import_job(
        session,
        import_file_id=sources[0].id,
        dataset_id=sources[1],
        sheet_name=sheet_name,
        stage=stage,
    )


@pytest.mark.parametrize(
    "stage, current, total, expected",
    [
        ("detect-schema", 0, 0, 0.0),
        ("detect-schema", 5, 10, 5.0),
        ("await-approval", 0, 1, 20.0),
        ("geocode-batch", 1, 2, 50.0),
        ("create-events", 10, 10, 100.0),
        ("completed", 0, 0, 100.0),
        ("failed", 3, 4, 0.0),
    ],
)
def test_stage_percentage(stage, current, total, expected):
    assert stage_percentage(stage, current, total) == expected


def test_tracker_counts_batches_and_resumes(session, sources, clock):
    job = _job(session, sources)
    tracker = ProgressTracker(job, clock)

    tracker.start_stage(ProcessingStage.GEOCODE_BATCH, total=5, batch_size=2)
    tracker.complete_batch(1, 2)
    tracker.record_geocoding(provider_calls={"fake": 2}, cache_hits=1, failed=1, from_file=0)
    session.commit()

    assert job.progress["totalBatches"] == 3
    assert job.progress["current"] == 2
    assert job.progress["geocoding"]["providerCalls"] == {"fake": 2}

    resumed = ProgressTracker(job, clock)
    resumed.start_stage(ProcessingStage.GEOCODE_BATCH, total=5, batch_size=2)
    assert resumed.batch_number == 1

    resumed.start_stage(ProcessingStage.CREATE_EVENTS, total=4, batch_size=2)
    assert resumed.batch_number == 0
    assert resumed.snapshot()["geocoding"]["cacheHits"] == 1


def test_report_for_unknown_file(session):
    with pytest.raises(NotFoundError):
        build_progress_report(session, 404)


def test_report_aggregates_jobs(session, sources, clock):
    import_file = sources[0]
    geocoding = _job(session, sources, ProcessingStage.GEOCODE_BATCH, "Events")
    done = _job(session, sources, ProcessingStage.COMPLETED, "Venues")
    clock_start = clock() - timedelta(seconds=10)
    geocoding.progress = {
        "stage": "geocode-batch",
        "stageStartedAt": clock_start.isoformat(),
        "current": 1,
        "total": 2,
        "sheetRows": 2,
        "batchNumber": 1,
        "batchSize": 1,
        "totalBatches": 2,
        "processedRows": 0,
        "geocodedRows": 1,
        "geocoding": {"providerCalls": {"fake": 1}, "cacheHits": 0, "failed": 0, "fromFile": 0},
    }
    done.progress = {
        "sheetRows": 3,
        "processedRows": 3,
        "createdEvents": 3,
        "geocoding": {"providerCalls": {"fake": 2}, "cacheHits": 1, "failed": 1, "fromFile": 0},
    }
    session.commit()

    report = build_progress_report(session, import_file.id, clock=clock)

    assert report.stage == "geocode-batch"
    assert report.progress.total == 5
    assert report.progress.current == 3
    assert report.progress.created_events == 3
    assert report.progress.percentage == 75.0
    assert report.stage_progress.percentage == 50.0
    assert report.batch_info.current_batch == 1
    assert report.batch_info.total_batches == 2
    assert report.geocoding_stats["providerCalls"] == {"fake": 3}
    assert report.estimated_time_remaining == 10.0
    assert report.current_job.id == geocoding.id

    payload = report.to_json()
    assert payload["importId"] == import_file.id
    assert payload["stageProgress"]["label"] == "Geocoding addresses..."
    assert payload["jobs"][1]["sheetName"] == "Venues"


def test_report_without_jobs(session, sources):
    import_file = sources[0]
    import_file.status = "skipped"
    session.commit()

    report = build_progress_report(session, import_file.id)

    assert report.stage == "completed"
    assert report.progress.percentage == 100.0
    assert report.jobs == []
