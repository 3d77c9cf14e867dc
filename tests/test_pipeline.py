"""
End-to-end runs of the stage pipeline against a SQLite file database.

Every test drives the controller the way a worker would: create jobs,
drain the inline queue, then inspect what was persisted.
"""
import io

import pandas as pd
import pytest
from sqlalchemy import func, select

from event_import.core.exceptions import GeocodingError, ValidationError
from event_import.db.models import Dataset, DatasetSchema, Event, ImportFile, ImportJob
from event_import.domain.geocoding.service import GeocodingService
from event_import.domain.imports import handlers
from event_import.domain.imports.orchestrator import RunOutcome, StagePipelineController
from event_import.domain.imports.stages import ProcessingStage
from event_import.domain.imports.task_queue import InlineTaskQueue
from tests.fakes import EVENTS_CSV, ScriptedProvider


def _jobs(session_factory, import_file_id):
    with session_factory() as db:
        return db.execute(
            select(ImportJob).where(ImportJob.import_file_id == import_file_id).order_by(ImportJob.id)
        ).scalars().all()


def _events(session_factory, dataset_id=None):
    with session_factory() as db:
        query = select(Event).order_by(Event.source_row_number, Event.id)
        if dataset_id is not None:
            query = query.where(Event.dataset_id == dataset_id)
        return db.execute(query).scalars().all()


def _import_file(session_factory, import_file_id):
    with session_factory() as db:
        return db.get(ImportFile, import_file_id)


def test_csv_import_runs_every_stage(controller, session_factory, add_import_file, geocoder):
    file_id = add_import_file("events.csv", EVENTS_CSV)

    runs = controller.process_import_file(file_id)

    assert [run.from_stage for run in runs] == [
        ProcessingStage.DETECT_SCHEMA,
        ProcessingStage.VALIDATE_SCHEMA,
        ProcessingStage.AWAIT_APPROVAL,
        ProcessingStage.ANALYZE_DUPLICATES,
        ProcessingStage.GEOCODE_BATCH,
        ProcessingStage.CREATE_EVENTS,
    ]
    assert runs[-1].stage == ProcessingStage.COMPLETED
    assert _import_file(session_factory, file_id).status == "completed"

    (job,) = _jobs(session_factory, file_id)
    assert job.stage == ProcessingStage.COMPLETED
    assert job.last_successful_stage == "create-events"
    assert job.detected_field_mappings["titlePath"] == "title"
    assert job.detected_field_mappings["locationPath"] == "address"
    assert job.results["eventsCreated"] == 4
    assert job.results["geocodedRows"] == 3
    assert job.results["datasetSchemaId"] is not None
    assert any(error["stage"] == "geocode-batch" and error["row"] == 3 for error in job.errors)

    events = _events(session_factory)
    assert [event.title for event in events] == ["Open air concert", "Jazz night", "Poetry slam", "Film screening"]
    assert all(event.validation_status == "valid" for event in events)
    assert events[0].event_timestamp.date().isoformat() == "2024-07-01"
    assert (events[0].latitude, events[0].longitude) == (52.5219, 13.4132)
    assert events[0].location_source == "geocoded"
    assert events[2].latitude is None
    assert events[3].latitude == 52.5219

    # Repeated addresses are looked up once
    assert geocoder.providers[0].calls.count("Alexanderplatz 1, Berlin") == 1

    with session_factory() as db:
        version = db.get(DatasetSchema, job.dataset_schema_id)
        assert version.version_number == 1
        assert version.auto_approved

    report = controller.progress(file_id)
    assert report.status == "completed"
    assert report.progress.percentage == 100.0
    assert report.progress.created_events == 4


def test_identical_resubmission_is_skipped(controller, session_factory, add_import_file):
    first = add_import_file("events.csv", EVENTS_CSV)
    controller.process_import_file(first)

    second = add_import_file("events-copy.csv", EVENTS_CSV)
    assert controller.start_import(second) == []

    resubmission = _import_file(session_factory, second)
    assert resubmission.status == "skipped"
    assert resubmission.is_duplicate
    assert resubmission.duplicate_of_id == first
    assert "Duplicate" in resubmission.skip_reason
    assert _jobs(session_factory, second) == []
    assert len(_events(session_factory)) == 4


def test_reimport_skips_rows_that_already_exist(controller, session_factory, add_import_file):
    controller.process_import_file(add_import_file("events.csv", EVENTS_CSV))

    updated = EVENTS_CSV + 'Street festival,2024-07-05,"Marienplatz 1, Munich",500\n'
    file_id = add_import_file("events.csv", updated)
    controller.process_import_file(file_id)

    (job,) = _jobs(session_factory, file_id)
    assert job.duplicates["summary"]["externalDuplicates"] == 4
    assert job.results["eventsCreated"] == 1
    assert job.results["duplicatesSkipped"] == 4
    assert [event.title for event in _events(session_factory, job.dataset_id)][-1] == "Street festival"
    assert len(_events(session_factory)) == 5


def test_repeated_rows_create_one_event(controller, session_factory, add_import_file):
    csv = "title,date\nConcert,2024-07-01\nConcert,2024-07-01\nTalk,2024-07-02\n"
    file_id = add_import_file("events.csv", csv)

    controller.process_import_file(file_id)

    (job,) = _jobs(session_factory, file_id)
    assert job.duplicates["duplicateStrategy"] == "skip"
    assert job.duplicates["internal"][0]["rowNumber"] == 2
    assert job.duplicates["internal"][0]["firstOccurrence"] == 1
    assert job.results["eventsCreated"] == 2
    assert job.results["duplicatesSkipped"] == 1
    assert [event.title for event in _events(session_factory)] == ["Concert", "Talk"]


def test_schema_change_waits_for_approval(controller, session_factory, add_import_file, add_dataset):
    dataset_id = add_dataset("events", schema_auto_grow=False)
    file_id = add_import_file("events.csv", EVENTS_CSV)

    runs = controller.process_import_file(file_id)

    assert runs[-1].outcome == RunOutcome.WAITING
    (job,) = _jobs(session_factory, file_id)
    assert job.dataset_id == dataset_id
    assert job.stage == ProcessingStage.AWAIT_APPROVAL
    assert job.schema_validation["requiresApproval"]
    assert not job.schema_validation["approved"]
    assert job.dataset_schema_id is None
    assert _events(session_factory) == []
    assert controller.progress(file_id).stage == "await-approval"

    # Waiting is stable until someone approves
    assert controller.run_stage(job.id).outcome == RunOutcome.WAITING

    controller.approve_schema(job.id, "alice")
    runs = controller.drain()

    assert runs[-1].stage == ProcessingStage.COMPLETED
    (job,) = _jobs(session_factory, file_id)
    with session_factory() as db:
        version = db.get(DatasetSchema, job.dataset_schema_id)
        assert version.approved_by == "alice"
        assert not version.auto_approved
    assert len(_events(session_factory)) == 4


def test_reapproval_after_reset_links_a_new_version(controller, session_factory, add_import_file, add_dataset):
    dataset_id = add_dataset("events", schema_auto_grow=False)
    file_id = add_import_file("events.csv", EVENTS_CSV)
    controller.process_import_file(file_id)
    (job,) = _jobs(session_factory, file_id)
    controller.approve_schema(job.id, "alice")
    controller.drain()
    first_version_id = _jobs(session_factory, file_id)[0].dataset_schema_id

    with session_factory() as db:
        dataset = db.get(Dataset, dataset_id)
        dataset.import_transforms = [{"type": "rename", "from": "title", "to": "name"}]
        db.commit()

    assert controller.reset_job_to_stage(job.id, "detect-schema").success
    runs = controller.drain()
    assert runs[-1].outcome == RunOutcome.WAITING
    assert _jobs(session_factory, file_id)[0].dataset_schema_id is None

    controller.approve_schema(job.id, "bob")
    runs = controller.drain()

    assert runs[-1].stage == ProcessingStage.COMPLETED
    (job,) = _jobs(session_factory, file_id)
    assert job.dataset_schema_id != first_version_id
    with session_factory() as db:
        version = db.get(DatasetSchema, job.dataset_schema_id)
        assert version.version_number == 2
        assert version.approved_by == "bob"
        assert "name" in version.schema["properties"]
        assert db.execute(select(func.count(DatasetSchema.id))).scalar_one() == 2


def test_approval_requires_waiting_job(controller, session_factory, add_import_file):
    file_id = add_import_file("events.csv", EVENTS_CSV)
    (job_id,) = controller.start_import(file_id)

    with pytest.raises(ValidationError):
        controller.approve_schema(job_id, "alice")


def test_unchanged_schema_reuses_latest_version(controller, session_factory, add_import_file):
    controller.process_import_file(add_import_file("events.csv", EVENTS_CSV))
    second = add_import_file("events.csv", EVENTS_CSV.replace("Jazz night", "Jazz evening"))
    controller.process_import_file(second)

    (job,) = _jobs(session_factory, second)
    assert not job.schema_validation["hasChanges"]
    with session_factory() as db:
        assert db.execute(select(func.count(DatasetSchema.id))).scalar_one() == 1


def test_german_headers_use_german_vocabulary(controller, session_factory, add_import_file, add_dataset):
    dataset_id = add_dataset("veranstaltungen", language="deu")
    content = (
        "titel,datum,ort\n"
        'Sommerfest,01.07.2024,"Alexanderplatz 1, Berlin"\n'
        'Weinprobe,02.07.2024,"Marienplatz 1, Munich"\n'
    )
    file_id = add_import_file("veranstaltungen.csv", content)

    controller.process_import_file(file_id)

    (job,) = _jobs(session_factory, file_id)
    assert job.detected_field_mappings["titlePath"] == "titel"
    assert job.detected_field_mappings["locationPath"] == "ort"
    events = _events(session_factory, dataset_id)
    assert [event.title for event in events] == ["Sommerfest", "Weinprobe"]
    assert events[1].latitude == 48.1374


def test_provided_coordinates_skip_geocoding(controller, session_factory, add_import_file, geocoder):
    content = (
        "title,address,latitude,longitude\n"
        'Harbour tour,"Alexanderplatz 1, Berlin",53.5461,9.9661\n'
        'Night market,"Marienplatz 1, Munich",48.1351,11.5820\n'
    )
    file_id = add_import_file("tours.csv", content)

    controller.process_import_file(file_id)

    events = _events(session_factory)
    assert [(event.latitude, event.location_source) for event in events] == [
        (53.5461, "provided"),
        (48.1351, "provided"),
    ]
    assert geocoder.providers[0].calls == []
    (job,) = _jobs(session_factory, file_id)
    assert job.progress["geocoding"]["fromFile"] == 2


class _SharedProvider(ScriptedProvider):
    """Issues an unrelated lookup through the same service on every call, as a sibling job would."""

    service = None

    def geocode(self, address):
        result = super().geocode(address)
        if not address.startswith("Sibling"):
            with pytest.raises(GeocodingError):
                self.service.geocode(f"Sibling of {address}")
        return result


def test_geocoding_counts_only_the_jobs_own_provider_calls(
    session_factory, test_settings, clock, add_import_file
):
    provider = _SharedProvider(
        "fake",
        {
            "Alexanderplatz 1, Berlin": (52.5219, 13.4132, 0.95),
            "Marienplatz 1, Munich": (48.1374, 11.5755, 0.9),
        },
    )
    provider.service = GeocodingService([provider])
    controller = StagePipelineController(
        session_factory,
        settings=test_settings,
        geocoder=provider.service,
        clock=clock,
        task_queue=InlineTaskQueue(),
    )
    file_id = add_import_file("events.csv", EVENTS_CSV)

    controller.process_import_file(file_id)

    (job,) = _jobs(session_factory, file_id)
    assert job.progress["geocoding"]["providerCalls"] == {"fake": 3}
    assert job.progress["geocoding"]["cacheHits"] == 1
    assert provider.service.stats()["providerCalls"] == {"fake": 6}


def test_geocoding_can_be_disabled_per_dataset(controller, session_factory, add_import_file, add_dataset, geocoder):
    add_dataset("events", geocoding_enabled=False)
    controller.process_import_file(add_import_file("events.csv", EVENTS_CSV))

    assert geocoder.providers[0].calls == []
    assert all(event.latitude is None for event in _events(session_factory))


def test_import_transforms_shape_rows_and_reject(controller, session_factory, add_import_file, add_dataset):
    add_dataset(
        "program",
        import_transforms=[
            {"type": "concatenate", "fromFields": ["street", "city"], "separator": ", ", "to": "address"},
            {"type": "date-parse", "from": "date", "onFailure": "reject"},
            {"type": "string-op", "from": "title", "operation": "trim"},
        ],
    )
    content = (
        "title,date,street,city\n"
        "  Open air concert ,2024-07-01,Alexanderplatz 1,Berlin\n"
        "Jazz night,some day,Marienplatz 1,Munich\n"
        "Film screening,2024-07-04,Marienplatz 1,Munich\n"
    )
    file_id = add_import_file("program.csv", content)

    controller.process_import_file(file_id)

    (job,) = _jobs(session_factory, file_id)
    assert job.results["eventsCreated"] == 2
    assert job.results["rejectedRows"] == 1
    assert any(error["stage"] == "detect-schema" and error["row"] == 2 for error in job.errors)

    events = _events(session_factory)
    assert [event.title for event in events] == ["Open air concert", "Film screening"]
    assert events[0].data["address"] == "Alexanderplatz 1, Berlin"
    assert events[1].latitude == 48.1374


def test_unreadable_file_fails_the_import(controller, session_factory, add_import_file):
    file_id = add_import_file("events.pdf", b"%PDF-1.7")

    with pytest.raises(ValidationError):
        controller.start_import(file_id)

    import_file = _import_file(session_factory, file_id)
    assert import_file.status == "failed"
    assert "Unsupported file type" in import_file.error_message

    with pytest.raises(ValidationError):
        controller.start_import(file_id)


def test_completed_jobs_are_not_rerun(controller, session_factory, add_import_file):
    file_id = add_import_file("events.csv", EVENTS_CSV)
    controller.process_import_file(file_id)
    (job,) = _jobs(session_factory, file_id)

    result = controller.run_stage(job.id)

    assert result.outcome == RunOutcome.NOOP
    assert len(_events(session_factory)) == 4


def _workbook(sheets):
    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        for name, rows in sheets.items():
            pd.DataFrame(rows).to_excel(writer, sheet_name=name, index=False)
    return buffer.getvalue()


def test_failing_sheet_does_not_stop_its_siblings_and_recovers(
    controller, session_factory, add_import_file, clock, monkeypatch
):
    content = _workbook({
        "Concerts": [
            {"title": "Open air concert", "address": "Alexanderplatz 1, Berlin"},
            {"title": "Jazz night", "address": "Marienplatz 1, Munich"},
        ],
        "Broken": [
            {"title": "Film screening", "address": "Marienplatz 1, Munich"},
        ],
    })
    file_id = add_import_file("program.xlsx", content)

    original = handlers.STAGE_HANDLERS[ProcessingStage.GEOCODE_BATCH]
    outage = {"active": True}

    def flaky_geocoding(ctx):
        if outage["active"] and ctx.job.sheet_name == "Broken":
            raise ConnectionError("connection refused by geocoding backend")
        return original(ctx)

    monkeypatch.setitem(handlers.STAGE_HANDLERS, ProcessingStage.GEOCODE_BATCH, flaky_geocoding)

    controller.process_import_file(file_id)

    concerts, broken = _jobs(session_factory, file_id)
    assert concerts.stage == ProcessingStage.COMPLETED
    assert broken.stage == ProcessingStage.FAILED
    assert broken.error_log["lastError"] == "Database connection error"
    assert broken.error_log["stage"] == "geocode-batch"
    assert broken.last_successful_stage == "analyze-duplicates"
    assert len(_events(session_factory, concerts.dataset_id)) == 2
    assert _events(session_factory, broken.dataset_id) == []

    import_file = _import_file(session_factory, file_id)
    assert import_file.status == "failed"
    assert import_file.error_message == "Database connection error"

    recovery = controller.recover_failed_job(broken.id)
    assert recovery.success
    assert recovery.recovery_stage == "geocode-batch"
    assert _import_file(session_factory, file_id).status == "processing"

    outage["active"] = False
    assert controller.process_pending_retries() == []
    clock.advance(31)
    assert controller.process_pending_retries() == [broken.id]
    controller.drain()

    _, broken = _jobs(session_factory, file_id)
    assert broken.stage == ProcessingStage.COMPLETED
    assert broken.retry_attempts == 1
    assert [event.title for event in _events(session_factory, broken.dataset_id)] == ["Film screening"]
    assert _import_file(session_factory, file_id).status == "completed"


def test_manual_reset_reruns_a_stage(controller, session_factory, add_import_file):
    file_id = add_import_file("events.csv", EVENTS_CSV)
    controller.process_import_file(file_id)
    (job,) = _jobs(session_factory, file_id)

    result = controller.reset_job_to_stage(job.id, "create-events")
    assert result.success
    assert _import_file(session_factory, file_id).status == "processing"

    runs = controller.drain()

    assert runs[-1].stage == ProcessingStage.COMPLETED
    (job,) = _jobs(session_factory, file_id)
    assert job.results["eventsCreated"] == 0
    assert job.results["duplicatesSkipped"] == 4
    assert len(_events(session_factory)) == 4
    assert _import_file(session_factory, file_id).status == "completed"
