import pytest

from event_import.core.exceptions import NotFoundError
from event_import.db.models import Catalog, Dataset, Event
from event_import.domain.schemas import versioning
from event_import.domain.schemas.freshness import get_schema_freshness, is_schema_stale
from event_import.domain.schemas.inference import infer_schema_from_events
from event_import.domain.schemas.versioning import create_schema_version, get_latest_schema

SCHEMA = {"type": "object", "properties": {"title": {"type": "string"}}, "required": ["title"]}


@pytest.fixture
def dataset(session):
    catalog = Catalog(name="c")
    session.add(catalog)
    session.flush()
    dataset = Dataset(catalog_id=catalog.id, name="events")
    session.add(dataset)
    session.flush()
    return dataset


def _add_events(session, dataset, count, start=0):
    for index in range(start, start + count):
        session.add(Event(
            dataset_id=dataset.id,
            unique_id=f"{dataset.id}:ext:{index}",
            content_hash=f"h{index}",
            data={"title": f"Event {index}", "seats": index},
        ))
    session.flush()


def test_versions_increase_per_dataset(session, dataset):
    first = create_schema_version(session, dataset_id=dataset.id, schema=SCHEMA)
    second = create_schema_version(session, dataset_id=dataset.id, schema=SCHEMA, auto_approved=True)

    assert (first.version_number, second.version_number) == (1, 2)
    assert get_latest_schema(session, dataset.id).id == second.id
    assert second.auto_approved


def test_version_race_retries_with_next_number(session, dataset, monkeypatch):
    create_schema_version(session, dataset_id=dataset.id, schema=SCHEMA)
    session.commit()

    real_next = versioning._next_version_number
    calls = []

    def stale_then_real(db, dataset_id):
        calls.append(dataset_id)
        # First attempt sees the number a concurrent writer already took
        return 1 if len(calls) == 1 else real_next(db, dataset_id)

    monkeypatch.setattr(versioning, "_next_version_number", stale_then_real)
    version = create_schema_version(session, dataset_id=dataset.id, schema=SCHEMA)
    session.commit()

    assert version.version_number == 2
    assert len(calls) == 2


def test_event_count_is_recorded(session, dataset):
    _add_events(session, dataset, 3)
    version = create_schema_version(session, dataset_id=dataset.id, schema=SCHEMA)
    assert version.event_count_at_creation == 3


def test_freshness_without_schema(session, dataset):
    assert not is_schema_stale(session, dataset, None)
    _add_events(session, dataset, 1)
    freshness = get_schema_freshness(session, dataset, None)
    assert freshness.stale
    assert freshness.reason == "no_schema"


def test_freshness_tracks_added_and_deleted_events(session, dataset):
    _add_events(session, dataset, 2)
    version = create_schema_version(session, dataset_id=dataset.id, schema=SCHEMA)
    assert not is_schema_stale(session, dataset, version)

    _add_events(session, dataset, 1, start=10)
    added = get_schema_freshness(session, dataset, version)
    assert (added.stale, added.reason, added.current_event_count) == (True, "added", 3)

    session.query(Event).filter(Event.dataset_id == dataset.id).delete()
    session.flush()
    deleted = get_schema_freshness(session, dataset, version)
    assert (deleted.stale, deleted.reason) == (True, "deleted")
    assert deleted.to_json()["schemaEventCount"] == 2


def test_inference_requires_existing_dataset(session):
    with pytest.raises(NotFoundError):
        infer_schema_from_events(session, 12345)


def test_inference_without_events(session, dataset):
    result = infer_schema_from_events(session, dataset.id)
    assert not result.generated
    assert result.message == "No events in dataset to analyze"


def test_inference_generates_then_reports_up_to_date(session, dataset):
    _add_events(session, dataset, 5)

    generated = infer_schema_from_events(session, dataset.id, sample_size=4, batch_size=3)
    assert generated.generated
    assert generated.events_sampled == 4
    assert generated.message == "Schema generated from 4 events"
    assert generated.schema.auto_approved
    assert generated.schema.event_count_at_creation == 5
    assert set(generated.schema.schema["properties"]) == {"title", "seats"}

    again = infer_schema_from_events(session, dataset.id)
    assert not again.generated
    assert again.message == "Schema is up-to-date"

    forced = infer_schema_from_events(session, dataset.id, force_regenerate=True)
    assert forced.generated
    assert forced.schema.version_number == 2
