"""
Shared fixtures for the event import tests.

Every test gets its own SQLite file database with all tables created, a
session factory bound to it, a controllable clock and scripted geocoding
providers. Tests that drive the pipeline controller must commit or close
their own sessions first: the controller opens its own.
"""
import pytest
from sqlalchemy.orm import sessionmaker

from event_import.core.config import Settings
from event_import.db.models import Catalog, Dataset, ImportFile
from event_import.db.session import build_engine, init_db
from event_import.domain.geocoding.service import GeocodingService
from event_import.domain.imports.fingerprinting import calculate_file_hash
from event_import.domain.imports.orchestrator import StagePipelineController
from event_import.domain.imports.task_queue import InlineTaskQueue
from tests.fakes import FakeClock, ScriptedProvider


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'events.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def session(session_factory):
    with session_factory() as db:
        yield db


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_settings():
    return Settings(
        geocoding_batch_size=2,
        event_creation_batch_size=2,
        schema_batch_size=2,
        geocoding_concurrency=2,
    )


@pytest.fixture
def geocoder():
    provider = ScriptedProvider(
        "fake",
        {
            "Alexanderplatz 1, Berlin": (52.5219, 13.4132, 0.95),
            "Marienplatz 1, Munich": (48.1374, 11.5755, 0.9),
        },
    )
    return GeocodingService([provider], min_confidence=0.5)


@pytest.fixture
def controller(session_factory, test_settings, geocoder, clock):
    return StagePipelineController(
        session_factory,
        settings=test_settings,
        geocoder=geocoder,
        clock=clock,
        task_queue=InlineTaskQueue(),
    )


@pytest.fixture
def catalog_id(session_factory):
    with session_factory() as db:
        catalog = Catalog(name="City events")
        db.add(catalog)
        db.commit()
        return catalog.id


@pytest.fixture
def add_dataset(session_factory, catalog_id):
    def _add(name, **fields):
        with session_factory() as db:
            dataset = Dataset(catalog_id=catalog_id, name=name, **fields)
            db.add(dataset)
            db.commit()
            return dataset.id

    return _add


@pytest.fixture
def add_import_file(session_factory, catalog_id):
    def _add(file_name, content, source_key=None, dataset_mapping=None):
        if isinstance(content, str):
            content = content.encode("utf-8")
        with session_factory() as db:
            import_file = ImportFile(
                catalog_id=catalog_id,
                file_name=file_name,
                content=content,
                content_hash=calculate_file_hash(content),
                source_key=source_key,
                dataset_mapping=dataset_mapping,
            )
            db.add(import_file)
            db.commit()
            return import_file.id

    return _add
