"""
Schema inference from the events already stored for a dataset.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from event_import.core.config import settings
from event_import.core.exceptions import NotFoundError
from event_import.db.models import Dataset, DatasetSchema, Event
from event_import.domain.schemas.builder import SchemaBuilder, compare_schemas
from event_import.domain.schemas.freshness import get_schema_freshness
from event_import.domain.schemas.versioning import count_events, create_schema_version, get_latest_schema

logger = logging.getLogger(__name__)


@dataclass
class SchemaInferenceResult:
    generated: bool
    schema: Optional[DatasetSchema]
    events_sampled: int = 0
    message: str = ""

    def to_json(self) -> Dict[str, Any]:
        return {
            "generated": self.generated,
            "schemaVersion": self.schema.version_number if self.schema is not None else None,
            "eventsSampled": self.events_sampled,
            "message": self.message,
        }


def _sample_events(session: Session, dataset_id: int, builder: SchemaBuilder, sample_size: int, batch_size: int) -> int:
    processed = 0
    last_id = 0
    while processed < sample_size:
        limit = min(batch_size, sample_size - processed)
        batch = session.execute(
            select(Event.id, Event.data)
            .where(Event.dataset_id == dataset_id, Event.id > last_id)
            .order_by(Event.id)
            .limit(limit)
        ).all()
        if not batch:
            break
        builder.process_batch([data or {} for _, data in batch])
        processed += len(batch)
        last_id = batch[-1][0]
    return processed


def infer_schema_from_events(
    session: Session,
    dataset_id: int,
    *,
    sample_size: Optional[int] = None,
    batch_size: Optional[int] = None,
    force_regenerate: bool = False,
) -> SchemaInferenceResult:
    """
    Derive the dataset's schema from up to ``sample_size`` stored events and
    append it as a new, auto-approved version. Nothing is written when the
    latest version is still fresh, unless ``force_regenerate`` is set.
    """
    sample_size = sample_size or settings.schema_sample_size
    batch_size = batch_size or settings.schema_batch_size

    dataset = session.get(Dataset, dataset_id)
    if dataset is None:
        raise NotFoundError("Dataset", dataset_id)

    latest = get_latest_schema(session, dataset_id)
    if latest is not None and not force_regenerate:
        freshness = get_schema_freshness(session, dataset, latest)
        if not freshness.stale:
            logger.info("Schema for dataset %s is up-to-date (version %s)", dataset_id, latest.version_number)
            return SchemaInferenceResult(generated=False, schema=latest, message="Schema is up-to-date")
        logger.info("Schema for dataset %s is stale (%s); regenerating", dataset_id, freshness.reason)

    event_count = count_events(session, dataset_id)
    if event_count == 0:
        return SchemaInferenceResult(generated=False, schema=latest, message="No events in dataset to analyze")

    builder = SchemaBuilder()
    processed = _sample_events(session, dataset_id, builder, sample_size, batch_size)
    schema = builder.get_schema()
    comparison = compare_schemas(latest.schema if latest is not None else None, schema)

    version = create_schema_version(
        session,
        dataset_id=dataset_id,
        schema=schema,
        field_metadata=builder.field_stats,
        schema_summary={
            "newFields": comparison["newFields"],
            "removedFields": comparison["removedFields"],
            "typeChanges": comparison["typeChanges"],
            "isBreaking": comparison["isBreaking"],
            "source": "inference",
        },
        event_count=event_count,
        auto_approved=True,
    )
    session.commit()

    logger.info("Schema generated for dataset %s from %d events (version %s)", dataset_id, processed, version.version_number)
    return SchemaInferenceResult(
        generated=True,
        schema=version,
        events_sampled=processed,
        message=f"Schema generated from {processed} events",
    )
