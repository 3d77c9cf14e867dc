"""
Decide whether a schema snapshot still describes its dataset's events.
"""
from dataclasses import asdict, dataclass
from typing import Optional

from sqlalchemy.orm import Session

from event_import.db.models import Dataset, DatasetSchema
from event_import.domain.schemas.versioning import count_events


@dataclass
class SchemaFreshness:
    stale: bool
    current_event_count: int
    reason: Optional[str] = None
    schema_event_count: Optional[int] = None

    def to_json(self) -> dict:
        payload = asdict(self)
        return {
            "stale": payload["stale"],
            "reason": payload["reason"],
            "currentEventCount": payload["current_event_count"],
            "schemaEventCount": payload["schema_event_count"],
        }


def get_schema_freshness(session: Session, dataset: Dataset, schema: Optional[DatasetSchema]) -> SchemaFreshness:
    current = count_events(session, dataset.id)

    if schema is None:
        if current == 0:
            return SchemaFreshness(stale=False, current_event_count=0)
        return SchemaFreshness(stale=True, reason="no_schema", current_event_count=current)

    recorded = schema.event_count_at_creation or 0
    if current > recorded:
        return SchemaFreshness(stale=True, reason="added", current_event_count=current, schema_event_count=recorded)
    if current < recorded:
        return SchemaFreshness(stale=True, reason="deleted", current_event_count=current, schema_event_count=recorded)
    return SchemaFreshness(stale=False, current_event_count=current, schema_event_count=recorded)


def is_schema_stale(session: Session, dataset: Dataset, schema: Optional[DatasetSchema]) -> bool:
    return get_schema_freshness(session, dataset, schema).stale
