"""
Append-only schema versions per dataset.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from event_import.db.models import DatasetSchema, Event

logger = logging.getLogger(__name__)

MAX_VERSION_ATTEMPTS = 5


def get_latest_schema(session: Session, dataset_id: int) -> Optional[DatasetSchema]:
    """Highest version of the dataset's schema, or None if there is none."""
    return session.execute(
        select(DatasetSchema)
        .where(DatasetSchema.dataset_id == dataset_id)
        .order_by(DatasetSchema.version_number.desc())
        .limit(1)
    ).scalars().first()


def count_events(session: Session, dataset_id: int) -> int:
    return session.execute(select(func.count(Event.id)).where(Event.dataset_id == dataset_id)).scalar_one()


def _next_version_number(session: Session, dataset_id: int) -> int:
    current = session.execute(
        select(func.max(DatasetSchema.version_number)).where(DatasetSchema.dataset_id == dataset_id)
    ).scalar()
    return (current or 0) + 1


def create_schema_version(
    session: Session,
    *,
    dataset_id: int,
    schema: Dict[str, Any],
    field_metadata: Optional[Dict[str, Any]] = None,
    schema_summary: Optional[Dict[str, Any]] = None,
    event_count: Optional[int] = None,
    auto_approved: bool = False,
    approved_by: Optional[str] = None,
    approved_at: Optional[datetime] = None,
    import_job_id: Optional[int] = None,
) -> DatasetSchema:
    """
    Append a new version (previous max + 1). A concurrent writer taking the
    same number makes the insert fail on the unique constraint; the insert
    is then retried with a fresh number.
    """
    if event_count is None:
        event_count = count_events(session, dataset_id)

    last_error = None
    for attempt in range(1, MAX_VERSION_ATTEMPTS + 1):
        version_number = _next_version_number(session, dataset_id)
        version = DatasetSchema(
            dataset_id=dataset_id,
            version_number=version_number,
            schema=schema,
            field_metadata=field_metadata or {},
            schema_summary=schema_summary or {},
            event_count_at_creation=event_count,
            auto_approved=auto_approved,
            approved_by=approved_by,
            approved_at=approved_at,
            import_job_id=import_job_id,
        )
        savepoint = session.begin_nested()
        try:
            session.add(version)
            session.flush()
        except IntegrityError as exc:
            savepoint.rollback()
            last_error = exc
            logger.warning(
                "Schema version %s for dataset %s taken by a concurrent writer (attempt %d)",
                version_number,
                dataset_id,
                attempt,
            )
            continue
        savepoint.commit()
        logger.info("Created schema version %s for dataset %s", version_number, dataset_id)
        return version

    raise last_error
