"""
Persistence helpers for import jobs and the import files they belong to.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from event_import.core.config import settings
from event_import.core.exceptions import NotFoundError, error_type_name, sanitize_error_message
from event_import.db.models import ImportFile, ImportJob
from event_import.domain.imports.stages import ProcessingStage, coerce_stage

logger = logging.getLogger(__name__)

_JSON_FIELDS = {
    "progress",
    "schema",
    "schema_builder_state",
    "schema_validation",
    "detected_field_mappings",
    "duplicates",
    "geocoding_results",
    "errors",
    "error_log",
    "results",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_import_job(
    session: Session,
    *,
    import_file_id: int,
    dataset_id: int,
    sheet_index: int = 0,
    sheet_name: Optional[str] = None,
    stage: ProcessingStage = ProcessingStage.DETECT_SCHEMA,
) -> ImportJob:
    """Create and flush a new import job for one sheet of an import file."""
    job = ImportJob(
        import_file_id=import_file_id,
        dataset_id=dataset_id,
        sheet_index=sheet_index,
        sheet_name=sheet_name,
        stage=stage,
        progress={},
        errors=[],
    )
    session.add(job)
    session.flush()
    logger.info(
        "Created import job %s (file %s, sheet %s -> dataset %s)",
        job.id,
        import_file_id,
        sheet_name or sheet_index,
        dataset_id,
    )
    return job


def get_import_job(session: Session, job_id: int) -> ImportJob:
    job = session.get(ImportJob, job_id)
    if job is None:
        raise NotFoundError("Import job", job_id)
    return job


def get_import_file(session: Session, import_file_id: int) -> ImportFile:
    import_file = session.get(ImportFile, import_file_id)
    if import_file is None:
        raise NotFoundError("Import file", import_file_id)
    return import_file


def update_job_fields(job: ImportJob, **fields: Any) -> ImportJob:
    """
    Assign columns on ``job``. JSON columns are flagged as modified so
    in-place edits of the same dict are persisted too.
    """
    for name, value in fields.items():
        if name == "stage":
            value = coerce_stage(value)
        setattr(job, name, value)
        if name in _JSON_FIELDS:
            flag_modified(job, name)
    return job


def list_import_jobs(
    session: Session,
    *,
    import_file_id: Optional[int] = None,
    stage: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[ImportJob], int]:
    """List jobs, optionally filtered by file and stage."""
    query = select(ImportJob)
    count_query = select(func.count(ImportJob.id))
    if import_file_id is not None:
        query = query.where(ImportJob.import_file_id == import_file_id)
        count_query = count_query.where(ImportJob.import_file_id == import_file_id)
    if stage is not None:
        stage = coerce_stage(stage)
        query = query.where(ImportJob.stage == stage)
        count_query = count_query.where(ImportJob.stage == stage)

    jobs = session.execute(query.order_by(ImportJob.id.desc()).limit(limit).offset(offset)).scalars().all()
    total = session.execute(count_query).scalar() or 0
    return list(jobs), total


def fail_job(job: ImportJob, error: BaseException, now: Optional[datetime] = None) -> ImportJob:
    """Move ``job`` to ``failed`` and record a user-safe error summary."""
    failed_stage = coerce_stage(job.stage)
    logger.error("Import job %s failed during %s: %s", job.id, failed_stage, error, exc_info=error)
    error_log = dict(job.error_log or {})
    error_log.update({
        "lastError": sanitize_error_message(error),
        "errorType": error_type_name(error),
        "stage": failed_stage.value,
        "timestamp": (now or _utcnow()).isoformat(),
    })
    return update_job_fields(job, stage=ProcessingStage.FAILED, error_log=error_log)


def record_row_errors(job: ImportJob, entries: Iterable[Dict[str, Any]], stage: ProcessingStage) -> int:
    """
    Append per-row errors to the job. At most ``max_recorded_row_errors``
    entries are kept; the return value is the number of entries offered.
    """
    existing = list(job.errors or [])
    offered = 0
    for entry in entries:
        offered += 1
        if len(existing) < settings.max_recorded_row_errors:
            existing.append({"stage": coerce_stage(stage).value, **entry})
    if offered:
        update_job_fields(job, errors=existing)
    return offered


def clear_row_errors(job: ImportJob, stage: ProcessingStage) -> None:
    stage_value = coerce_stage(stage).value
    update_job_fields(job, errors=[entry for entry in job.errors or [] if entry.get("stage") != stage_value])


def rollup_import_file_status(session: Session, import_file: ImportFile, now: Optional[datetime] = None) -> str:
    """
    Derive the file status from its jobs: completed when every job
    completed, failed when any failed and none is still in flight,
    processing otherwise.
    """
    session.flush()
    jobs = session.execute(
        select(ImportJob).where(ImportJob.import_file_id == import_file.id).order_by(ImportJob.id)
    ).scalars().all()
    stages = [coerce_stage(job.stage) for job in jobs]
    if not stages:
        return import_file.status

    in_flight = [stage for stage in stages if stage not in (ProcessingStage.COMPLETED, ProcessingStage.FAILED)]
    if all(stage == ProcessingStage.COMPLETED for stage in stages):
        status = "completed"
    elif ProcessingStage.FAILED in stages and not in_flight:
        status = "failed"
    else:
        status = "processing"

    if status != import_file.status:
        logger.info("Import file %s status %s -> %s", import_file.id, import_file.status, status)
        import_file.status = status
        if status == "completed":
            import_file.completed_at = now or _utcnow()
            import_file.error_message = None
        elif status == "failed":
            failed = next(job for job in jobs if coerce_stage(job.stage) == ProcessingStage.FAILED)
            import_file.error_message = (failed.error_log or {}).get("lastError")
    return status
