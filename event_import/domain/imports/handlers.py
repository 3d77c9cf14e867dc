"""
Stage handlers of the import pipeline.

Each handler does the work of exactly one ``ProcessingStage`` for one job
and reports whether the job may advance or has to wait. Handlers raise on
job-level failures; per-row problems are collected on the job instead.

Every stage re-reads the sheet from the stored file content and folds the
dataset's import transforms over it again, so handlers share no in-memory
state and a job can be resumed by any worker.
"""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from event_import.core.config import Settings
from event_import.core.exceptions import GeocodingError, PipelineStageError, sanitize_error_message
from event_import.db.models import Dataset, DatasetSchema, Event, ImportFile, ImportJob
from event_import.domain.geocoding.coordinates import is_valid_coordinates, parse_coordinate
from event_import.domain.geocoding.service import GeocodingResult, GeocodingService
from event_import.domain.imports.duplicates import analyze_rows, find_existing_events
from event_import.domain.imports.field_mapping import FieldMappings, detect_field_mappings
from event_import.domain.imports.jobs import clear_row_errors, record_row_errors, update_job_fields
from event_import.domain.imports.processors.tabular_reader import read_sheet
from event_import.domain.imports.progress import ProgressTracker
from event_import.domain.imports.stages import ProcessingStage, coerce_stage
from event_import.domain.imports.transforms import (
    TransformResult,
    apply_transforms_to_rows,
    build_pipeline,
    get_by_path,
    run_pipeline,
)
from event_import.domain.schemas.builder import SchemaBuilder, compare_schemas
from event_import.domain.schemas.validation import validate_record
from event_import.domain.schemas.versioning import create_schema_version, get_latest_schema
from event_import.utils.date import parse_datetime

logger = logging.getLogger(__name__)


class StageOutcome(str, Enum):
    ADVANCE = "advance"
    WAIT = "wait"


@dataclass
class StageContext:
    session: Session
    job: ImportJob
    settings: Settings
    clock: Callable[[], datetime]
    geocoder: Optional[GeocodingService] = None
    _rows: Optional[List[TransformResult]] = field(default=None, repr=False)
    _tracker: Optional[ProgressTracker] = field(default=None, repr=False)

    @property
    def dataset(self) -> Dataset:
        return self.job.dataset

    @property
    def import_file(self) -> ImportFile:
        return self.job.import_file

    @property
    def tracker(self) -> ProgressTracker:
        if self._tracker is None:
            self._tracker = ProgressTracker(self.job, self.clock)
        return self._tracker

    def transformed_rows(self) -> List[TransformResult]:
        """Sheet rows after the dataset's import transforms (cached per stage run)."""
        if self._rows is None:
            sheet = read_sheet(self.import_file.file_name, self.import_file.content, self.job.sheet_index)
            self._rows = apply_transforms_to_rows(sheet.rows, self.dataset.import_transforms or [])
        return self._rows

    def rejected_rows(self) -> Set[int]:
        return {index + 1 for index, result in enumerate(self.transformed_rows()) if result.rejected}

    def candidate_rows(self) -> List[Tuple[int, Dict[str, Any]]]:
        """Rows that survive transform rejection and duplicate analysis."""
        skip = set((self.job.duplicates or {}).get("skipRows") or []) | self.rejected_rows()
        return [
            (index + 1, result.row)
            for index, result in enumerate(self.transformed_rows())
            if index + 1 not in skip
        ]

    def field_mappings(self) -> FieldMappings:
        return FieldMappings.from_json(self.job.detected_field_mappings)


def _batches(items: List[Any], size: int) -> List[List[Any]]:
    size = max(1, size)
    return [items[start:start + size] for start in range(0, len(items), size)]


# ---------------------------------------------------------------------------
# detect-schema
# ---------------------------------------------------------------------------

def detect_schema(ctx: StageContext) -> StageOutcome:
    job, dataset = ctx.job, ctx.dataset
    results = ctx.transformed_rows()
    batch_size = ctx.settings.schema_batch_size

    ctx.tracker.start_stage(ProcessingStage.DETECT_SCHEMA, total=len(results), batch_size=batch_size)
    ctx.tracker.set_counter("sheetRows", len(results))

    builder = SchemaBuilder()
    for number, batch in enumerate(_batches(results, batch_size), start=1):
        builder.process_batch(result.row for result in batch if not result.rejected)
        ctx.tracker.complete_batch(number, len(batch))

    clear_row_errors(job, ProcessingStage.DETECT_SCHEMA)
    transform_errors = [error.to_dict() for result in results for error in result.errors]
    record_row_errors(job, transform_errors, ProcessingStage.DETECT_SCHEMA)

    language = dataset.language or ctx.settings.default_language
    mappings = detect_field_mappings(builder.field_stats, language)
    logger.info(
        "Job %s: detected %d field(s) in %d row(s); title=%s timestamp=%s location=%s",
        job.id,
        len(builder.field_stats),
        len(results),
        mappings.title_path,
        mappings.timestamp_path,
        mappings.location_path,
    )

    update_job_fields(
        job,
        schema=builder.get_schema(),
        schema_builder_state=builder.to_state(),
        detected_field_mappings=mappings.to_json(),
    )
    return StageOutcome.ADVANCE


# ---------------------------------------------------------------------------
# validate-schema / await-approval
# ---------------------------------------------------------------------------

def requires_approval(dataset: Dataset, comparison: Dict[str, Any]) -> bool:
    has_changes = comparison["hasChanges"]
    if comparison["isBreaking"]:
        return True
    if dataset.schema_locked and has_changes:
        return True
    return has_changes and not dataset.schema_auto_grow


def _create_version(ctx: StageContext, *, auto_approved: bool, approved_by: Optional[str], approved_at) -> DatasetSchema:
    job = ctx.job
    validation = job.schema_validation or {}
    builder = SchemaBuilder.from_state(job.schema_builder_state)
    version = create_schema_version(
        ctx.session,
        dataset_id=job.dataset_id,
        schema=job.schema,
        field_metadata=builder.field_stats,
        schema_summary={
            **builder.summary(),
            "newFields": validation.get("newFields", []),
            "removedFields": validation.get("removedFields", []),
            "typeChanges": validation.get("typeChanges", []),
            "isBreaking": not validation.get("isCompatible", True),
        },
        auto_approved=auto_approved,
        approved_by=approved_by,
        approved_at=approved_at,
        import_job_id=job.id,
    )
    update_job_fields(job, dataset_schema_id=version.id)
    return version


def validate_schema(ctx: StageContext) -> StageOutcome:
    job, dataset = ctx.job, ctx.dataset
    if job.schema is None:
        raise PipelineStageError(ProcessingStage.VALIDATE_SCHEMA.value, "No detected schema to validate")

    ctx.tracker.start_stage(ProcessingStage.VALIDATE_SCHEMA, total=1)
    latest = get_latest_schema(ctx.session, dataset.id)
    comparison = compare_schemas(latest.schema if latest else None, job.schema)
    needs_approval = requires_approval(dataset, comparison)
    now = ctx.clock()

    update_job_fields(job, schema_validation={
        "isCompatible": not comparison["isBreaking"],
        "requiresApproval": needs_approval,
        "breakingChanges": [change for change in comparison["changes"] if not change["autoApprovable"]],
        "changes": comparison["changes"],
        "newFields": comparison["newFields"],
        "removedFields": comparison["removedFields"],
        "typeChanges": comparison["typeChanges"],
        "hasChanges": comparison["hasChanges"],
        "approved": not needs_approval,
        "autoApproved": not needs_approval,
        "approvedBy": None,
        "approvedAt": None if needs_approval else now.isoformat(),
    })

    if needs_approval:
        # Unlinked until the new version is approved
        update_job_fields(job, dataset_schema_id=None)
        logger.info(
            "Job %s: schema for dataset %s requires approval (%d change(s), breaking=%s)",
            job.id,
            dataset.id,
            len(comparison["changes"]),
            comparison["isBreaking"],
        )
    elif latest is None or comparison["hasChanges"]:
        _create_version(ctx, auto_approved=True, approved_by=None, approved_at=now)
    else:
        update_job_fields(job, dataset_schema_id=latest.id)

    ctx.tracker.complete_batch(1, 1)
    return StageOutcome.ADVANCE


def await_approval(ctx: StageContext) -> StageOutcome:
    job = ctx.job
    validation = job.schema_validation or {}
    ctx.tracker.start_stage(ProcessingStage.AWAIT_APPROVAL, total=1)

    if not validation.get("requiresApproval"):
        ctx.tracker.complete_batch(1, 1)
        return StageOutcome.ADVANCE

    if not validation.get("approved"):
        logger.info("Job %s is waiting for schema approval", job.id)
        return StageOutcome.WAIT

    if job.dataset_schema_id is None:
        _create_version(
            ctx,
            auto_approved=False,
            approved_by=validation.get("approvedBy"),
            approved_at=parse_datetime(validation.get("approvedAt")) or ctx.clock(),
        )
    ctx.tracker.complete_batch(1, 1)
    return StageOutcome.ADVANCE


# ---------------------------------------------------------------------------
# analyze-duplicates
# ---------------------------------------------------------------------------

def analyze_duplicates(ctx: StageContext) -> StageOutcome:
    job, dataset = ctx.job, ctx.dataset
    results = ctx.transformed_rows()
    rejected = ctx.rejected_rows()
    ctx.tracker.start_stage(ProcessingStage.ANALYZE_DUPLICATES, total=len(results))

    analysis = analyze_rows(
        [result.row for result in results],
        dataset.id_strategy,
        dataset.id,
        existing_lookup=lambda unique_ids: find_existing_events(ctx.session, dataset.id, unique_ids),
        skip_row_numbers=rejected,
    )

    clear_row_errors(job, ProcessingStage.ANALYZE_DUPLICATES)
    record_row_errors(
        job,
        ({"row": entry["rowNumber"], "error": entry["error"]} for entry in analysis.invalid),
        ProcessingStage.ANALYZE_DUPLICATES,
    )
    update_job_fields(job, duplicates=analysis.to_json())

    ctx.tracker.set_counter("skippedRows", len(set(analysis.skip_rows) | rejected))
    ctx.tracker.complete_batch(1, len(results))
    logger.info(
        "Job %s: %d unique row(s), %d internal and %d existing duplicate(s), %d invalid",
        job.id,
        analysis.unique_rows - len(rejected),
        len(analysis.internal),
        len(analysis.external),
        len(analysis.invalid),
    )
    return StageOutcome.ADVANCE


# ---------------------------------------------------------------------------
# geocode-batch
# ---------------------------------------------------------------------------

def _provided_coordinates(row: Dict[str, Any], mappings: FieldMappings) -> Optional[Tuple[float, float]]:
    if not (mappings.latitude_path and mappings.longitude_path):
        return None
    latitude = parse_coordinate(get_by_path(row, mappings.latitude_path))
    longitude = parse_coordinate(get_by_path(row, mappings.longitude_path))
    if is_valid_coordinates(latitude, longitude):
        return latitude, longitude
    return None


def _address_for(row: Dict[str, Any], mappings: FieldMappings) -> Optional[str]:
    for path in (mappings.location_path, mappings.location_name_path):
        value = get_by_path(row, path) if path else None
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def geocode_batch(ctx: StageContext) -> StageOutcome:
    job, dataset = ctx.job, ctx.dataset
    mappings = ctx.field_mappings()
    candidates = ctx.candidate_rows()
    batch_size = ctx.settings.geocoding_batch_size
    tracker = ctx.tracker
    tracker.start_stage(ProcessingStage.GEOCODE_BATCH, total=len(candidates), batch_size=batch_size)

    lookups_enabled = bool(dataset.geocoding_enabled and ctx.geocoder is not None)
    if dataset.geocoding_enabled and ctx.geocoder is None:
        logger.warning("Job %s: no geocoding service configured; only provided coordinates are used", job.id)

    batches = _batches(candidates, batch_size)
    resume_from = tracker.batch_number
    if resume_from:
        logger.info("Job %s: resuming geocoding at batch %d of %d", job.id, resume_from + 1, len(batches))

    # Results of earlier batches survive only when the stage is resumed
    geocoded = copy.deepcopy(job.geocoding_results or {}) if resume_from else {}
    geocoded.setdefault("rows", {})
    geocoded.setdefault("failed", [])

    for number, batch in enumerate(batches[resume_from:], start=resume_from + 1):
        lookups: Dict[int, str] = {}
        from_file = 0
        for row_number, row in batch:
            provided = _provided_coordinates(row, mappings)
            if provided is not None:
                geocoded["rows"][str(row_number)] = {
                    "latitude": provided[0],
                    "longitude": provided[1],
                    "source": "provided",
                }
                from_file += 1
                continue
            address = _address_for(row, mappings) if lookups_enabled else None
            if address:
                lookups[row_number] = address

        provider_calls: Dict[str, int] = {}
        cache_hits = 0
        failed = 0
        successful = 0
        if lookups:
            outcome = ctx.geocoder.batch_geocode(list(lookups.values()), concurrency=ctx.settings.geocoding_concurrency)
            provider_calls = outcome["summary"]["providerCalls"]
            cache_hits = outcome["summary"]["cached"]
            for row_number, address in lookups.items():
                result = outcome["results"].get(address)
                if isinstance(result, GeocodingResult):
                    geocoded["rows"][str(row_number)] = {**result.to_json(), "source": "geocoded", "address": address}
                    successful += 1
                    continue
                error = result if isinstance(result, GeocodingError) else GeocodingError("No result", address=address)
                geocoded["failed"].append({"row": row_number, "address": address, "error": sanitize_error_message(error)})
                failed += 1

        update_job_fields(job, geocoding_results=geocoded)
        tracker.record_geocoding(provider_calls=provider_calls, cache_hits=cache_hits, failed=failed, from_file=from_file)
        tracker.increment("geocodedRows", successful + from_file)
        tracker.complete_batch(number, len(batch))
        ctx.session.commit()
        logger.debug("Job %s: geocoding batch %d/%d done", job.id, number, len(batches))

    clear_row_errors(job, ProcessingStage.GEOCODE_BATCH)
    record_row_errors(
        job,
        ({"row": entry["row"], "field": mappings.location_path, "value": entry["address"], "error": entry["error"]}
         for entry in geocoded["failed"]),
        ProcessingStage.GEOCODE_BATCH,
    )
    return StageOutcome.ADVANCE


# ---------------------------------------------------------------------------
# create-events
# ---------------------------------------------------------------------------

def _type_transformation_descriptors(raw: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """Accept stored ``{fieldPath, fromType, toType, transformStrategy}`` entries as type casts."""
    descriptors = []
    for entry in raw or []:
        if "type" in entry:
            descriptors.append(entry)
            continue
        descriptors.append({
            "type": "type-cast",
            "from": entry.get("fieldPath"),
            "fromType": entry.get("fromType"),
            "toType": entry.get("toType"),
            "strategy": entry.get("transformStrategy", "parse"),
            "onFailure": entry.get("onFailure", "keep"),
            "active": entry.get("enabled", True),
        })
    return descriptors


def _text_at(data: Dict[str, Any], path: Optional[str]) -> Optional[str]:
    value = get_by_path(data, path) if path else None
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _current_schema(ctx: StageContext) -> Optional[Dict[str, Any]]:
    version = None
    if ctx.job.dataset_schema_id is not None:
        version = ctx.session.get(DatasetSchema, ctx.job.dataset_schema_id)
    if version is None:
        version = get_latest_schema(ctx.session, ctx.job.dataset_id)
    return version.schema if version else None


def _insert_event(session: Session, event: Event) -> bool:
    """Insert inside a savepoint; False when a sibling job already stored the unique id."""
    savepoint = session.begin_nested()
    try:
        session.add(event)
        session.flush()
    except IntegrityError:
        savepoint.rollback()
        return False
    savepoint.commit()
    return True


def create_events(ctx: StageContext) -> StageOutcome:
    job = ctx.job
    tracker = ctx.tracker
    mappings = ctx.field_mappings()
    candidates = ctx.candidate_rows()
    batch_size = ctx.settings.event_creation_batch_size
    tracker.start_stage(ProcessingStage.CREATE_EVENTS, total=len(candidates), batch_size=batch_size)

    duplicates = job.duplicates or {}
    unique_ids = duplicates.get("uniqueIds") or {}
    content_hashes = duplicates.get("contentHashes") or {}
    locations = (job.geocoding_results or {}).get("rows") or {}
    type_steps = build_pipeline(_type_transformation_descriptors(ctx.dataset.type_transformations))
    schema = _current_schema(ctx)

    batches = _batches(candidates, batch_size)
    resume_from = tracker.batch_number
    if resume_from:
        logger.info("Job %s: resuming event creation at batch %d of %d", job.id, resume_from + 1, len(batches))
    else:
        clear_row_errors(job, ProcessingStage.CREATE_EVENTS)

    for number, batch in enumerate(batches[resume_from:], start=resume_from + 1):
        row_errors: List[Dict[str, Any]] = []
        created = collisions = rejected = invalid = 0

        for row_number, row in batch:
            unique_id = unique_ids.get(str(row_number))
            if unique_id is None:
                continue
            typed = run_pipeline(row, type_steps, row_number=row_number)
            row_errors.extend(error.to_dict() for error in typed.errors)
            if typed.rejected:
                rejected += 1
                continue

            data = typed.row
            validation_errors = validate_record(data, schema)
            location = locations.get(str(row_number)) or {}
            event = Event(
                dataset_id=job.dataset_id,
                import_job_id=job.id,
                unique_id=unique_id,
                content_hash=content_hashes.get(str(row_number), ""),
                source_row_number=row_number,
                data=data,
                title=_text_at(data, mappings.title_path),
                description=_text_at(data, mappings.description_path),
                event_timestamp=parse_datetime(get_by_path(data, mappings.timestamp_path)) if mappings.timestamp_path else None,
                latitude=location.get("latitude"),
                longitude=location.get("longitude"),
                location_source=location.get("source"),
                geocoding_info=location if location.get("source") == "geocoded" else None,
                validation_status="invalid" if validation_errors else "valid",
                validation_errors=validation_errors or None,
                transformations=[error.to_dict() for error in typed.errors] or None,
            )
            if _insert_event(ctx.session, event):
                created += 1
                invalid += 1 if validation_errors else 0
            else:
                collisions += 1
                logger.debug("Job %s: row %d collided with an existing event %s", job.id, row_number, unique_id)

        record_row_errors(job, row_errors, ProcessingStage.CREATE_EVENTS)
        tracker.increment("createdEvents", created)
        tracker.increment("duplicateCollisions", collisions)
        tracker.increment("rejectedRows", rejected)
        tracker.increment("invalidEvents", invalid)
        tracker.increment("processedRows", len(batch))
        tracker.complete_batch(number, len(batch))
        ctx.session.commit()
        logger.info("Job %s: batch %d/%d created %d event(s)", job.id, number, len(batches), created)

    progress = tracker.snapshot()
    summary = (job.duplicates or {}).get("summary") or {}
    results = {
        "totalRows": progress.get("sheetRows", 0),
        "eventsCreated": progress.get("createdEvents", 0),
        "duplicatesSkipped": summary.get("internalDuplicates", 0)
        + summary.get("externalDuplicates", 0)
        + progress.get("duplicateCollisions", 0),
        "rejectedRows": len(ctx.rejected_rows()) + progress.get("rejectedRows", 0),
        "invalidRows": summary.get("invalidRows", 0),
        "invalidEvents": progress.get("invalidEvents", 0),
        "geocodedRows": progress.get("geocodedRows", 0),
        "errorCount": len(job.errors or []),
        "datasetSchemaId": job.dataset_schema_id,
    }
    tracker.set_counter("processedRows", progress.get("sheetRows", 0))
    update_job_fields(job, results=results, completed_at=ctx.clock())
    logger.info("Job %s finished: %s", job.id, results)
    return StageOutcome.ADVANCE


STAGE_HANDLERS: Dict[ProcessingStage, Callable[[StageContext], StageOutcome]] = {
    ProcessingStage.DETECT_SCHEMA: detect_schema,
    ProcessingStage.VALIDATE_SCHEMA: validate_schema,
    ProcessingStage.AWAIT_APPROVAL: await_approval,
    ProcessingStage.ANALYZE_DUPLICATES: analyze_duplicates,
    ProcessingStage.GEOCODE_BATCH: geocode_batch,
    ProcessingStage.CREATE_EVENTS: create_events,
}


def get_stage_handler(stage) -> Optional[Callable[[StageContext], StageOutcome]]:
    return STAGE_HANDLERS.get(coerce_stage(stage))
