"""
Stage pipeline controller.

The controller owns the lifecycle of import jobs: it creates one job per
sheet of an import file, runs exactly one stage handler per invocation,
moves the job along ``STAGE_TRANSITIONS`` and hands the next invocation to
the task queue. A failing handler moves only its own job to ``failed``;
sibling jobs of the same file carry on.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from event_import.core.config import Settings, settings as default_settings
from event_import.core.exceptions import NotFoundError, ValidationError, sanitize_error_message
from event_import.db.models import DEFAULT_ID_STRATEGY, Dataset, ImportFile, ImportJob
from event_import.domain.geocoding.service import GeocodingService
from event_import.domain.imports.duplicates import mark_if_duplicate_submission
from event_import.domain.imports.fingerprinting import calculate_file_hash
from event_import.domain.imports.handlers import StageContext, StageOutcome, get_stage_handler
from event_import.domain.imports.jobs import (
    create_import_job,
    fail_job,
    get_import_file,
    get_import_job,
    rollup_import_file_status,
    update_job_fields,
)
from event_import.domain.imports.processors.tabular_reader import Sheet, read_sheets
from event_import.domain.imports.progress import ProgressReport, build_progress_report
from event_import.domain.imports.recovery import ErrorRecoveryService, RecoveryResult, RetryConfig
from event_import.domain.imports.stages import (
    ProcessingStage,
    coerce_stage,
    next_stage,
    validate_stage_transition,
)
from event_import.domain.imports.task_queue import InlineTaskQueue, TaskQueue

logger = logging.getLogger(__name__)


class RunOutcome(str, Enum):
    ADVANCED = "advanced"
    WAITING = "waiting"
    FAILED = "failed"
    NOOP = "noop"


@dataclass
class StageRunResult:
    job_id: int
    outcome: RunOutcome
    from_stage: ProcessingStage
    stage: ProcessingStage
    error: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StagePipelineController:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        settings: Optional[Settings] = None,
        geocoder: Optional[GeocodingService] = None,
        clock: Optional[Callable[[], datetime]] = None,
        task_queue: Optional[TaskQueue] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or default_settings
        self.geocoder = geocoder
        self.clock = clock or _utcnow
        self.task_queue = task_queue if task_queue is not None else InlineTaskQueue()

    # -- job creation ---------------------------------------------------------

    def _resolve_dataset(self, session: Session, import_file: ImportFile, sheet: Sheet) -> Dataset:
        """Explicit sheet mapping first, then a same-named dataset of the catalog, else a new dataset."""
        mapping = import_file.dataset_mapping or {}
        mapped_id = mapping.get(sheet.name, mapping.get(str(sheet.index)))
        if mapped_id is not None:
            dataset = session.get(Dataset, int(mapped_id))
            if dataset is None or dataset.catalog_id != import_file.catalog_id:
                raise NotFoundError("Dataset", mapped_id, f"Dataset {mapped_id} not found in catalog {import_file.catalog_id}")
            return dataset

        dataset = session.execute(
            select(Dataset)
            .where(Dataset.catalog_id == import_file.catalog_id, Dataset.name == sheet.name)
            .order_by(Dataset.id)
        ).scalars().first()
        if dataset is not None:
            return dataset

        dataset = Dataset(
            catalog_id=import_file.catalog_id,
            name=sheet.name,
            language=self.settings.default_language,
            import_transforms=[],
            type_transformations=[],
            id_strategy=dict(DEFAULT_ID_STRATEGY),
        )
        session.add(dataset)
        session.flush()
        logger.info("Created dataset %s (%s) for sheet %r", dataset.id, dataset.name, sheet.name)
        return dataset

    def start_import(self, import_file_id: int) -> List[int]:
        """
        Create one job per sheet and enqueue them. Byte-identical
        resubmissions of a completed file are skipped without any job.
        """
        with self.session_factory() as session:
            import_file = get_import_file(session, import_file_id)
            if import_file.status != "pending":
                raise ValidationError(
                    f"Import file {import_file_id} cannot be started from status '{import_file.status}'",
                    field="status",
                )

            if not import_file.content_hash:
                import_file.content_hash = calculate_file_hash(import_file.content)
            if mark_if_duplicate_submission(session, import_file):
                session.commit()
                return []

            try:
                sheets = read_sheets(import_file.file_name, import_file.content)
            except ValidationError as exc:
                import_file.status = "failed"
                import_file.error_message = sanitize_error_message(exc)
                session.commit()
                raise

            job_ids = []
            for sheet in sheets:
                dataset = self._resolve_dataset(session, import_file, sheet)
                job = create_import_job(
                    session,
                    import_file_id=import_file.id,
                    dataset_id=dataset.id,
                    sheet_index=sheet.index,
                    sheet_name=sheet.name,
                )
                job_ids.append(job.id)

            import_file.status = "processing" if job_ids else "completed"
            if not job_ids:
                import_file.completed_at = self.clock()
            session.commit()

        logger.info("Started import file %s with %d job(s)", import_file_id, len(job_ids))
        for job_id in job_ids:
            self.task_queue.enqueue(job_id)
        return job_ids

    # -- stage execution ------------------------------------------------------

    def run_stage(self, job_id: int) -> StageRunResult:
        """Run the handler of the job's current stage once and persist the outcome."""
        with self.session_factory() as session:
            job = get_import_job(session, job_id)
            stage = coerce_stage(job.stage)
            handler = get_stage_handler(stage)
            if handler is None:
                logger.debug("Job %s is %s; nothing to run", job_id, stage)
                return StageRunResult(job_id, RunOutcome.NOOP, stage, stage)

            context = StageContext(
                session=session,
                job=job,
                settings=self.settings,
                clock=self.clock,
                geocoder=self.geocoder,
            )
            logger.info("Running %s for job %s", stage, job_id)
            try:
                outcome = handler(context)
            except Exception as exc:
                # Handler failures end this job only
                session.rollback()
                job = get_import_job(session, job_id)
                fail_job(job, exc, now=self.clock())
                rollup_import_file_status(session, job.import_file, now=self.clock())
                session.commit()
                return StageRunResult(
                    job_id, RunOutcome.FAILED, stage, ProcessingStage.FAILED, error=job.error_log["lastError"]
                )

            if outcome == StageOutcome.WAIT:
                session.commit()
                return StageRunResult(job_id, RunOutcome.WAITING, stage, stage)

            target = validate_stage_transition(stage, next_stage(stage))
            update_job_fields(job, stage=target, last_successful_stage=stage.value)
            if target == ProcessingStage.COMPLETED:
                rollup_import_file_status(session, job.import_file, now=self.clock())
            session.commit()

        logger.info("Job %s advanced %s -> %s", job_id, stage, target)
        if target != ProcessingStage.COMPLETED:
            self.task_queue.enqueue(job_id)
        return StageRunResult(job_id, RunOutcome.ADVANCED, stage, target)

    def run_until_settled(self, job_id: int, max_steps: int = 50) -> StageRunResult:
        """Run stages back to back until the job completes, fails or waits."""
        result = self.run_stage(job_id)
        steps = 1
        while result.outcome == RunOutcome.ADVANCED and result.stage != ProcessingStage.COMPLETED:
            if steps >= max_steps:
                break
            if isinstance(self.task_queue, InlineTaskQueue):
                self.task_queue.discard(job_id)
            result = self.run_stage(job_id)
            steps += 1
        return result

    def drain(self, max_runs: int = 1000) -> List[StageRunResult]:
        """Process the inline queue until it is empty."""
        if not isinstance(self.task_queue, InlineTaskQueue):
            raise TypeError("drain() requires an InlineTaskQueue")
        results = []
        while len(self.task_queue) and len(results) < max_runs:
            results.append(self.run_stage(self.task_queue.pop()))
        return results

    def process_import_file(self, import_file_id: int) -> List[StageRunResult]:
        self.start_import(import_file_id)
        return self.drain()

    # -- external writes ------------------------------------------------------

    def approve_schema(self, job_id: int, approved_by: str) -> None:
        """Record the approval of a pending schema change and resume the job."""
        with self.session_factory() as session:
            job = get_import_job(session, job_id)
            if coerce_stage(job.stage) != ProcessingStage.AWAIT_APPROVAL:
                raise ValidationError(f"Import job {job_id} is not awaiting schema approval", field="stage")
            validation = dict(job.schema_validation or {})
            validation.update({
                "approved": True,
                "approvedBy": approved_by,
                "approvedAt": self.clock().isoformat(),
            })
            update_job_fields(job, schema_validation=validation)
            session.commit()
        logger.info("Schema of job %s approved by %s", job_id, approved_by)
        self.task_queue.enqueue(job_id)

    def _recovery(self, session: Session) -> ErrorRecoveryService:
        return ErrorRecoveryService(session, RetryConfig.from_settings(self.settings), self.clock)

    def reset_job_to_stage(self, job_id: int, target_stage, clear_retries: bool = True) -> RecoveryResult:
        with self.session_factory() as session:
            result = self._recovery(session).reset_job_to_stage(job_id, target_stage, clear_retries=clear_retries)
            if result.success:
                job = session.get(ImportJob, job_id)
                rollup_import_file_status(session, job.import_file, now=self.clock())
                session.commit()
        if result.success:
            self.task_queue.enqueue(job_id)
        return result

    def recover_failed_job(self, job_id: int) -> RecoveryResult:
        with self.session_factory() as session:
            result = self._recovery(session).recover_failed_job(job_id)
            if result.success:
                job = session.get(ImportJob, job_id)
                rollup_import_file_status(session, job.import_file, now=self.clock())
                session.commit()
            return result

    def process_pending_retries(self, limit: Optional[int] = None) -> List[int]:
        with self.session_factory() as session:
            return self._recovery(session).process_pending_retries(
                self.task_queue, limit=limit or self.settings.pending_retry_limit
            )

    def progress(self, import_file_id: int) -> ProgressReport:
        with self.session_factory() as session:
            return build_progress_report(session, import_file_id, clock=self.clock)
