"""
Per-job progress counters and the outward progress read model.

Handlers mutate ``ImportJob.progress`` only through ``ProgressTracker`` so the
counters keep one layout:

    {current, total, sheetRows, batchNumber, batchSize, totalBatches, processedRows,
     geocodedRows, createdEvents, skippedRows, stage, stageStartedAt,
     startedAt, geocoding: {providerCalls, cacheHits, failed, fromFile}}
"""
from __future__ import annotations

import copy
import math
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from event_import.core.exceptions import NotFoundError
from event_import.db.models import ImportFile, ImportJob
from event_import.domain.imports.stages import PIPELINE_ORDER, ProcessingStage, coerce_stage
from event_import.utils.date import parse_datetime

Clock = Callable[[], datetime]

# (start, end) percentage band of every stage
STAGE_PERCENTAGES: Dict[ProcessingStage, tuple] = {
    ProcessingStage.DETECT_SCHEMA: (0, 10),
    ProcessingStage.VALIDATE_SCHEMA: (10, 20),
    ProcessingStage.AWAIT_APPROVAL: (20, 25),
    ProcessingStage.ANALYZE_DUPLICATES: (25, 30),
    ProcessingStage.GEOCODE_BATCH: (30, 70),
    ProcessingStage.CREATE_EVENTS: (70, 100),
    ProcessingStage.COMPLETED: (100, 100),
}

# Counters owned by a stage; they restart whenever the stage starts over
STAGE_COUNTERS: Dict[ProcessingStage, tuple] = {
    ProcessingStage.GEOCODE_BATCH: ("geocodedRows",),
    ProcessingStage.CREATE_EVENTS: ("processedRows", "createdEvents", "duplicateCollisions", "rejectedRows", "invalidEvents"),
}

STAGE_LABELS = {
    ProcessingStage.DETECT_SCHEMA: "Detecting schema...",
    ProcessingStage.VALIDATE_SCHEMA: "Validating schema...",
    ProcessingStage.AWAIT_APPROVAL: "Waiting for schema approval",
    ProcessingStage.ANALYZE_DUPLICATES: "Analyzing duplicates...",
    ProcessingStage.GEOCODE_BATCH: "Geocoding addresses...",
    ProcessingStage.CREATE_EVENTS: "Creating events...",
    ProcessingStage.COMPLETED: "Completed",
    ProcessingStage.FAILED: "Failed",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def empty_progress() -> Dict[str, Any]:
    return {
        "current": 0,
        "total": 0,
        "sheetRows": 0,
        "batchNumber": 0,
        "batchSize": 0,
        "totalBatches": 0,
        "processedRows": 0,
        "geocodedRows": 0,
        "createdEvents": 0,
        "skippedRows": 0,
        "stage": None,
        "stageStartedAt": None,
        "startedAt": None,
        "geocoding": {"providerCalls": {}, "cacheHits": 0, "failed": 0, "fromFile": 0},
    }


def stage_percentage(stage, current: int = 0, total: int = 0) -> float:
    """Approximate overall percentage for a job at ``stage``."""
    stage = coerce_stage(stage)
    if stage == ProcessingStage.FAILED:
        return 0.0
    start, end = STAGE_PERCENTAGES[stage]
    if total > 0 and end > start:
        return round(start + (end - start) * min(current, total) / total, 1)
    return float(start)


class ProgressTracker:
    def __init__(self, job: ImportJob, clock: Optional[Clock] = None):
        self.job = job
        self.clock = clock or _utcnow
        merged = empty_progress()
        merged.update(copy.deepcopy(job.progress or {}))
        merged["geocoding"] = {**empty_progress()["geocoding"], **(merged.get("geocoding") or {})}
        self.progress = merged
        if not self.progress["startedAt"]:
            self.progress["startedAt"] = self.clock().isoformat()

    def _persist(self) -> None:
        self.job.progress = copy.deepcopy(self.progress)
        flag_modified(self.job, "progress")

    def start_stage(self, stage, total: int, batch_size: int = 0) -> None:
        """Reset the per-stage counters unless the stage is being resumed."""
        stage = coerce_stage(stage)
        if self.progress["stage"] == stage.value:
            return
        self.progress.update({
            "stage": stage.value,
            "stageStartedAt": self.clock().isoformat(),
            "current": 0,
            "total": total,
            "batchNumber": 0,
            "batchSize": batch_size,
            "totalBatches": math.ceil(total / batch_size) if batch_size else 0,
        })
        for counter in STAGE_COUNTERS.get(stage, ()):
            self.progress[counter] = 0
        if stage == ProcessingStage.GEOCODE_BATCH:
            self.progress["geocoding"] = empty_progress()["geocoding"]
        self._persist()

    def complete_batch(self, batch_number: int, rows_in_batch: int) -> None:
        self.progress["batchNumber"] = batch_number
        self.progress["current"] = min(self.progress["current"] + rows_in_batch, self.progress["total"] or rows_in_batch)
        self._persist()

    def increment(self, counter: str, amount: int = 1) -> None:
        self.progress[counter] = self.progress.get(counter, 0) + amount
        self._persist()

    def set_counter(self, counter: str, value: int) -> None:
        self.progress[counter] = value
        self._persist()

    def record_geocoding(
        self,
        *,
        provider_calls: Optional[Dict[str, int]] = None,
        cache_hits: int = 0,
        failed: int = 0,
        from_file: int = 0,
    ) -> None:
        geocoding = self.progress["geocoding"]
        for provider, calls in (provider_calls or {}).items():
            geocoding["providerCalls"][provider] = geocoding["providerCalls"].get(provider, 0) + calls
        geocoding["cacheHits"] += cache_hits
        geocoding["failed"] += failed
        geocoding["fromFile"] += from_file
        self._persist()

    @property
    def batch_number(self) -> int:
        return self.progress["batchNumber"]

    def snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy(self.progress)


# ---------------------------------------------------------------------------
# Read model
# ---------------------------------------------------------------------------

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProgressCounts(_CamelModel):
    current: int = 0
    total: int = 0
    percentage: float = 0
    created_events: int = 0


class StageProgress(_CamelModel):
    stage: str
    label: str
    percentage: float


class BatchInfo(_CamelModel):
    current_batch: int = 0
    total_batches: int = 0
    batch_size: int = 0


class JobProgress(_CamelModel):
    id: int
    dataset_id: int
    sheet_name: Optional[str] = None
    stage: str
    percentage: float
    retry_attempts: int = 0
    last_error: Optional[str] = None


class ProgressReport(_CamelModel):
    import_id: int
    status: str
    stage: str
    progress: ProgressCounts
    stage_progress: StageProgress
    batch_info: BatchInfo
    geocoding_stats: Dict[str, Any] = Field(default_factory=dict)
    estimated_time_remaining: Optional[float] = None
    current_job: Optional[JobProgress] = None
    jobs: List[JobProgress] = Field(default_factory=list)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


def _job_progress(job: ImportJob) -> JobProgress:
    progress = job.progress or {}
    return JobProgress(
        id=job.id,
        dataset_id=job.dataset_id,
        sheet_name=job.sheet_name,
        stage=coerce_stage(job.stage).value,
        percentage=stage_percentage(job.stage, progress.get("current", 0), progress.get("total", 0)),
        retry_attempts=job.retry_attempts or 0,
        last_error=(job.error_log or {}).get("lastError"),
    )


def _estimate_remaining(progress: Dict[str, Any], now: datetime) -> Optional[float]:
    started = parse_datetime(progress.get("stageStartedAt"))
    current, total = progress.get("current", 0), progress.get("total", 0)
    if started is None or current <= 0 or total <= current:
        return None
    elapsed = (now - started).total_seconds()
    if elapsed <= 0:
        return None
    return round((total - current) / (current / elapsed), 1)


def _overall_stage(jobs: List[ImportJob]) -> ProcessingStage:
    stages = [coerce_stage(job.stage) for job in jobs]
    active = [stage for stage in stages if stage not in (ProcessingStage.COMPLETED, ProcessingStage.FAILED)]
    if active:
        return min(active, key=PIPELINE_ORDER.index)
    if ProcessingStage.FAILED in stages:
        return ProcessingStage.FAILED
    return ProcessingStage.COMPLETED


def build_progress_report(session: Session, import_file_id: int, clock: Optional[Clock] = None) -> ProgressReport:
    """Aggregate the progress of every job of an import file."""
    import_file = session.get(ImportFile, import_file_id)
    if import_file is None:
        raise NotFoundError("Import file", import_file_id)

    now = (clock or _utcnow)()
    jobs = session.execute(
        select(ImportJob).where(ImportJob.import_file_id == import_file.id).order_by(ImportJob.id)
    ).scalars().all()
    job_views = [_job_progress(job) for job in jobs]

    if not jobs:
        stage = ProcessingStage.COMPLETED if import_file.status in ("completed", "skipped") else ProcessingStage.DETECT_SCHEMA
        percentage = 100.0 if stage == ProcessingStage.COMPLETED else 0.0
        return ProgressReport(
            import_id=import_file.id,
            status=import_file.status,
            stage=stage.value,
            progress=ProgressCounts(percentage=percentage),
            stage_progress=StageProgress(stage=stage.value, label=STAGE_LABELS[stage], percentage=percentage),
            batch_info=BatchInfo(),
        )

    stage = _overall_stage(jobs)
    current_job = next((view for job, view in zip(jobs, job_views) if coerce_stage(job.stage) == stage), job_views[0])
    current_model = next(job for job in jobs if job.id == current_job.id)
    current_progress = current_model.progress or {}

    totals = ProgressCounts()
    geocoding: Dict[str, Any] = {"providerCalls": {}, "cacheHits": 0, "failed": 0, "fromFile": 0, "geocodedRows": 0}
    for job in jobs:
        progress = job.progress or {}
        totals.current += progress.get("processedRows", 0)
        totals.created_events += progress.get("createdEvents", 0)
        job_geo = progress.get("geocoding") or {}
        for provider, calls in (job_geo.get("providerCalls") or {}).items():
            geocoding["providerCalls"][provider] = geocoding["providerCalls"].get(provider, 0) + calls
        for key in ("cacheHits", "failed", "fromFile"):
            geocoding[key] += job_geo.get(key, 0)
        geocoding["geocodedRows"] += progress.get("geocodedRows", 0)

    totals.total = sum((job.progress or {}).get("sheetRows", 0) for job in jobs)
    overall = sum(view.percentage for view in job_views) / len(job_views)
    totals.percentage = round(overall, 1)

    return ProgressReport(
        import_id=import_file.id,
        status=import_file.status,
        stage=stage.value,
        progress=totals,
        stage_progress=StageProgress(
            stage=stage.value,
            label=STAGE_LABELS[stage],
            percentage=current_job.percentage,
        ),
        batch_info=BatchInfo(
            current_batch=current_progress.get("batchNumber", 0),
            total_batches=current_progress.get("totalBatches", 0),
            batch_size=current_progress.get("batchSize", 0),
        ),
        geocoding_stats=geocoding,
        estimated_time_remaining=_estimate_remaining(current_progress, now),
        current_job=current_job,
        jobs=job_views,
    )
