"""
Retry scheduling and manual resets for failed import jobs.

A failed job is not re-run immediately. ``recover_failed_job`` moves it to
the stage it should re-enter and stamps ``next_retry_at`` using exponential
backoff; ``process_pending_retries`` (run periodically by an external
scheduler) enqueues the jobs whose time has come. Error classification only
picks the re-entry stage and feeds the recommendations; it never blocks a
retry while attempts remain.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from event_import.core.config import Settings, settings as default_settings
from event_import.db.models import ImportJob
from event_import.domain.imports.jobs import update_job_fields
from event_import.domain.imports.stages import (
    PIPELINE_ORDER,
    RECOVERY_ENTRY_STAGES,
    TERMINAL_STAGES,
    ProcessingStage,
    coerce_stage,
)
from event_import.domain.imports.task_queue import TaskQueue

logger = logging.getLogger(__name__)

RECOMMENDATION_AUTOMATIC = "Automatic retry available"
RECOMMENDATION_MANUAL = "Manual intervention required (max retries reached)"


@dataclass
class RetryConfig:
    max_retries: int = 3
    base_delay_seconds: float = 30
    max_delay_seconds: float = 300
    backoff_multiplier: float = 2.0

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "RetryConfig":
        config = config or default_settings
        return cls(
            max_retries=config.retry_max_attempts,
            base_delay_seconds=config.retry_base_delay_seconds,
            max_delay_seconds=config.retry_max_delay_seconds,
            backoff_multiplier=config.retry_backoff_multiplier,
        )

    def delay_for(self, attempt: int) -> timedelta:
        """Backoff before retry number ``attempt + 1`` (30s, 60s, 120s... capped)."""
        seconds = self.base_delay_seconds * (self.backoff_multiplier ** attempt)
        return timedelta(seconds=min(seconds, self.max_delay_seconds))


@dataclass
class ErrorClassification:
    type: str
    reason: str
    retryable: bool
    suggested_action: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "reason": self.reason,
            "retryable": self.retryable,
            "suggestedAction": self.suggested_action,
        }


@dataclass
class RecoveryResult:
    success: bool
    action: str
    error: Optional[str] = None
    retry_scheduled: bool = False
    next_retry_at: Optional[datetime] = None
    recovery_stage: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        payload = asdict(self)
        if self.next_retry_at is not None:
            payload["next_retry_at"] = self.next_retry_at.isoformat()
        return payload


# Checked in order against the lower-cased error text
_CLASSIFICATION_RULES = [
    (("no such file", "file not found", "enoent"),
     ErrorClassification("permanent", "File not found - file may have been deleted", False)),
    (("connection", "econnrefused", "timeout", "timed out"),
     ErrorClassification("recoverable", "Network or database connection issue", True)),
    (("memory", "resource"),
     ErrorClassification("recoverable", "Resource exhaustion - may resolve with delay", True)),
    (("rate limit", "429"),
     ErrorClassification("recoverable", "Rate limiting - will resolve with delay", True)),
    (("quota", "limit exceeded"),
     ErrorClassification(
         "user-action-required",
         "Quota limit exceeded",
         False,
         "Wait for the quota to reset or raise the limit",
     )),
    (("schema", "validation"),
     ErrorClassification(
         "user-action-required",
         "Schema or validation error - may need manual review",
         True,
         "Review schema configuration or data format",
     )),
    (("permission", "unauthorized", "forbidden"),
     ErrorClassification("permanent", "Permission denied - needs configuration fix", False)),
]

_UNKNOWN_ERROR = ErrorClassification("recoverable", "Unknown error - attempting recovery", True)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ErrorRecoveryService:
    def __init__(
        self,
        session: Session,
        config: Optional[RetryConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session = session
        self.config = config or RetryConfig.from_settings()
        self.clock = clock or _utcnow

    def classify_error(self, job: ImportJob) -> ErrorClassification:
        message = str((job.error_log or {}).get("lastError") or "").lower()
        for keywords, classification in _CLASSIFICATION_RULES:
            if any(keyword in message for keyword in keywords):
                return classification
        return _UNKNOWN_ERROR

    def determine_recovery_stage(self, job: ImportJob, classification: ErrorClassification) -> ProcessingStage:
        """
        Schema problems re-enter at validate-schema; everything else resumes
        after the last stage that finished, or starts over.
        """
        if classification.type == "user-action-required" and "schema" in classification.reason.lower():
            return ProcessingStage.VALIDATE_SCHEMA

        if job.last_successful_stage:
            last = coerce_stage(job.last_successful_stage)
            if last in PIPELINE_ORDER:
                following = PIPELINE_ORDER[PIPELINE_ORDER.index(last) + 1]
                if following in RECOVERY_ENTRY_STAGES:
                    return following
        return ProcessingStage.DETECT_SCHEMA

    def recover_failed_job(self, job_id: int) -> RecoveryResult:
        job = self.session.get(ImportJob, job_id)
        if job is None:
            return RecoveryResult(False, "job_not_found", error="Import job not found")
        if coerce_stage(job.stage) != ProcessingStage.FAILED:
            return RecoveryResult(False, "not_failed", error="Job is not in failed state")

        attempts = job.retry_attempts or 0
        if attempts >= self.config.max_retries:
            return RecoveryResult(
                False,
                "max_retries_exceeded",
                error=f"Maximum retry attempts ({self.config.max_retries}) exceeded",
            )

        classification = self.classify_error(job)
        recovery_stage = self.determine_recovery_stage(job, classification)
        now = self.clock()
        next_retry_at = now + self.config.delay_for(attempts)

        error_log = dict(job.error_log or {})
        error_log["recoveryAttempt"] = {
            "attempt": attempts + 1,
            "previousError": error_log.get("lastError"),
            "recoveryStage": recovery_stage.value,
            "classification": classification.type,
        }
        update_job_fields(
            job,
            stage=recovery_stage,
            retry_attempts=attempts + 1,
            last_retry_at=now,
            next_retry_at=next_retry_at,
            error_log=error_log,
        )
        self.session.commit()
        logger.info(
            "Scheduled retry %d/%d of job %s at %s from %s (%s)",
            attempts + 1,
            self.config.max_retries,
            job.id,
            next_retry_at.isoformat(),
            recovery_stage,
            classification.type,
        )
        return RecoveryResult(
            True,
            "retry_scheduled",
            retry_scheduled=True,
            next_retry_at=next_retry_at,
            recovery_stage=recovery_stage.value,
        )

    def reset_job_to_stage(self, job_id: int, target_stage, clear_retries: bool = True) -> RecoveryResult:
        """Operator override: move the job to ``target_stage`` without any checks."""
        job = self.session.get(ImportJob, job_id)
        if job is None:
            return RecoveryResult(False, "job_not_found", error="Import job not found")

        target = coerce_stage(target_stage)
        previous = coerce_stage(job.stage)
        now = self.clock()

        error_log = dict(job.error_log or {})
        error_log["manualReset"] = {
            "resetAt": now.isoformat(),
            "previousStage": previous.value,
            "targetStage": target.value,
        }
        # The target stage starts from its first batch again
        progress = dict(job.progress or {})
        progress.update({"stage": None, "batchNumber": 0, "current": 0})

        fields: Dict[str, Any] = {
            "stage": target,
            "last_retry_at": now,
            "next_retry_at": None,
            "error_log": error_log,
            "progress": progress,
        }
        if clear_retries:
            fields["retry_attempts"] = 0
        update_job_fields(job, **fields)
        self.session.commit()
        logger.info("Manually reset job %s from %s to %s (cleared retries: %s)", job.id, previous, target, clear_retries)
        return RecoveryResult(True, "manual_reset", recovery_stage=target.value)

    def get_recovery_recommendations(self, limit: int = 100) -> List[Dict[str, Any]]:
        failed = self.session.execute(
            select(ImportJob).where(ImportJob.stage == ProcessingStage.FAILED).order_by(ImportJob.id).limit(limit)
        ).scalars().all()

        recommendations = []
        for job in failed:
            classification = self.classify_error(job)
            attempts = job.retry_attempts or 0
            retryable = attempts < self.config.max_retries
            recommendations.append({
                "jobId": job.id,
                "stage": coerce_stage(job.stage).value,
                "failedStage": (job.error_log or {}).get("stage"),
                "lastError": (job.error_log or {}).get("lastError"),
                "classification": classification.to_json(),
                "recommendedAction": RECOMMENDATION_AUTOMATIC if retryable else RECOMMENDATION_MANUAL,
                "retryCount": attempts,
                "recoveryStage": self.determine_recovery_stage(job, classification).value,
            })
        return recommendations

    def process_pending_retries(self, queue: TaskQueue, limit: int = 10) -> List[int]:
        """Enqueue jobs whose retry time has passed and clear their schedule."""
        now = self.clock()
        due = self.session.execute(
            select(ImportJob)
            .where(
                ImportJob.next_retry_at.is_not(None),
                ImportJob.next_retry_at <= now,
                ImportJob.stage.not_in(list(TERMINAL_STAGES)),
            )
            .order_by(ImportJob.next_retry_at, ImportJob.id)
            .limit(limit)
        ).scalars().all()

        job_ids = []
        for job in due:
            update_job_fields(job, next_retry_at=None)
            job_ids.append(job.id)
        self.session.commit()

        for job_id in job_ids:
            queue.enqueue(job_id)
        if job_ids:
            logger.info("Queued %d scheduled retr%s: %s", len(job_ids), "y" if len(job_ids) == 1 else "ies", job_ids)
        return job_ids
