from datetime import timedelta

import pytest

from event_import.core.exceptions import ValidationError
from event_import.db.models import Catalog, Dataset, ImportFile, ImportJob
from event_import.domain.imports.jobs import create_import_job, fail_job
from event_import.domain.imports.recovery import (
    RECOMMENDATION_AUTOMATIC,
    RECOMMENDATION_MANUAL,
    ErrorRecoveryService,
    RetryConfig,
)
from event_import.domain.imports.stages import ProcessingStage
from event_import.domain.imports.task_queue import InlineTaskQueue


@pytest.fixture
def make_failed_job(session, clock):
    catalog = Catalog(name="c")
    session.add(catalog)
    session.flush()
    dataset = Dataset(catalog_id=catalog.id, name="events")
    import_file = ImportFile(catalog_id=catalog.id, file_name="events.csv", content=b"title\nA\n", status="processing")
    session.add_all([dataset, import_file])
    session.flush()

    def _make(error, last_successful_stage=None, retry_attempts=0):
        job = create_import_job(session, import_file_id=import_file.id, dataset_id=dataset.id)
        job.last_successful_stage = last_successful_stage
        job.retry_attempts = retry_attempts
        fail_job(job, error, now=clock())
        session.commit()
        return job.id

    return _make


@pytest.fixture
def service(session, clock):
    return ErrorRecoveryService(session, RetryConfig(), clock)


def test_backoff_is_exponential_and_capped():
    config = RetryConfig(base_delay_seconds=30, max_delay_seconds=300, backoff_multiplier=2.0)
    assert [config.delay_for(n).total_seconds() for n in range(6)] == [30, 60, 120, 240, 300, 300]


@pytest.mark.parametrize(
    "error, expected_type, retryable",
    [
        (FileNotFoundError("no such file"), "permanent", False),
        (ConnectionError("connection refused"), "recoverable", True),
        (TimeoutError("timed out"), "recoverable", True),
        (MemoryError("out of memory"), "recoverable", True),
        (RuntimeError("quota limit exceeded"), "user-action-required", False),
        (PermissionError("forbidden"), "permanent", False),
        (RuntimeError("boom"), "recoverable", True),
    ],
)
def test_classification(session, service, make_failed_job, error, expected_type, retryable):
    job = session.get(ImportJob, make_failed_job(error))
    classification = service.classify_error(job)
    assert (classification.type, classification.retryable) == (expected_type, retryable)


def test_only_failed_jobs_are_recovered(session, service, make_failed_job):
    job_id = make_failed_job(RuntimeError("boom"))
    session.get(ImportJob, job_id).stage = ProcessingStage.GEOCODE_BATCH
    session.commit()

    result = service.recover_failed_job(job_id)

    assert not result.success
    assert result.action == "not_failed"
    assert result.error == "Job is not in failed state"
    assert service.recover_failed_job(999).action == "job_not_found"


def test_recovery_schedules_retry_after_last_successful_stage(session, service, make_failed_job, clock):
    job_id = make_failed_job(ConnectionError("connection reset"), last_successful_stage="analyze-duplicates")

    result = service.recover_failed_job(job_id)

    assert result.success and result.retry_scheduled
    assert result.action == "retry_scheduled"
    assert result.recovery_stage == "geocode-batch"
    assert result.next_retry_at == clock() + timedelta(seconds=30)

    job = session.get(ImportJob, job_id)
    assert job.stage == ProcessingStage.GEOCODE_BATCH
    assert job.retry_attempts == 1
    assert job.error_log["recoveryAttempt"]["attempt"] == 1
    assert job.error_log["recoveryAttempt"]["classification"] == "recoverable"


def test_schema_errors_reenter_at_validate_schema(session, service, make_failed_job):
    job_id = make_failed_job(ValidationError("Record does not match the dataset schema"), last_successful_stage="geocode-batch")
    assert service.recover_failed_job(job_id).recovery_stage == "validate-schema"


def test_unknown_history_starts_over(session, service, make_failed_job):
    job_id = make_failed_job(RuntimeError("boom"))
    assert service.recover_failed_job(job_id).recovery_stage == "detect-schema"


def test_max_retries(session, service, make_failed_job):
    job_id = make_failed_job(RuntimeError("boom"), retry_attempts=3)

    result = service.recover_failed_job(job_id)

    assert not result.success
    assert result.action == "max_retries_exceeded"
    assert result.error == "Maximum retry attempts (3) exceeded"
    assert session.get(ImportJob, job_id).stage == ProcessingStage.FAILED


def test_second_retry_waits_longer(session, service, make_failed_job, clock):
    job_id = make_failed_job(RuntimeError("boom"), retry_attempts=1)
    assert service.recover_failed_job(job_id).next_retry_at == clock() + timedelta(seconds=60)


def test_manual_reset(session, service, make_failed_job):
    job_id = make_failed_job(RuntimeError("boom"), retry_attempts=3)
    job = session.get(ImportJob, job_id)
    job.progress = {"stage": "geocode-batch", "batchNumber": 4, "current": 8}
    session.commit()

    result = service.reset_job_to_stage(job_id, "geocode-batch")

    assert result.success
    assert result.action == "manual_reset"
    job = session.get(ImportJob, job_id)
    assert job.stage == ProcessingStage.GEOCODE_BATCH
    assert job.retry_attempts == 0
    assert job.next_retry_at is None
    assert job.progress["batchNumber"] == 0
    assert job.error_log["manualReset"]["previousStage"] == "failed"
    assert job.error_log["manualReset"]["targetStage"] == "geocode-batch"


def test_manual_reset_can_keep_retry_count(session, service, make_failed_job):
    job_id = make_failed_job(RuntimeError("boom"), retry_attempts=2)
    service.reset_job_to_stage(job_id, ProcessingStage.CREATE_EVENTS, clear_retries=False)
    assert session.get(ImportJob, job_id).retry_attempts == 2


def test_recommendations(session, service, make_failed_job):
    fresh = make_failed_job(ConnectionError("connection lost"), last_successful_stage="detect-schema")
    exhausted = make_failed_job(RuntimeError("boom"), retry_attempts=3)

    entries = {entry["jobId"]: entry for entry in service.get_recovery_recommendations()}

    assert entries[fresh]["recommendedAction"] == RECOMMENDATION_AUTOMATIC
    assert entries[fresh]["recoveryStage"] == "validate-schema"
    assert entries[fresh]["lastError"] == "Database connection error"
    assert entries[fresh]["failedStage"] == "detect-schema"
    assert entries[exhausted]["recommendedAction"] == RECOMMENDATION_MANUAL
    assert entries[exhausted]["retryCount"] == 3


def test_pending_retries_are_queued_once_due(session, service, make_failed_job, clock):
    job_id = make_failed_job(RuntimeError("boom"))
    service.recover_failed_job(job_id)
    queue = InlineTaskQueue()

    assert service.process_pending_retries(queue) == []
    assert len(queue) == 0

    clock.advance(31)
    assert service.process_pending_retries(queue) == [job_id]
    assert queue.pop() == job_id
    assert session.get(ImportJob, job_id).next_retry_at is None

    assert service.process_pending_retries(queue) == []
