import pytest

from event_import.core.exceptions import InvalidStageTransition, ValidationError
from event_import.domain.imports.stages import (
    PIPELINE_ORDER,
    RECOVERY_ENTRY_STAGES,
    ProcessingStage,
    coerce_stage,
    is_valid_stage_transition,
    next_stage,
    validate_stage_transition,
)


def test_pipeline_order_is_linear_and_ends_completed():
    assert PIPELINE_ORDER[0] == ProcessingStage.DETECT_SCHEMA
    assert PIPELINE_ORDER[-1] == ProcessingStage.COMPLETED
    for current, following in zip(PIPELINE_ORDER, PIPELINE_ORDER[1:]):
        assert next_stage(current) == following
        assert is_valid_stage_transition(current, following)


def test_terminal_stages_have_no_next_stage():
    assert next_stage(ProcessingStage.COMPLETED) is None
    assert next_stage(ProcessingStage.FAILED) is None


@pytest.mark.parametrize("stage", list(ProcessingStage))
def test_any_stage_may_fail_or_stay(stage):
    assert is_valid_stage_transition(stage, ProcessingStage.FAILED)
    assert is_valid_stage_transition(stage, stage)


def test_skipping_a_stage_is_rejected():
    with pytest.raises(InvalidStageTransition) as exc:
        validate_stage_transition("detect-schema", "create-events")

    assert exc.value.from_stage == "detect-schema"
    assert exc.value.to_stage == "create-events"


def test_backward_moves_are_rejected():
    assert not is_valid_stage_transition(ProcessingStage.GEOCODE_BATCH, ProcessingStage.DETECT_SCHEMA)
    assert not is_valid_stage_transition(ProcessingStage.COMPLETED, ProcessingStage.CREATE_EVENTS)


def test_failed_jobs_may_reenter_any_recovery_stage():
    assert ProcessingStage.COMPLETED not in RECOVERY_ENTRY_STAGES
    for stage in RECOVERY_ENTRY_STAGES:
        assert validate_stage_transition(ProcessingStage.FAILED, stage) == stage
    assert not is_valid_stage_transition(ProcessingStage.FAILED, ProcessingStage.COMPLETED)


def test_coerce_stage_accepts_values_and_members():
    assert coerce_stage("geocode-batch") is ProcessingStage.GEOCODE_BATCH
    assert coerce_stage(" completed ") is ProcessingStage.COMPLETED
    assert coerce_stage(ProcessingStage.FAILED) is ProcessingStage.FAILED
    assert str(ProcessingStage.AWAIT_APPROVAL) == "await-approval"


def test_coerce_stage_rejects_unknown_values():
    with pytest.raises(ValidationError) as exc:
        coerce_stage("geocoding")
    assert exc.value.field == "stage"
    assert "detect-schema" in exc.value.message
