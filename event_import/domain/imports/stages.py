"""
Processing stages of an import job and the legal moves between them.

Stage handlers never compare raw strings: they read ``ProcessingStage``
members and ask ``next_stage`` / ``validate_stage_transition`` where the
job may go next. Administrative resets are the only writes that bypass the
transition table.
"""
from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Union

from event_import.core.exceptions import InvalidStageTransition, ValidationError


class ProcessingStage(str, Enum):
    DETECT_SCHEMA = "detect-schema"
    VALIDATE_SCHEMA = "validate-schema"
    AWAIT_APPROVAL = "await-approval"
    ANALYZE_DUPLICATES = "analyze-duplicates"
    GEOCODE_BATCH = "geocode-batch"
    CREATE_EVENTS = "create-events"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


PIPELINE_ORDER: List[ProcessingStage] = [
    ProcessingStage.DETECT_SCHEMA,
    ProcessingStage.VALIDATE_SCHEMA,
    ProcessingStage.AWAIT_APPROVAL,
    ProcessingStage.ANALYZE_DUPLICATES,
    ProcessingStage.GEOCODE_BATCH,
    ProcessingStage.CREATE_EVENTS,
    ProcessingStage.COMPLETED,
]

TERMINAL_STAGES: FrozenSet[ProcessingStage] = frozenset({ProcessingStage.COMPLETED, ProcessingStage.FAILED})

# Stages a failed job may re-enter through the recovery service
RECOVERY_ENTRY_STAGES: FrozenSet[ProcessingStage] = frozenset(PIPELINE_ORDER[:-1])

STAGE_TRANSITIONS: Dict[ProcessingStage, FrozenSet[ProcessingStage]] = {
    ProcessingStage.DETECT_SCHEMA: frozenset({ProcessingStage.VALIDATE_SCHEMA}),
    ProcessingStage.VALIDATE_SCHEMA: frozenset({ProcessingStage.AWAIT_APPROVAL}),
    ProcessingStage.AWAIT_APPROVAL: frozenset({ProcessingStage.ANALYZE_DUPLICATES}),
    ProcessingStage.ANALYZE_DUPLICATES: frozenset({ProcessingStage.GEOCODE_BATCH}),
    ProcessingStage.GEOCODE_BATCH: frozenset({ProcessingStage.CREATE_EVENTS}),
    ProcessingStage.CREATE_EVENTS: frozenset({ProcessingStage.COMPLETED}),
    ProcessingStage.COMPLETED: frozenset(),
    ProcessingStage.FAILED: RECOVERY_ENTRY_STAGES,
}


def coerce_stage(value: Union[str, ProcessingStage]) -> ProcessingStage:
    """Turn a persisted or user-supplied value into a ``ProcessingStage``."""
    if isinstance(value, ProcessingStage):
        return value
    try:
        return ProcessingStage(str(value).strip())
    except ValueError:
        allowed = ", ".join(stage.value for stage in ProcessingStage)
        raise ValidationError(f"Unknown processing stage '{value}'. Expected one of: {allowed}", field="stage")


def next_stage(stage: Union[str, ProcessingStage]) -> Optional[ProcessingStage]:
    stage = coerce_stage(stage)
    if stage in TERMINAL_STAGES:
        return None
    return PIPELINE_ORDER[PIPELINE_ORDER.index(stage) + 1]


def is_valid_stage_transition(from_stage, to_stage) -> bool:
    from_stage = coerce_stage(from_stage)
    to_stage = coerce_stage(to_stage)
    if from_stage == to_stage or to_stage == ProcessingStage.FAILED:
        return True
    return to_stage in STAGE_TRANSITIONS[from_stage]


def validate_stage_transition(from_stage, to_stage) -> ProcessingStage:
    """Return the target stage or raise ``InvalidStageTransition``."""
    if not is_valid_stage_transition(from_stage, to_stage):
        raise InvalidStageTransition(str(coerce_stage(from_stage)), str(coerce_stage(to_stage)))
    return coerce_stage(to_stage)
