"""
Dataset-configured import transforms.

A dataset stores an ordered list of transform descriptors. They are parsed
once into pydantic models and turned into a pipeline of row -> row steps
that is folded left to right over every row, so each transform sees the
output of the one before it. Steps never mutate their input row.

Per-row failures are returned as ``TransformError`` records next to the
transformed row; they never abort the batch. What happens to the failing
value is decided per transform by ``onFailure``:

``keep``    leave the original value in place (default)
``null``    replace the value with None
``reject``  keep the value but mark the whole row as rejected
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from event_import.core.exceptions import TransformError, ValidationError
from event_import.utils.date import parse_flexible_date

logger = logging.getLogger(__name__)

CastableType = Literal["string", "number", "boolean", "date", "array", "object", "null"]
FailurePolicy = Literal["keep", "null", "reject"]

_MISSING = object()

TRUE_STRINGS = {"true", "1", "yes", "y", "ja", "oui", "si", "sí"}
FALSE_STRINGS = {"false", "0", "no", "n", "nein", "non"}


class _TransformBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    active: bool = True
    auto_detected: bool = Field(default=False, alias="autoDetected")


class RenameTransform(_TransformBase):
    type: Literal["rename"]
    from_path: str = Field(alias="from", min_length=1)
    to_path: str = Field(alias="to", min_length=1)


class DateParseTransform(_TransformBase):
    type: Literal["date-parse"]
    from_path: str = Field(alias="from", min_length=1)
    input_format: Optional[str] = Field(default=None, alias="inputFormat")
    output_format: Literal["date", "datetime"] = Field(default="date", alias="outputFormat")
    on_failure: FailurePolicy = Field(default="keep", alias="onFailure")


class StringOpTransform(_TransformBase):
    type: Literal["string-op"]
    from_path: str = Field(alias="from", min_length=1)
    operation: Literal["uppercase", "lowercase", "trim", "replace"]
    pattern: Optional[str] = None
    replacement: Optional[str] = None


class ConcatenateTransform(_TransformBase):
    type: Literal["concatenate"]
    from_fields: List[str] = Field(alias="fromFields", min_length=1)
    separator: str = " "
    to_path: str = Field(alias="to", min_length=1)


class SplitTransform(_TransformBase):
    type: Literal["split"]
    from_path: str = Field(alias="from", min_length=1)
    delimiter: str = Field(default=",", min_length=1)
    to_fields: List[str] = Field(alias="toFields", min_length=1)


class TypeCastTransform(_TransformBase):
    type: Literal["type-cast"]
    from_path: str = Field(alias="from", min_length=1)
    from_type: CastableType = Field(alias="fromType")
    to_type: CastableType = Field(alias="toType")
    strategy: Literal["parse", "cast", "reject"] = "parse"
    on_failure: FailurePolicy = Field(default="keep", alias="onFailure")


ImportTransform = Annotated[
    Union[
        RenameTransform,
        DateParseTransform,
        StringOpTransform,
        ConcatenateTransform,
        SplitTransform,
        TypeCastTransform,
    ],
    Field(discriminator="type"),
]

_transform_list_adapter = TypeAdapter(List[ImportTransform])


def parse_transforms(raw: Optional[Sequence[Any]]) -> List[ImportTransform]:
    """Validate stored descriptors; malformed ones reject the whole list."""
    if not raw:
        return []
    try:
        transforms = _transform_list_adapter.validate_python(list(raw))
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(f"Invalid import transform at {location}: {first.get('msg')}", field=location)

    for transform in transforms:
        if isinstance(transform, RenameTransform) and transform.from_path == transform.to_path:
            raise ValidationError(f"Rename transform maps '{transform.from_path}' onto itself", field="to")
        if isinstance(transform, StringOpTransform) and transform.operation == "replace" and transform.pattern is None:
            raise ValidationError("Replace operation requires a pattern", field="pattern")
    return transforms


# ---------------------------------------------------------------------------
# Dotted-path helpers (copy-on-write)
# ---------------------------------------------------------------------------

def _split_path(row: Dict[str, Any], path: str) -> List[str]:
    # A literal key containing dots wins over nested addressing
    if path in row or "." not in path:
        return [path]
    return path.split(".")


def get_by_path(row: Dict[str, Any], path: str, default: Any = None) -> Any:
    current: Any = row
    for key in _split_path(row, path):
        if not isinstance(current, dict) or key not in current:
            return default
        current = current[key]
    return current


def set_by_path(row: Dict[str, Any], path: str, value: Any) -> Dict[str, Any]:
    keys = _split_path(row, path)
    result = dict(row)
    cursor = result
    for key in keys[:-1]:
        child = cursor.get(key)
        child = dict(child) if isinstance(child, dict) else {}
        cursor[key] = child
        cursor = child
    cursor[keys[-1]] = value
    return result


def delete_by_path(row: Dict[str, Any], path: str) -> Dict[str, Any]:
    keys = _split_path(row, path)
    result = dict(row)
    cursor = result
    for key in keys[:-1]:
        child = cursor.get(key)
        if not isinstance(child, dict):
            return result
        child = dict(child)
        cursor[key] = child
        cursor = child
    cursor.pop(keys[-1], None)
    return result


# ---------------------------------------------------------------------------
# Value conversion
# ---------------------------------------------------------------------------

def actual_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return "string"


def _to_number(value: Any) -> Union[int, float]:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    text = str(value).strip().replace(",", "") if isinstance(value, str) else str(value)
    if not text:
        raise ValueError(f'Cannot parse "{value}" as number')
    if re.fullmatch(r"[+-]?\d+", text):
        return int(text)
    number = float(text)
    if number != number:
        raise ValueError(f'Cannot parse "{value}" as number')
    return number


def parse_value(value: Any, to_type: str) -> Any:
    """Interpret ``value`` as ``to_type``; raises ValueError when it can't."""
    if to_type == "number":
        try:
            return _to_number(value)
        except (TypeError, ValueError):
            raise ValueError(f'Cannot parse "{value}" as number')
    if to_type == "boolean":
        if isinstance(value, bool):
            return value
        lowered = str(value).strip().lower()
        if lowered in TRUE_STRINGS:
            return True
        if lowered in FALSE_STRINGS:
            return False
        raise ValueError(f'Cannot parse "{value}" as boolean')
    if to_type == "date":
        parsed = parse_flexible_date(value, log_failures=False)
        if parsed is None:
            raise ValueError(f'Cannot parse "{value}" as date')
        return parsed
    if to_type == "string":
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)
    raise ValueError(f"Cannot parse to type: {to_type}")


def cast_value(value: Any, to_type: str) -> Any:
    """Direct coercion without interpretation of the value's text."""
    if to_type == "string":
        return str(value)
    if to_type == "number":
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ValueError(f'Cannot cast "{value}" to number')
    if to_type == "boolean":
        return bool(value)
    raise ValueError(f"Cannot cast to type: {to_type}")


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

StepOutcome = Tuple[Dict[str, Any], Optional[TransformError]]
RowStep = Callable[[Dict[str, Any]], StepOutcome]


def _failure(row: Dict[str, Any], path: str, value: Any, transform, message: str) -> StepOutcome:
    policy = getattr(transform, "on_failure", "keep")
    error = TransformError(
        message, field=path, value=value, transform_type=transform.type, rejects_row=policy == "reject"
    )
    if policy == "null":
        row = set_by_path(row, path, None)
    return row, error


def _rename_step(transform: RenameTransform) -> RowStep:
    def step(row):
        value = get_by_path(row, transform.from_path, _MISSING)
        if value is _MISSING:
            return row, None
        renamed = set_by_path(row, transform.to_path, value)
        return delete_by_path(renamed, transform.from_path), None

    return step


def _date_parse_step(transform: DateParseTransform) -> RowStep:
    def step(row):
        value = get_by_path(row, transform.from_path, _MISSING)
        if value is _MISSING or not isinstance(value, str) or not value.strip():
            return row, None
        parsed = parse_flexible_date(value, log_failures=False)
        if parsed is None:
            return _failure(row, transform.from_path, value, transform, f'Cannot parse "{value}" as date')
        if transform.output_format == "date":
            parsed = parsed.split("T")[0]
        return set_by_path(row, transform.from_path, parsed), None

    return step


def _string_op_step(transform: StringOpTransform) -> RowStep:
    def step(row):
        value = get_by_path(row, transform.from_path, _MISSING)
        if not isinstance(value, str):
            return row, None
        if transform.operation == "uppercase":
            result = value.upper()
        elif transform.operation == "lowercase":
            result = value.lower()
        elif transform.operation == "trim":
            result = value.strip()
        else:
            result = value.replace(transform.pattern, transform.replacement or "")
        return set_by_path(row, transform.from_path, result), None

    return step


def _concatenate_step(transform: ConcatenateTransform) -> RowStep:
    def step(row):
        values = [get_by_path(row, path) for path in transform.from_fields]
        values = [str(value) for value in values if value is not None]
        if not values:
            return row, None
        return set_by_path(row, transform.to_path, transform.separator.join(values)), None

    return step


def _split_step(transform: SplitTransform) -> RowStep:
    def step(row):
        value = get_by_path(row, transform.from_path)
        if not isinstance(value, str):
            return row, None
        parts = value.split(transform.delimiter)
        for target, part in zip(transform.to_fields, parts):
            if target:
                row = set_by_path(row, target, part.strip())
        return row, None

    return step


def _type_cast_step(transform: TypeCastTransform) -> RowStep:
    def step(row):
        value = get_by_path(row, transform.from_path)
        # Only values of the declared source type are cast
        if value is None or actual_type(value) != transform.from_type:
            return row, None
        if transform.strategy == "reject":
            error = TransformError(
                f"Type mismatch: expected {transform.to_type}, got {transform.from_type}",
                field=transform.from_path,
                value=value,
                transform_type=transform.type,
                rejects_row=True,
            )
            return row, error
        try:
            if transform.strategy == "parse":
                converted = parse_value(value, transform.to_type)
            else:
                converted = cast_value(value, transform.to_type)
        except ValueError as exc:
            return _failure(row, transform.from_path, value, transform, str(exc))
        return set_by_path(row, transform.from_path, converted), None

    return step


_STEP_BUILDERS = {
    "rename": _rename_step,
    "date-parse": _date_parse_step,
    "string-op": _string_op_step,
    "concatenate": _concatenate_step,
    "split": _split_step,
    "type-cast": _type_cast_step,
}


def build_pipeline(transforms: Sequence[Any]) -> List[RowStep]:
    """Turn descriptors (raw dicts or models) into ordered row steps."""
    raw = [t.model_dump(by_alias=True) if isinstance(t, BaseModel) else t for t in transforms or []]
    return [_STEP_BUILDERS[t.type](t) for t in parse_transforms(raw) if t.active]


@dataclass
class TransformResult:
    row: Dict[str, Any]
    errors: List[TransformError] = field(default_factory=list)
    rejected: bool = False


def run_pipeline(row: Dict[str, Any], steps: Sequence[RowStep], row_number: Optional[int] = None) -> TransformResult:
    result = TransformResult(row=dict(row))
    for step in steps:
        result.row, error = step(result.row)
        if error is not None:
            error.row_number = row_number
            result.errors.append(error)
            result.rejected = result.rejected or error.rejects_row
    return result


def apply_transforms(row: Dict[str, Any], transforms: Sequence[Any], row_number: Optional[int] = None) -> TransformResult:
    return run_pipeline(row, build_pipeline(transforms), row_number=row_number)


def apply_transforms_to_rows(rows: Sequence[Dict[str, Any]], transforms: Sequence[Any]) -> List[TransformResult]:
    """Apply one pipeline to every row; row numbers are 1-based."""
    steps = build_pipeline(transforms)
    results = [run_pipeline(row, steps, row_number=index + 1) for index, row in enumerate(rows)]
    failed = sum(1 for result in results if result.errors)
    if failed:
        logger.info("Transforms reported errors on %d of %d rows", failed, len(results))
    return results
