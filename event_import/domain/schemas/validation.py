"""Boundary validation of event data against a dataset schema document."""
from typing import Any, Dict, List, Optional

from event_import.domain.schemas.builder import value_type

_COMPATIBLE = {
    "integer": {"integer"},
    "number": {"integer", "number"},
    "string": {"string", "date", "boolean-string"},
    "boolean": {"boolean"},
    "array": {"array"},
    "object": {"object"},
    "null": {"null"},
}


def _allowed_types(prop: Dict[str, Any]) -> Optional[List[str]]:
    kind = prop.get("type")
    if kind is None:
        return None
    return kind if isinstance(kind, list) else [kind]


def validate_record(data: Dict[str, Any], schema: Optional[Dict[str, Any]], path: str = "") -> List[Dict[str, Any]]:
    """
    Check required fields, declared types and enum membership. Returns a
    list of ``{path, error}`` entries; an empty list means valid. Fields the
    schema does not describe are accepted.
    """
    if not schema or not isinstance(data, dict):
        return []

    errors: List[Dict[str, Any]] = []
    properties = schema.get("properties") or {}

    for name in schema.get("required") or []:
        if data.get(name) is None:
            errors.append({"path": f"{path}{name}", "error": "Required field is missing"})

    for name, value in data.items():
        prop = properties.get(name)
        if not isinstance(prop, dict) or value is None:
            continue
        field_path = f"{path}{name}"
        allowed = _allowed_types(prop)
        actual = value_type(value)
        if allowed and not any(actual in _COMPATIBLE.get(kind, {kind}) for kind in allowed):
            errors.append({"path": field_path, "error": f"Expected {' | '.join(allowed)}, got {actual}"})
            continue
        if prop.get("enum") and value not in prop["enum"]:
            errors.append({"path": field_path, "error": f"Value {value!r} is not one of the known values"})
        if actual == "object" and prop.get("properties"):
            errors.extend(validate_record(value, prop, path=f"{field_path}."))

    return errors
