"""
Progressive schema building from sampled rows.

``SchemaBuilder`` keeps per-field statistics that can be serialized onto an
import job (``to_state`` / ``from_state``) so a later stage can resume from
them, and renders a JSON-schema style document from those statistics.
``compare_schemas`` diffs two such documents.
"""
from __future__ import annotations

import copy
import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from event_import.utils.date import looks_like_date

logger = logging.getLogger(__name__)

ISO_DATETIME_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(:\d{2})?")
ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
SLASH_DATE_RE = re.compile(r"^\d{1,2}/\d{1,2}/\d{2,4}$")
NUMERIC_RE = re.compile(r"^-?\d+(\.\d+)?$")
URL_RE = re.compile(r"^https?://\S+")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_JSON_TYPES = {
    "integer": "integer",
    "number": "number",
    "string": "string",
    "boolean-string": "string",
    "date": "string",
    "boolean": "boolean",
    "array": "array",
    "object": "object",
}


def value_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "integer" if value.is_integer() else "number"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    text = str(value)
    if ISO_DATE_RE.match(text) or ISO_DATETIME_RE.match(text) or SLASH_DATE_RE.match(text):
        if looks_like_date(text):
            return "date"
    if text in ("true", "false"):
        return "boolean-string"
    return "string"


def new_field_stats(path: str) -> Dict[str, Any]:
    return {
        "path": path,
        "occurrences": 0,
        "nullCount": 0,
        "uniqueValues": 0,
        "uniqueSamples": [],
        "typeDistribution": {},
        "formats": {},
        "numericStats": None,
        "isEnumCandidate": False,
        "depth": path.count("."),
    }


def update_field_stats(stats: Dict[str, Any], value: Any, max_unique_values: int) -> None:
    stats["occurrences"] += 1
    if value is None:
        stats["nullCount"] += 1

    kind = value_type(value)
    stats["typeDistribution"][kind] = stats["typeDistribution"].get(kind, 0) + 1

    if kind in ("integer", "number"):
        numeric = stats["numericStats"]
        if numeric is None:
            stats["numericStats"] = {"min": value, "max": value, "avg": float(value), "isInteger": kind == "integer"}
        else:
            count = stats["occurrences"] - stats["nullCount"]
            numeric["min"] = min(numeric["min"], value)
            numeric["max"] = max(numeric["max"], value)
            numeric["avg"] = (numeric["avg"] * (count - 1) + value) / max(count, 1)
            numeric["isInteger"] = numeric["isInteger"] and kind == "integer"

    samples = stats["uniqueSamples"]
    if (
        len(samples) < max_unique_values
        and (value is None or isinstance(value, (str, int, float, bool)))
        and value not in samples
    ):
        samples.append(value)
    stats["uniqueValues"] = len(samples)

    if isinstance(value, str):
        formats = stats["formats"]
        for name, pattern in (
            ("email", EMAIL_RE),
            ("url", URL_RE),
            ("dateTime", ISO_DATETIME_RE),
            ("date", ISO_DATE_RE),
            ("numeric", NUMERIC_RE),
        ):
            if pattern.match(value):
                formats[name] = formats.get(name, 0) + 1


def _non_null_types(stats: Dict[str, Any]) -> List[str]:
    return sorted(t for t, count in stats["typeDistribution"].items() if t != "null" and count > 0)


class SchemaBuilder:
    """Accumulates field statistics batch by batch."""

    def __init__(
        self,
        state: Optional[Dict[str, Any]] = None,
        *,
        max_unique_values: int = 100,
        enum_threshold: int = 20,
        max_depth: int = 3,
    ):
        self.max_unique_values = max_unique_values
        self.enum_threshold = enum_threshold
        self.max_depth = max_depth
        self.state: Dict[str, Any] = copy.deepcopy(state) if state else {
            "version": 0,
            "fieldStats": {},
            "recordCount": 0,
            "batchCount": 0,
            "typeConflicts": [],
        }

    @classmethod
    def from_state(cls, state: Optional[Dict[str, Any]], **kwargs) -> "SchemaBuilder":
        return cls(state, **kwargs)

    def to_state(self) -> Dict[str, Any]:
        return copy.deepcopy(self.state)

    @property
    def field_stats(self) -> Dict[str, Dict[str, Any]]:
        return self.state["fieldStats"]

    @property
    def record_count(self) -> int:
        return self.state["recordCount"]

    def process_batch(self, records: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Fold a batch of rows into the statistics; returns detected changes."""
        changes: List[Dict[str, Any]] = []
        count = 0
        for record in records:
            changes.extend(self._process_record(record, "", 0))
            count += 1

        self.state["recordCount"] += count
        self.state["batchCount"] += 1
        self._detect_enums()

        if any(change["type"] in ("new_field", "type_change") for change in changes):
            self.state["version"] += 1
        return changes

    def _process_record(self, record: Dict[str, Any], prefix: str, depth: int) -> List[Dict[str, Any]]:
        changes: List[Dict[str, Any]] = []
        if depth >= self.max_depth or not isinstance(record, dict):
            return changes

        for key, value in record.items():
            path = f"{prefix}.{key}" if prefix else str(key)
            stats = self.field_stats.get(path)
            if stats is None:
                stats = self.field_stats[path] = new_field_stats(path)
                changes.append({"type": "new_field", "path": path, "details": {"dataType": value_type(value)}})

            kind = value_type(value)
            existing = _non_null_types(stats)
            if kind != "null" and existing and kind not in existing:
                changes.append({"type": "type_change", "path": path, "details": {"oldType": existing[0], "newType": kind}})
                self._record_conflict(path, stats, kind, value)

            update_field_stats(stats, value, self.max_unique_values)

            if isinstance(value, dict):
                changes.extend(self._process_record(value, path, depth + 1))
        return changes

    def _record_conflict(self, path: str, stats: Dict[str, Any], kind: str, value: Any) -> None:
        conflict = next((c for c in self.state["typeConflicts"] if c["path"] == path), None)
        if conflict is None:
            conflict = {"path": path, "types": {t: stats["typeDistribution"][t] for t in _non_null_types(stats)}, "samples": []}
            self.state["typeConflicts"].append(conflict)
        conflict["types"][kind] = conflict["types"].get(kind, 0) + 1
        if len(conflict["samples"]) < 5:
            conflict["samples"].append({"type": kind, "value": value if isinstance(value, (str, int, float, bool)) else str(value)})

    def _detect_enums(self) -> None:
        for stats in self.field_stats.values():
            non_null = stats["occurrences"] - stats["nullCount"]
            types = _non_null_types(stats)
            stats["isEnumCandidate"] = (
                types == ["string"]
                and non_null >= 2 * self.enum_threshold
                and 0 < stats["uniqueValues"] <= self.enum_threshold
                and stats["uniqueValues"] < self.max_unique_values
            )

    def _property_for(self, stats: Dict[str, Any]) -> Dict[str, Any]:
        types = _non_null_types(stats)
        json_types = sorted({_JSON_TYPES.get(t, "string") for t in types})
        if json_types == ["integer", "number"]:
            json_types = ["number"]

        prop: Dict[str, Any] = {}
        if not json_types:
            prop["type"] = "null"
        elif len(json_types) == 1:
            prop["type"] = json_types[0]
        else:
            prop["type"] = json_types

        if types == ["date"]:
            prop["format"] = "date-time"
        if stats["numericStats"] and prop.get("type") in ("integer", "number"):
            prop["minimum"] = stats["numericStats"]["min"]
            prop["maximum"] = stats["numericStats"]["max"]
        if stats["isEnumCandidate"]:
            prop["enum"] = sorted(v for v in stats["uniqueSamples"] if v is not None)
        return prop

    def get_schema(self) -> Dict[str, Any]:
        """Render the statistics as a JSON-schema style document."""
        schema: Dict[str, Any] = {"type": "object", "properties": {}, "required": [], "additionalProperties": True}
        if not self.field_stats:
            return schema

        for path in sorted(self.field_stats, key=lambda p: (p.count("."), p)):
            stats = self.field_stats[path]
            parts = path.split(".")
            container = schema
            for part in parts[:-1]:
                parent = container["properties"].setdefault(part, {"type": "object"})
                parent.setdefault("properties", {})
                parent.setdefault("required", [])
                container = parent
            container["properties"][parts[-1]] = {
                **container["properties"].get(parts[-1], {}),
                **self._property_for(stats),
            }
            # Present and non-null in every record seen at this level
            if stats["nullCount"] == 0 and stats["occurrences"] == self._occurrences_at(parts[:-1]):
                container.setdefault("required", []).append(parts[-1])

        return schema

    def _occurrences_at(self, parent_parts: List[str]) -> int:
        if not parent_parts:
            return self.record_count
        parent = self.field_stats.get(".".join(parent_parts))
        return (parent["occurrences"] - parent["nullCount"]) if parent else 0

    def summary(self) -> Dict[str, Any]:
        return {
            "recordCount": self.record_count,
            "fieldCount": len(self.field_stats),
            "typeConflicts": len(self.state["typeConflicts"]),
        }


def build_schema_from_rows(rows: Iterable[Dict[str, Any]], **kwargs) -> SchemaBuilder:
    builder = SchemaBuilder(**kwargs)
    builder.process_batch(rows)
    return builder


def _field_type(prop: Any) -> str:
    if not isinstance(prop, dict):
        return "unknown"
    kind = prop.get("type")
    if isinstance(kind, list):
        return " | ".join(t for t in kind if t != "null")
    if kind:
        return str(kind)
    if prop.get("oneOf") or prop.get("anyOf"):
        return "union"
    if prop.get("enum"):
        return "enum"
    return "unknown"


def compare_schemas(old_schema: Optional[Dict[str, Any]], new_schema: Dict[str, Any]) -> Dict[str, Any]:
    """
    Diff two schema documents (top-level properties).

    Removed fields and type changes are breaking. A new field is breaking
    only when it is required and the old schema already described fields;
    the first schema of a dataset never counts as breaking.
    """
    old_schema = old_schema or {}
    old_props = old_schema.get("properties") or {}
    new_props = new_schema.get("properties") or {}
    old_required = set(old_schema.get("required") or [])
    new_required = set(new_schema.get("required") or [])
    changes: List[Dict[str, Any]] = []

    for name in old_props:
        if name not in new_props:
            changes.append({
                "type": "removed_field",
                "path": name,
                "severity": "error",
                "autoApprovable": False,
                "details": {"description": f"Field '{name}' was removed"},
            })

    for name in new_props:
        if name in old_props:
            continue
        required = name in new_required and bool(old_props)
        changes.append({
            "type": "new_field",
            "path": name,
            "severity": "error" if required else "info",
            "autoApprovable": not required,
            "details": {
                "description": f"Field '{name}' was added{' (required)' if required else ''}",
                "required": required,
                "dataType": _field_type(new_props[name]),
            },
        })

    for name, old_prop in old_props.items():
        if name not in new_props:
            continue
        new_prop = new_props[name]
        old_type, new_type = _field_type(old_prop), _field_type(new_prop)
        if old_type != new_type:
            changes.append({
                "type": "type_change",
                "path": name,
                "severity": "error",
                "autoApprovable": False,
                "details": {
                    "description": f"Field '{name}' type changed from {old_type} to {new_type}",
                    "oldType": old_type,
                    "newType": new_type,
                },
            })
        elif isinstance(old_prop, dict) and old_prop.get("enum") and new_prop.get("enum"):
            added = [v for v in new_prop["enum"] if v not in old_prop["enum"]]
            removed = [v for v in old_prop["enum"] if v not in new_prop["enum"]]
            if added or removed:
                changes.append({
                    "type": "enum_change",
                    "path": name,
                    "severity": "warning" if removed else "info",
                    "autoApprovable": not removed,
                    "details": {"description": f"Enum values changed for '{name}'", "added": added, "removed": removed},
                })

    for name in sorted(new_required - old_required):
        if name in old_props:
            changes.append({
                "type": "format_change",
                "path": name,
                "severity": "error",
                "autoApprovable": False,
                "details": {"description": f"Field '{name}' became required"},
            })
    for name in sorted(old_required - new_required):
        if name in new_props:
            changes.append({
                "type": "format_change",
                "path": name,
                "severity": "info",
                "autoApprovable": True,
                "details": {"description": f"Field '{name}' became optional"},
            })

    is_breaking = any(change["severity"] == "error" for change in changes) or any(
        change["type"] == "enum_change" and change["details"]["removed"] for change in changes
    )
    return {
        "changes": changes,
        "isBreaking": is_breaking,
        "hasChanges": bool(changes),
        "newFields": [c["path"] for c in changes if c["type"] == "new_field"],
        "removedFields": [c["path"] for c in changes if c["type"] == "removed_field"],
        "typeChanges": [
            {"field": c["path"], "oldType": c["details"]["oldType"], "newType": c["details"]["newType"]}
            for c in changes
            if c["type"] == "type_change"
        ],
        "canAutoApprove": all(change["autoApprovable"] for change in changes),
    }
