"""
Content fingerprints and unique identifiers for imported rows.

A row fingerprint is the sha256 of the row's canonical JSON (sorted keys),
so two rows with the same content hash identically regardless of column
order. The unique identifier of an event is derived from the dataset's id
strategy and is what the duplicate analysis and the per-dataset uniqueness
constraint operate on.
"""
import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from event_import.core.exceptions import ValidationError
from event_import.domain.imports.transforms import get_by_path
from event_import.utils.serialization import canonical_json, sha256_hex

logger = logging.getLogger(__name__)

ID_STRATEGIES = ("auto", "external", "computed", "hybrid")
DUPLICATE_STRATEGIES = ("skip", "keep-first", "keep-last", "drop-all")

_EXTERNAL_ID_RE = re.compile(r"^[\w\-.:]+$")


def calculate_row_fingerprint(row: Dict[str, Any]) -> str:
    """Deterministic content hash of a row."""
    return sha256_hex(canonical_json(row))


def calculate_file_hash(content: bytes) -> str:
    """Hash of the raw bytes only; names and timestamps never contribute."""
    return hashlib.sha256(content or b"").hexdigest()


@dataclass
class UniqueIdResult:
    unique_id: str
    strategy: str
    content_hash: str
    source_id: Optional[str] = None


def normalize_id_strategy(raw: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Fill defaults and reject unknown strategy names."""
    strategy = dict(raw or {})
    strategy.setdefault("type", "auto")
    strategy.setdefault("duplicateStrategy", "skip")
    strategy.setdefault("externalIdPath", None)
    strategy.setdefault("computedIdFields", [])

    if strategy["type"] not in ID_STRATEGIES:
        raise ValidationError(f"Unknown ID strategy: {strategy['type']}", field="idStrategy.type")
    if strategy["duplicateStrategy"] not in DUPLICATE_STRATEGIES:
        raise ValidationError(
            f"Unknown duplicate strategy: {strategy['duplicateStrategy']}", field="idStrategy.duplicateStrategy"
        )
    if strategy["type"] == "external" and not strategy["externalIdPath"]:
        raise ValidationError("External ID strategy requires externalIdPath", field="idStrategy.externalIdPath")
    if strategy["type"] == "computed" and not strategy["computedIdFields"]:
        raise ValidationError("Computed ID strategy requires computedIdFields", field="idStrategy.computedIdFields")
    return strategy


def _sanitize_external_id(value: Any) -> str:
    text = str(value).strip()
    if not text or len(text) > 255:
        raise ValidationError(f"Invalid ID length: {len(text)} (must be 1-255 characters)", field="externalIdPath")
    if not _EXTERNAL_ID_RE.match(text):
        raise ValidationError(f"Invalid ID format: {text} (only alphanumeric, -, _, :, . allowed)", field="externalIdPath")
    return text


def _computed_field_paths(strategy: Dict[str, Any]) -> List[str]:
    paths = []
    for entry in strategy.get("computedIdFields") or []:
        path = entry.get("fieldPath") if isinstance(entry, dict) else entry
        if path:
            paths.append(str(path))
    return paths


def _external_id(row, strategy, dataset_id, content_hash) -> UniqueIdResult:
    path = strategy.get("externalIdPath") or ""
    value = get_by_path(row, path) if path else None
    if value is None or value == "":
        raise ValidationError(f"Missing external ID at path: {path or 'unknown'}", field="externalIdPath")
    source_id = _sanitize_external_id(value)
    return UniqueIdResult(f"{dataset_id}:ext:{source_id}", "external", content_hash, source_id)


def _computed_id(row, strategy, dataset_id, content_hash) -> UniqueIdResult:
    values, missing = [], []
    for path in _computed_field_paths(strategy):
        value = get_by_path(row, path)
        if value is None:
            missing.append(path)
        else:
            values.append((path, value))
    if missing:
        raise ValidationError(f"Missing required fields for computed ID: {', '.join(missing)}", field="computedIdFields")

    hash_input = "|".join(f"{path}:{canonical_json(value)}" for path, value in sorted(values))
    digest = sha256_hex(f"{dataset_id}:{hash_input}")[:16]
    return UniqueIdResult(f"{dataset_id}:comp:{digest}", "computed", content_hash)


def generate_unique_id(row: Dict[str, Any], id_strategy: Optional[Dict[str, Any]], dataset_id: Any) -> UniqueIdResult:
    """
    Derive the event identifier of ``row``. ``auto`` identifiers are content
    based, so identical rows always map to the same identifier.
    """
    strategy = normalize_id_strategy(id_strategy)
    content_hash = calculate_row_fingerprint(row)
    kind = strategy["type"]

    if kind == "external":
        return _external_id(row, strategy, dataset_id, content_hash)
    if kind == "computed":
        return _computed_id(row, strategy, dataset_id, content_hash)
    if kind == "hybrid":
        try:
            return _external_id(row, strategy, dataset_id, content_hash)
        except ValidationError as external_error:
            if not _computed_field_paths(strategy):
                return UniqueIdResult(f"{dataset_id}:auto:{content_hash}", "auto", content_hash)
            try:
                return _computed_id(row, strategy, dataset_id, content_hash)
            except ValidationError as computed_error:
                raise ValidationError(
                    f"Hybrid ID generation failed. External: {external_error.message}. Computed: {computed_error.message}"
                )
    return UniqueIdResult(f"{dataset_id}:auto:{content_hash}", "auto", content_hash)
