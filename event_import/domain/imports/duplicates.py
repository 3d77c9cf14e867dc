"""
Duplicate detection for rows and for whole-file resubmissions.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from event_import.core.exceptions import ValidationError
from event_import.db.models import Event, ImportFile
from event_import.domain.imports.fingerprinting import (
    calculate_file_hash,
    generate_unique_id,
    normalize_id_strategy,
)

logger = logging.getLogger(__name__)

DUPLICATE_FILE_REASON = "Duplicate content detected"
EXISTING_LOOKUP_CHUNK_SIZE = 1000


# ---------------------------------------------------------------------------
# Whole-file resubmissions
# ---------------------------------------------------------------------------

def find_completed_duplicate(session: Session, import_file: ImportFile) -> Optional[ImportFile]:
    """
    Return an earlier, completed import file with the same content hash from
    the same catalog and recurring source. Files without a source key are
    compared against every completed file of the catalog.
    """
    if not import_file.content_hash:
        import_file.content_hash = calculate_file_hash(import_file.content)

    query = (
        select(ImportFile)
        .where(
            ImportFile.content_hash == import_file.content_hash,
            ImportFile.catalog_id == import_file.catalog_id,
            ImportFile.status == "completed",
            ImportFile.id != import_file.id,
        )
        .order_by(ImportFile.id)
    )
    if import_file.source_key is not None:
        query = query.where(ImportFile.source_key == import_file.source_key)
    return session.execute(query).scalars().first()


def mark_if_duplicate_submission(session: Session, import_file: ImportFile) -> bool:
    """Flag ``import_file`` as a skipped resubmission when one matches."""
    original = find_completed_duplicate(session, import_file)
    if original is None:
        return False

    import_file.is_duplicate = True
    import_file.duplicate_of_id = original.id
    import_file.status = "skipped"
    import_file.skip_reason = f"{DUPLICATE_FILE_REASON}: identical to import file {original.id}"
    logger.info(
        "Import file %s is a byte-identical resubmission of %s (hash %s); skipping",
        import_file.id,
        original.id,
        import_file.content_hash[:12],
    )
    return True


# ---------------------------------------------------------------------------
# Row analysis
# ---------------------------------------------------------------------------

@dataclass
class DuplicateAnalysis:
    strategy: str
    duplicate_strategy: str
    total_rows: int = 0
    unique_ids: Dict[int, str] = field(default_factory=dict)
    content_hashes: Dict[int, str] = field(default_factory=dict)
    internal: List[Dict[str, Any]] = field(default_factory=list)
    external: List[Dict[str, Any]] = field(default_factory=list)
    invalid: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def skip_rows(self) -> List[int]:
        rows = {entry["rowNumber"] for entry in self.internal + self.external + self.invalid}
        return sorted(rows)

    @property
    def unique_rows(self) -> int:
        return self.total_rows - len(self.skip_rows)

    def to_json(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy,
            "duplicateStrategy": self.duplicate_strategy,
            "internal": self.internal,
            "external": self.external,
            "invalid": self.invalid,
            "skipRows": self.skip_rows,
            "uniqueIds": {str(row): uid for row, uid in self.unique_ids.items()},
            "contentHashes": {str(row): h for row, h in self.content_hashes.items()},
            "summary": {
                "totalRows": self.total_rows,
                "uniqueRows": self.unique_rows,
                "internalDuplicates": len(self.internal),
                "externalDuplicates": len(self.external),
                "invalidRows": len(self.invalid),
            },
        }


ExistingLookup = Callable[[Sequence[str]], Dict[str, Any]]


def analyze_rows(
    rows: Iterable[Dict[str, Any]],
    id_strategy: Optional[Dict[str, Any]],
    dataset_id: Any,
    existing_lookup: Optional[ExistingLookup] = None,
    skip_row_numbers: Iterable[int] = (),
) -> DuplicateAnalysis:
    """
    Classify rows (1-based row numbers) as kept, intra-file duplicates or
    duplicates of existing events, honouring ``duplicateStrategy``:

    ``skip``        later occurrences are skipped, the first is kept
    ``keep-first``  same as ``skip``
    ``keep-last``   the last occurrence is kept
    ``drop-all``    every row whose identifier repeats in the file is dropped

    Rows that already exist as events are always skipped.
    """
    strategy = normalize_id_strategy(id_strategy)
    analysis = DuplicateAnalysis(strategy=strategy["type"], duplicate_strategy=strategy["duplicateStrategy"])
    excluded = set(skip_row_numbers)
    occurrences: Dict[str, List[int]] = {}

    for index, row in enumerate(rows):
        row_number = index + 1
        analysis.total_rows += 1
        if row_number in excluded:
            continue
        try:
            result = generate_unique_id(row, strategy, dataset_id)
        except ValidationError as exc:
            analysis.invalid.append({"rowNumber": row_number, "error": exc.message})
            continue
        analysis.unique_ids[row_number] = result.unique_id
        analysis.content_hashes[row_number] = result.content_hash
        occurrences.setdefault(result.unique_id, []).append(row_number)

    kept: Dict[str, int] = {}
    for unique_id, row_numbers in occurrences.items():
        first = row_numbers[0]
        if len(row_numbers) == 1:
            kept[unique_id] = first
            continue
        if analysis.duplicate_strategy == "keep-last":
            keep = row_numbers[-1]
        elif analysis.duplicate_strategy == "drop-all":
            keep = None
        else:
            keep = first
        if keep is not None:
            kept[unique_id] = keep
        for row_number in row_numbers:
            if row_number != keep:
                analysis.internal.append({
                    "rowNumber": row_number,
                    "uniqueId": unique_id,
                    "firstOccurrence": first,
                    "keptRow": keep,
                    "count": len(row_numbers),
                })
    analysis.internal.sort(key=lambda entry: entry["rowNumber"])

    if existing_lookup is not None and kept:
        existing = existing_lookup(list(kept.keys()))
        for unique_id, event_id in existing.items():
            if unique_id in kept:
                analysis.external.append({
                    "rowNumber": kept[unique_id],
                    "uniqueId": unique_id,
                    "existingEventId": event_id,
                })
        analysis.external.sort(key=lambda entry: entry["rowNumber"])

    return analysis


def find_existing_events(session: Session, dataset_id: int, unique_ids: Sequence[str]) -> Dict[str, int]:
    """Map already stored unique ids of ``dataset_id`` to their event ids."""
    found: Dict[str, int] = {}
    for start in range(0, len(unique_ids), EXISTING_LOOKUP_CHUNK_SIZE):
        chunk = unique_ids[start:start + EXISTING_LOOKUP_CHUNK_SIZE]
        rows = session.execute(
            select(Event.unique_id, Event.id).where(Event.dataset_id == dataset_id, Event.unique_id.in_(chunk))
        ).all()
        found.update({unique_id: event_id for unique_id, event_id in rows})
    return found
