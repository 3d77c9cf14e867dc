"""
Language-aware detection of the semantic roles of imported fields.

Detection always runs on post-transform field names: a rename configured on
the dataset decides which column ends up as the title, not the raw header.
Each role is matched against the dataset language's vocabulary (ISO-639-3
code), then against English when the dataset language finds nothing. Field
statistics, when available, veto implausible matches (a numeric column is
never a title). Roles without a match stay ``None``.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from event_import.domain.geocoding.coordinates import (
    LATITUDE_BOUNDS,
    LATITUDE_PATTERNS,
    LONGITUDE_BOUNDS,
    LONGITUDE_PATTERNS,
    parse_coordinate,
)
from event_import.domain.schemas.builder import SchemaBuilder
from event_import.utils.date import looks_like_date

logger = logging.getLogger(__name__)

SUPPORTED_LANGUAGES = ("eng", "deu", "fra", "spa", "ita", "nld", "por")


def _compile(patterns: Sequence[str]) -> List[re.Pattern]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


# Ordered most specific first; earlier matches score higher.
FIELD_PATTERNS: Dict[str, Dict[str, List[re.Pattern]]] = {
    "title": {
        "eng": _compile([r"^title$", r"^name$", r"^event.*name$", r"^event.*title$", r"^label$", r"^event$"]),
        "deu": _compile([r"^titel$", r"^name$", r"^bezeichnung$", r"^veranstaltung.*name$", r"^veranstaltung.*titel$", r"^veranstaltung$"]),
        "fra": _compile([r"^titre$", r"^nom$", r"^événement.*nom$", r"^événement.*titre$", r"^intitulé$", r"^événement$"]),
        "spa": _compile([r"^título$", r"^nombre$", r"^evento.*nombre$", r"^evento.*título$", r"^denominación$", r"^evento$"]),
        "ita": _compile([r"^titolo$", r"^nome$", r"^evento.*nome$", r"^evento.*titolo$", r"^denominazione$", r"^evento$"]),
        "nld": _compile([r"^titel$", r"^naam$", r"^evenement.*naam$", r"^evenement.*titel$", r"^benaming$", r"^evenement$"]),
        "por": _compile([r"^título$", r"^nome$", r"^evento.*nome$", r"^evento.*título$", r"^denominação$", r"^evento$"]),
    },
    "description": {
        "eng": _compile([r"^description$", r"^details$", r"^summary$", r"^notes$", r"^text$", r"^content$", r"^event.*description$"]),
        "deu": _compile([r"^beschreibung$", r"^details$", r"^zusammenfassung$", r"^notizen$", r"^text$", r"^inhalt$", r"^veranstaltung.*beschreibung$"]),
        "fra": _compile([r"^description$", r"^détails$", r"^résumé$", r"^notes$", r"^texte$", r"^contenu$", r"^événement.*description$"]),
        "spa": _compile([r"^descripción$", r"^detalles$", r"^resumen$", r"^notas$", r"^texto$", r"^contenido$", r"^evento.*descripción$"]),
        "ita": _compile([r"^descrizione$", r"^dettagli$", r"^sommario$", r"^note$", r"^testo$", r"^contenuto$", r"^evento.*descrizione$"]),
        "nld": _compile([r"^beschrijving$", r"^details$", r"^samenvatting$", r"^notities$", r"^tekst$", r"^inhoud$", r"^evenement.*beschrijving$"]),
        "por": _compile([r"^descrição$", r"^detalhes$", r"^resumo$", r"^notas$", r"^texto$", r"^conteúdo$", r"^evento.*descrição$"]),
    },
    "timestamp": {
        "eng": _compile([r"^date$", r"^timestamp$", r"^datetime$", r"^date.*time$", r"^created.*at$", r"^event.*date$", r"^event.*time$", r"^start.*date$", r"^time$", r"^when$"]),
        "deu": _compile([r"^datum$", r"^zeitstempel$", r"^erstellt.*am$", r"^veranstaltung.*datum$", r"^veranstaltung.*zeit$", r"^zeit$", r"^wann$"]),
        "fra": _compile([r"^date$", r"^horodatage$", r"^créé.*le$", r"^événement.*date$", r"^événement.*heure$", r"^heure$", r"^quand$"]),
        "spa": _compile([r"^fecha$", r"^timestamp$", r"^creado.*el$", r"^evento.*fecha$", r"^evento.*hora$", r"^hora$", r"^cuándo$"]),
        "ita": _compile([r"^data$", r"^timestamp$", r"^creato.*il$", r"^evento.*data$", r"^evento.*ora$", r"^ora$", r"^quando$"]),
        "nld": _compile([r"^datum$", r"^tijdstempel$", r"^gemaakt.*op$", r"^evenement.*datum$", r"^evenement.*tijd$", r"^tijd$", r"^wanneer$"]),
        "por": _compile([r"^data$", r"^timestamp$", r"^criado.*em$", r"^evento.*data$", r"^evento.*hora$", r"^hora$", r"^quando$"]),
    },
    "location_name": {
        "eng": _compile([r"^venue$", r"^venue.*name$", r"^place$", r"^place.*name$", r"^location.*name$", r"^site$", r"^spot$", r"^where$"]),
        "deu": _compile([r"^veranstaltungsort$", r"^spielstätte$", r"^lokalität$", r"^wo$"]),
        "fra": _compile([r"^endroit$", r"^salle$", r"^site$", r"^où$"]),
        "spa": _compile([r"^sitio$", r"^sede$", r"^recinto$", r"^donde$", r"^dónde$"]),
        "ita": _compile([r"^posto$", r"^locale$", r"^sede$", r"^sito$", r"^dove$"]),
        "nld": _compile([r"^plek$", r"^zaal$", r"^site$", r"^waar$"]),
        "por": _compile([r"^recinto$", r"^sede$", r"^sítio$", r"^onde$"]),
    },
    "location": {
        "eng": _compile([r"^address$", r"^addr$", r"^location$", r"^full.*address$", r"^event.*location$", r"^event.*address$", r"^postal.*address$", r"^street$", r"^city$", r"^town$", r"^region$", r"^area$"]),
        "deu": _compile([r"^adresse$", r"^ort$", r"^standort$", r"^vollständige.*adresse$", r"^veranstaltung.*adresse$", r"^postadresse$", r"^straße$", r"^strasse$", r"^stadt$", r"^region$", r"^platz$"]),
        "fra": _compile([r"^adresse$", r"^lieu$", r"^emplacement$", r"^adresse.*complète$", r"^événement.*adresse$", r"^adresse.*postale$", r"^rue$", r"^ville$", r"^région$"]),
        "spa": _compile([r"^dirección$", r"^lugar$", r"^ubicación$", r"^dirección.*completa$", r"^evento.*dirección$", r"^dirección.*postal$", r"^calle$", r"^ciudad$", r"^región$"]),
        "ita": _compile([r"^indirizzo$", r"^luogo$", r"^posizione$", r"^indirizzo.*completo$", r"^evento.*indirizzo$", r"^indirizzo.*postale$", r"^via$", r"^città$", r"^regione$"]),
        "nld": _compile([r"^adres$", r"^locatie$", r"^plaats$", r"^volledig.*adres$", r"^evenement.*adres$", r"^postadres$", r"^straat$", r"^stad$", r"^regio$"]),
        "por": _compile([r"^endereço$", r"^local$", r"^localização$", r"^lugar$", r"^endereço.*completo$", r"^evento.*endereço$", r"^endereço.*postal$", r"^rua$", r"^cidade$", r"^região$"]),
    },
}


class FieldMappings(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    title_path: Optional[str] = None
    description_path: Optional[str] = None
    timestamp_path: Optional[str] = None
    location_name_path: Optional[str] = None
    location_path: Optional[str] = None
    latitude_path: Optional[str] = None
    longitude_path: Optional[str] = None
    language: str = "eng"

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)

    @classmethod
    def from_json(cls, payload: Optional[Dict[str, Any]]) -> "FieldMappings":
        return cls.model_validate(payload or {})


def normalize_language(language: Optional[str]) -> str:
    code = (language or "eng").strip().lower()
    return code if code in SUPPORTED_LANGUAGES else "eng"


def _string_ratio(stats: Dict[str, Any]) -> float:
    occurrences = stats.get("occurrences") or 0
    if not occurrences:
        return 0.0
    distribution = stats.get("typeDistribution") or {}
    strings = distribution.get("string", 0) + distribution.get("boolean-string", 0) + distribution.get("date", 0)
    non_null = occurrences - (stats.get("nullCount") or 0)
    return strings / non_null if non_null else 0.0


def _average_length(stats: Dict[str, Any]) -> Optional[float]:
    samples = [v for v in stats.get("uniqueSamples") or [] if isinstance(v, str)]
    if not samples:
        return None
    return sum(len(v) for v in samples) / len(samples)


def _score_text(stats: Dict[str, Any], min_ratio: float, bands: Sequence[Tuple[float, float, float]], fallback: float) -> float:
    if _string_ratio(stats) < min_ratio:
        return 0.0
    if not stats.get("uniqueSamples"):
        return 0.5
    avg = _average_length(stats)
    if avg is None:
        return 0.0
    for low, high, score in bands:
        if low <= avg <= high:
            return score
    return fallback


def _score_timestamp(stats: Dict[str, Any]) -> float:
    occurrences = stats.get("occurrences") or 0
    if not occurrences:
        return 0.0
    formats = stats.get("formats") or {}
    distribution = stats.get("typeDistribution") or {}
    iso_count = formats.get("date", 0) + formats.get("dateTime", 0) + distribution.get("date", 0)
    if iso_count:
        return min(1.0, 0.7 + (iso_count / occurrences) * 0.3)

    samples = [v for v in stats.get("uniqueSamples") or [] if isinstance(v, str)][:10]
    if samples and _string_ratio(stats) > 0.5:
        ratio = sum(1 for v in samples if looks_like_date(v)) / len(samples)
        if ratio >= 0.7:
            return 0.9
        if ratio >= 0.5:
            return 0.7
        if ratio >= 0.3:
            return 0.5

    numeric = stats.get("numericStats")
    if numeric:
        # Unix timestamps in seconds or milliseconds
        if 1_000_000_000 < numeric["min"] and numeric["max"] < 9_999_999_999:
            return 0.8
        if 1_000_000_000_000 < numeric["min"] and numeric["max"] < 9_999_999_999_999:
            return 0.8
    return 0.0


def _validation_score(stats: Optional[Dict[str, Any]], role: str) -> float:
    if stats is None:
        return 0.5
    if role == "title":
        return _score_text(stats, 0.8, [(10, 100, 1.0), (5, 200, 0.8)], 0.6 if 3 <= (_average_length(stats) or 0) <= 500 else 0.3)
    if role == "description":
        return _score_text(stats, 0.7, [(20, 500, 1.0), (10, 1000, 0.8), (1000, float("inf"), 0.7)], 0.6 if (_average_length(stats) or 0) >= 5 else 0.2)
    if role in ("location", "location_name"):
        return _score_text(stats, 0.7, [(3, 100, 1.0), (2, 500, 0.8), (500, float("inf"), 0.6)], 0.2)
    if role == "timestamp":
        return _score_timestamp(stats)
    return 0.0


def _find_best_match(field_stats: Dict[str, Optional[Dict[str, Any]]], patterns: List[re.Pattern], role: str) -> Optional[str]:
    best_path, best_score = None, 0.0
    for path, stats in field_stats.items():
        name = path.split(".")[-1].strip()
        index = next((i for i, pattern in enumerate(patterns) if pattern.search(name)), -1)
        if index == -1:
            continue
        validation = _validation_score(stats, role)
        if validation == 0:
            continue
        score = (1 - index / len(patterns)) * 0.6 + validation * 0.4
        if score > best_score:
            best_path, best_score = path, score
    return best_path


def _detect_role(field_stats, role: str, language: str, exclude: Iterable[str] = ()) -> Optional[str]:
    candidates = {path: stats for path, stats in field_stats.items() if path not in set(exclude)}
    match = _find_best_match(candidates, FIELD_PATTERNS[role][language], role)
    if match is None and language != "eng":
        match = _find_best_match(candidates, FIELD_PATTERNS[role]["eng"], role)
    return match


def _coordinate_ok(stats: Optional[Dict[str, Any]], bounds: Tuple[float, float]) -> bool:
    if stats is None:
        return True
    numeric = stats.get("numericStats")
    if numeric:
        return bounds[0] <= numeric["min"] and numeric["max"] <= bounds[1]
    samples = [v for v in stats.get("uniqueSamples") or [] if isinstance(v, str) and v.strip()][:10]
    parsed = [parse_coordinate(v) for v in samples]
    parsed = [v for v in parsed if v is not None]
    return bool(parsed) and sum(1 for v in parsed if bounds[0] <= v <= bounds[1]) / len(parsed) >= 0.7


def _detect_coordinate(field_stats, patterns: List[re.Pattern], bounds: Tuple[float, float]) -> Optional[str]:
    for pattern in patterns:
        for path, stats in field_stats.items():
            if pattern.search(path.split(".")[-1].strip()) and _coordinate_ok(stats, bounds):
                return path
    return None


def detect_field_mappings(field_stats: Dict[str, Optional[Dict[str, Any]]], language: Optional[str] = None) -> FieldMappings:
    """
    Detect semantic roles from field statistics keyed by field path. A value
    of ``None`` means "name only"; the role is then decided by the
    vocabulary alone.
    """
    language = normalize_language(language)
    latitude_path = _detect_coordinate(field_stats, LATITUDE_PATTERNS, LATITUDE_BOUNDS)
    longitude_path = _detect_coordinate(field_stats, LONGITUDE_PATTERNS, LONGITUDE_BOUNDS)

    title_path = _detect_role(field_stats, "title", language)
    description_path = _detect_role(field_stats, "description", language, exclude=[title_path])
    timestamp_path = _detect_role(field_stats, "timestamp", language)
    location_name_path = _detect_role(field_stats, "location_name", language, exclude=[title_path])
    location_path = _detect_role(field_stats, "location", language, exclude=[title_path, location_name_path])
    if location_path is None:
        location_path = location_name_path

    mappings = FieldMappings(
        title_path=title_path,
        description_path=description_path,
        timestamp_path=timestamp_path,
        location_name_path=location_name_path,
        location_path=location_path,
        latitude_path=latitude_path,
        longitude_path=longitude_path,
        language=language,
    )
    logger.debug("Detected field mappings (%s): %s", language, mappings.to_json())
    return mappings


def detect_field_mappings_from_names(field_names: Iterable[str], language: Optional[str] = None) -> FieldMappings:
    return detect_field_mappings({name: None for name in field_names}, language)


def detect_field_mappings_from_rows(rows: Sequence[Dict[str, Any]], language: Optional[str] = None) -> FieldMappings:
    """Build statistics for ``rows`` (already transformed) and detect roles."""
    builder = SchemaBuilder()
    builder.process_batch(rows)
    return detect_field_mappings(builder.field_stats, language)
