"""Patient Data Adapter - Normalizes raw test-patient JSON for deterministic evaluation.

Converts raw patient data (demographics plus diagnoses / encounters /
procedures / observations / medications / immunizations lists, in camelCase
or snake_case) into a PatientRecord: a flat, unordered bag of coded facts.
"""

from datetime import date
from typing import Any, Dict, Iterable, Optional

from dateutil import parser as date_parser

from measure_engine.config.logging_config import get_logger
from measure_engine.models.enums import FactType
from measure_engine.models.validation import PatientFact, PatientRecord

logger = get_logger(__name__)

# Raw list key -> (fact type, keys to try for the fact date)
_FACT_SOURCES = [
    ("diagnoses", FactType.DIAGNOSIS, ("onsetDate", "onset_date", "date")),
    ("encounters", FactType.ENCOUNTER, ("date", "startDate", "start_date")),
    ("procedures", FactType.PROCEDURE, ("date", "performedDate", "performed_date")),
    ("observations", FactType.OBSERVATION, ("date", "effectiveDate", "effective_date")),
    ("medications", FactType.MEDICATION, ("startDate", "start_date", "date")),
    ("immunizations", FactType.IMMUNIZATION, ("date", "administeredDate", "administered_date")),
    ("assessments", FactType.ASSESSMENT, ("date",)),
]

# Records in these states never happened clinically.
_SKIPPED_STATUSES = {"not-done", "entered-in-error", "cancelled"}


def parse_date(value: Any) -> Optional[date]:
    """ISO date (or datetime) string to a date; None when missing or unparseable."""
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    try:
        return date_parser.isoparse(str(value)).date()
    except (ValueError, TypeError, OverflowError):
        logger.debug("Unparseable date in patient data", value=value)
        return None


def _first(raw: Dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        if raw.get(key) not in (None, ""):
            return raw[key]
    return None


def _safe_float(value) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (ValueError, TypeError):
        return None


def normalize_patient(raw: Dict[str, Any]) -> PatientRecord:
    """
    Normalize raw patient JSON into a PatientRecord.

    Entries without a code, or whose status says they did not happen, are
    dropped. Dates that cannot be parsed are kept as None.
    """
    demographics = raw.get("demographics") or {}
    birth_date = parse_date(_first(demographics, ("birthDate", "birth_date", "date_of_birth")))
    gender = (demographics.get("gender") or "").lower() or None

    record = PatientRecord(
        id=str(raw.get("id") or raw.get("patient_id") or ""),
        name=raw.get("name") or "",
        birth_date=birth_date,
        gender=gender,
    )

    for list_key, fact_type, date_keys in _FACT_SOURCES:
        for entry in raw.get(list_key) or []:
            code = entry.get("code")
            if not code:
                continue
            status = entry.get("status")
            if status and status.lower() in _SKIPPED_STATUSES:
                logger.debug("Skipping fact with non-occurrence status", code=code, status=status)
                continue
            record.facts.append(PatientFact(
                fact_type=fact_type,
                code=str(code),
                system=entry.get("system") or "",
                display=entry.get("display") or "",
                date=parse_date(_first(entry, date_keys)),
                end_date=parse_date(_first(entry, ("endDate", "end_date", "abatementDate", "abatement_date"))),
                value=_safe_float(entry.get("value")),
                unit=entry.get("unit"),
                status=status,
            ))

    for name, value in (raw.get("indexEvents") or raw.get("index_events") or {}).items():
        event_date = parse_date(value)
        if event_date is not None:
            record.index_events[name] = event_date

    return record
