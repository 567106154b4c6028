"""Row normalizers for races, categories, participants and timing punches.

Rows reach the application from PostgreSQL, from request payloads and from
imported spreadsheets. Each entity has exactly one function here that turns
such a row into the canonical dict shape used everywhere else, so the
matching and ranking code never has to guess field names or relationship
cardinality.
"""

from __future__ import annotations

import math
from typing import Any, Dict, Optional

SEX_CODES = ("M", "F", "X")
SEX_FILTERS = ("M", "F", "X", "ALL")
RACE_STATUSES = ("draft", "open", "closed")

PUNCH_FINISH = "finish"


def _to_int(val: Any) -> Optional[int]:
    if val is None or val == "":
        return None
    if isinstance(val, bool):
        return int(val)
    try:
        return int(val)
    except (TypeError, ValueError):
        pass
    try:
        f = float(str(val).replace(",", "."))
    except (TypeError, ValueError):
        return None
    if not math.isfinite(f):
        return None
    return int(f)


def _to_float(val: Any) -> Optional[float]:
    if val is None or val == "":
        return None
    try:
        f = float(str(val).strip().replace(",", ".")) if isinstance(val, str) else float(val)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(f):
        return None
    return f


def _to_bool(val: Any, default: bool = False) -> bool:
    if val is None:
        return default
    if isinstance(val, str):
        return val.strip().lower() in ("1", "true", "t", "yes", "y", "on")
    return bool(val)


def _text(val: Any) -> Optional[str]:
    if val is None:
        return None
    s = str(val).strip()
    return s or None


def _iso_date(val: Any) -> Optional[str]:
    if val is None:
        return None
    try:
        return val.isoformat()[:10]
    except AttributeError:
        s = str(val).strip()
        return s[:10] or None


def _single(rel: Any) -> Optional[Dict[str, Any]]:
    """Collapse a joined relationship into one dict or None.

    Joined rows may come back as a nested object, a one-element list, an
    empty list or nothing at all.
    """
    if rel is None:
        return None
    if isinstance(rel, (list, tuple)):
        rel = rel[0] if rel else None
    if isinstance(rel, dict):
        return rel
    return None


def normalize_sex(val: Any) -> Optional[str]:
    s = _text(val)
    return s.upper() if s else None


def normalize_sex_filter(val: Any) -> str:
    s = normalize_sex(val)
    if s in (None, "ANY"):
        return "ALL"
    return s


def normalize_race(row: Dict[str, Any]) -> Dict[str, Any]:
    status = (_text(row.get("status")) or "draft").lower()
    return {
        "id": _to_int(row.get("id")),
        "name": _text(row.get("name")) or "",
        "date": _iso_date(row.get("date")),
        "location": _text(row.get("location")),
        "status": status,
    }


def normalize_category(row: Dict[str, Any]) -> Dict[str, Any]:
    sex_val = row.get("sex_filter")
    if sex_val is None:
        sex_val = row.get("sex")
    if sex_val is None:
        sex_val = row.get("sex_allowed")
    return {
        "id": _to_int(row.get("id")),
        "race_id": _to_int(row.get("race_id")),
        "name": _text(row.get("name")) or "",
        "distance_km": _to_float(row.get("distance_km")),
        "sex_filter": normalize_sex_filter(sex_val),
        "age_min": _to_int(row.get("age_min")),
        "age_max": _to_int(row.get("age_max")),
        "is_active": _to_bool(row.get("is_active"), default=True),
    }


def normalize_participant(row: Dict[str, Any]) -> Dict[str, Any]:
    age = row.get("age")
    if age is None:
        age = row.get("age_snapshot")
    category = _single(row.get("category"))
    category_name = row.get("category_name")
    if category_name is None and category is not None:
        category_name = category.get("name")
    bib = row.get("bib_number")
    return {
        "id": _to_int(row.get("id")),
        "race_id": _to_int(row.get("race_id")),
        "bib_number": _text(bib) if bib is not None else None,
        "first_name": _text(row.get("first_name")) or "",
        "last_name": _text(row.get("last_name")) or "",
        "dni": _text(row.get("dni")),
        "sex": normalize_sex(row.get("sex")),
        "birth_date": _iso_date(row.get("birth_date")),
        "age": _to_int(age),
        "distance_km": _to_float(row.get("distance_km")),
        "category_id": _to_int(row.get("category_id")),
        "category_name": _text(category_name),
        "status": _text(row.get("status")) or "registered",
        "chip_delivered": _to_bool(row.get("chip_delivered")),
        "kit_delivered": _to_bool(row.get("kit_delivered")),
    }


def normalize_punch(row: Dict[str, Any]) -> Dict[str, Any]:
    participant = _single(row.get("participant"))
    if participant is not None:
        participant = normalize_participant(
            {"id": row.get("participant_id"), **participant}
        )
    ts = row.get("timestamp_utc")
    try:
        ts = ts.isoformat()
    except AttributeError:
        pass
    return {
        "id": _to_int(row.get("id")),
        "race_id": _to_int(row.get("race_id")),
        "participant_id": _to_int(row.get("participant_id")),
        "elapsed_ms": _to_int(row.get("elapsed_ms")),
        "type": (_text(row.get("type")) or "").lower(),
        "source": _text(row.get("source")),
        "notes": _text(row.get("notes")),
        "timestamp_utc": ts,
        "participant": participant,
    }


def runner_from_participant(participant: Dict[str, Any]) -> Dict[str, Any]:
    """Return the matcher inputs of a normalized participant."""
    return {
        "sex": participant.get("sex"),
        "age": participant.get("age"),
        "distance_km": participant.get("distance_km"),
    }


__all__ = [
    "PUNCH_FINISH",
    "RACE_STATUSES",
    "SEX_CODES",
    "SEX_FILTERS",
    "normalize_category",
    "normalize_participant",
    "normalize_punch",
    "normalize_race",
    "normalize_sex",
    "normalize_sex_filter",
    "runner_from_participant",
]
