"""Category authoring: name templates, validation and bulk generation."""

from __future__ import annotations

import math
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .models import SEX_FILTERS

DEFAULT_NAME_TEMPLATE = "[[distancia]] [[sexo]] DE [[edad_min]] A [[edad_max]]"

LABEL_INITIAL = "inicial"
LABEL_FULL = "completo"

_SEX_NAMES = {
    "M": "MASCULINO",
    "F": "FEMENINO",
    "X": "NO BINARIO",
    "ALL": "GENERAL",
}

_AGE_GROUP_RE = re.compile(r"^(\d+)\s*-\s*(\d+)$")


def parse_number(value: Any) -> Optional[float]:
    """Parse ``value`` as a number, accepting a comma decimal separator."""
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value) if math.isfinite(value) else None
    s = str(value).strip()
    if not s:
        return None
    try:
        n = float(s.replace(",", "."))
    except ValueError:
        return None
    return n if math.isfinite(n) else None


def _clean(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def sex_label(code: str, mode: str = LABEL_INITIAL) -> str:
    if mode != LABEL_FULL:
        return code
    return _SEX_NAMES.get(code, code)


def build_category_name(
    template: str,
    distance_km: Any,
    sex: str,
    age_min: Any,
    age_max: Any,
    mode: str = LABEL_INITIAL,
) -> str:
    return (
        (template or "")
        .replace("[[distancia]]", _clean(distance_km))
        .replace("[[sexo]]", sex_label(sex, mode))
        .replace("[[edad_min]]", _clean(age_min))
        .replace("[[edad_max]]", _clean(age_max))
        .strip()
    )


def category_key(distance_km: Any, sex: Any, age_min: Any, age_max: Any) -> Tuple[Any, ...]:
    """Logical identity of a category within a race."""
    dist = float(distance_km) if distance_km is not None else None
    return (dist, sex or "", age_min, age_max)


def validate_category(
    distance_km: Any,
    sex: Any,
    age_min: Any,
    age_max: Any,
) -> Tuple[float, str, int, int]:
    """Validate single-category input and return typed values.

    Raises:
        ValueError: with an operator-facing message.
    """
    dist = parse_number(distance_km)
    if dist is None or dist <= 0:
        raise ValueError("Invalid distance.")
    lo = parse_number(age_min)
    hi = parse_number(age_max)
    if lo is None or hi is None or lo < 0 or hi < 0 or hi < lo:
        raise ValueError("Invalid age range.")
    code = (str(sex).strip().upper() if sex is not None else "")
    if code not in SEX_FILTERS:
        raise ValueError("Select a sex: M, F, X or ALL.")
    return dist, code, int(lo), int(hi)


def new_category_row(
    race_id: int,
    distance_km: Any,
    sex: Any,
    age_min: Any,
    age_max: Any,
    template: str = DEFAULT_NAME_TEMPLATE,
    mode: str = LABEL_INITIAL,
    is_active: bool = True,
) -> Dict[str, Any]:
    dist, code, lo, hi = validate_category(distance_km, sex, age_min, age_max)
    name = build_category_name(template, dist, code, lo, hi, mode)
    if not name:
        raise ValueError("The resulting name is empty. Check the template.")
    return {
        "race_id": race_id,
        "name": name,
        "distance_km": dist,
        "sex_filter": code,
        "age_min": lo,
        "age_max": hi,
        "is_active": bool(is_active),
    }


def parse_distances(text: str) -> List[float]:
    """Parse ``"5,10,21"`` into distances; every entry must be positive."""
    out: List[float] = []
    for token in (text or "").split(","):
        token = token.strip()
        if not token:
            continue
        dist = parse_number(token)
        if dist is None or dist <= 0:
            raise ValueError(f"Invalid distance: {token}")
        out.append(dist)
    if not out:
        raise ValueError("Enter at least one distance.")
    return out


def parse_age_groups(text: str) -> List[Tuple[int, int]]:
    """Parse one ``min-max`` age group per line."""
    groups: List[Tuple[int, int]] = []
    for line in (text or "").splitlines():
        line = line.strip()
        if not line:
            continue
        m = _AGE_GROUP_RE.match(line)
        if not m:
            raise ValueError(f'Invalid age group: "{line}". Use the format 18-29')
        lo, hi = int(m.group(1)), int(m.group(2))
        if hi < lo:
            raise ValueError(f"Invalid age group: {line}")
        groups.append((lo, hi))
    if not groups:
        raise ValueError("Enter at least one age group.")
    return groups


def generate_categories(
    race_id: int,
    distances: Sequence[float],
    age_groups: Sequence[Tuple[int, int]],
    sexes: Sequence[str],
    existing: Iterable[Dict[str, Any]] = (),
    template: str = DEFAULT_NAME_TEMPLATE,
    mode: str = LABEL_INITIAL,
    is_active: bool = True,
) -> List[Dict[str, Any]]:
    """Build every distance × age group × sex category not yet defined.

    Duplicates are detected on (distance, sex, age_min, age_max) against the
    race's existing categories and within the batch itself.
    """
    chosen = [str(s).strip().upper() for s in sexes if str(s).strip()]
    if not chosen:
        raise ValueError("Select at least one sex.")
    for code in chosen:
        if code not in SEX_FILTERS:
            raise ValueError(f"Unknown sex: {code}")

    seen = set()
    for cat in existing:
        if None in (cat.get("distance_km"), cat.get("age_min"), cat.get("age_max")):
            continue
        seen.add(category_key(cat["distance_km"], cat.get("sex_filter"), cat["age_min"], cat["age_max"]))

    rows: List[Dict[str, Any]] = []
    for dist in distances:
        for lo, hi in age_groups:
            for code in chosen:
                row = new_category_row(race_id, dist, code, lo, hi, template, mode, is_active)
                key = category_key(row["distance_km"], code, lo, hi)
                if key in seen:
                    continue
                seen.add(key)
                rows.append(row)
    if not rows:
        raise ValueError("Every combination you tried to create already exists in this race.")
    return rows


__all__ = [
    "DEFAULT_NAME_TEMPLATE",
    "build_category_name",
    "category_key",
    "generate_categories",
    "new_category_row",
    "parse_age_groups",
    "parse_distances",
    "parse_number",
    "sex_label",
    "validate_category",
]
