"""Participant import from CSV and XLSX registration sheets."""

from __future__ import annotations

import csv
import io
import re
from datetime import date, datetime, timedelta
from typing import IO, Any, Dict, Iterable, List, Optional, Tuple

from openpyxl import load_workbook

from .categories import parse_number
from .matching import assign_category
from .models import normalize_sex

MAX_AGE = 120

# Excel stores dates as days since 1899-12-30.
EXCEL_EPOCH = date(1899, 12, 30)

REQUIRED_FIELDS = ("first_name", "last_name", "sex", "distance_km")

# Sheet line of a row read by read_table (the header is line 1).
ROW_KEY = "__row__"

HEADER_ALIASES: Dict[str, Tuple[str, ...]] = {
    "first_name": ("first_name", "nombre", "name", "nombres"),
    "last_name": ("last_name", "apellido", "apellidos", "surname"),
    "dni": ("dni", "documento", "doc"),
    "sex": ("sex", "sexo", "gender", "genero", "género"),
    "birth_date": ("birth_date", "fecha_nacimiento", "nacimiento", "dob"),
    "age": ("age", "edad"),
    "distance_km": ("distance_km", "distancia", "km", "distance"),
    "bib_number": ("bib_number", "dorsal", "pechera", "numero", "nro"),
}

_ISO_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DMY_RE = re.compile(r"^(\d{1,2})[/.\-](\d{1,2})[/.\-](\d{4})$")


def _cell_text(val: Any) -> str:
    if val is None:
        return ""
    if isinstance(val, float) and val.is_integer():
        val = int(val)
    return str(val).strip()


def read_table(filename: str, stream: IO[bytes]) -> Tuple[List[str], List[Dict[str, Any]]]:
    """Read the first sheet of an XLSX file or a CSV file.

    The first row supplies the headers. Each row dict carries its sheet line
    under ``ROW_KEY``. Rows whose cells are all blank are dropped.

    Raises:
        ValueError: when the file has no data rows.
    """
    name = (filename or "").lower()
    if name.endswith((".xlsx", ".xlsm")):
        headers, rows = _read_xlsx(stream)
    else:
        headers, rows = _read_csv(stream)
    rows = [r for r in rows if any(_cell_text(v) for k, v in r.items() if k != ROW_KEY)]
    if not headers or not rows:
        raise ValueError("The file is empty (it needs a header row and data rows).")
    return headers, rows


def _read_csv(stream: IO[bytes]) -> Tuple[List[str], List[Dict[str, Any]]]:
    text = stream.read().decode("utf-8-sig", errors="replace")
    try:
        dialect = csv.Sniffer().sniff(text[:4096], delimiters=",;\t")
    except csv.Error:
        dialect = csv.excel
    reader = csv.DictReader(io.StringIO(text), dialect=dialect)
    headers = [h.strip() for h in (reader.fieldnames or []) if h is not None]
    rows: List[Dict[str, Any]] = []
    for raw in reader:
        row = {(k or "").strip(): v for k, v in raw.items() if k is not None}
        row[ROW_KEY] = reader.line_num
        rows.append(row)
    return headers, rows


def _read_xlsx(stream: IO[bytes]) -> Tuple[List[str], List[Dict[str, Any]]]:
    wb = load_workbook(io.BytesIO(stream.read()), read_only=True, data_only=True)
    try:
        ws = wb.worksheets[0]
        it = ws.iter_rows(values_only=True)
        try:
            header_row = next(it)
        except StopIteration:
            return [], []
        headers = [_cell_text(h) for h in header_row]
        rows: List[Dict[str, Any]] = []
        for line, values in enumerate(it, start=2):
            row = {ROW_KEY: line}
            for idx, h in enumerate(headers):
                if not h:
                    continue
                row[h] = values[idx] if idx < len(values) else None
            rows.append(row)
        return [h for h in headers if h], rows
    finally:
        wb.close()


def resolve_mapping(headers: Iterable[str], overrides: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Map participant fields to sheet headers.

    Explicit ``overrides`` (field -> header) win over the built-in aliases.

    Raises:
        ValueError: when a required column cannot be found.
    """
    by_lower = {h.strip().lower(): h for h in headers if h}
    mapping: Dict[str, str] = {}
    for field, aliases in HEADER_ALIASES.items():
        for alias in aliases:
            if alias in by_lower:
                mapping[field] = by_lower[alias]
                break
    for field, header in (overrides or {}).items():
        if field not in HEADER_ALIASES:
            continue
        if header:
            if header not in by_lower.values():
                raise ValueError(f"Unknown column: {header}")
            mapping[field] = header
        else:
            mapping.pop(field, None)
    missing = [f for f in REQUIRED_FIELDS if f not in mapping]
    if missing:
        raise ValueError(
            "Missing required columns: " + ", ".join(missing)
            + ". We need at least first name, last name, sex and distance."
        )
    return mapping


def normalize_birth_date(value: Any) -> Optional[str]:
    """Return ``value`` as an ISO date string, or None when unreadable."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if value <= 0:
            return None
        try:
            return (EXCEL_EPOCH + timedelta(days=int(value))).isoformat()
        except OverflowError:
            return None
    s = str(value).strip()
    if _ISO_RE.match(s):
        try:
            return date.fromisoformat(s).isoformat()
        except ValueError:
            return None
    m = _DMY_RE.match(s)
    if m:
        try:
            return date(int(m.group(3)), int(m.group(2)), int(m.group(1))).isoformat()
        except ValueError:
            return None
    return None


def age_on(birth_iso: Optional[str], race_date_iso: Optional[str]) -> Optional[int]:
    """Whole years between birth and race day; None outside 0..120."""
    if not birth_iso or not race_date_iso:
        return None
    try:
        born = date.fromisoformat(birth_iso[:10])
        ref = date.fromisoformat(race_date_iso[:10])
    except ValueError:
        return None
    age = ref.year - born.year
    if (ref.month, ref.day) < (born.month, born.day):
        age -= 1
    if age < 0 or age > MAX_AGE:
        return None
    return age


def normalize_dni(value: Any) -> Optional[str]:
    digits = re.sub(r"\D", "", _cell_text(value))
    return digits or None


def parse_age(value: Any) -> Optional[int]:
    """Parse an explicit age; raises ValueError outside 0..120."""
    text = _cell_text(value)
    if not text:
        return None
    n = parse_number(text)
    if n is None or n < 0 or n > MAX_AGE:
        raise ValueError("Invalid age.")
    return int(n)


def participant_fields(
    values: Dict[str, Any],
    race_date: Optional[str],
) -> Dict[str, Any]:
    """Validate one participant's raw values and derive age.

    ``values`` uses participant field names. Age comes from the birth date
    at race day when one is given, else from an explicit age.

    Raises:
        ValueError: with an operator-facing message.
    """
    first = _cell_text(values.get("first_name"))
    last = _cell_text(values.get("last_name"))
    if not first or not last:
        raise ValueError("First and last name are required.")
    sex = normalize_sex(values.get("sex"))
    if not sex:
        raise ValueError("Sex is required.")
    dist = parse_number(values.get("distance_km"))
    if dist is None or dist <= 0:
        raise ValueError("Invalid distance.")

    birth_iso = normalize_birth_date(values.get("birth_date"))
    age = age_on(birth_iso, race_date) if birth_iso and race_date else None
    if birth_iso is not None and race_date and age is None:
        raise ValueError("The birth date gives an age outside 0-120.")
    if age is None:
        age = parse_age(values.get("age"))
    if age is None:
        raise ValueError("A birth date or an age is required.")

    bib = parse_number(values.get("bib_number"))
    return {
        "first_name": first,
        "last_name": last,
        "dni": normalize_dni(values.get("dni")),
        "sex": sex,
        "birth_date": birth_iso,
        "age": age,
        "distance_km": dist,
        "bib_number": str(int(bib)) if bib is not None and bib > 0 else None,
    }


def build_participants(
    rows: Iterable[Dict[str, Any]],
    mapping: Dict[str, str],
    race: Dict[str, Any],
    categories: Iterable[Dict[str, Any]] = (),
    existing_dnis: Iterable[str] = (),
) -> Dict[str, Any]:
    """Turn sheet rows into participant rows ready for insertion.

    Invalid rows are skipped and reported with their sheet row number (the
    header is row 1). A DNI already registered in the race, or repeated in
    the file, rejects the row.
    """
    cats = list(categories)
    seen_dnis = {d for d in (normalize_dni(x) for x in existing_dnis) if d}
    accepted: List[Dict[str, Any]] = []
    errors: List[Dict[str, Any]] = []
    for pos, raw in enumerate(rows, start=2):
        idx = raw.get(ROW_KEY, pos)
        values = {field: raw.get(header) for field, header in mapping.items()}
        try:
            fields = participant_fields(values, race.get("date"))
        except ValueError as exc:
            errors.append({"row": idx, "error": str(exc)})
            continue
        dni = fields.get("dni")
        if dni:
            if dni in seen_dnis:
                errors.append({"row": idx, "error": f"Duplicate DNI {dni}."})
                continue
            seen_dnis.add(dni)
        cat = assign_category(
            {"sex": fields["sex"], "age": fields["age"], "distance_km": fields["distance_km"]},
            cats,
        )
        accepted.append({
            **fields,
            "race_id": race.get("id"),
            "category_id": cat.get("id") if cat else None,
            "status": "registered",
        })
    return {"rows": accepted, "errors": errors}


__all__ = [
    "HEADER_ALIASES",
    "ROW_KEY",
    "age_on",
    "build_participants",
    "normalize_birth_date",
    "normalize_dni",
    "participant_fields",
    "read_table",
    "resolve_mapping",
]
