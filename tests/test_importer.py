import io
from datetime import date, datetime

import pytest
from openpyxl import Workbook

from crono.importer import (
    ROW_KEY,
    age_on,
    build_participants,
    normalize_birth_date,
    normalize_dni,
    participant_fields,
    read_table,
    resolve_mapping,
)

RACE = {"id": 1, "name": "Test", "date": "2025-06-01"}


def _xlsx_bytes(rows):
    wb = Workbook()
    ws = wb.active
    for row in rows:
        ws.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    buf.seek(0)
    return buf


def test_read_csv_with_semicolons_and_bom():
    raw = "\ufeffNombre;Apellido;Sexo;Distancia\nAna;Gómez;F;10\n;;;\n".encode("utf-8")
    headers, rows = read_table("inscriptos.csv", io.BytesIO(raw))
    assert headers == ["Nombre", "Apellido", "Sexo", "Distancia"]
    assert rows == [{"Nombre": "Ana", "Apellido": "Gómez", "Sexo": "F", "Distancia": "10", ROW_KEY: 2}]


def test_read_xlsx_first_sheet():
    buf = _xlsx_bytes([
        ["nombre", "apellido", "sexo", "km", "nacimiento"],
        ["Luis", "Pérez", "M", 21, datetime(1990, 3, 4)],
        [None, None, None, None, None],
    ])
    headers, rows = read_table("inscriptos.xlsx", buf)
    assert headers == ["nombre", "apellido", "sexo", "km", "nacimiento"]
    assert len(rows) == 1
    assert rows[0]["nombre"] == "Luis"
    assert rows[0]["km"] == 21


def test_read_empty_file_raises():
    with pytest.raises(ValueError, match="empty"):
        read_table("x.csv", io.BytesIO(b"nombre,apellido\n"))


def test_resolve_mapping_aliases_case_insensitive():
    mapping = resolve_mapping(["NOMBRE", "Apellido", "Sexo", "KM", "Edad", "DNI"])
    assert mapping["first_name"] == "NOMBRE"
    assert mapping["distance_km"] == "KM"
    assert mapping["age"] == "Edad"
    assert mapping["dni"] == "DNI"


def test_resolve_mapping_overrides_and_missing():
    mapping = resolve_mapping(["Runner", "Apellido", "Sexo", "Km"], {"first_name": "Runner"})
    assert mapping["first_name"] == "Runner"
    with pytest.raises(ValueError, match="Unknown column: Nope"):
        resolve_mapping(["Runner", "Apellido", "Sexo", "Km"], {"first_name": "Nope"})
    with pytest.raises(ValueError, match="Missing required columns: first_name"):
        resolve_mapping(["Apellido", "Sexo", "Km"])


@pytest.mark.parametrize(
    "value,expected",
    [
        (datetime(1990, 3, 4, 12, 0), "1990-03-04"),
        (date(1990, 3, 4), "1990-03-04"),
        (32936, "1990-03-04"),
        ("1990-03-04", "1990-03-04"),
        ("4/3/1990", "1990-03-04"),
        ("04.03.1990", "1990-03-04"),
        ("31/02/1990", None),
        ("yesterday", None),
        ("", None),
        (0, None),
    ],
)
def test_normalize_birth_date(value, expected):
    assert normalize_birth_date(value) == expected


def test_age_on_race_day():
    assert age_on("1990-06-01", "2025-06-01") == 35
    assert age_on("1990-06-02", "2025-06-01") == 34
    assert age_on("2026-01-01", "2025-06-01") is None
    assert age_on("1850-01-01", "2025-06-01") is None
    assert age_on(None, "2025-06-01") is None


def test_normalize_dni_keeps_digits():
    assert normalize_dni("30.111.222") == "30111222"
    assert normalize_dni(30111222.0) == "30111222"
    assert normalize_dni("--") is None


def test_participant_fields_prefers_birth_date():
    fields = participant_fields(
        {"first_name": " Ana ", "last_name": "Gómez", "sex": "f", "distance_km": "10,0",
         "birth_date": "1990-06-02", "age": "99", "bib_number": "12.0"},
        "2025-06-01",
    )
    assert fields["first_name"] == "Ana"
    assert fields["sex"] == "F"
    assert fields["distance_km"] == 10.0
    assert fields["age"] == 34
    assert fields["bib_number"] == "12"


def test_participant_fields_falls_back_to_age():
    fields = participant_fields(
        {"first_name": "Luis", "last_name": "Pérez", "sex": "M", "distance_km": 21, "age": "52"},
        "2025-06-01",
    )
    assert fields["age"] == 52
    assert fields["birth_date"] is None
    assert fields["bib_number"] is None


@pytest.mark.parametrize(
    "values,message",
    [
        ({"last_name": "P", "sex": "M", "distance_km": 10, "age": 30}, "First and last name"),
        ({"first_name": "A", "last_name": "P", "distance_km": 10, "age": 30}, "Sex is required"),
        ({"first_name": "A", "last_name": "P", "sex": "M", "distance_km": "-5", "age": 30}, "Invalid distance"),
        ({"first_name": "A", "last_name": "P", "sex": "M", "distance_km": 10}, "birth date or an age"),
        ({"first_name": "A", "last_name": "P", "sex": "M", "distance_km": 10, "age": "200"}, "Invalid age"),
        ({"first_name": "A", "last_name": "P", "sex": "M", "distance_km": 10, "birth_date": "2030-01-01"}, "outside 0-120"),
    ],
)
def test_participant_fields_errors(values, message):
    with pytest.raises(ValueError, match=message):
        participant_fields(values, "2025-06-01")


def test_build_participants_assigns_categories_and_reports_errors():
    mapping = {"first_name": "Nombre", "last_name": "Apellido", "sex": "Sexo",
               "distance_km": "Km", "age": "Edad", "dni": "DNI"}
    rows = [
        {"Nombre": "Ana", "Apellido": "Gómez", "Sexo": "F", "Km": "10", "Edad": "34", "DNI": "30.111.222"},
        {"Nombre": "", "Apellido": "X", "Sexo": "M", "Km": "10", "Edad": "30", "DNI": ""},
        {"Nombre": "Eva", "Apellido": "Sosa", "Sexo": "F", "Km": "10", "Edad": "33", "DNI": "30111222"},
        {"Nombre": "Juan", "Apellido": "Díaz", "Sexo": "M", "Km": "10", "Edad": "45", "DNI": "27000111"},
        {"Nombre": "Leo", "Apellido": "Paz", "Sexo": "M", "Km": "5", "Edad": "45", "DNI": "25000000"},
    ]
    categories = [
        {"id": 11, "distance_km": 10.0, "sex_filter": "F", "age_min": 30, "age_max": 39, "is_active": True},
        {"id": 12, "distance_km": 10.0, "sex_filter": "ALL", "age_min": 18, "age_max": 99, "is_active": True},
    ]
    result = build_participants(rows, mapping, RACE, categories, existing_dnis=["25000000"])
    accepted = result["rows"]
    assert [r["first_name"] for r in accepted] == ["Ana", "Juan"]
    assert accepted[0]["category_id"] == 11
    assert accepted[0]["race_id"] == 1
    assert accepted[0]["status"] == "registered"
    assert accepted[1]["category_id"] == 12
    assert result["errors"] == [
        {"row": 3, "error": "First and last name are required."},
        {"row": 4, "error": "Duplicate DNI 30111222."},
        {"row": 6, "error": "Duplicate DNI 25000000."},
    ]


def test_errors_keep_sheet_line_after_blank_row():
    raw = b"Nombre,Apellido,Sexo,Km,Edad\nA,B,M,10,35\n,,,,\nC,D,M,abc,35\n"
    headers, rows = read_table("x.csv", io.BytesIO(raw))
    assert [r[ROW_KEY] for r in rows] == [2, 4]
    result = build_participants(rows, resolve_mapping(headers), RACE)
    assert [r["first_name"] for r in result["rows"]] == ["A"]
    assert result["errors"] == [{"row": 4, "error": "Invalid distance."}]


def test_xlsx_errors_keep_sheet_line_after_blank_row():
    buf = _xlsx_bytes([
        ["nombre", "apellido", "sexo", "km", "edad"],
        ["A", "B", "M", 10, 35],
        [None, None, None, None, None],
        ["C", "D", "M", 10, None],
    ])
    headers, rows = read_table("x.xlsx", buf)
    result = build_participants(rows, resolve_mapping(headers), RACE)
    assert result["errors"] == [{"row": 4, "error": "A birth date or an age is required."}]


def test_birth_date_without_race_date_needs_an_age():
    values = {"first_name": "A", "last_name": "P", "sex": "M", "distance_km": 10, "birth_date": "1990-01-01"}
    with pytest.raises(ValueError, match="birth date or an age"):
        participant_fields(values, None)
    fields = participant_fields({**values, "age": "35"}, None)
    assert fields["age"] == 35
    assert fields["birth_date"] == "1990-01-01"
