import importlib
from datetime import datetime, timezone

from crono import datastore as ds


def test_categories_leave_proxy_in_canonical_shape(memory_store):
    memory_store["categories"].extend([
        {"id": 1, "race_id": 1, "name": "A", "distance_km": "10", "sex": "ANY", "age_min": None,
         "age_max": None, "is_active": True},
        {"id": 2, "race_id": 1, "name": "B", "distance_km": 5, "sex": "f", "age_min": 18,
         "age_max": 29, "is_active": False},
    ])
    cats = ds.list_categories(1)
    assert [c["sex_filter"] for c in cats] == ["ALL", "F"]
    assert cats[0]["distance_km"] == 10.0
    assert [c["id"] for c in ds.list_categories(1, active_only=True)] == [1]


def test_timelog_rows_nest_participant(monkeypatch):
    import crono.datastore_pg as pg
    pg = importlib.reload(pg)

    rows = [
        {"id": 1, "race_id": 1, "participant_id": 5, "elapsed_ms": 1000, "type": "finish",
         "source": "manual", "notes": None, "timestamp_utc": datetime(2025, 6, 1, tzinfo=timezone.utc),
         "p_id": 5, "bib_number": "12", "first_name": "Ana", "last_name": "Gómez", "sex": "F",
         "distance_km": 10.0, "category_id": 11, "category_name": "10 F"},
        {"id": 2, "race_id": 1, "participant_id": None, "elapsed_ms": 900, "type": "finish",
         "source": "manual", "notes": None, "timestamp_utc": None,
         "p_id": None, "bib_number": None, "first_name": None, "last_name": None, "sex": None,
         "distance_km": None, "category_id": None, "category_name": None},
    ]
    captured = {}

    def fake_fetch_all(sql, params=()):
        captured["sql"] = sql
        captured["params"] = params
        return rows

    monkeypatch.setattr(pg, "_fetch_all", fake_fetch_all)
    out = ds.list_finish_timelogs(1)
    assert "t.type = 'finish'" in captured["sql"]
    assert captured["params"] == (1,)
    assert out[0]["participant"]["category_name"] == "10 F"
    assert out[0]["participant"]["id"] == 5
    assert out[0]["timestamp_utc"] == "2025-06-01T00:00:00+00:00"
    assert out[1]["participant"] is None


def test_insert_participants_fills_column_defaults(monkeypatch):
    import crono.datastore_pg as pg
    pg = importlib.reload(pg)

    captured = {}

    class FakeCursor:
        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return False

    class FakeConn:
        def cursor(self, cursor_factory=None):
            return FakeCursor()

        def commit(self):
            captured["committed"] = True

    class FakeCtx:
        def __enter__(self):
            return FakeConn()

        def __exit__(self, exc_type, exc, tb):
            return False

    def fake_execute_values(cur, sql, values):
        captured["sql"] = sql
        captured["values"] = values

    monkeypatch.setattr(pg, "_get_conn", lambda: FakeCtx())
    monkeypatch.setattr(pg, "execute_values", fake_execute_values)

    n = pg.insert_participants([{"race_id": 1, "first_name": "A", "last_name": "B", "sex": "M"}])
    assert n == 1
    assert captured["committed"] is True
    cols = ("race_id",) + pg._PARTICIPANT_COLUMNS
    row = dict(zip(cols, captured["values"][0]))
    assert row["status"] == "registered"
    assert row["chip_delivered"] is False
    assert row["kit_delivered"] is False
    assert row["category_id"] is None
    assert pg.insert_participants([]) == 0


def test_insert_participant_returns_stored_row(monkeypatch):
    import crono.datastore_pg as pg
    pg = importlib.reload(pg)

    captured = {}

    def fake_insert_returning(sql, params):
        captured["sql"] = sql
        captured["params"] = list(params)
        return {"id": 77, "race_id": 1, "first_name": "A", "last_name": "B", "sex": "m",
                "status": "registered", "chip_delivered": False, "kit_delivered": False}

    monkeypatch.setattr(pg, "_insert_returning", fake_insert_returning)
    out = ds.insert_participant({"race_id": 1, "first_name": "A", "last_name": "B", "sex": "M"})
    assert "RETURNING id" in captured["sql"]
    cols = ("race_id",) + pg._PARTICIPANT_COLUMNS
    row = dict(zip(cols, captured["params"]))
    assert row["status"] == "registered"
    assert row["kit_delivered"] is False
    assert out["id"] == 77
    assert out["sex"] == "M"
