from typing import Any, Dict, List, Optional

# Datastore proxy over PostgreSQL.
# Every row leaving this module has been through its entity normalizer in
# crono.models, so callers always see one canonical shape.

from . import datastore_pg as _pg
from .models import normalize_category, normalize_participant, normalize_punch, normalize_race


def ensure_schema() -> None:
    _pg.ensure_schema()


def list_races() -> List[Dict[str, Any]]:
    return [normalize_race(r) for r in _pg.list_races() or []]


def get_race(race_id: int) -> Optional[Dict[str, Any]]:
    row = _pg.get_race(race_id)
    return normalize_race(row) if row else None


def insert_race(race: Dict[str, Any]) -> Dict[str, Any]:
    return normalize_race(_pg.insert_race(race))


def update_race(race_id: int, fields: Dict[str, Any]) -> int:
    return _pg.update_race(race_id, fields)


def delete_race(race_id: int) -> int:
    return _pg.delete_race(race_id)


def list_categories(race_id: int, active_only: bool = False) -> List[Dict[str, Any]]:
    rows = [normalize_category(r) for r in _pg.list_categories(race_id, active_only=active_only) or []]
    if active_only:
        rows = [r for r in rows if r["is_active"]]
    return rows


def insert_categories(rows: List[Dict[str, Any]]) -> int:
    return _pg.insert_categories(rows)


def update_category(race_id: int, category_id: int, fields: Dict[str, Any]) -> int:
    return _pg.update_category(race_id, category_id, fields)


def delete_category(race_id: int, category_id: int) -> int:
    return _pg.delete_category(race_id, category_id)


def delete_all_categories(race_id: int) -> int:
    return _pg.delete_all_categories(race_id)


def list_participants(race_id: int) -> List[Dict[str, Any]]:
    return [normalize_participant(r) for r in _pg.list_participants(race_id) or []]


def get_participant(race_id: int, participant_id: int) -> Optional[Dict[str, Any]]:
    row = _pg.get_participant(race_id, participant_id)
    return normalize_participant(row) if row else None


def find_participant_by_bib(race_id: int, bib: str) -> Optional[Dict[str, Any]]:
    row = _pg.find_participant_by_bib(race_id, bib)
    return normalize_participant(row) if row else None


def search_participants(race_id: int, query: str, limit: int = 100) -> List[Dict[str, Any]]:
    return [normalize_participant(r) for r in _pg.search_participants(race_id, query, limit=limit) or []]


def list_dnis(race_id: int) -> List[str]:
    return list(_pg.list_dnis(race_id) or [])


def insert_participants(rows: List[Dict[str, Any]]) -> int:
    return _pg.insert_participants(rows)


def insert_participant(row: Dict[str, Any]) -> Dict[str, Any]:
    return normalize_participant(_pg.insert_participant(row))


def update_participant(race_id: int, participant_id: int, fields: Dict[str, Any]) -> int:
    return _pg.update_participant(race_id, participant_id, fields)


def set_participant_category(race_id: int, participant_id: int, category_id: Optional[int]) -> None:
    _pg.set_participant_category(race_id, participant_id, category_id)


def insert_timelog(row: Dict[str, Any]) -> Dict[str, Any]:
    return normalize_punch(_pg.insert_timelog(row))


def list_finish_timelogs(race_id: int) -> List[Dict[str, Any]]:
    return [normalize_punch(r) for r in _pg.list_finish_timelogs(race_id) or []]


def list_recent_timelogs(race_id: int, limit: int = 10) -> List[Dict[str, Any]]:
    return [normalize_punch(r) for r in _pg.list_recent_timelogs(race_id, limit=limit) or []]


def server_info() -> Dict[str, Any]:
    return _pg.server_info()
