import os
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Optional

import psycopg2
from psycopg2 import pool as pg_pool
from psycopg2.extras import RealDictCursor, execute_values


_POOL: Optional[pg_pool.AbstractConnectionPool] = None

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS races (
        id SERIAL PRIMARY KEY,
        name VARCHAR(200) NOT NULL,
        date DATE NOT NULL,
        location VARCHAR(200),
        status VARCHAR(20) NOT NULL DEFAULT 'draft',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS categories (
        id SERIAL PRIMARY KEY,
        race_id INTEGER NOT NULL REFERENCES races(id) ON DELETE CASCADE,
        name VARCHAR(200) NOT NULL,
        distance_km DOUBLE PRECISION,
        sex VARCHAR(3) NOT NULL DEFAULT 'ALL',
        age_min INTEGER,
        age_max INTEGER,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        CONSTRAINT categories_age_bounds CHECK (age_min IS NULL OR age_max IS NULL OR age_min <= age_max),
        CONSTRAINT categories_unique_rule UNIQUE (race_id, distance_km, sex, age_min, age_max)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS participants (
        id SERIAL PRIMARY KEY,
        race_id INTEGER NOT NULL REFERENCES races(id) ON DELETE CASCADE,
        bib_number VARCHAR(20),
        first_name VARCHAR(100) NOT NULL,
        last_name VARCHAR(100) NOT NULL,
        dni VARCHAR(20),
        sex VARCHAR(3),
        birth_date DATE,
        age INTEGER,
        distance_km DOUBLE PRECISION,
        category_id INTEGER REFERENCES categories(id) ON DELETE SET NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'registered',
        chip_delivered BOOLEAN NOT NULL DEFAULT FALSE,
        kit_delivered BOOLEAN NOT NULL DEFAULT FALSE,
        CONSTRAINT participants_unique_dni UNIQUE (race_id, dni)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS timelogs (
        id SERIAL PRIMARY KEY,
        race_id INTEGER NOT NULL REFERENCES races(id) ON DELETE CASCADE,
        participant_id INTEGER REFERENCES participants(id) ON DELETE SET NULL,
        elapsed_ms BIGINT,
        type VARCHAR(20) NOT NULL DEFAULT 'finish',
        source VARCHAR(20),
        notes TEXT,
        timestamp_utc TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_categories_race ON categories(race_id)",
    "CREATE INDEX IF NOT EXISTS idx_participants_race ON participants(race_id)",
    "CREATE INDEX IF NOT EXISTS idx_participants_race_bib ON participants(race_id, bib_number)",
    "CREATE INDEX IF NOT EXISTS idx_timelogs_race_type ON timelogs(race_id, type)",
    "CREATE INDEX IF NOT EXISTS idx_timelogs_race_ts ON timelogs(race_id, timestamp_utc)",
)

_PARTICIPANT_COLUMNS = (
    "bib_number",
    "first_name",
    "last_name",
    "dni",
    "sex",
    "birth_date",
    "age",
    "distance_km",
    "category_id",
    "status",
    "chip_delivered",
    "kit_delivered",
)


def _env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _connect_kwargs() -> Dict[str, Any]:
    """Connection kwargs shared by the pool and direct connections.

    ``connect_timeout`` defaults to 10 seconds (``DB_CONNECT_TIMEOUT``).
    TCP keepalives are on unless ``DB_KEEPALIVES`` is ``0``/``false``; the
    IDLE/INTERVAL/COUNT tunables are passed only when set.
    """
    kwargs: Dict[str, Any] = {"connect_timeout": _env_int("DB_CONNECT_TIMEOUT", 10)}
    ka_env = os.environ.get("DB_KEEPALIVES")
    kwargs["keepalives"] = 0 if ka_env is not None and ka_env.lower() in ("0", "false") else 1
    for env_name, key in (
        ("DB_KEEPALIVES_IDLE", "keepalives_idle"),
        ("DB_KEEPALIVES_INTERVAL", "keepalives_interval"),
        ("DB_KEEPALIVES_COUNT", "keepalives_count"),
    ):
        val = _env_int(env_name)
        if val is not None:
            kwargs[key] = val
    return kwargs


def init_pool(minconn: int = 1, maxconn: int = 10) -> None:
    """Create the global connection pool from DATABASE_URL.

    Calling it again once a pool exists does nothing.
    """
    global _POOL
    if _POOL is not None:
        return
    url = os.environ.get("DATABASE_URL")
    if not url:
        return
    _POOL = pg_pool.ThreadedConnectionPool(minconn, maxconn, dsn=url, **_connect_kwargs())


def _is_alive(conn) -> bool:
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT 1")
        if not getattr(conn, "autocommit", False):
            conn.rollback()
    except Exception:  # pylint: disable=broad-except
        return False
    return True


def _checkout():
    """Take a live connection from the pool, replacing one stale connection."""
    for _ in range(2):
        conn = _POOL.getconn()
        if _is_alive(conn):
            return conn
        try:
            _POOL.putconn(conn, close=True)
        except Exception:  # pylint: disable=broad-except
            pass
    raise psycopg2.OperationalError("Failed to acquire healthy DB connection after retry")


def _release(conn) -> None:
    # status 1/2/3 = active, in transaction, in error
    try:
        if getattr(conn, "closed", 0) == 0 and not getattr(conn, "autocommit", False):
            if getattr(conn, "status", 0) in (1, 2, 3):
                conn.rollback()
    except Exception:  # pylint: disable=broad-except
        pass
    finally:
        _POOL.putconn(conn)


@contextmanager
def _get_conn():
    """Yield a pooled connection when a pool exists, else a direct one.

    The connection is rolled back when the block raises.
    """
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set; configure a PostgreSQL connection string")
    pooled = _POOL is not None
    conn = _checkout() if pooled else psycopg2.connect(url, **_connect_kwargs())
    try:
        yield conn
    except Exception:
        try:
            conn.rollback()
        except Exception:  # pylint: disable=broad-except
            pass
        raise
    finally:
        if pooled:
            _release(conn)
        else:
            try:
                conn.close()
            except Exception:  # pylint: disable=broad-except
                pass


def ensure_schema() -> None:
    with _get_conn() as conn, conn.cursor() as cur:
        for stmt in SCHEMA_STATEMENTS:
            cur.execute(stmt)
        conn.commit()


def _fetch_all(sql: str, params: Iterable[Any] = ()) -> List[Dict[str, Any]]:
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(sql, tuple(params))
        return [dict(r) for r in cur.fetchall() or []]


def _fetch_one(sql: str, params: Iterable[Any] = ()) -> Optional[Dict[str, Any]]:
    rows = _fetch_all(sql, params)
    return rows[0] if rows else None


def _execute(sql: str, params: Iterable[Any] = ()) -> int:
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(sql, tuple(params))
        count = cur.rowcount
        conn.commit()
    return count


def _insert_returning(sql: str, params: Iterable[Any]) -> Dict[str, Any]:
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(sql, tuple(params))
        row = cur.fetchone()
        conn.commit()
    return dict(row) if row else {}


def _update_sql(table: str, allowed: Iterable[str], fields: Dict[str, Any]):
    sets: List[str] = []
    params: List[Any] = []
    for col in allowed:
        if col in fields:
            sets.append(f"{col} = %s")
            params.append(fields[col])
    if not sets:
        return None, params
    return f"UPDATE {table} SET {', '.join(sets)}", params


# Races

def list_races() -> List[Dict[str, Any]]:
    return _fetch_all(
        "SELECT id, name, date, location, status FROM races ORDER BY date DESC, id DESC"
    )


def get_race(race_id: int) -> Optional[Dict[str, Any]]:
    return _fetch_one(
        "SELECT id, name, date, location, status FROM races WHERE id = %s", (race_id,)
    )


def insert_race(race: Dict[str, Any]) -> Dict[str, Any]:
    return _insert_returning(
        """
        INSERT INTO races (name, date, location, status)
        VALUES (%s, %s, %s, %s)
        RETURNING id, name, date, location, status
        """,
        (race.get("name"), race.get("date"), race.get("location"), race.get("status") or "draft"),
    )


def update_race(race_id: int, fields: Dict[str, Any]) -> int:
    sql, params = _update_sql("races", ("name", "date", "location", "status"), fields)
    if sql is None:
        return 0
    return _execute(sql + " WHERE id = %s", params + [race_id])


def delete_race(race_id: int) -> int:
    return _execute("DELETE FROM races WHERE id = %s", (race_id,))


# Categories

def list_categories(race_id: int, active_only: bool = False) -> List[Dict[str, Any]]:
    # ORDER BY id makes the matcher's equal-span tie-break reproducible
    sql = (
        "SELECT id, race_id, name, distance_km, sex, age_min, age_max, is_active "
        "FROM categories WHERE race_id = %s"
    )
    if active_only:
        sql += " AND is_active"
    return _fetch_all(sql + " ORDER BY id", (race_id,))


def insert_categories(rows: List[Dict[str, Any]]) -> int:
    if not rows:
        return 0
    values = [
        (
            r.get("race_id"),
            r.get("name"),
            r.get("distance_km"),
            r.get("sex_filter") or "ALL",
            r.get("age_min"),
            r.get("age_max"),
            bool(r.get("is_active", True)),
        )
        for r in rows
    ]
    with _get_conn() as conn, conn.cursor() as cur:
        execute_values(
            cur,
            """
            INSERT INTO categories (race_id, name, distance_km, sex, age_min, age_max, is_active)
            VALUES %s
            """,
            values,
        )
        conn.commit()
    return len(values)


def update_category(race_id: int, category_id: int, fields: Dict[str, Any]) -> int:
    fields = dict(fields)
    if "sex_filter" in fields:
        fields["sex"] = fields.pop("sex_filter")
    sql, params = _update_sql(
        "categories", ("name", "distance_km", "sex", "age_min", "age_max", "is_active"), fields
    )
    if sql is None:
        return 0
    return _execute(sql + " WHERE id = %s AND race_id = %s", params + [category_id, race_id])


def delete_category(race_id: int, category_id: int) -> int:
    return _execute("DELETE FROM categories WHERE id = %s AND race_id = %s", (category_id, race_id))


def delete_all_categories(race_id: int) -> int:
    return _execute("DELETE FROM categories WHERE race_id = %s", (race_id,))


# Participants

_PARTICIPANT_SELECT = """
    SELECT p.id, p.race_id, p.bib_number, p.first_name, p.last_name, p.dni, p.sex,
           p.birth_date, p.age, p.distance_km, p.category_id, c.name AS category_name,
           p.status, p.chip_delivered, p.kit_delivered
    FROM participants p
    LEFT JOIN categories c ON c.id = p.category_id
"""


def list_participants(race_id: int) -> List[Dict[str, Any]]:
    return _fetch_all(
        _PARTICIPANT_SELECT + " WHERE p.race_id = %s ORDER BY p.last_name, p.first_name, p.id",
        (race_id,),
    )


def get_participant(race_id: int, participant_id: int) -> Optional[Dict[str, Any]]:
    return _fetch_one(
        _PARTICIPANT_SELECT + " WHERE p.race_id = %s AND p.id = %s", (race_id, participant_id)
    )


def find_participant_by_bib(race_id: int, bib: str) -> Optional[Dict[str, Any]]:
    return _fetch_one(
        _PARTICIPANT_SELECT + " WHERE p.race_id = %s AND p.bib_number = %s ORDER BY p.id LIMIT 1",
        (race_id, str(bib)),
    )


def search_participants(race_id: int, query: str, limit: int = 100) -> List[Dict[str, Any]]:
    pattern = f"%{query}%"
    return _fetch_all(
        _PARTICIPANT_SELECT
        + """
        WHERE p.race_id = %s
          AND (p.last_name ILIKE %s OR p.first_name ILIKE %s OR p.dni ILIKE %s)
        ORDER BY p.last_name, p.first_name
        LIMIT %s
        """,
        (race_id, pattern, pattern, pattern, int(limit)),
    )


def list_dnis(race_id: int) -> List[str]:
    rows = _fetch_all(
        "SELECT dni FROM participants WHERE race_id = %s AND dni IS NOT NULL", (race_id,)
    )
    return [r["dni"] for r in rows]


def insert_participants(rows: List[Dict[str, Any]]) -> int:
    if not rows:
        return 0
    cols = ("race_id",) + _PARTICIPANT_COLUMNS
    defaults = {"status": "registered", "chip_delivered": False, "kit_delivered": False}
    values = [
        tuple(r.get(c) if r.get(c) is not None else defaults.get(c) for c in cols)
        for r in rows
    ]
    with _get_conn() as conn, conn.cursor() as cur:
        execute_values(
            cur,
            f"INSERT INTO participants ({', '.join(cols)}) VALUES %s",
            values,
        )
        conn.commit()
    return len(values)


def insert_participant(row: Dict[str, Any]) -> Dict[str, Any]:
    cols = ("race_id",) + _PARTICIPANT_COLUMNS
    defaults = {"status": "registered", "chip_delivered": False, "kit_delivered": False}
    return _insert_returning(
        f"""
        INSERT INTO participants ({', '.join(cols)})
        VALUES ({', '.join(['%s'] * len(cols))})
        RETURNING id, {', '.join(cols)}
        """,
        [row.get(c) if row.get(c) is not None else defaults.get(c) for c in cols],
    )


def update_participant(race_id: int, participant_id: int, fields: Dict[str, Any]) -> int:
    sql, params = _update_sql("participants", _PARTICIPANT_COLUMNS, fields)
    if sql is None:
        return 0
    return _execute(sql + " WHERE id = %s AND race_id = %s", params + [participant_id, race_id])


def set_participant_category(race_id: int, participant_id: int, category_id: Optional[int]) -> None:
    """Write one participant's ``category_id``; raises LookupError if no row changed."""
    count = _execute(
        "UPDATE participants SET category_id = %s WHERE id = %s AND race_id = %s",
        (category_id, participant_id, race_id),
    )
    if count == 0:
        raise LookupError(f"participant {participant_id} not found in race {race_id}")


# Timing

def insert_timelog(row: Dict[str, Any]) -> Dict[str, Any]:
    return _insert_returning(
        """
        INSERT INTO timelogs (race_id, participant_id, elapsed_ms, type, source, notes)
        VALUES (%s, %s, %s, %s, %s, %s)
        RETURNING id, race_id, participant_id, elapsed_ms, type, source, notes, timestamp_utc
        """,
        (
            row.get("race_id"),
            row.get("participant_id"),
            row.get("elapsed_ms"),
            row.get("type") or "finish",
            row.get("source"),
            row.get("notes"),
        ),
    )


def _timelogs_with_participant(where: str, params: Iterable[Any], tail: str = "") -> List[Dict[str, Any]]:
    rows = _fetch_all(
        """
        SELECT t.id, t.race_id, t.participant_id, t.elapsed_ms, t.type, t.source, t.notes,
               t.timestamp_utc,
               p.id AS p_id, p.bib_number, p.first_name, p.last_name, p.sex,
               p.distance_km, p.category_id, c.name AS category_name
        FROM timelogs t
        LEFT JOIN participants p ON p.id = t.participant_id
        LEFT JOIN categories c ON c.id = p.category_id
        """
        + where
        + tail,
        params,
    )
    out: List[Dict[str, Any]] = []
    for r in rows:
        participant = None
        if r.get("p_id") is not None:
            participant = {
                "id": r["p_id"],
                "bib_number": r.get("bib_number"),
                "first_name": r.get("first_name"),
                "last_name": r.get("last_name"),
                "sex": r.get("sex"),
                "distance_km": r.get("distance_km"),
                "category_id": r.get("category_id"),
                "category_name": r.get("category_name"),
            }
        out.append({
            "id": r["id"],
            "race_id": r["race_id"],
            "participant_id": r.get("participant_id"),
            "elapsed_ms": r.get("elapsed_ms"),
            "type": r.get("type"),
            "source": r.get("source"),
            "notes": r.get("notes"),
            "timestamp_utc": r.get("timestamp_utc"),
            "participant": participant,
        })
    return out


def list_finish_timelogs(race_id: int) -> List[Dict[str, Any]]:
    return _timelogs_with_participant(
        " WHERE t.race_id = %s AND t.type = 'finish'", (race_id,), " ORDER BY t.id"
    )


def list_recent_timelogs(race_id: int, limit: int = 10) -> List[Dict[str, Any]]:
    return _timelogs_with_participant(
        " WHERE t.race_id = %s", (race_id, int(limit)), " ORDER BY t.timestamp_utc DESC, t.id DESC LIMIT %s"
    )


def server_info() -> Dict[str, Any]:
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute("SELECT current_user, current_database(), version()")
        user, db, ver = cur.fetchone()
    return {"user": user, "database": db, "server_version": (ver or "").split("\n")[0]}
