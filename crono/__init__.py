import os
import secrets
from datetime import timedelta

from flask import Flask


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        return default


def create_app():
    app = Flask(__name__)

    db_url = os.environ.get("DATABASE_URL")
    if not db_url:
        raise RuntimeError(
            "DATABASE_URL is required. Point it at the PostgreSQL database holding races and timing data."
        )

    session_hours = _int_env("ADMIN_SESSION_HOURS", 12)
    app.config.update(
        SECRET_KEY=os.environ.get("SECRET_KEY") or secrets.token_hex(32),
        ADMIN_PASSWORD=os.environ.get("ADMIN_PASSWORD") or "",
        ADMIN_SESSION_HOURS=session_hours,
        PERMANENT_SESSION_LIFETIME=timedelta(hours=session_hours),
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE="Lax",
    )
    if not os.environ.get("SECRET_KEY"):
        app.logger.warning("SECRET_KEY not set; admin sessions will not survive a restart")

    # Pool is optional; _get_conn connects directly without one
    try:
        from . import datastore_pg as _pg
        _pg.init_pool(minconn=_int_env("DB_POOL_MIN", 1), maxconn=_int_env("DB_POOL_MAX", 10))
    except Exception:  # pragma: no cover
        app.logger.exception("PostgreSQL pool initialization failed; continuing without pool")

    from . import routes
    app.register_blueprint(routes.bp)

    return app


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    create_app().run(host='0.0.0.0', port=port)
