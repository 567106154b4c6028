"""Admin session handling.

Operators authenticate against the ``ADMIN_PASSWORD`` setting and receive a
signed Flask session. Nothing the client stores on its own grants access.
"""

import hmac
import secrets
import time
from functools import wraps

from flask import current_app, session

ROLE_ADMIN = "admin"


def check_password(candidate: str) -> bool:
    expected = current_app.config.get("ADMIN_PASSWORD") or ""
    if not expected or not candidate:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


def start_admin_session() -> None:
    session.clear()
    session["role"] = ROLE_ADMIN
    session["token"] = secrets.token_urlsafe(16)
    session["issued_at"] = int(time.time())
    session.permanent = True


def end_session() -> None:
    session.clear()


def is_admin() -> bool:
    if session.get("role") != ROLE_ADMIN or not session.get("token"):
        return False
    issued = session.get("issued_at")
    if not isinstance(issued, int):
        return False
    max_age = int(current_app.config.get("ADMIN_SESSION_HOURS", 12)) * 3600
    return time.time() - issued <= max_age


def admin_required(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        if not is_admin():
            return {"error": "Admin session required"}, 401
        return func(*args, **kwargs)
    return wrapper
