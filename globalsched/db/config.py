from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy.engine import make_url


DEFAULT_SQLITE_PATH = Path("data") / "globalsched.db"
DEFAULT_DATABASE_URL = f"sqlite:///{DEFAULT_SQLITE_PATH.as_posix()}"


@dataclass(frozen=True)
class DBSettings:
    """
    Connection settings for the scheduling database.

    The admin API and the sweep worker are separate processes on the same
    database, so SQLite runs in WAL mode and writers wait `busy_timeout_seconds`
    for the lock held by the other process.
    """

    database_url: str
    busy_timeout_seconds: float = 30.0
    sqlite_wal: bool = True
    pool_size: int = 5


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    return raw not in {"0", "false", "no", "off"}


def get_db_settings() -> DBSettings:
    database_url = os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL).strip() or DEFAULT_DATABASE_URL
    try:
        busy_timeout = float(os.environ.get("DB_BUSY_TIMEOUT_SECONDS", "30") or 30)
    except ValueError:
        busy_timeout = 30.0
    try:
        pool_size = int(os.environ.get("DB_POOL_SIZE", "5") or 5)
    except ValueError:
        pool_size = 5
    return DBSettings(
        database_url=database_url,
        busy_timeout_seconds=max(0.0, busy_timeout),
        sqlite_wal=_env_flag("DB_SQLITE_WAL", True),
        pool_size=max(1, pool_size),
    )


def redact_database_url(url: str) -> str:
    raw = (url or "").strip()
    if not raw:
        return ""
    try:
        return make_url(raw).render_as_string(hide_password=True)
    except Exception:
        return raw
