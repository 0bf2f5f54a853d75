from __future__ import annotations

from typing import Any

from sqlalchemy import Engine, create_engine, event, pool

from globalsched.db.config import DBSettings


def _is_sqlite(url: str) -> bool:
    return (url or "").strip().lower().startswith("sqlite")


def _engine_options(url: str, settings: DBSettings, pooled: bool) -> dict[str, Any]:
    if _is_sqlite(url):
        # Cron jobs and the retry sweep touch the database from scheduler threads.
        return {
            "connect_args": {"timeout": settings.busy_timeout_seconds, "check_same_thread": False},
            **({} if pooled else {"poolclass": pool.NullPool}),
        }
    if not pooled:
        return {"poolclass": pool.NullPool}
    return {
        "pool_pre_ping": True,
        "pool_size": settings.pool_size,
        "max_overflow": settings.pool_size * 2,
    }


def _enable_wal(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn: Any, _record: Any) -> None:
        cur = dbapi_conn.cursor()
        try:
            cur.execute("PRAGMA journal_mode=WAL")
            cur.execute("PRAGMA synchronous=NORMAL")
        finally:
            cur.close()


def make_engine(url: str, *, settings: DBSettings | None = None, pooled: bool = True) -> Engine:
    """Engine for the scheduling database; `pooled=False` is for one-shot migration runs."""
    cfg = settings or DBSettings(database_url=url)
    engine = create_engine(url, **_engine_options(url, cfg, pooled))
    if _is_sqlite(url) and cfg.sqlite_wal and ":memory:" not in url:
        _enable_wal(engine)
    return engine


def is_postgres(engine: Engine) -> bool:
    return engine.dialect.name == "postgresql"
