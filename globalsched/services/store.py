from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any, Iterator

from alembic import command
from alembic.config import Config
from sqlalchemy import func, inspect, select
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

from globalsched.db.config import get_db_settings, redact_database_url
from globalsched.db.engine import is_postgres, make_engine
from globalsched.db.models.scheduling import (
    BusinessScheduleMapping,
    CollectionRun,
    CustomIntervalOverride,
    GlobalSchedule,
    RetryEntry,
)

REQUIRED_TABLES = (
    "global_schedules",
    "business_schedule_mappings",
    "custom_interval_overrides",
    "retry_entries",
    "collection_runs",
)

logger = logging.getLogger("globalsched.store")


def _sqlite_path_from_url(url: str, fallback_root: Path) -> Path | None:
    parsed = make_url(url)
    if not parsed.drivername.startswith("sqlite"):
        return None
    db_name = parsed.database or ""
    if not db_name or db_name == ":memory:":
        return None
    p = Path(db_name)
    if p.is_absolute():
        return p
    return (fallback_root / p).resolve()


class SchedulingStore:
    """
    Owns the engine and session factory for the scheduling tables.

    On start the schema is checked; missing tables trigger `alembic upgrade head`
    so a fresh SQLite file or an empty PostgreSQL database works out of the box.
    """

    def __init__(self, project_root: Path, database_url: str, auto_init: bool = True) -> None:
        self.project_root = project_root
        self.database_url = database_url
        self.db_path = _sqlite_path_from_url(database_url, project_root)
        if self.db_path is not None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            # Relative sqlite URLs resolve against the project root, not the cwd.
            self.database_url = f"sqlite:///{self.db_path.as_posix()}"
        db_settings = replace(get_db_settings(), database_url=self.database_url)
        self.engine: Engine = make_engine(self.database_url, settings=db_settings)
        self._Session = sessionmaker(bind=self.engine, autoflush=False, autocommit=False, expire_on_commit=False)
        if auto_init:
            self.ensure_schema()

    @property
    def is_postgres(self) -> bool:
        return is_postgres(self.engine)

    def session(self) -> Session:
        return self._Session()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        s = self._Session()
        try:
            yield s
            s.commit()
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()

    def _run_alembic_upgrade(self) -> None:
        alembic_ini = self.project_root / "alembic.ini"
        script_location = self.project_root / "alembic"
        if not alembic_ini.exists() or not script_location.exists():
            fallback_root = Path(__file__).resolve().parents[2]
            alembic_ini = fallback_root / "alembic.ini"
            script_location = fallback_root / "alembic"
        if not alembic_ini.exists() or not script_location.exists():
            raise RuntimeError("Alembic configuration not found")
        cfg = Config(str(alembic_ini))
        cfg.set_main_option("script_location", str(script_location))
        cfg.set_main_option("sqlalchemy.url", self.database_url)
        prev = os.environ.get("DATABASE_URL")
        try:
            os.environ["DATABASE_URL"] = self.database_url
            command.upgrade(cfg, "head")
        finally:
            if prev is None:
                os.environ.pop("DATABASE_URL", None)
            else:
                os.environ["DATABASE_URL"] = prev

    def missing_tables(self) -> list[str]:
        insp = inspect(self.engine)
        return [name for name in REQUIRED_TABLES if not insp.has_table(name)]

    def ensure_schema(self) -> None:
        with self.engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        missing = self.missing_tables()
        if not missing:
            return
        logger.info("schema_upgrade missing=%s url=%s", ",".join(missing), redact_database_url(self.database_url))
        try:
            self._run_alembic_upgrade()
            still_missing = self.missing_tables()
            if still_missing:
                raise RuntimeError(f"missing tables after migration: {still_missing}")
        except Exception as e:
            raise RuntimeError(
                "Database schema is not ready; run `alembic upgrade head` "
                f"(url={redact_database_url(self.database_url)}): {e}"
            ) from e

    def observability_info(self) -> dict[str, str]:
        return {
            "db_backend": "postgresql" if self.is_postgres else self.engine.dialect.name,
            "db_url": redact_database_url(self.database_url),
            "db_path": str(self.db_path or ""),
        }

    def db_status(self) -> dict[str, Any]:
        counts: dict[str, int] = {}
        with self.session_scope() as s:
            for name, model in (
                ("global_schedules", GlobalSchedule),
                ("business_schedule_mappings", BusinessScheduleMapping),
                ("custom_interval_overrides", CustomIntervalOverride),
                ("retry_entries", RetryEntry),
                ("collection_runs", CollectionRun),
            ):
                counts[name] = int(s.execute(select(func.count()).select_from(model)).scalar_one())
        out: dict[str, Any] = dict(self.observability_info())
        out["missing_tables"] = self.missing_tables()
        out["counts"] = counts
        return out
