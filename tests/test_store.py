from __future__ import annotations

import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from sqlalchemy import inspect, text

from globalsched.db.config import get_db_settings, redact_database_url
from globalsched.services.store import REQUIRED_TABLES, SchedulingStore


class SchedulingStoreTests(unittest.TestCase):
    def test_fresh_sqlite_file_is_migrated(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            store = SchedulingStore(root, "sqlite:///data/sched.db")
            self.assertEqual(store.db_path, (root / "data" / "sched.db").resolve())
            self.assertTrue(store.db_path.exists())
            self.assertEqual(store.missing_tables(), [])
            self.assertIn("alembic_version", inspect(store.engine).get_table_names())
            status = store.db_status()
            self.assertEqual(set(status["counts"]), set(REQUIRED_TABLES))
            self.assertEqual(status["db_backend"], "sqlite")
            # Reopening an up-to-date database is a no-op.
            SchedulingStore(root, "sqlite:///data/sched.db")

    def test_without_auto_init_tables_are_reported_missing(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            store = SchedulingStore(Path(td), "sqlite:///data/empty.db", auto_init=False)
            self.assertEqual(store.missing_tables(), list(REQUIRED_TABLES))

    def test_sqlite_runs_in_wal_mode(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            store = SchedulingStore(Path(td), "sqlite:///data/wal.db")
            with store.engine.connect() as conn:
                mode = conn.execute(text("PRAGMA journal_mode")).scalar_one()
            self.assertEqual(str(mode).lower(), "wal")

    def test_db_settings_from_env(self) -> None:
        env = {"DATABASE_URL": "sqlite:///x.db", "DB_BUSY_TIMEOUT_SECONDS": "5", "DB_SQLITE_WAL": "off", "DB_POOL_SIZE": "bad"}
        with patch.dict(os.environ, env):
            settings = get_db_settings()
        self.assertEqual(settings.database_url, "sqlite:///x.db")
        self.assertEqual(settings.busy_timeout_seconds, 5.0)
        self.assertFalse(settings.sqlite_wal)
        self.assertEqual(settings.pool_size, 5)

    def test_password_is_redacted(self) -> None:
        redacted = redact_database_url("postgresql+psycopg://user:s3cret@db:5432/sched")
        self.assertNotIn("s3cret", redacted)
        self.assertIn("db:5432/sched", redacted)


if __name__ == "__main__":
    unittest.main()
