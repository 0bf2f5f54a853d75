from globalsched.db.base import Base
from globalsched.db.config import DBSettings, get_db_settings
from globalsched.db.engine import make_engine

__all__ = [
    "Base",
    "DBSettings",
    "get_db_settings",
    "make_engine",
]
