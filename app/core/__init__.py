from .config import is_push_configured, settings
from .database import engine, get_db, init_db

__all__ = ["engine", "get_db", "init_db", "is_push_configured", "settings"]
