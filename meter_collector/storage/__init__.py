"""Local SQLite storage"""

from .local_db import LocalDatabase

__all__ = ["LocalDatabase"]
