"""
Storage selection.

The backend is chosen once from settings.STORAGE_BACKEND and cached for the
life of the process. Tests install their own instance with
set_storage_for_tests().
"""
import logging
from typing import Optional

from researchhub.core.config import settings
from researchhub.storage.base import Storage

logger = logging.getLogger("researchhub")

_storage: Optional[Storage] = None


def build_storage(backend: Optional[str] = None, database_url: Optional[str] = None) -> Storage:
    name = (backend or settings.STORAGE_BACKEND or "memory").strip().lower()
    if name == "memory":
        from researchhub.storage.memory import MemoryStorage
        return MemoryStorage()
    if name == "sql":
        from researchhub.core.database import create_all_tables, init_engine
        from researchhub.storage.sql import SqlStorage
        init_engine(database_url)
        create_all_tables()
        return SqlStorage()
    raise ValueError(f"Unknown STORAGE_BACKEND '{name}' (expected 'memory' or 'sql')")


def get_storage() -> Storage:
    """Return the process-wide storage, building it on first use."""
    global _storage
    if _storage is None:
        _storage = build_storage()
        logger.info("storage.selected", extra={"backend": _storage.name})
    return _storage


def set_storage_for_tests(storage: Optional[Storage]) -> None:
    """Install (or clear with None) the storage used by get_storage()."""
    global _storage
    _storage = storage
