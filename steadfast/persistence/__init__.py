"""History stores and the URL-driven factory that picks one."""

from __future__ import annotations

from typing import Callable, Dict, Optional
from urllib.parse import urlsplit

from ..config import SteadfastConfig, load_config
from .inmemory import InMemoryHistoryRepository
from .models import ExecutionRecord
from .repository import HistoryRepository
from .sqlite import SQLiteHistoryRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresHistoryRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresHistoryRepository = None  # type: ignore

_repository_instance: HistoryRepository | None = None


def _sqlite(url: str) -> HistoryRepository:
    # sqlite://relative.db and sqlite:///abs/path.db both name a file path.
    return SQLiteHistoryRepository(url.split("://", 1)[1])


def _postgres(url: str) -> HistoryRepository:
    if PostgresHistoryRepository is None:
        raise RuntimeError("Postgres history needs asyncpg: pip install steadfast[postgres]")
    return PostgresHistoryRepository(url)


_BACKENDS: Dict[str, Callable[[str], HistoryRepository]] = {
    "sqlite": _sqlite,
    "postgres": _postgres,
    "postgresql": _postgres,
}


def open_repository(database_url: Optional[str]) -> HistoryRepository:
    """Build a repository for ``database_url``; ``None`` means in-memory."""
    if not database_url:
        return InMemoryHistoryRepository()
    factory = _BACKENDS.get(urlsplit(database_url).scheme)
    if factory is None:
        raise ValueError(f"Unsupported database backend: {database_url}")
    return factory(database_url)


def get_repository(
    database_url: Optional[str] = None, config: Optional[SteadfastConfig] = None
) -> HistoryRepository:
    """Return the process history store, opening it on first use.

    Passing ``database_url`` or ``config`` reopens the store from them; the
    configuration already folds in ``STEADFAST_DATABASE_URL`` and
    ``DATABASE_URL``.
    """
    global _repository_instance
    if _repository_instance is None or database_url is not None or config is not None:
        _repository_instance = open_repository(
            database_url or (config or load_config()).database_url
        )
    return _repository_instance


__all__ = [
    "ExecutionRecord",
    "HistoryRepository",
    "InMemoryHistoryRepository",
    "SQLiteHistoryRepository",
    "PostgresHistoryRepository",
    "get_repository",
    "open_repository",
]
