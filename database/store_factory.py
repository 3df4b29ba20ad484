"""Pick the call store backend named by ``database.store_backend``."""
from __future__ import annotations

import structlog

from config.settings import DatabaseConfig
from database.store_base import BaseCallStore

logger = structlog.get_logger()


def create_store(config: DatabaseConfig, echo: bool = False) -> BaseCallStore:
    """
    ``sql``: SQLAlchemy store on ``config.url`` (tables are created by ``open()``).
    ``file``: JSON files under ``config.store_file_dir``.
    ``memory``: process-local dicts, the default.
    """
    backend = config.store_backend
    if backend == "sql":
        from database.store import SqlCallStore

        store: BaseCallStore = SqlCallStore(config.url, echo=echo)
    elif backend == "file":
        from database.store_file import FileCallStore

        store = FileCallStore(data_dir=config.store_file_dir)
    elif backend == "memory":
        from database.store_memory import InMemoryCallStore

        store = InMemoryCallStore()
    else:
        raise ValueError(f"Unknown store backend {backend!r}")

    logger.info("store_created", backend=backend)
    return store
