"""
Call store: recordings, redirects, outbound messages, recipients, channel
activity and radio sites. Backends are SQL (SQLAlchemy async), JSON files
and process memory; ``create_store`` picks one from ``DatabaseConfig``.
"""
from database.store_base import BaseCallStore
from database.store_factory import create_store

__all__ = ["BaseCallStore", "create_store"]
