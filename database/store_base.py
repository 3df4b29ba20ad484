"""
Abstract Call Store — Interface for all storage backends.

Implementations:
  - SqlCallStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryCallStore (dict-based, single-process, no persistence)
  - FileCallStore     (JSON files on disk, single-process, durable)

Every write touches a single record. There are no multi-record
transactions, so callers compose multi-record work out of individually
idempotent operations.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from models.schemas import (
    CallRecord, ChannelStats, Message, MessageType, Recipient, RedirectEntry, Site,
)


class BaseCallStore(ABC):
    """Interface that all call store backends must implement."""

    async def open(self) -> None:
        """Prepare the backend before the first operation."""

    async def close(self) -> None:
        pass

    # ── Call records ──────────────────────────────────────────

    @abstractmethod
    async def put_call(self, record: CallRecord) -> CallRecord:
        ...

    @abstractmethod
    async def get_call(self, channel: int, inserted_at: int) -> Optional[CallRecord]:
        ...

    @abstractmethod
    async def find_call_by_key(self, object_key: str) -> Optional[CallRecord]:
        ...

    @abstractmethod
    async def query_calls_by_start_time(
        self, channel: int, start_from: float, start_to: float,
    ) -> list[CallRecord]:
        """All records on ``channel`` whose start_time lies in [start_from, start_to]."""
        ...

    @abstractmethod
    async def update_call(self, channel: int, inserted_at: int, **fields: Any) -> Optional[CallRecord]:
        """Set attributes on an existing record; returns None if it no longer exists."""
        ...

    @abstractmethod
    async def claim_page_sent(self, channel: int, inserted_at: int) -> bool:
        """Set page_sent only if it is not already true. True when this call set it."""
        ...

    @abstractmethod
    async def delete_call(self, channel: int, inserted_at: int) -> bool:
        """Delete a record; False (not an error) when it was already gone."""
        ...

    # ── Redirects ─────────────────────────────────────────────

    @abstractmethod
    async def put_redirect(self, entry: RedirectEntry) -> None:
        ...

    @abstractmethod
    async def get_redirect(self, old_key: str, now: Optional[float] = None) -> Optional[RedirectEntry]:
        """Live (unexpired) redirect for ``old_key``."""
        ...

    # ── Messages ──────────────────────────────────────────────

    @abstractmethod
    async def save_message(self, message: Message) -> None:
        ...

    @abstractmethod
    async def get_message(self, message_id: int) -> Optional[Message]:
        ...

    @abstractmethod
    async def list_messages(self, message_type: Optional[MessageType] = None) -> list[Message]:
        ...

    @abstractmethod
    async def merge_message_metrics(self, message_id: int, sent: int = 0,
                                    delivered: int = 0, failed: int = 0) -> None:
        ...

    # ── Recipients ────────────────────────────────────────────

    @abstractmethod
    async def upsert_recipient(self, recipient: Recipient) -> Recipient:
        ...

    @abstractmethod
    async def get_recipient(self, phone: str) -> Optional[Recipient]:
        ...

    @abstractmethod
    async def list_recipients(self) -> list[Recipient]:
        ...

    @abstractmethod
    async def update_recipient(self, phone: str, **fields: Any) -> Optional[Recipient]:
        ...

    # ── Channels & sites ──────────────────────────────────────

    @abstractmethod
    async def record_channel_activity(self, channel: int) -> ChannelStats:
        ...

    @abstractmethod
    async def get_channel_stats(self, channel: int) -> Optional[ChannelStats]:
        ...

    @abstractmethod
    async def update_site(self, site_id: str, attributes: dict[str, dict[str, Any]]) -> Site:
        ...

    @abstractmethod
    async def get_site(self, site_id: str) -> Optional[Site]:
        ...
