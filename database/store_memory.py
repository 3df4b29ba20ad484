"""
InMemoryCallStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlCallStore
  - Single-record operations are atomic: none of them awaits between the
    read and the write, so the event loop cannot interleave another handler
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import time
import structlog
from typing import Any, Optional

from database.store_base import BaseCallStore
from models.schemas import (
    CallRecord, ChannelStats, Message, MessageType, Recipient, RedirectEntry, Site,
)

logger = structlog.get_logger()


def _call_id(channel: int, inserted_at: int) -> str:
    return f"{channel}:{inserted_at}"


class InMemoryCallStore(BaseCallStore):
    """
    Full-featured in-memory store with the same interface as SqlCallStore.
    Returns copies, never the stored objects themselves.
    """

    def __init__(self):
        self._calls: dict[str, CallRecord] = {}          # "channel:inserted_at" → record
        self._redirects: dict[str, RedirectEntry] = {}   # old_key → entry
        self._messages: dict[int, Message] = {}          # message_id → message
        self._recipients: dict[str, Recipient] = {}      # phone → recipient
        self._channels: dict[int, ChannelStats] = {}
        self._sites: dict[str, Site] = {}

        # Indexes
        self._key_index: dict[str, str] = {}             # object_key → call id
        logger.info("inmemory_store_initialized")

    # ── Call records ──────────────────────────────────────

    async def put_call(self, record: CallRecord) -> CallRecord:
        cid = _call_id(record.channel, record.inserted_at)
        self._calls[cid] = record.model_copy(deep=True)
        self._key_index[record.object_key] = cid
        return record

    async def get_call(self, channel: int, inserted_at: int) -> Optional[CallRecord]:
        rec = self._calls.get(_call_id(channel, inserted_at))
        return rec.model_copy(deep=True) if rec else None

    async def find_call_by_key(self, object_key: str) -> Optional[CallRecord]:
        cid = self._key_index.get(object_key)
        if not cid or cid not in self._calls:
            return None
        return self._calls[cid].model_copy(deep=True)

    async def query_calls_by_start_time(
        self, channel: int, start_from: float, start_to: float,
    ) -> list[CallRecord]:
        matches = [
            r.model_copy(deep=True) for r in self._calls.values()
            if r.channel == channel
            and r.start_time is not None
            and start_from <= r.start_time <= start_to
        ]
        matches.sort(key=lambda r: r.start_time)
        return matches

    async def update_call(self, channel: int, inserted_at: int, **fields: Any) -> Optional[CallRecord]:
        rec = self._calls.get(_call_id(channel, inserted_at))
        if rec is None:
            return None
        updated = rec.model_copy(update=fields)
        self._calls[_call_id(channel, inserted_at)] = updated
        return updated.model_copy(deep=True)

    async def claim_page_sent(self, channel: int, inserted_at: int) -> bool:
        cid = _call_id(channel, inserted_at)
        rec = self._calls.get(cid)
        if rec is None or rec.page_sent:
            return False
        self._calls[cid] = rec.model_copy(update={"page_sent": True})
        return True

    async def delete_call(self, channel: int, inserted_at: int) -> bool:
        cid = _call_id(channel, inserted_at)
        rec = self._calls.pop(cid, None)
        if rec is None:
            return False
        if self._key_index.get(rec.object_key) == cid:
            del self._key_index[rec.object_key]
        return True

    # ── Redirects ─────────────────────────────────────────

    async def put_redirect(self, entry: RedirectEntry) -> None:
        self._redirects[entry.old_key] = entry.model_copy()

    async def get_redirect(self, old_key: str, now: Optional[float] = None) -> Optional[RedirectEntry]:
        entry = self._redirects.get(old_key)
        now = time.time() if now is None else now
        if entry is None:
            return None
        if entry.expires_at <= now:
            # Expired entries are garbage-collected on read
            del self._redirects[old_key]
            return None
        return entry.model_copy()

    # ── Messages ──────────────────────────────────────────

    async def save_message(self, message: Message) -> None:
        self._messages[message.message_id] = message.model_copy(deep=True)

    async def get_message(self, message_id: int) -> Optional[Message]:
        msg = self._messages.get(message_id)
        return msg.model_copy(deep=True) if msg else None

    async def list_messages(self, message_type: Optional[MessageType] = None) -> list[Message]:
        msgs = [
            m.model_copy(deep=True) for m in self._messages.values()
            if message_type is None or m.type == message_type
        ]
        msgs.sort(key=lambda m: m.message_id)
        return msgs

    async def merge_message_metrics(self, message_id: int, sent: int = 0,
                                    delivered: int = 0, failed: int = 0) -> None:
        msg = self._messages.get(message_id)
        if msg is None:
            logger.warning("message_metrics_unknown_message", message_id=message_id)
            return
        self._messages[message_id] = msg.model_copy(update={
            "sent": msg.sent + sent,
            "delivered": msg.delivered + delivered,
            "failed": msg.failed + failed,
        })

    # ── Recipients ────────────────────────────────────────

    async def upsert_recipient(self, recipient: Recipient) -> Recipient:
        self._recipients[recipient.phone] = recipient.model_copy(deep=True)
        return recipient

    async def get_recipient(self, phone: str) -> Optional[Recipient]:
        rec = self._recipients.get(phone)
        return rec.model_copy(deep=True) if rec else None

    async def list_recipients(self) -> list[Recipient]:
        return [r.model_copy(deep=True) for r in self._recipients.values()]

    async def update_recipient(self, phone: str, **fields: Any) -> Optional[Recipient]:
        rec = self._recipients.get(phone)
        if rec is None:
            return None
        self._recipients[phone] = rec.model_copy(update=fields)
        return self._recipients[phone].model_copy(deep=True)

    # ── Channels & sites ──────────────────────────────────

    async def record_channel_activity(self, channel: int) -> ChannelStats:
        stats = self._channels.get(channel) or ChannelStats(channel=channel)
        stats = stats.model_copy(update={"count": stats.count + 1, "in_use": True})
        self._channels[channel] = stats
        return stats.model_copy()

    async def get_channel_stats(self, channel: int) -> Optional[ChannelStats]:
        stats = self._channels.get(channel)
        return stats.model_copy() if stats else None

    async def update_site(self, site_id: str, attributes: dict[str, dict[str, Any]]) -> Site:
        site = self._sites.get(site_id) or Site(site_id=site_id)
        merged = {k: dict(v) for k, v in site.attributes.items()}
        for attr, systems in attributes.items():
            merged.setdefault(attr, {}).update(systems)
        site = Site(site_id=site_id, is_active=True, attributes=merged)
        self._sites[site_id] = site
        return site.model_copy(deep=True)

    async def get_site(self, site_id: str) -> Optional[Site]:
        site = self._sites.get(site_id)
        return site.model_copy(deep=True) if site else None

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "calls": len(self._calls),
            "redirects": len(self._redirects),
            "messages": len(self._messages),
            "recipients": len(self._recipients),
            "channels": len(self._channels),
            "sites": len(self._sites),
        }
