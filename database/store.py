"""
SqlCallStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

The page claim and the delivery counters are single UPDATE statements, so
concurrent workers on separate processes cannot both observe the old value.
"""
from __future__ import annotations

import json
import structlog
import time
from typing import Any, Optional

from sqlalchemy import and_, delete, or_, select, update

from database.models import (
    CallRow, ChannelStatsRow, MessageRow, RecipientRow, RedirectRow, SiteRow,
)
from database.session import create_engine, create_tables, session_scope
from database.store_base import BaseCallStore
from models.schemas import (
    CallRecord, ChannelStats, Message, MessageType, Recipient, RedirectEntry, Site,
)

logger = structlog.get_logger()

_CALL_FIELDS = set(CallRecord.model_fields)


class SqlCallStore(BaseCallStore):
    """
    Persistent call store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, db_url: str, echo: bool = False):
        self.engine = create_engine(db_url, echo=echo)
        self._session = session_scope(self.engine)

    async def open(self) -> None:
        await create_tables(self.engine)

    async def close(self) -> None:
        await self.engine.dispose()

    # ── Call records ──────────────────────────────────────

    async def put_call(self, record: CallRecord) -> CallRecord:
        async with self._session() as db:
            await db.merge(CallRow(**record.model_dump()))
        return record

    async def get_call(self, channel: int, inserted_at: int) -> Optional[CallRecord]:
        async with self._session() as db:
            row = await db.get(CallRow, (channel, inserted_at))
            return self._row_to_call(row) if row else None

    async def find_call_by_key(self, object_key: str) -> Optional[CallRecord]:
        async with self._session() as db:
            stmt = (
                select(CallRow)
                .where(CallRow.object_key == object_key)
                .order_by(CallRow.inserted_at.desc())
                .limit(1)
            )
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_call(row) if row else None

    async def query_calls_by_start_time(
        self, channel: int, start_from: float, start_to: float,
    ) -> list[CallRecord]:
        async with self._session() as db:
            stmt = (
                select(CallRow)
                .where(and_(
                    CallRow.channel == channel,
                    CallRow.start_time >= start_from,
                    CallRow.start_time <= start_to,
                ))
                .order_by(CallRow.start_time)
            )
            result = await db.execute(stmt)
            return [self._row_to_call(r) for r in result.scalars().all()]

    async def update_call(self, channel: int, inserted_at: int, **fields: Any) -> Optional[CallRecord]:
        unknown = set(fields) - _CALL_FIELDS
        if unknown:
            raise ValueError(f"Unknown call record fields: {sorted(unknown)}")
        async with self._session() as db:
            row = await db.get(CallRow, (channel, inserted_at))
            if row is None:
                return None
            for k, v in fields.items():
                setattr(row, k, v)
            await db.flush()
            return self._row_to_call(row)

    async def claim_page_sent(self, channel: int, inserted_at: int) -> bool:
        async with self._session() as db:
            stmt = (
                update(CallRow)
                .where(and_(
                    CallRow.channel == channel,
                    CallRow.inserted_at == inserted_at,
                    or_(CallRow.page_sent.is_(None), CallRow.page_sent.is_(False)),
                ))
                .values(page_sent=True)
            )
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def delete_call(self, channel: int, inserted_at: int) -> bool:
        async with self._session() as db:
            stmt = delete(CallRow).where(and_(
                CallRow.channel == channel,
                CallRow.inserted_at == inserted_at,
            ))
            result = await db.execute(stmt)
            return result.rowcount > 0

    # ── Redirects ─────────────────────────────────────────

    async def put_redirect(self, entry: RedirectEntry) -> None:
        async with self._session() as db:
            await db.merge(RedirectRow(**entry.model_dump()))

    async def get_redirect(self, old_key: str, now: Optional[float] = None) -> Optional[RedirectEntry]:
        now = time.time() if now is None else now
        async with self._session() as db:
            row = await db.get(RedirectRow, old_key)
            if row is None:
                return None
            if row.expires_at <= now:
                await db.delete(row)
                return None
            return RedirectEntry(old_key=row.old_key, new_key=row.new_key,
                                 expires_at=row.expires_at)

    # ── Messages ──────────────────────────────────────────

    async def save_message(self, message: Message) -> None:
        data = message.model_dump(mode="json")
        async with self._session() as db:
            await db.merge(MessageRow(**data))

    async def get_message(self, message_id: int) -> Optional[Message]:
        async with self._session() as db:
            row = await db.get(MessageRow, message_id)
            return self._row_to_message(row) if row else None

    async def list_messages(self, message_type: Optional[MessageType] = None) -> list[Message]:
        async with self._session() as db:
            stmt = select(MessageRow).order_by(MessageRow.message_id)
            if message_type is not None:
                stmt = stmt.where(MessageRow.type == message_type.value)
            result = await db.execute(stmt)
            return [self._row_to_message(r) for r in result.scalars().all()]

    async def merge_message_metrics(self, message_id: int, sent: int = 0,
                                    delivered: int = 0, failed: int = 0) -> None:
        async with self._session() as db:
            stmt = (
                update(MessageRow)
                .where(MessageRow.message_id == message_id)
                .values(
                    sent=MessageRow.sent + sent,
                    delivered=MessageRow.delivered + delivered,
                    failed=MessageRow.failed + failed,
                )
            )
            result = await db.execute(stmt)
            if result.rowcount == 0:
                logger.warning("message_metrics_unknown_message", message_id=message_id)

    # ── Recipients ────────────────────────────────────────

    async def upsert_recipient(self, recipient: Recipient) -> Recipient:
        async with self._session() as db:
            await db.merge(RecipientRow(phone=recipient.phone,
                                        data=recipient.model_dump(mode="json")))
        return recipient

    async def get_recipient(self, phone: str) -> Optional[Recipient]:
        async with self._session() as db:
            row = await db.get(RecipientRow, phone)
            return self._row_to_recipient(row) if row else None

    async def list_recipients(self) -> list[Recipient]:
        async with self._session() as db:
            result = await db.execute(select(RecipientRow))
            return [self._row_to_recipient(r) for r in result.scalars().all()]

    async def update_recipient(self, phone: str, **fields: Any) -> Optional[Recipient]:
        async with self._session() as db:
            row = await db.get(RecipientRow, phone)
            if row is None:
                return None
            updated = self._row_to_recipient(row).model_copy(update=fields)
            row.data = updated.model_dump(mode="json")
            return updated

    # ── Channels & sites ──────────────────────────────────

    async def record_channel_activity(self, channel: int) -> ChannelStats:
        async with self._session() as db:
            row = await db.get(ChannelStatsRow, channel)
            if row is None:
                row = ChannelStatsRow(channel=channel, count=0, in_use=True)
                db.add(row)
                await db.flush()
            await db.execute(
                update(ChannelStatsRow)
                .where(ChannelStatsRow.channel == channel)
                .values(count=ChannelStatsRow.count + 1, in_use=True)
            )
            await db.refresh(row)
            return ChannelStats(channel=row.channel, count=row.count, in_use=row.in_use)

    async def get_channel_stats(self, channel: int) -> Optional[ChannelStats]:
        async with self._session() as db:
            row = await db.get(ChannelStatsRow, channel)
            if row is None:
                return None
            return ChannelStats(channel=row.channel, count=row.count, in_use=row.in_use)

    async def update_site(self, site_id: str, attributes: dict[str, dict[str, Any]]) -> Site:
        async with self._session() as db:
            row = await db.get(SiteRow, site_id)
            current = self._json(row.attributes) if row else {}
            merged = {k: dict(v) for k, v in current.items()}
            for attr, systems in attributes.items():
                merged.setdefault(attr, {}).update(systems)
            if row is None:
                db.add(SiteRow(site_id=site_id, is_active=True, attributes=merged))
            else:
                row.is_active = True
                row.attributes = merged
            return Site(site_id=site_id, is_active=True, attributes=merged)

    async def get_site(self, site_id: str) -> Optional[Site]:
        async with self._session() as db:
            row = await db.get(SiteRow, site_id)
            if row is None:
                return None
            return Site(site_id=row.site_id, is_active=row.is_active,
                        attributes=self._json(row.attributes) or {})

    # ── Converters ────────────────────────────────────────

    @staticmethod
    def _json(value: Any) -> Any:
        # SQLite may hand JSON columns back as text
        if isinstance(value, str):
            return json.loads(value)
        return value

    @classmethod
    def _row_to_call(cls, row: CallRow) -> CallRecord:
        return CallRecord(
            channel=row.channel, inserted_at=row.inserted_at,
            object_key=row.object_key, start_time=row.start_time,
            end_time=row.end_time, duration_seconds=row.duration_seconds or 0.0,
            tower_id=row.tower_id or "", frequency=row.frequency or 0,
            is_emergency=bool(row.is_emergency), is_page_tone=bool(row.is_page_tone),
            transcript=row.transcript, page_sent=row.page_sent,
            source_list=cls._json(row.source_list),
        )

    @classmethod
    def _row_to_message(cls, row: MessageRow) -> Message:
        return Message(
            message_id=row.message_id, type=MessageType(row.type),
            recipient_count=row.recipient_count, body=row.body,
            media_refs=cls._json(row.media_refs) or [],
            related_object_key=row.related_object_key,
            related_channel=row.related_channel, department=row.department,
            is_test=bool(row.is_test),
            sent=row.sent, delivered=row.delivered, failed=row.failed,
        )

    @classmethod
    def _row_to_recipient(cls, row: RecipientRow) -> Recipient:
        return Recipient.model_validate(cls._json(row.data))
