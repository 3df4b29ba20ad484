"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB; on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - Composite (channel, inserted_at) primary key for call records so the
    row identity matches the natural key used by every caller.
  - BigInteger epoch-millisecond columns instead of DateTime; the pipeline
    only ever compares and orders them.
"""
from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import (
    BigInteger, Boolean, Float, Index, Integer, JSON, String, Text,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


# ──────────────────────────────────────────────────────────────
#  Call records
# ──────────────────────────────────────────────────────────────

class CallRow(Base):
    __tablename__ = "calls"

    channel: Mapped[int] = mapped_column(Integer, primary_key=True)
    inserted_at: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    object_key: Mapped[str] = mapped_column(String(512), nullable=False)

    start_time: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    end_time: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    duration_seconds: Mapped[float] = mapped_column(Float, default=0.0)
    tower_id: Mapped[str] = mapped_column(String(64), default="")
    frequency: Mapped[int] = mapped_column(BigInteger, default=0)

    is_emergency: Mapped[bool] = mapped_column(Boolean, default=False)
    is_page_tone: Mapped[bool] = mapped_column(Boolean, default=False)
    transcript: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    page_sent: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    source_list: Mapped[Any] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_calls_channel_start", "channel", "start_time"),
        Index("ix_calls_object_key", "object_key"),
    )


class RedirectRow(Base):
    __tablename__ = "redirects"

    old_key: Mapped[str] = mapped_column(String(512), primary_key=True)
    new_key: Mapped[str] = mapped_column(String(512), nullable=False)
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


# ──────────────────────────────────────────────────────────────
#  Outbound messages
# ──────────────────────────────────────────────────────────────

class MessageRow(Base):
    __tablename__ = "messages"

    message_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    recipient_count: Mapped[int] = mapped_column(Integer, default=0)
    body: Mapped[str] = mapped_column(Text, default="")
    media_refs: Mapped[Any] = mapped_column(JSON, default=list)

    related_object_key: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    related_channel: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    department: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    is_test: Mapped[bool] = mapped_column(Boolean, default=False)

    sent: Mapped[int] = mapped_column(Integer, default=0)
    delivered: Mapped[int] = mapped_column(Integer, default=0)
    failed: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (
        Index("ix_messages_type", "type"),
    )


# ──────────────────────────────────────────────────────────────
#  Recipients
# ──────────────────────────────────────────────────────────────

class RecipientRow(Base):
    __tablename__ = "recipients"

    phone: Mapped[str] = mapped_column(String(32), primary_key=True)
    # Full Recipient document; only phone is needed for lookups
    data: Mapped[Any] = mapped_column(JSON, nullable=False)


# ──────────────────────────────────────────────────────────────
#  Channel statistics & sites
# ──────────────────────────────────────────────────────────────

class ChannelStatsRow(Base):
    __tablename__ = "channel_stats"

    channel: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    count: Mapped[int] = mapped_column(Integer, default=0)
    in_use: Mapped[bool] = mapped_column(Boolean, default=False)


class SiteRow(Base):
    __tablename__ = "sites"

    site_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    attributes: Mapped[Any] = mapped_column(JSON, default=dict)
