"""
On-call resolution from the shift-schedule feed.

The feed is a JSON document kept in the object store by the scheduling
import job:

    {
      "people": {"<person id>": "<display name>", ...},
      "shifts": [
        {"id": "<person id>", "start": <epoch s>, "end": <epoch s>,
         "department": "<shift department>"},
        ...
      ]
    }

Each paging channel maps some shift departments to duty groups shown in the
page body. Resolution never fails the caller: a missing or broken feed
yields an empty roster.
"""
from __future__ import annotations

import json
import time
import structlog
from dataclasses import dataclass, field
from typing import Callable, Optional

from config.settings import PagingChannelConfig
from models.schemas import OnCallGroup, OnCallPerson, OnCallRoster
from storage.blob_store import BaseBlobStore
from utils.cache import TTLCache

logger = structlog.get_logger()


@dataclass
class Shift:
    person_id: str
    start: float
    end: float
    department: str

    def covers(self, at: float) -> bool:
        return self.start <= at < self.end


@dataclass
class ShiftSchedule:
    people: dict[str, str] = field(default_factory=dict)
    shifts: list[Shift] = field(default_factory=list)

    @classmethod
    def from_json(cls, raw: bytes | str) -> ShiftSchedule:
        data = json.loads(raw)
        shifts = []
        for s in data.get("shifts") or []:
            try:
                shifts.append(Shift(
                    person_id=str(s["id"]),
                    start=float(s["start"]),
                    end=float(s["end"]),
                    department=str(s.get("department", "")),
                ))
            except (KeyError, TypeError, ValueError):
                logger.warning("shift_entry_skipped", entry=s)
        people = {str(k): str(v) for k, v in (data.get("people") or {}).items()}
        return cls(people=people, shifts=shifts)


class ShiftFeed:
    """Cached access to the shift schedule document."""

    def __init__(self, blobs: BaseBlobStore, key: str, ttl_s: float = 300,
                 clock: Callable[[], float] = time.monotonic):
        self.blobs = blobs
        self.key = key
        self._cache: TTLCache[ShiftSchedule] = TTLCache(self._load, ttl_s=ttl_s, clock=clock)

    async def _load(self) -> ShiftSchedule:
        raw = await self.blobs.get_object(self.key)
        schedule = ShiftSchedule.from_json(raw)
        logger.info("shift_feed_loaded", key=self.key, shifts=len(schedule.shifts))
        return schedule

    async def get(self) -> ShiftSchedule:
        return await self._cache.get()

    def invalidate(self) -> None:
        self._cache.invalidate()


class OnCallResolver:

    def __init__(self, feed: Optional[ShiftFeed],
                 paging_channels: Optional[dict[int, PagingChannelConfig]] = None):
        self.feed = feed
        self.paging_channels = paging_channels or {}

    async def resolve(self, channel: int, at: Optional[float] = None) -> OnCallRoster:
        """Who is on duty for ``channel``'s duty groups at ``at`` (epoch seconds)."""
        channel_cfg = self.paging_channels.get(channel)
        if self.feed is None or channel_cfg is None or not channel_cfg.duty_groups:
            return OnCallRoster()
        at = time.time() if at is None else at

        try:
            schedule = await self.feed.get()
        except Exception as e:
            logger.warning("oncall_feed_unavailable", channel=channel, error=str(e))
            return OnCallRoster()

        members: dict[str, dict[str, OnCallPerson]] = {}
        for shift in schedule.shifts:
            group_name = channel_cfg.duty_groups.get(shift.department)
            if group_name is None or not shift.covers(at):
                continue
            name = schedule.people.get(shift.person_id, shift.person_id)
            members.setdefault(group_name, {})[shift.person_id] = OnCallPerson(
                id=shift.person_id, display_name=name,
            )

        groups = [
            OnCallGroup(name=name, members=sorted(people.values(), key=lambda p: p.display_name))
            for name, people in sorted(members.items())
        ]
        on_duty = {p.id for g in groups for p in g.members}
        return OnCallRoster(groups=groups, on_duty_ids=on_duty)
