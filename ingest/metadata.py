"""
Tolerant parsing of recorder-supplied object metadata.

Recorders upload with a handful of historical naming schemes; object stores
lower-case user metadata keys on the way through. Every field is looked up
under all of its known aliases, case-insensitively. Unparseable numbers fall
back to 0 (times to None), unparseable flags to False, an unparseable source
list to empty. Only the channel is mandatory.
"""
from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, Optional

from core.errors import MalformedInputError

_ALIASES: dict[str, tuple[str, ...]] = {
    "channel": ("channel", "talkgroup_num", "talkgroup"),
    "start_time": ("starttime", "start_time"),
    "end_time": ("endtime", "end_time", "stop_time"),
    "start_time_ms": ("datetime",),
    "duration_seconds": ("durationseconds", "duration_seconds", "call_length", "len"),
    "tower_id": ("towerid", "tower_id", "source", "tower"),
    "frequency": ("frequency", "freq"),
    "is_emergency": ("emergency", "isemergency", "is_emergency"),
    "is_page_tone": ("toneflag", "tone", "ispagetone", "is_page_tone"),
    "source_list": ("sourcelist", "source_list"),
}

_TRUE_VALUES = {"true", "1", "y", "yes"}


@dataclass
class CallMetadata:
    channel: int
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    duration_seconds: float = 0.0
    tower_id: str = ""
    frequency: int = 0
    is_emergency: bool = False
    is_page_tone: bool = False
    source_list: Optional[list[int]] = None


def _lookup(lowered: dict[str, Any], field: str) -> Any:
    for alias in _ALIASES[field]:
        if alias in lowered and lowered[alias] not in (None, ""):
            return lowered[alias]
    return None


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


def _as_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in _TRUE_VALUES


def parse_source_list(value: Any) -> list[int]:
    """
    Receiver ids from a source list.

    Accepts a JSON string or a list whose items are ids or ``{"src": id}``
    objects. Returns unique positive ids in first-seen order.
    """
    if value is None:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return []
    if not isinstance(value, list):
        return []

    ids: list[int] = []
    for item in value:
        raw = item.get("src") if isinstance(item, dict) else item
        num = _as_float(raw)
        if num is None or num <= 0:
            continue
        src = int(num)
        if src not in ids:
            ids.append(src)
    return ids


def parse_call_metadata(metadata: dict[str, Any], object_key: str = "") -> CallMetadata:
    lowered = {str(k).lower(): v for k, v in (metadata or {}).items()}

    channel = _as_float(_lookup(lowered, "channel"))
    if channel is None:
        raise MalformedInputError(f"Recording metadata has no channel - {object_key}")

    start = _as_float(_lookup(lowered, "start_time"))
    if start is None:
        start_ms = _as_float(_lookup(lowered, "start_time_ms"))
        start = start_ms / 1000 if start_ms is not None else None
    end = _as_float(_lookup(lowered, "end_time"))
    duration = _as_float(_lookup(lowered, "duration_seconds"))

    if end is None and start is not None and duration is not None:
        end = start + duration
    if duration is None:
        duration = (end - start) if (start is not None and end is not None) else 0.0

    sources = parse_source_list(_lookup(lowered, "source_list"))

    return CallMetadata(
        channel=int(channel),
        start_time=start,
        end_time=end,
        duration_seconds=max(duration, 0.0),
        tower_id=str(_lookup(lowered, "tower_id") or ""),
        frequency=int(_as_float(_lookup(lowered, "frequency")) or 0),
        is_emergency=_as_flag(_lookup(lowered, "is_emergency")),
        is_page_tone=_as_flag(_lookup(lowered, "is_page_tone")),
        source_list=sources or None,
    )
