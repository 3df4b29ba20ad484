"""Small formatting helpers shared by the notification code."""
from __future__ import annotations

import re
import secrets
import string
import threading
import time
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

_DTR_FILE_RE = re.compile(r"\d{2,6}-(\d{10})_\d{9}(\.\d|)-call_\d+\.m4a")
_VHF_FILE_RE = re.compile(r"([A-Z]+)_FIRE_VHF_(\d{4})(\d{2})(\d{2})_(\d{2})(\d{2})(\d{2})\.mp3")


def file_name_to_date(file_name: str) -> Optional[datetime]:
    """Recover the recording time encoded in an uploaded file name."""
    m = _DTR_FILE_RE.search(file_name)
    if m:
        return datetime.fromtimestamp(int(m.group(1)), tz=timezone.utc)
    m = _VHF_FILE_RE.search(file_name)
    if m:
        y, mo, d, h, mi, s = (int(v) for v in m.groups()[1:])
        return datetime(y, mo, d, h, mi, s, tzinfo=timezone.utc)
    return None


def date_to_time_string(d: datetime, tz: str = "America/Denver") -> str:
    local = d.astimezone(ZoneInfo(tz))
    return f"on {local.strftime('%a, %b %d')} at {local.strftime('%H:%M:%S')}"


def format_phone(phone: str) -> str:
    digits = re.sub(r"\D", "", str(phone))
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) != 10:
        return str(phone)
    return f"{digits[:3]}-{digits[3:6]}-{digits[6:]}"


def to_e164(phone: str) -> str:
    if str(phone).startswith("+"):
        return str(phone)
    digits = re.sub(r"\D", "", str(phone))
    if len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"


def random_code(length: int = 6) -> str:
    return "".join(secrets.choice(string.digits) for _ in range(length))


class MonotonicMillis:
    """Epoch-millisecond ids that never repeat or go backwards within a process."""

    def __init__(self, clock=time.time):
        self._clock = clock
        self._last = 0
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            now = int(self._clock() * 1000)
            self._last = max(now, self._last + 1)
            return self._last
