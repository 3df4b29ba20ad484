"""
Core data models for the RadioPager system.
These are the universal types shared across all modules.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ObjectEventType(str, Enum):
    CREATED = "created"
    REMOVED = "removed"


class MessageType(str, Enum):
    PAGE = "page"
    TRANSCRIPT = "transcript"
    DEPARTMENT = "department"
    DEPARTMENT_ANNOUNCE = "departmentAnnounce"
    DEPARTMENT_ALERT = "departmentAlert"
    ACCOUNT = "account"
    ALERT = "alert"


class DeliveryStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    UNDELIVERED = "undelivered"
    FAILED = "failed"


# ──────────────────────────────────────────────────────────────
#  CallRecord — one physical recording from one tower
# ──────────────────────────────────────────────────────────────

class CallRecord(BaseModel):
    """
    A single recording as written by the ingest handler.

    (channel, inserted_at) is the primary key. Secondary lookups exist by
    (channel, start_time) for duplicate selection and by object_key for
    delete events and transcript attachment.
    """
    channel: int
    inserted_at: int                          # epoch ms, strictly increasing per writer
    object_key: str
    start_time: Optional[float] = None        # epoch seconds
    end_time: Optional[float] = None
    duration_seconds: float = 0.0
    tower_id: str = ""
    frequency: int = 0
    is_emergency: bool = False
    is_page_tone: bool = False
    transcript: Optional[str] = None
    page_sent: Optional[bool] = None
    source_list: Optional[list[int]] = None

    @property
    def needs_transcript(self) -> bool:
        return self.is_emergency or self.is_page_tone

    @property
    def file_name(self) -> str:
        return self.object_key.rsplit("/", 1)[-1]


class RedirectEntry(BaseModel):
    """Points a superseded object key at the key of the record that replaced it."""
    old_key: str
    new_key: str
    expires_at: int                           # epoch seconds


class ChannelStats(BaseModel):
    channel: int
    count: int = 0
    in_use: bool = False


class Site(BaseModel):
    site_id: str
    is_active: bool = True
    attributes: dict[str, dict[str, Any]] = {}


# ──────────────────────────────────────────────────────────────
#  Recipients
# ──────────────────────────────────────────────────────────────

class DepartmentMembership(BaseModel):
    active: bool = False
    admin: bool = False
    call_sign: str = ""


class Recipient(BaseModel):
    """A person who can receive pages and texts."""
    phone: str
    first_name: str = ""
    last_name: str = ""
    channels: list[int] = []                  # paging channels subscribed to
    departments: dict[str, DepartmentMembership] = {}
    get_transcript: bool = False
    get_transcript_only: bool = False
    get_on_call_info: bool = False
    is_test: bool = False
    is_district_admin: bool = False
    paging_phone: Optional[str] = None        # department whose page number is preferred
    shift_person_id: Optional[str] = None
    code: Optional[str] = None
    code_expiry: Optional[int] = None         # epoch ms

    @property
    def active_departments(self) -> list[str]:
        return sorted(name for name, m in self.departments.items() if m.active)

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


# ──────────────────────────────────────────────────────────────
#  Message — one logical outbound notification
# ──────────────────────────────────────────────────────────────

class Message(BaseModel):
    message_id: int
    type: MessageType
    recipient_count: int
    body: str
    media_refs: list[str] = []
    related_object_key: Optional[str] = None
    related_channel: Optional[int] = None
    department: Optional[str] = None
    is_test: bool = False
    sent: int = 0
    delivered: int = 0
    failed: int = 0

    @property
    def is_page(self) -> bool:
        return self.related_object_key is not None


# ──────────────────────────────────────────────────────────────
#  Object-store events
# ──────────────────────────────────────────────────────────────

class ObjectEvent(BaseModel):
    event_type: ObjectEventType
    object_key: str
    bucket: str = ""
    event_time: Optional[float] = None        # epoch seconds the object was created
    metadata: dict[str, Any] = {}

    @classmethod
    def from_s3_record(cls, record: dict[str, Any]) -> ObjectEvent:
        """Decode one record of an S3 event notification."""
        from urllib.parse import unquote_plus
        from datetime import datetime

        name = record.get("eventName", "")
        event_time = None
        if record.get("eventTime"):
            try:
                event_time = datetime.fromisoformat(
                    record["eventTime"].replace("Z", "+00:00")
                ).timestamp()
            except ValueError:
                event_time = None
        s3 = record.get("s3", {})
        return cls(
            event_type=(ObjectEventType.CREATED if name.startswith("ObjectCreated")
                        else ObjectEventType.REMOVED),
            object_key=unquote_plus(s3.get("object", {}).get("key", "")),
            bucket=s3.get("bucket", {}).get("name", ""),
            event_time=event_time,
        )


# ──────────────────────────────────────────────────────────────
#  Transcription
# ──────────────────────────────────────────────────────────────

class TranscriptionJob(BaseModel):
    job_name: str
    media_uri: str = ""
    tags: dict[str, str] = {}
    status: str = "IN_PROGRESS"
    transcript_uri: Optional[str] = None


class OnCallPerson(BaseModel):
    id: str
    display_name: str


class OnCallGroup(BaseModel):
    name: str
    members: list[OnCallPerson] = []


class OnCallRoster(BaseModel):
    groups: list[OnCallGroup] = []
    on_duty_ids: set[str] = Field(default_factory=set)

    @property
    def is_empty(self) -> bool:
        return not self.groups
