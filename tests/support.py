"""Test data and helpers shared by the RadioPager test modules."""
from typing import Any, Optional

from core.pipeline import Pipeline
from job_queue.message_queue import Queues
from models.schemas import MessageType, ObjectEvent, ObjectEventType

T0 = 1_700_000_000.0

PHONES = {
    "page": "+15551110000",
    "pageNorth": "+15551110001",
    "pageSouth": "+15551110002",
    "chatNorth": "+15551110003",
    "alert": "+15551110004",
}

ALICE = "+15550000001"
BOB = "+15550000002"
CAROL = "+15550000003"
DAVE = "+15550000004"
TESS = "+15550000009"


class FakeClock:
    """Settable epoch-seconds clock."""

    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


TEST_CONFIG: dict[str, Any] = {
    "link_base_url": "https://radio.example.org",
    "timezone": "America/Denver",
    "test_recipient_phone": "",
    "queue": {"backend": "memory", "max_receive_count": 2, "retry_backoff_base": 30},
    "storage": {"backend": "memory", "bucket": "radio-audio"},
    "twilio": {
        "secret_provider": "static",
        "status_callback_base": "https://radio.example.org/twilio/status",
        "phone_numbers": {
            "page": {"number": PHONES["page"], "type": "page", "account": "North",
                     "department": "North"},
            "pageNorth": {"number": PHONES["pageNorth"], "type": "page", "account": "North",
                          "department": "North"},
            "pageSouth": {"number": "", "type": "page", "account": "South", "department": "South"},
            "chatNorth": {"number": PHONES["chatNorth"], "type": "chat", "account": "North",
                          "department": "North"},
            "alert": {"number": PHONES["alert"], "type": "alert"},
        },
    },
    "shifts": {"bucket": "radio-audio", "key": "shift-data.json", "cache_ttl_s": 300},
    "paging_channels": {
        8330: {
            "paged_service": "FIRE",
            "party_being_paged": "North Fire",
            "link_preset": "nfd",
            "cost_center": "North",
            "duty_groups": {"north-engine": "North Engine", "north-command": "North Command"},
        },
        8332: {
            "paged_service": "EMS",
            "party_being_paged": "South Ambulance",
            "link_preset": "sems",
        },
    },
    "departments": {
        "North": {"short_name": "NFD", "type": "text", "page_phone": "pageNorth",
                  "text_phone": "chatNorth"},
        "South": {"short_name": "SEMS", "type": "page", "page_phone": "pageSouth"},
    },
}

SECRET = {
    "accountSidNorth": "ACnorth",
    "authTokenNorth": "token-north",
    "accountSidSouth": "ACsouth",
    "authTokenSouth": "token-south",
    # pageSouth has no configured number and falls back to the secret
    "phoneNumberPageSouth": PHONES["pageSouth"],
}


def dtr_key(channel: int, start: float, n: int = 1) -> str:
    return f"audio/dtr/{channel}-{int(start)}_854412500-call_{n}.m4a"


def recording_metadata(channel: int, start: float, end: float, tone: bool = True,
                       emergency: bool = False, tower: str = "saguache") -> dict[str, str]:
    """Metadata as the recorder uploads it."""
    return {
        "talkgroup_num": str(channel),
        "start_time": str(start),
        "stop_time": str(end),
        "call_length": str(end - start),
        "source": tower,
        "freq": "854412500",
        "tone": "true" if tone else "false",
        "emergency": "true" if emergency else "false",
    }


def created_event(key: str, metadata: Optional[dict[str, str]] = None,
                  event_time: Optional[float] = None) -> ObjectEvent:
    return ObjectEvent(
        event_type=ObjectEventType.CREATED,
        object_key=key,
        bucket="radio-audio",
        event_time=event_time,
        metadata=metadata or {},
    )


def removed_event(key: str) -> ObjectEvent:
    return ObjectEvent(event_type=ObjectEventType.REMOVED, object_key=key, bucket="radio-audio")


async def upload(pipeline: Pipeline, channel: int, start: float, end: float, n: int = 1,
                 tone: bool = True, emergency: bool = False, tower: str = "saguache"):
    """Put a recording in the object store and deliver its created event."""
    key = dtr_key(channel, start, n)
    meta = recording_metadata(channel, start, end, tone=tone, emergency=emergency, tower=tower)
    await pipeline.blobs.put_object(key, b"audio", meta)
    resolution = await pipeline.handle_object_event(created_event(key, meta, event_time=end + 2))
    return key, resolution


async def drain(pipeline: Pipeline) -> int:
    """Handle every queued message, including ones queued while draining."""
    total = 0
    while handled := await pipeline.queue.drain(Queues.EVENTS, pipeline.handle_job):
        total += handled
    return total


async def page_messages(pipeline: Pipeline):
    return await pipeline.store.list_messages(MessageType.PAGE)
