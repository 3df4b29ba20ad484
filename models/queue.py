"""
Queue message kinds.

Every payload on the pipeline queue carries an ``action`` discriminator.
Payloads are decoded once, at the queue boundary, into one of the models
below; handlers then match on the concrete type.
"""
from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from core.errors import MalformedInputError


class PageRequest(BaseModel):
    action: Literal["page"] = "page"
    channel: int
    object_key: str
    duration_seconds: float = 0.0
    is_test: bool = False


class TranscribeResult(BaseModel):
    action: Literal["transcribe-result"] = "transcribe-result"
    job_name: str
    tags: dict[str, str] = {}
    transcript_uri: Optional[str] = None


class TwilioText(BaseModel):
    action: Literal["twilio-text"] = "twilio-text"
    body: dict[str, Any]                      # raw inbound webhook fields (To, From, Body, MediaUrlN)
    sender_phone: str


class PhoneIssue(BaseModel):
    action: Literal["phone-issue"] = "phone-issue"
    number: str
    name: str = ""
    count: int = 0
    departments: list[str] = []


class ActivateUser(BaseModel):
    action: Literal["activate-user"] = "activate-user"
    phone: str
    department: str


class AuthCode(BaseModel):
    action: Literal["auth-code"] = "auth-code"
    phone: str


class SiteStatus(BaseModel):
    action: Literal["site-status"] = "site-status"
    sites: dict[str, dict[str, Any]]


QueueMessage = Annotated[
    Union[PageRequest, TranscribeResult, TwilioText, PhoneIssue, ActivateUser, AuthCode, SiteStatus],
    Field(discriminator="action"),
]

_adapter: TypeAdapter = TypeAdapter(QueueMessage)


def decode_queue_message(raw: dict[str, Any]) -> QueueMessage:
    """
    Decode a raw queue payload.

    Transcription-complete notifications from the event bus carry no
    ``action``; they are recognised by their ``detail-type`` and converted
    to a TranscribeResult.
    """
    if "action" not in raw and "detail-type" in raw:
        detail = raw.get("detail") or {}
        raw = {
            "action": "transcribe-result",
            "job_name": detail.get("TranscriptionJobName", ""),
        }
    try:
        return _adapter.validate_python(raw)
    except ValidationError as e:
        raise MalformedInputError(f"Unknown or invalid queue message: {e.errors()[:3]}") from e


def encode_queue_message(message: QueueMessage) -> dict[str, Any]:
    return message.model_dump(mode="json")
