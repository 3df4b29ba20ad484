"""
Notification dispatch.

Every notification is one Message record plus one text per recipient. The
record (with its recipient count) and the sends are settled together; a send
that fails is logged and counted, never retried, because the same event is
not allowed to text a recipient twice. Only a failure to persist the Message
fails the notification.
"""
from __future__ import annotations

import time
import structlog
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from channels.base import MessagingGateway, PhoneNumber
from database.store_base import BaseCallStore
from models.schemas import DeliveryStatus, Message, MessageType, OnCallRoster, Recipient
from notify.composer import PageComposer
from notify.oncall import OnCallResolver
from notify.recipients import PhoneCategoryResolver, RecipientResolver
from utils.fanout import run_all
from utils.metrics import MetricsPublisher
from utils.strings import MonotonicMillis, file_name_to_date

logger = structlog.get_logger()

BodyFor = Callable[[Recipient], str]
SenderFor = Callable[[Recipient], Awaitable[PhoneNumber]]


class NotificationDispatcher:

    def __init__(
        self,
        store: BaseCallStore,
        gateway: MessagingGateway,
        recipients: RecipientResolver,
        phones: PhoneCategoryResolver,
        composer: PageComposer,
        oncall: Optional[OnCallResolver] = None,
        metrics: Optional[MetricsPublisher] = None,
        ids: Optional[MonotonicMillis] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.gateway = gateway
        self.recipients = recipients
        self.phones = phones
        self.composer = composer
        self.oncall = oncall
        self.metrics = metrics
        self.ids = ids or MonotonicMillis(clock)
        self._clock = clock

    # ── Core fan-out ──────────────────────────────────────────

    async def _send_one(self, message: Message, recipient: Recipient,
                        body_for: BodyFor, sender_for: SenderFor) -> str:
        sender = await sender_for(recipient)
        return await self.gateway.send_text(
            recipient.phone,
            body_for(recipient),
            sender,
            message_id=message.message_id,
            media_urls=message.media_refs or None,
        )

    async def deliver(
        self,
        message: Message,
        targets: list[Recipient],
        body_for: BodyFor,
        sender_for: SenderFor,
    ) -> Message:
        """Persist ``message`` and text every target concurrently."""
        message.recipient_count = len(targets)
        tasks = {"save_message": self.store.save_message(message)}
        for r in targets:
            tasks[f"send:{r.phone}"] = self._send_one(message, r, body_for, sender_for)

        result = await run_all(tasks)
        if "save_message" in result.errors:
            raise result.errors["save_message"]

        sent = len(result.results) - 1
        failed = len(result.errors)
        if sent or failed:
            try:
                await self.store.merge_message_metrics(message.message_id, sent=sent, failed=failed)
            except Exception as e:
                # The texts are out; a redelivery must not send them again
                logger.error("message_metrics_merge_failed", message_id=message.message_id,
                             error=str(e))
        message.sent += sent
        message.failed += failed

        logger.info("notification_dispatched", message_id=message.message_id,
                    type=message.type.value, recipients=len(targets), sent=sent, failed=failed)
        if self.metrics:
            await self.metrics.increment("Initiated", type=message.type.value)
        return message

    # ── Pages and transcripts ─────────────────────────────────

    async def _roster_for(self, channel: int, targets: list[Recipient]) -> OnCallRoster:
        if self.oncall is None or not any(r.get_on_call_info for r in targets):
            return OnCallRoster()
        return await self.oncall.resolve(channel, self._clock())

    async def send_page(
        self,
        channel: int,
        object_key: str,
        duration_seconds: float = 0.0,
        is_test: bool = False,
        transcript: Optional[str] = None,
    ) -> Message:
        file_name = object_key.rsplit("/", 1)[-1]
        recorded_at = file_name_to_date(file_name)

        if self.metrics and not is_test:
            await self.metrics.put("PageDuration", duration_seconds * 1000, "Milliseconds",
                                   {"Channel": str(channel)})
            if recorded_at is not None:
                lag = self._clock() - recorded_at.timestamp() - duration_seconds
                await self.metrics.put("PageToQueue", lag * 1000, "Milliseconds",
                                       {"Channel": str(channel)})

        targets = [
            r for r in await self.recipients.resolve(channel=channel, is_test=is_test)
            if not r.get_transcript_only
        ]
        roster = await self._roster_for(channel, targets)

        message = Message(
            message_id=self.ids.next(),
            type=MessageType.PAGE,
            recipient_count=len(targets),
            body=self.composer.page_body(channel, object_key, transcript=transcript,
                                         roster=roster, recorded_at=recorded_at),
            related_object_key=object_key,
            related_channel=channel,
            is_test=is_test,
        )

        def body_for(r: Recipient) -> str:
            wants_roster = r.get_on_call_info and not roster.is_empty
            return self.composer.page_body(
                channel, object_key,
                phone=r.phone,
                message_id=message.message_id,
                transcript=transcript,
                roster=roster if wants_roster else None,
                on_call=wants_roster and r.shift_person_id in roster.on_duty_ids,
                recorded_at=recorded_at,
            )

        return await self.deliver(message, targets, body_for, self.phones.page_number_for)

    async def send_transcript(
        self,
        channel: int,
        transcript: str,
        object_key: Optional[str] = None,
        is_test: bool = False,
    ) -> Message:
        """Transcript follow-up for a page that went out without one."""
        targets = [
            r for r in await self.recipients.resolve(channel=channel, is_test=is_test)
            if r.get_transcript
        ]
        message_id = self.ids.next()

        if object_key is None:
            body = self.composer.legacy_transcript_body(channel, transcript)
            body_for: BodyFor = lambda r: body
        else:
            body = self.composer.page_body(channel, object_key, transcript=transcript)
            body_for = lambda r: self.composer.page_body(
                channel, object_key, phone=r.phone, message_id=message_id, transcript=transcript,
            )

        message = Message(
            message_id=message_id,
            type=MessageType.TRANSCRIPT,
            recipient_count=len(targets),
            body=body,
            related_object_key=object_key,
            related_channel=channel,
            is_test=is_test,
        )
        return await self.deliver(message, targets, body_for, self.phones.page_number_for)

    # ── Department, account and direct texts ──────────────────

    async def send_group(
        self,
        message_type: MessageType,
        body: str,
        targets: list[Recipient],
        sender: PhoneNumber | SenderFor,
        department: Optional[str] = None,
        media_urls: Optional[list[str]] = None,
        is_test: bool = False,
        body_for: Optional[BodyFor] = None,
    ) -> Message:
        message = Message(
            message_id=self.ids.next(),
            type=message_type,
            recipient_count=len(targets),
            body=body,
            media_refs=list(media_urls or []),
            department=department,
            is_test=is_test,
        )
        if isinstance(sender, PhoneNumber):
            fixed = sender

            async def sender_for(_: Recipient) -> PhoneNumber:
                return fixed
        else:
            sender_for = sender
        return await self.deliver(message, targets, body_for or (lambda r: body), sender_for)

    async def send_direct(self, phone: str, body: str, sender_category: str = "alert",
                          message_type: MessageType = MessageType.ACCOUNT) -> Message:
        """One text to one number, recorded like any other notification."""
        recipient = await self.store.get_recipient(phone) or Recipient(phone=phone)
        sender = await self.phones.get(sender_category)
        return await self.send_group(message_type, body, [recipient], sender)

    # ── Delivery status ───────────────────────────────────────

    async def merge_delivery_status(self, message_id: int, status: str) -> None:
        """Fold one gateway status callback into the Message counters."""
        try:
            parsed = DeliveryStatus(status.lower())
        except ValueError:
            logger.warning("delivery_status_unknown", message_id=message_id, status=status)
            return

        if parsed == DeliveryStatus.DELIVERED:
            await self.store.merge_message_metrics(message_id, delivered=1)
        elif parsed in (DeliveryStatus.UNDELIVERED, DeliveryStatus.FAILED):
            await self.store.merge_message_metrics(message_id, failed=1)
        else:
            return
        logger.debug("delivery_status_merged", message_id=message_id, status=parsed.value)
        if self.metrics:
            await self.metrics.put("Delivery", 1, "Count", {"Status": parsed.value},
                                   timestamp=datetime.now(timezone.utc))
