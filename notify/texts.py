"""
Department texting and account messages.

Inbound texts to a department number are relayed to the department group,
delivery problems are reported to department admins, and account events
(activation, login codes) are texted to the member concerned.
"""
from __future__ import annotations

import re
import time
import structlog
from typing import Any, Callable, Optional

from channels.base import PhoneNumber
from config.settings import DepartmentConfig, PagingChannelConfig
from core.errors import ConfigurationError, MalformedInputError
from database.store_base import BaseCallStore
from models.queue import ActivateUser, AuthCode, PhoneIssue, TwilioText
from models.schemas import Message, MessageType, Recipient
from notify.dispatcher import NotificationDispatcher
from utils.strings import format_phone, random_code

logger = structlog.get_logger()

AUTH_CODE_TTL_MS = 5 * 60 * 1000

APPLE_REACTION_PREFIXES = ("Liked", "Loved", "Disliked", "Laughed at", "Questioned")
_EMOJI_REACTION_RE = re.compile(r" to “")

WELCOME_PARTS = {
    "welcome": "Welcome to the {name} {type} group!",
    "textGroup": (
        "This number will be used to send and receive messages from other members of the "
        "department.\n\nTo send a message to other members of your department, just send a "
        "text to this number. Any message you send will show up for others with your name and "
        "callsign attached.\n\nYou will receive important announcements from {pageNumber}. "
        "No-one except department administrators will be able to send announcements from that "
        "number."
    ),
    "textPageGroup": (
        "This number will be used to send and receive messages from other members of the "
        "department.\n\nIn a moment, you will receive a text from {pageNumber} with a link to a "
        "sample page similar to what you will receive. That number will only ever send you pages "
        "or important announcements.\n\nTo send a message to other members of your department, "
        "just send a text to this number. Any message you send will show up for others with your "
        "name and callsign attached."
    ),
    "pageGroup": (
        "This number will be used to send pages or important announcements.\n\nIn a moment, you "
        "will receive a text with a link to a sample page like that you will receive."
    ),
    "howToLeave": 'You can leave this group at any time by texting "STOP" to this number.',
}


def is_auto_reply(text: str) -> bool:
    """Driving auto-replies and reaction texts are never relayed."""
    if "I'm Driving" in text and "Sent from My Car" in text:
        return True
    if text.startswith(APPLE_REACTION_PREFIXES):
        return True
    return bool(_EMOJI_REACTION_RE.search(text))


def media_urls_from(body: dict[str, Any]) -> list[str]:
    return [str(v) for k, v in sorted(body.items()) if k.startswith("MediaUrl")]


def sender_label(user: Recipient, department: str) -> str:
    membership = user.departments.get(department)
    label = user.display_name
    if membership and membership.call_sign:
        label += f" ({membership.call_sign})"
    return label


class AccountTexts:

    def __init__(
        self,
        store: BaseCallStore,
        dispatcher: NotificationDispatcher,
        departments: dict[str, DepartmentConfig],
        paging_channels: Optional[dict[int, PagingChannelConfig]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.departments = departments
        self.paging_channels = paging_channels or {}
        self._clock = clock

    @property
    def phones(self):
        return self.dispatcher.phones

    def _department(self, name: str) -> DepartmentConfig:
        if name not in self.departments:
            raise ConfigurationError(f"Unknown department - {name}")
        return self.departments[name]

    # ── Group texts ───────────────────────────────────────────

    async def relay_text(self, msg: TwilioText) -> Optional[Message]:
        to_number = str(msg.body.get("To", ""))
        number = await self.phones.by_number(to_number)
        if number is None:
            raise ConfigurationError(f"Unable to find config for phone number - {to_number}")
        if not number.department:
            raise ConfigurationError("Text to number not associated with any department")
        department = number.department
        dep_cfg = self._department(department)

        sender = await self.store.get_recipient(msg.sender_phone)
        if sender is None:
            raise MalformedInputError(f"Text from unknown user - {msg.sender_phone}")

        text = str(msg.body.get("Body", ""))
        if is_auto_reply(text):
            logger.info("group_text_suppressed", department=department, sender=msg.sender_phone)
            return None

        include_sender = False
        is_announcement = False
        if number.type == "page":
            include_sender = True
            membership = sender.departments.get(department)
            is_announcement = bool(membership and membership.active and membership.admin)
        if not is_announcement and not dep_cfg.text_phone:
            raise ConfigurationError(
                f"Tried to send group text on department where that is not available - {department}"
            )

        targets = await self.dispatcher.recipients.resolve(
            department=department,
            is_test=sender.is_test,
            exclude=() if include_sender or sender.is_test else (sender.phone,),
        )

        label = sender_label(sender, department)
        if is_announcement:
            body = f"{dep_cfg.short_name} Announcement: {text} - {label}"
            group_sender = self.phones.page_number_for
            message_type = MessageType.DEPARTMENT_ANNOUNCE
        else:
            body = f"{label}: {text}"
            group_sender = await self.phones.get(dep_cfg.text_phone or dep_cfg.page_phone)
            message_type = MessageType.DEPARTMENT

        return await self.dispatcher.send_group(
            message_type, body, targets, group_sender,
            department=department,
            media_urls=media_urls_from(msg.body),
            is_test=sender.is_test,
        )

    async def report_phone_issue(self, msg: PhoneIssue) -> Message:
        targets = []
        for r in await self.store.list_recipients():
            if r.phone == msg.number:
                continue
            if any(
                (m := r.departments.get(dep)) is not None and m.active and m.admin
                for dep in msg.departments
            ):
                targets.append(r)

        body = (
            f"Text delivery issue for {msg.name} (number {format_phone(msg.number)})\n\n"
            f"Last {msg.count} messages have not been delivered."
        )
        return await self.dispatcher.send_group(
            MessageType.DEPARTMENT_ALERT, body, targets, self.phones.page_number_for,
            department=msg.departments[0] if msg.departments else None,
        )

    # ── Account messages ──────────────────────────────────────

    def welcome_text(self, user: Recipient, dep_cfg: DepartmentConfig, page_number: PhoneNumber) -> str:
        paged_for = ", ".join(
            self.paging_channels[ch].party_being_paged
            for ch in user.channels if ch in self.paging_channels
        )
        if dep_cfg.type == "page":
            group_type = "page"
        else:
            group_type = "textPage" if paged_for else "text"

        pieces = {
            "name": dep_cfg.name,
            "type": dep_cfg.type,
            "pageNumber": format_phone(page_number.number),
        }
        text = f"{WELCOME_PARTS['welcome']}\n\n{WELCOME_PARTS[group_type + 'Group']}\n\n"
        if paged_for:
            text += f"You will receive pages for: {paged_for}\n\n"
        text += WELCOME_PARTS["howToLeave"]
        return text.format(**pieces)

    async def activate_user(self, msg: ActivateUser) -> list[Message]:
        user = await self.store.get_recipient(msg.phone)
        if user is None:
            raise MalformedInputError(f"Invalid user - {msg.phone}")
        dep_cfg = self._department(msg.department)
        page_number = await self.phones.get(dep_cfg.page_phone)

        group_category = dep_cfg.page_phone if dep_cfg.type == "page" else (
            dep_cfg.text_phone or dep_cfg.page_phone
        )
        welcome = await self.dispatcher.send_group(
            MessageType.ACCOUNT,
            self.welcome_text(user, dep_cfg, page_number),
            [user],
            await self.phones.get(group_category),
            department=msg.department,
        )
        sent = [welcome]

        admins = [a for a in await self.dispatcher.recipients.admins(msg.department) if a.phone != user.phone]
        if admins:
            notice = (
                f"New subscriber: {user.display_name} ({format_phone(user.phone)}) "
                f"has been added to the {msg.department} group"
            )
            admin_sender = (
                self.phones.page_number_for if dep_cfg.type == "page"
                else await self.phones.get(group_category)
            )
            sent.append(await self.dispatcher.send_group(
                MessageType.DEPARTMENT_ALERT, notice, admins, admin_sender,
                department=msg.department,
            ))
        logger.info("user_activated", phone=user.phone, department=msg.department,
                    admins_notified=len(admins))
        return sent

    async def send_auth_code(self, msg: AuthCode) -> Message:
        code = random_code(6)
        expiry = int(self._clock() * 1000) + AUTH_CODE_TTL_MS
        user = await self.store.update_recipient(msg.phone, code=code, code_expiry=expiry)
        if user is None:
            raise MalformedInputError(f"Failed to add login code to user - {msg.phone}")

        body = (
            f"This message was only sent to you. Your login code is {code}. "
            "This code expires in 5 minutes."
        )
        # The stored Message never carries the code itself
        return await self.dispatcher.send_group(
            MessageType.ACCOUNT, "Login code sent", [user], self.phones.page_number_for,
            body_for=lambda r: body,
        )
