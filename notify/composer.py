"""Page and transcript message bodies."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote

from config.settings import PagingChannelConfig
from models.schemas import OnCallRoster
from utils.strings import date_to_time_string, file_name_to_date

NO_VOICES = "No voices detected"


class PageComposer:

    def __init__(
        self,
        paging_channels: dict[int, PagingChannelConfig],
        link_base_url: str,
        tz: str = "America/Denver",
    ):
        self.paging_channels = paging_channels
        self.link_base_url = link_base_url.rstrip("/")
        self.tz = tz

    def link(self, channel: int, file_name: str, phone: Optional[str] = None,
             message_id: Optional[int] = None) -> str:
        cfg = self.paging_channels.get(channel)
        preset = cfg.link_preset if cfg else str(channel)
        url = f"{self.link_base_url}/?f={quote(file_name)}&tg={preset}"
        if phone is not None:
            url += f"&p={phone}"
        if message_id is not None:
            url += f"&m={message_id}"
        return url

    @staticmethod
    def format_roster(roster: OnCallRoster) -> str:
        lines = ["On call:"]
        for group in roster.groups:
            names = ", ".join(p.display_name for p in group.members) or "none"
            lines.append(f"{group.name}: {names}")
        return "\n".join(lines)

    def page_body(
        self,
        channel: int,
        object_key: str,
        phone: Optional[str] = None,
        message_id: Optional[int] = None,
        transcript: Optional[str] = None,
        roster: Optional[OnCallRoster] = None,
        on_call: bool = False,
        recorded_at: Optional[datetime] = None,
    ) -> str:
        file_name = object_key.rsplit("/", 1)[-1]
        cfg = self.paging_channels.get(channel)
        if cfg is None:
            return f"Invalid paging channel - {channel} - {file_name}"

        when = recorded_at or file_name_to_date(file_name) or datetime.now(timezone.utc)
        body = f"{cfg.paged_service} PAGE\n"
        body += f"{cfg.party_being_paged} paged {date_to_time_string(when, self.tz)}\n"
        if on_call:
            body += "YOU ARE ON CALL\n"
        if transcript is not None:
            body += f"\n{transcript}\n\n"
        if roster is not None and not roster.is_empty:
            if transcript is None:
                body += "\n"
            body += f"{self.format_roster(roster)}\n\n"
        body += self.link(channel, file_name, phone, message_id)
        return body

    def legacy_transcript_body(self, channel: int, transcript: str) -> str:
        """Transcript for a job that carries no recording reference."""
        cfg = self.paging_channels.get(channel)
        party = cfg.party_being_paged if cfg else str(channel)
        preset = cfg.link_preset if cfg else str(channel)
        return (
            f"Transcript for {party} page:\n\n{transcript}\n\n"
            f"Current radio traffic: {self.link_base_url}/?tg={preset}"
        )
