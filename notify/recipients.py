"""
Recipient selection and outbound number choice.

Sending numbers are addressed by category (``page``, ``pageNorth``,
``chatNorth``, ``alert``, ...). Numbers come from configuration; a category
without a configured number falls back to ``phoneNumber{Category}`` in the
gateway secret. The resolved table is cached and can be invalidated.
"""
from __future__ import annotations

import time
import structlog
from typing import Callable, Iterable, Optional

from channels.base import PhoneNumber, UnknownPhoneCategoryError
from config.secrets import SecretProvider
from config.settings import TwilioConfig
from database.store_base import BaseCallStore
from models.schemas import Recipient
from utils.cache import TTLCache
from utils.strings import to_e164

logger = structlog.get_logger()


class PhoneCategoryResolver:

    def __init__(self, twilio: TwilioConfig, secrets: SecretProvider,
                 clock: Callable[[], float] = time.monotonic):
        self.twilio = twilio
        self.secrets = secrets
        self._cache: TTLCache[dict[str, PhoneNumber]] = TTLCache(
            self._load, ttl_s=twilio.phone_cache_ttl_s, clock=clock,
        )

    async def _load(self) -> dict[str, PhoneNumber]:
        secret = await self.secrets.aget()
        table: dict[str, PhoneNumber] = {}
        for category, cfg in self.twilio.phone_numbers.items():
            number = cfg.number or secret.get(f"phoneNumber{category[:1].upper()}{category[1:]}", "")
            if not number:
                logger.warning("phone_category_without_number", category=category)
                continue
            table[category] = PhoneNumber(
                category=category,
                number=str(number),
                type=cfg.type,
                account=cfg.account,
                department=cfg.department,
            )
        logger.info("phone_categories_loaded", count=len(table))
        return table

    async def get(self, category: str) -> PhoneNumber:
        table = await self._cache.get()
        if category not in table:
            raise UnknownPhoneCategoryError(category)
        return table[category]

    async def has(self, category: str) -> bool:
        return category in await self._cache.get()

    async def by_number(self, number: str) -> Optional[PhoneNumber]:
        wanted = to_e164(number)
        for phone in (await self._cache.get()).values():
            if to_e164(phone.number) == wanted:
                return phone
        return None

    async def page_number_for(self, recipient: Recipient) -> PhoneNumber:
        """The number a page to ``recipient`` is sent from."""
        departments = recipient.active_departments
        if len(departments) == 1 and await self.has(f"page{departments[0]}"):
            return await self.get(f"page{departments[0]}")
        if (
            recipient.paging_phone
            and recipient.paging_phone in departments
            and await self.has(f"page{recipient.paging_phone}")
        ):
            return await self.get(f"page{recipient.paging_phone}")
        return await self.get("page")

    def invalidate(self) -> None:
        self._cache.invalidate()


class RecipientResolver:

    def __init__(self, store: BaseCallStore, test_recipient_phone: str = ""):
        self.store = store
        self.test_recipient_phone = test_recipient_phone

    async def resolve(
        self,
        channel: Optional[int] = None,
        department: Optional[str] = None,
        is_test: bool = False,
        exclude: Iterable[str] = (),
    ) -> list[Recipient]:
        """
        Everyone who should get a notification.

        ``channel`` limits to subscribers of that paging channel and
        ``department`` to its active members; with neither, every recipient
        qualifies. Test notifications only reach test-flagged recipients and
        the configured test account.
        """
        excluded = set(exclude)
        selected = []
        for r in await self.store.list_recipients():
            if r.phone in excluded:
                continue
            if channel is not None and channel not in r.channels:
                continue
            if department is not None:
                membership = r.departments.get(department)
                if membership is None or not membership.active:
                    continue
            if is_test and not (r.is_test or r.phone == self.test_recipient_phone):
                continue
            selected.append(r)

        # The test account receives every test message, subscribed or not
        test_phone = self.test_recipient_phone
        if (
            is_test and test_phone and test_phone not in excluded
            and all(r.phone != test_phone for r in selected)
        ):
            selected.append(Recipient(phone=test_phone))
        return selected

    async def admins(self, department: str, include_district: bool = True) -> list[Recipient]:
        result = []
        for r in await self.store.list_recipients():
            membership = r.departments.get(department)
            dept_admin = membership is not None and membership.active and membership.admin
            if dept_admin or (include_district and r.is_district_admin):
                result.append(r)
        return result
