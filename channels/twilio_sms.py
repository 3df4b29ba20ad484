"""
Twilio SMS gateway.

Sends texts through the Twilio Messages REST API. Each sending number
belongs to a credential account; the account SID and auth token are read
from the shared secret as ``accountSid{Account}`` / ``authToken{Account}``.

Delivery status webhooks arrive at ``{status_callback_base}/{message_id}``
and are merged into the Message record by the notification dispatcher.

API Docs: https://www.twilio.com/docs/messaging/api/message-resource
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import (
    retry, retry_if_exception_type, stop_after_attempt, wait_exponential,
)

from channels.base import (
    GatewayError, MessagingGateway, PerSenderRateLimiter, PhoneNumber,
)
from config.secrets import SecretProvider
from utils.strings import to_e164

logger = structlog.get_logger()


class TwilioSmsGateway(MessagingGateway):
    """Twilio REST API client for outbound SMS/MMS."""

    BASE_URL = "https://api.twilio.com/2010-04-01/Accounts"

    def __init__(
        self,
        secrets: SecretProvider,
        status_callback_base: str = "",
        rate_per_second: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secrets = secrets
        self.status_callback_base = status_callback_base.rstrip("/")
        self._pacing = PerSenderRateLimiter(rate=rate_per_second, burst=max(int(rate_per_second), 1))
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def _credentials(self, sender: PhoneNumber) -> tuple[str, str]:
        secret = await self.secrets.aget()
        account_sid = secret.get(f"accountSid{sender.account}")
        auth_token = secret.get(f"authToken{sender.account}")
        if not account_sid or not auth_token or not sender.number:
            logger.error("twilio_invalid_phone_information", category=sender.category,
                         has_number=bool(sender.number), has_sid=bool(account_sid))
            raise GatewayError(f"Invalid phone information - {sender.category}")
        return account_sid, auth_token

    # Only connection failures are retried: the request never reached Twilio
    @retry(
        retry=retry_if_exception_type(httpx.ConnectError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=1, max=5),
        reraise=True,
    )
    async def _request(self, account_sid: str, auth_token: str, path: str,
                       data: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        url = f"{self.BASE_URL}/{account_sid}{path}.json"
        resp = await client.post(url, data=data, auth=(account_sid, auth_token))
        if resp.status_code >= 400:
            logger.error(
                "twilio_api_error",
                status=resp.status_code,
                body=resp.text[:500],
                path=path,
            )
            raise GatewayError(
                f"Twilio rejected message ({resp.status_code})",
                to=str(data.get("To", "")),
                status_code=resp.status_code,
                retryable=resp.status_code >= 500,
            )
        return resp.json()

    async def send_text(
        self,
        to: str,
        body: str,
        sender: PhoneNumber,
        message_id: Optional[int] = None,
        media_urls: Optional[list[str]] = None,
    ) -> str:
        account_sid, auth_token = await self._credentials(sender)

        # Twilio uses form-encoded POST, not JSON
        payload: dict[str, Any] = {
            "From": sender.number,
            "To": to_e164(to),
            "Body": body,
        }
        if media_urls:
            payload["MediaUrl"] = list(media_urls)
        if self.status_callback_base and message_id is not None:
            payload["StatusCallback"] = f"{self.status_callback_base}/{message_id}"

        if not await self._pacing.acquire(sender.number):
            raise GatewayError(f"Send rate exceeded for {sender.category}", to=to, retryable=True)

        try:
            result = await self._request(account_sid, auth_token, "/Messages", payload)
        except httpx.HTTPError as e:
            raise GatewayError(f"Twilio request failed: {e}", to=to, retryable=True) from e

        logger.info("twilio_text_sent", to=to, sender=sender.category,
                    message_id=message_id, sid=result.get("sid", ""))
        return result.get("sid", "")

    # ── Webhook Parsing ─────────────────────────────────────

    @staticmethod
    def parse_status_webhook(payload: dict[str, Any]) -> dict[str, Any]:
        """
        Normalize a Twilio message status webhook.

        Twilio sends MessageSid, MessageStatus, To, From, ErrorCode, etc.
        """
        return {
            "sid": payload.get("MessageSid", payload.get("SmsSid", "")),
            "status": str(payload.get("MessageStatus", payload.get("SmsStatus", ""))).lower(),
            "to": payload.get("To", ""),
            "error_code": payload.get("ErrorCode"),
        }

    async def health_check(self) -> dict[str, Any]:
        return {"gateway": "twilio", "client_open": bool(self._client and not self._client.is_closed)}

    async def shutdown(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
