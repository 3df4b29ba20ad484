"""
Tests for the messaging gateways.

The Twilio gateway is exercised against httpx.MockTransport; no request
leaves the process.
"""
import httpx
import pytest
from urllib.parse import parse_qs

from channels.base import (
    GatewayError, InMemoryGateway, PerSenderRateLimiter, PhoneNumber, TokenBucketRateLimiter,
)
from channels.twilio_sms import TwilioSmsGateway
from config.secrets import StaticSecretProvider

from support import ALICE, PHONES, SECRET, FakeClock

PAGE_NORTH = PhoneNumber(category="pageNorth", number=PHONES["pageNorth"], account="North")


class Recorder:
    """MockTransport handler that records requests and replays one response."""

    def __init__(self, status: int = 201, body=None):
        self.requests: list[httpx.Request] = []
        self.status = status
        self.body = body if body is not None else {"sid": "SM123", "status": "queued"}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json=self.body)

    def form(self, i: int = 0) -> dict[str, list[str]]:
        return parse_qs(self.requests[i].content.decode())


def twilio(recorder, callback="https://radio.example.org/twilio/status") -> TwilioSmsGateway:
    return TwilioSmsGateway(StaticSecretProvider(SECRET), status_callback_base=callback,
                            rate_per_second=100, transport=httpx.MockTransport(recorder))


# ══════════════════════════════════════════════════════════════
#  TWILIO
# ══════════════════════════════════════════════════════════════

class TestTwilioGateway:
    @pytest.mark.asyncio
    async def test_send_text(self):
        recorder = Recorder()
        gateway = twilio(recorder)
        sid = await gateway.send_text("555-000-0001", "FIRE PAGE", PAGE_NORTH, message_id=42)

        assert sid == "SM123"
        request = recorder.requests[0]
        assert str(request.url) == "https://api.twilio.com/2010-04-01/Accounts/ACnorth/Messages.json"
        assert request.headers["authorization"].startswith("Basic ")
        form = recorder.form()
        assert form["To"] == [ALICE]
        assert form["From"] == [PHONES["pageNorth"]]
        assert form["Body"] == ["FIRE PAGE"]
        assert form["StatusCallback"] == ["https://radio.example.org/twilio/status/42"]
        await gateway.shutdown()

    @pytest.mark.asyncio
    async def test_media_urls(self):
        recorder = Recorder()
        gateway = twilio(recorder, callback="")
        await gateway.send_text(ALICE, "photo", PAGE_NORTH, media_urls=["https://m/1", "https://m/2"])
        form = recorder.form()
        assert form["MediaUrl"] == ["https://m/1", "https://m/2"]
        assert "StatusCallback" not in form

    @pytest.mark.asyncio
    async def test_rejected_message(self):
        gateway = twilio(Recorder(status=400, body={"code": 21211, "message": "Invalid 'To'"}))
        with pytest.raises(GatewayError) as exc:
            await gateway.send_text(ALICE, "x", PAGE_NORTH)
        assert exc.value.status_code == 400
        assert not exc.value.retryable

    @pytest.mark.asyncio
    async def test_server_error_is_marked_retryable(self):
        gateway = twilio(Recorder(status=503, body={}))
        with pytest.raises(GatewayError) as exc:
            await gateway.send_text(ALICE, "x", PAGE_NORTH)
        assert exc.value.retryable

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        recorder = Recorder()
        gateway = twilio(recorder)
        east = PhoneNumber(category="pageEast", number="+15551110009", account="East")
        with pytest.raises(GatewayError):
            await gateway.send_text(ALICE, "x", east)
        assert recorder.requests == []

    def test_status_webhook(self):
        parsed = TwilioSmsGateway.parse_status_webhook({
            "MessageSid": "SM1", "MessageStatus": "Undelivered", "To": ALICE, "ErrorCode": "30003",
        })
        assert parsed == {"sid": "SM1", "status": "undelivered", "to": ALICE, "error_code": "30003"}

    def test_legacy_status_fields(self):
        parsed = TwilioSmsGateway.parse_status_webhook({"SmsSid": "SM2", "SmsStatus": "delivered"})
        assert parsed["sid"] == "SM2"
        assert parsed["status"] == "delivered"


# ══════════════════════════════════════════════════════════════
#  IN-MEMORY & RATE LIMITER
# ══════════════════════════════════════════════════════════════

class TestInMemoryGateway:
    @pytest.mark.asyncio
    async def test_records_and_fails(self):
        gateway = InMemoryGateway(failing={"+15550000002"})
        sid = await gateway.send_text(ALICE, "hi", PAGE_NORTH, message_id=1)
        assert sid.startswith("SM")
        with pytest.raises(GatewayError):
            await gateway.send_text("+15550000002", "hi", PAGE_NORTH)
        assert [s.to for s in gateway.sent] == [ALICE]


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_burst_then_refuse(self):
        limiter = TokenBucketRateLimiter(rate=0.001, burst=2)
        assert await limiter.acquire(timeout=0)
        assert await limiter.acquire(timeout=0)
        assert not await limiter.acquire(timeout=0)

    @pytest.mark.asyncio
    async def test_refills_with_time(self):
        clock = FakeClock(0)
        limiter = TokenBucketRateLimiter(rate=1, burst=1, clock=clock)
        assert await limiter.acquire(timeout=0)
        assert not await limiter.acquire(timeout=0)
        clock.advance(1)
        assert await limiter.acquire(timeout=0)

    @pytest.mark.asyncio
    async def test_each_sender_has_its_own_bucket(self):
        limiter = PerSenderRateLimiter(rate=0.001, burst=1)
        assert await limiter.acquire(PHONES["pageNorth"], timeout=0)
        assert not await limiter.acquire(PHONES["pageNorth"], timeout=0)
        assert await limiter.acquire(PHONES["chatNorth"], timeout=0)
