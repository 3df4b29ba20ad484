"""Shared test fixtures for RadioPager."""
import pytest
import pytest_asyncio

from channels.base import InMemoryGateway
from config.secrets import StaticSecretProvider
from config.settings import Settings, settings_from_dict
from core.pipeline import Pipeline, build_pipeline
from database.store_memory import InMemoryCallStore
from job_queue.message_queue import InMemoryMessageQueue
from models.schemas import DepartmentMembership, Recipient
from storage.blob_store import InMemoryBlobStore
from transcription.service import InMemorySpeechToText
from utils.metrics import MetricsPublisher

from support import ALICE, BOB, CAROL, DAVE, SECRET, TESS, TEST_CONFIG, FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return settings_from_dict(TEST_CONFIG)


@pytest.fixture
def store() -> InMemoryCallStore:
    return InMemoryCallStore()


@pytest.fixture
def blobs() -> InMemoryBlobStore:
    return InMemoryBlobStore(bucket="radio-audio")


@pytest.fixture
def gateway() -> InMemoryGateway:
    return InMemoryGateway()


@pytest.fixture
def stt() -> InMemorySpeechToText:
    return InMemorySpeechToText()


@pytest.fixture
def queue() -> InMemoryMessageQueue:
    return InMemoryMessageQueue(retry_backoff_base=30)


@pytest.fixture
def metrics() -> MetricsPublisher:
    return MetricsPublisher(namespace="RadioPagerTest")


@pytest.fixture
def secrets() -> StaticSecretProvider:
    return StaticSecretProvider(SECRET)


@pytest.fixture
def recipients() -> list[Recipient]:
    """
    Alice: North admin, wants transcripts and on-call info.
    Bob: North member. Carol: transcripts only. Dave: South admin on 8332.
    Tess: test account.
    """
    def north(admin=False, sign=""):
        return {"North": DepartmentMembership(active=True, admin=admin, call_sign=sign)}

    return [
        Recipient(phone=ALICE, first_name="Alice", last_name="Archer", channels=[8330],
                  departments=north(admin=True, sign="N1"), get_transcript=True,
                  get_on_call_info=True, shift_person_id="p1"),
        Recipient(phone=BOB, first_name="Bob", last_name="Baker", channels=[8330],
                  departments=north(sign="N7")),
        Recipient(phone=CAROL, first_name="Carol", last_name="Cole", channels=[8330],
                  departments=north(), get_transcript=True, get_transcript_only=True),
        Recipient(phone=DAVE, first_name="Dave", last_name="Dunn", channels=[8332],
                  departments={"South": DepartmentMembership(active=True, admin=True)}),
        Recipient(phone=TESS, first_name="Tess", last_name="Tester", channels=[8330],
                  departments=north(), is_test=True),
    ]


@pytest_asyncio.fixture
async def pipeline(settings, store, blobs, queue, gateway, stt, metrics, secrets, clock,
                   recipients) -> Pipeline:
    for r in recipients:
        await store.upsert_recipient(r)
    return build_pipeline(
        settings,
        store=store,
        blobs=blobs,
        queue=queue,
        gateway=gateway,
        stt=stt,
        secrets=secrets,
        metrics=metrics,
        clock=clock,
    )
