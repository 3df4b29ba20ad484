"""
Speech-to-text service backends.

The recognition itself is opaque: a job is submitted with a media URI and
a set of tags, and completes asynchronously. Completion is announced on the
pipeline queue as a ``transcribe-result`` message.

Implementations:
  - InMemorySpeechToText  (jobs complete when a test calls ``complete``)
  - AwsTranscribeService  (AWS Transcribe via boto3, transcript JSON via httpx)
"""
from __future__ import annotations

import abc
import asyncio
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import TranscriptionConfig
from core.errors import PipelineError
from models.schemas import TranscriptionJob

logger = structlog.get_logger()


class TranscriptionServiceError(PipelineError):
    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message, retryable=retryable)


class SpeechToTextService(abc.ABC):

    @abc.abstractmethod
    async def start_job(self, job_name: str, media_uri: str, tags: dict[str, str]) -> TranscriptionJob:
        ...

    @abc.abstractmethod
    async def get_job(self, job_name: str) -> TranscriptionJob:
        ...

    @abc.abstractmethod
    async def fetch_transcript(self, transcript_uri: str) -> str:
        """Plain transcript text at ``transcript_uri``; empty when nothing was recognised."""
        ...


class InMemorySpeechToText(SpeechToTextService):

    def __init__(self):
        self.jobs: dict[str, TranscriptionJob] = {}
        self._transcripts: dict[str, str] = {}

    async def start_job(self, job_name: str, media_uri: str, tags: dict[str, str]) -> TranscriptionJob:
        job = TranscriptionJob(job_name=job_name, media_uri=media_uri, tags=dict(tags))
        self.jobs[job_name] = job
        logger.info("transcription_job_started", job_name=job_name, backend="memory")
        return job

    def complete(self, job_name: str, text: str) -> TranscriptionJob:
        """Finish a job with ``text`` as its transcript."""
        uri = f"memory://transcripts/{job_name}.json"
        self._transcripts[uri] = text
        job = self.jobs.get(job_name) or TranscriptionJob(job_name=job_name)
        job = job.model_copy(update={"status": "COMPLETED", "transcript_uri": uri})
        self.jobs[job_name] = job
        return job

    async def get_job(self, job_name: str) -> TranscriptionJob:
        if job_name not in self.jobs:
            raise TranscriptionServiceError(f"Unknown transcription job - {job_name}", retryable=False)
        return self.jobs[job_name]

    async def fetch_transcript(self, transcript_uri: str) -> str:
        if transcript_uri not in self._transcripts:
            raise TranscriptionServiceError(f"Transcript not found - {transcript_uri}")
        return self._transcripts[transcript_uri]


class AwsTranscribeService(SpeechToTextService):
    """AWS Transcribe. The boto3 client is created lazily."""

    def __init__(self, config: TranscriptionConfig, client=None,
                 http_transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._client = client
        self._http_transport = http_transport

    def _transcribe(self):
        if self._client is None:
            import boto3
            self._client = boto3.client("transcribe", region_name=self.config.region)
        return self._client

    async def start_job(self, job_name: str, media_uri: str, tags: dict[str, str]) -> TranscriptionJob:
        job_settings: dict[str, Any] = {
            "MaxSpeakerLabels": self.config.max_speaker_labels,
            "ShowSpeakerLabels": True,
        }
        if self.config.vocabulary_name:
            job_settings["VocabularyName"] = self.config.vocabulary_name

        await asyncio.to_thread(
            self._transcribe().start_transcription_job,
            TranscriptionJobName=job_name,
            LanguageCode=self.config.language_code,
            Media={"MediaFileUri": media_uri},
            Settings=job_settings,
            Tags=[{"Key": k, "Value": v} for k, v in tags.items()],
        )
        logger.info("transcription_job_started", job_name=job_name, media_uri=media_uri)
        return TranscriptionJob(job_name=job_name, media_uri=media_uri, tags=dict(tags))

    async def get_job(self, job_name: str) -> TranscriptionJob:
        resp = await asyncio.to_thread(
            self._transcribe().get_transcription_job,
            TranscriptionJobName=job_name,
        )
        info = resp.get("TranscriptionJob") or {}
        return TranscriptionJob(
            job_name=job_name,
            media_uri=(info.get("Media") or {}).get("MediaFileUri", ""),
            tags={t["Key"]: t["Value"] for t in info.get("Tags") or []},
            status=info.get("TranscriptionJobStatus", ""),
            transcript_uri=(info.get("Transcript") or {}).get("TranscriptFileUri"),
        )

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=5),
        reraise=True,
    )
    async def _download(self, uri: str) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=10.0),
                                     transport=self._http_transport) as client:
            resp = await client.get(uri)
            resp.raise_for_status()
            return resp.json()

    async def fetch_transcript(self, transcript_uri: str) -> str:
        try:
            data = await self._download(transcript_uri)
        except httpx.HTTPError as e:
            raise TranscriptionServiceError(f"Transcript download failed: {e}") from e
        transcripts = (data.get("results") or {}).get("transcripts") or []
        return transcripts[0].get("transcript", "") if transcripts else ""


def create_transcription_service(config: TranscriptionConfig) -> SpeechToTextService:
    """Factory: pick the speech-to-text backend from configuration."""
    if config.backend == "aws":
        logger.info("transcription_service_created", backend="aws", region=config.region)
        return AwsTranscribeService(config)
    logger.info("transcription_service_created", backend="memory")
    return InMemorySpeechToText()
