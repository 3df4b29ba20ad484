"""
Shared credential access.

A SecretProvider loads the messaging gateway credentials at most once per
process and hands the same mapping to every component it is injected into.
Loading is guarded by a lock so concurrent first calls (threads spawned by
asyncio.to_thread included) never fetch twice.
"""
from __future__ import annotations

import asyncio
import json
import os
import threading
import structlog
from typing import Any, Optional

logger = structlog.get_logger()


class SecretProvider:
    """Lazily-initialized, thread-safe accessor for a secret mapping."""

    def __init__(self, loader=None):
        self._loader = loader or (lambda: {})
        self._lock = threading.Lock()
        self._value: Optional[dict[str, Any]] = None

    def get(self) -> dict[str, Any]:
        if self._value is None:
            with self._lock:
                if self._value is None:
                    self._value = dict(self._loader())
                    logger.info("secret_loaded", keys=len(self._value))
        return self._value

    async def aget(self) -> dict[str, Any]:
        if self._value is not None:
            return self._value
        return await asyncio.to_thread(self.get)

    def refresh(self) -> None:
        """Drop the cached value; the next get() reloads it."""
        with self._lock:
            self._value = None


class StaticSecretProvider(SecretProvider):
    """Fixed secret mapping, used in tests and local development."""

    def __init__(self, value: dict[str, Any]):
        super().__init__(loader=lambda: value)


def _load_env_secret() -> dict[str, Any]:
    prefix = "TWILIO_"
    return {
        _env_key_to_secret_key(k[len(prefix):]): v
        for k, v in os.environ.items() if k.startswith(prefix)
    }


def _env_key_to_secret_key(suffix: str) -> str:
    # TWILIO_ACCOUNT_SID_NORTH -> accountSidNorth
    parts = suffix.lower().split("_")
    return parts[0] + "".join(p.capitalize() for p in parts[1:])


def _aws_loader(secret_id: str, region: str):
    def load() -> dict[str, Any]:
        import boto3
        client = boto3.client("secretsmanager", region_name=region)
        resp = client.get_secret_value(SecretId=secret_id)
        return json.loads(resp["SecretString"])
    return load


def create_secret_provider(twilio_config) -> SecretProvider:
    """Factory: pick the secret source from configuration."""
    source = twilio_config.secret_provider
    if source == "aws":
        logger.info("secret_provider_created", source="aws", secret_id=twilio_config.secret_id)
        return SecretProvider(_aws_loader(twilio_config.secret_id, twilio_config.region))
    if source == "static":
        return StaticSecretProvider({})
    logger.info("secret_provider_created", source="env")
    return SecretProvider(_load_env_secret)
