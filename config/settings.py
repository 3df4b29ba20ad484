"""
Configuration loader for the RadioPager system.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./radio_pager.db"           # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                     # directory for file backend


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    consumer_concurrency: int = 5       # worker tasks per process
    poll_wait_s: float = 2.0            # long-poll wait of one receive
    delayed_promote_interval: int = 5   # seconds between delayed-queue scans
    retry_backoff_base: int = 30        # base seconds for exponential retry backoff
    max_receive_count: int = 2          # deliveries before a job is dead-lettered


@dataclass
class StorageConfig:
    backend: str = "memory"             # "memory" | "s3"
    bucket: str = "radio-audio"
    region: str = "us-east-2"


@dataclass
class DedupConfig:
    selection_buffer_s: float = 60.0    # loose window for the candidate query
    overlap_buffer_s: float = 1.0       # tight window for the in-memory overlap test
    multi_receiver_markers: list[str] = field(default_factory=lambda: ["/dtr"])


@dataclass
class RedirectConfig:
    ttl_seconds: int = 3600
    max_hops: int = 10


@dataclass
class TranscriptionConfig:
    backend: str = "memory"             # "memory" | "aws"
    region: str = "us-east-2"
    language_code: str = "en-US"
    vocabulary_name: str = ""
    max_speaker_labels: int = 5


@dataclass
class PhoneNumberConfig:
    number: str = ""
    type: str = "page"                  # page | alert | chat
    account: str = ""                   # suffix of the credential pair in the secret
    department: str = ""


@dataclass
class TwilioConfig:
    gateway: str = "memory"            # "memory" | "twilio"
    rate_per_second: float = 10.0
    secret_provider: str = "env"        # "env" | "aws" | "static"
    secret_id: str = ""
    region: str = "us-east-2"
    status_callback_base: str = ""
    phone_cache_ttl_s: int = 300
    phone_numbers: dict[str, PhoneNumberConfig] = field(default_factory=dict)


@dataclass
class ShiftConfig:
    bucket: str = ""
    key: str = "shift-data.json"
    cache_ttl_s: int = 300


@dataclass
class MetricsConfig:
    use_cloudwatch: bool = False
    namespace: str = "RadioPager"
    region: str = "us-east-2"


@dataclass
class PagingChannelConfig:
    paged_service: str = ""             # e.g. "FIRE"
    party_being_paged: str = ""         # label shown in the page body
    link_preset: str = ""
    cost_center: str = ""
    duty_groups: dict[str, str] = field(default_factory=dict)   # shift department -> display name


@dataclass
class DepartmentConfig:
    name: str = ""
    short_name: str = ""
    type: str = "page"                  # page | text
    page_phone: str = "page"
    text_phone: str = ""


@dataclass
class Settings:
    app_name: str = "RadioPager"
    debug: bool = False
    timezone: str = "America/Denver"
    link_base_url: str = "https://radio.example.org"
    test_recipient_phone: str = ""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    redirect: RedirectConfig = field(default_factory=RedirectConfig)
    transcription: TranscriptionConfig = field(default_factory=TranscriptionConfig)
    twilio: TwilioConfig = field(default_factory=TwilioConfig)
    shifts: ShiftConfig = field(default_factory=ShiftConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    paging_channels: dict[int, PagingChannelConfig] = field(default_factory=dict)
    departments: dict[str, DepartmentConfig] = field(default_factory=dict)


_settings: Optional[Settings] = None

# ${NAME} or ${NAME:-fallback}; an unset NAME without a fallback stays literal
_ENV_REF = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")

_SECTIONS: dict[str, type] = {
    "database": DatabaseConfig,
    "queue": QueueConfig,
    "storage": StorageConfig,
    "dedup": DedupConfig,
    "redirect": RedirectConfig,
    "transcription": TranscriptionConfig,
    "shifts": ShiftConfig,
    "metrics": MetricsConfig,
}


def _expand_env(value: Any) -> Any:
    if isinstance(value, str):
        return _ENV_REF.sub(
            lambda m: os.environ.get(m.group(1), m.group(2) if m.group(2) is not None else m.group(0)),
            value,
        )
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def _build(cls, data: Optional[dict[str, Any]]):
    """Instantiate a flat config dataclass, ignoring unknown keys."""
    known = cls.__dataclass_fields__
    return cls(**{k: v for k, v in (data or {}).items() if k in known})


def settings_from_dict(raw: dict[str, Any]) -> Settings:
    """Build Settings from a parsed mapping; absent sections keep their defaults."""
    raw = _expand_env(raw or {})
    settings = _build(Settings, {k: v for k, v in raw.items() if not isinstance(v, dict)})
    settings.test_recipient_phone = str(settings.test_recipient_phone or "")

    for name, cls in _SECTIONS.items():
        if name in raw:
            setattr(settings, name, _build(cls, raw[name]))

    twilio = dict(raw.get("twilio") or {})
    numbers = twilio.pop("phone_numbers", None) or {}
    settings.twilio = _build(TwilioConfig, twilio)
    settings.twilio.phone_numbers = {
        category: _build(PhoneNumberConfig, cfg) for category, cfg in numbers.items()
    }

    settings.paging_channels = {
        int(channel): _build(PagingChannelConfig, cfg)
        for channel, cfg in (raw.get("paging_channels") or {}).items()
    }
    for name, cfg in (raw.get("departments") or {}).items():
        department = _build(DepartmentConfig, cfg)
        department.name = department.name or name
        settings.departments[name] = department
    return settings


def load_settings(config_path: Optional[str] = None) -> Settings:
    """Read the YAML file at ``config_path``, $RADIO_PAGER_CONFIG or the bundled default."""
    global _settings
    path = Path(config_path or os.environ.get("RADIO_PAGER_CONFIG")
                or Path(__file__).parent / "settings.yaml")
    raw: dict[str, Any] = {}
    if path.exists():
        raw = yaml.safe_load(path.read_text()) or {}
    _settings = settings_from_dict(raw)
    return _settings


def get_settings() -> Settings:
    if _settings is None:
        return load_settings()
    return _settings
