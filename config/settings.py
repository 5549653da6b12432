"""
Configuration loader for the LeadFlow service.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./leadflow.db"               # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                     # directory for file backend


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    consumer_group: str = "outbound-workers"
    consumer_concurrency: int = 5       # max concurrent deferred sends per worker
    delayed_promote_interval: float = 0.5   # seconds between delayed-queue scans
    retry_backoff_base: int = 5         # base seconds for exponential retry backoff
    max_attempts: int = 2               # per deferred command, then dead-lettered
    max_lateness_seconds: int = 600     # deferred commands older than this are dropped


@dataclass
class WhatsAppConfig:
    phone_number_id: str = ""
    access_token: str = ""              # empty → mock mode, nothing leaves the process
    verify_token: str = ""
    app_secret: str = ""                # empty → signature check disabled
    api_version: str = "v21.0"
    base_url: str = "https://graph.facebook.com"
    timeout_seconds: float = 15.0
    rate_per_second: float = 80.0
    burst: int = 100


@dataclass
class ContentConfig:
    brand_name: str = "ANGILL Hybrid Healthcare"
    onboarding_video_url: str = "https://youtu.be/example"
    registration_url: str = "https://angill.pk/doctor-register"
    cyber_clinic_pdf_url: str = "https://example.com/brochure.pdf"
    roi_pdf_url: str = "https://example.com/roi.pdf"
    cost_plan_pdf_url: str = "https://example.com/cost.pdf"
    smart_calendar_demo_url: str = "https://youtu.be/demo"
    calendly_url: str = "https://calendly.com/angill-clinic/demo"
    referral_base_url: str = "https://angill.pk/join"


@dataclass
class FollowUpConfig:
    enabled: bool = True
    tick_interval_seconds: int = 3600
    first_delay_hours: int = 24
    cadence_days: int = 2
    max_follow_ups: int = 4
    batch_size: int = 500


@dataclass
class PacingConfig:
    """Presentation delays (seconds) between paced messages."""
    menu_delay: float = 2.0
    track_prompt_delay: float = 2.0
    brochure_delay: float = 1.5
    cyber_clinic_prompt_delay: float = 3.0


@dataclass
class LockConfig:
    backend: str = "memory"             # "memory" (single process) or "redis"
    redis_url: str = "redis://localhost:6379"
    ttl_ms: int = 10000


@dataclass
class Settings:
    app_name: str = "LeadFlow"
    debug: bool = False
    timezone: str = "UTC"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    content: ContentConfig = field(default_factory=ContentConfig)
    followup: FollowUpConfig = field(default_factory=FollowUpConfig)
    pacing: PacingConfig = field(default_factory=PacingConfig)
    locks: LockConfig = field(default_factory=LockConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _build_section(cls, raw: dict[str, Any]):
    """Build a config dataclass from a raw mapping, ignoring unknown keys and blanks."""
    defaults = cls()
    kwargs = {}
    for f in fields(cls):
        if f.name not in raw:
            continue
        value = raw[f.name]
        if value == "" or value is None:
            value = getattr(defaults, f.name)
        kwargs[f.name] = value
    return cls(**kwargs)


_SECTIONS = {
    "database": DatabaseConfig,
    "queue": QueueConfig,
    "whatsapp": WhatsAppConfig,
    "content": ContentConfig,
    "followup": FollowUpConfig,
    "pacing": PacingConfig,
    "locks": LockConfig,
}


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "LEADFLOW_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)

        for section, cls in _SECTIONS.items():
            if section in raw:
                setattr(settings, section, _build_section(cls, raw[section] or {}))

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
