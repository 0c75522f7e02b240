"""
Configuration loader for the paced-replies service.
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
class TimingConfig:
    min_read_ms: int = 700
    max_total_ms: int = 45_000          # web chat UX cap
    seeded_pauses: bool = True          # False → pauses drawn from an unseeded source


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    queue_name: str = "reply-release"
    max_delay_seconds: int = 900        # per-message delay ceiling of the queue
    dedup_window_seconds: int = 300
    visibility_timeout_seconds: int = 60
    max_receive_count: int = 3          # receives before a message is dead-lettered


@dataclass
class ConsumerConfig:
    batch_size: int = 5
    poll_interval_seconds: float = 1.0
    concurrency: int = 1
    defer_tolerance_ms: int = 1000      # early releases below this are published as-is
    retry_delay_seconds: int = 0


@dataclass
class EventBusConfig:
    backend: str = "memory"             # "memory" | "redis" | "http"
    bus_name: str = "default"
    source: str = "kxgen.agent"
    redis_url: str = "redis://localhost:6379"
    endpoint_url: str = ""
    auth_token: str = ""
    timeout_seconds: float = 10.0


@dataclass
class ResponderConfig:
    base_url: str = ""
    path: str = "/respond"
    auth_token: str = ""
    timeout_seconds: float = 30.0


@dataclass
class SchedulerConfig:
    default_persona: str = "Carlos"
    rollback_on_failure: bool = True


@dataclass
class Settings:
    app_name: str = "PacedReplies"
    debug: bool = False
    timing: TimingConfig = field(default_factory=TimingConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    consumer: ConsumerConfig = field(default_factory=ConsumerConfig)
    event_bus: EventBusConfig = field(default_factory=EventBusConfig)
    responder: ResponderConfig = field(default_factory=ResponderConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    personas: dict[str, dict[str, Any]] = field(default_factory=dict)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
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


def _section(cls, raw: dict[str, Any], default):
    """Build a config dataclass from a raw section, keeping defaults for missing keys."""
    known = {k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__}
    values = {name: getattr(default, name) for name in cls.__dataclass_fields__}
    values.update(known)
    return cls(**values)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "PACED_REPLIES_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "timing" in raw:
            settings.timing = _section(TimingConfig, raw["timing"], settings.timing)
        if "queue" in raw:
            settings.queue = _section(QueueConfig, raw["queue"], settings.queue)
        if "consumer" in raw:
            settings.consumer = _section(ConsumerConfig, raw["consumer"], settings.consumer)
        if "event_bus" in raw:
            settings.event_bus = _section(EventBusConfig, raw["event_bus"], settings.event_bus)
        if "responder" in raw:
            settings.responder = _section(ResponderConfig, raw["responder"], settings.responder)
        if "scheduler" in raw:
            settings.scheduler = _section(SchedulerConfig, raw["scheduler"], settings.scheduler)

        settings.personas = raw.get("personas", {}) or {}

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
