from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


@dataclass(frozen=True)
class Settings:
    env: str
    redis_url: str
    postgres_dsn: Optional[str]
    service_name: str = "event-generator"
    registry_service_name: str = "event-registry"
    generation_enabled: bool = True
    generation_interval_seconds: float = 10.0
    block_ms: int = 5000
    read_count: int = 10
    max_attempts: int = 5
    retry_backoff_seconds: float = 0.5
    api_host: str = "0.0.0.0"
    api_port: int = 8000


_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m)?\s*$")


def parse_duration(value: Any) -> float:
    """Seconds from a number or a string like "10", "10s", "500ms", "2m"."""
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        m = _DURATION_RE.match(str(value))
        if not m:
            raise ValueError(f"invalid duration: {value!r}")
        seconds = float(m.group(1)) * {"ms": 0.001, "s": 1.0, "m": 60.0, None: 1.0}[m.group(2)]
    if seconds <= 0:
        raise ValueError("duration must be > 0")
    return seconds


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    s = str(value).strip().lower()
    if s in {"1", "true", "yes", "on"}:
        return True
    if s in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"invalid boolean: {value!r}")


def load_settings(path: str | Path = "config/settings.yaml") -> Settings:
    p = Path(path)
    data: Dict[str, Any] = yaml.safe_load(p.read_text(encoding="utf-8")) or {}

    # Env overrides (used for compose profile isolation).
    env_redis_url = os.getenv("EVENT_RELAY_REDIS_URL")
    env_postgres_dsn = os.getenv("EVENT_RELAY_POSTGRES_DSN")
    env_enabled = os.getenv("EVENT_RELAY_GENERATION_ENABLED")
    env_interval = os.getenv("EVENT_RELAY_GENERATION_INTERVAL")

    redis_section = data.get("redis", {})
    stream_section = redis_section.get("stream", {})
    generator_section = data.get("generator", {})
    generation_section = generator_section.get("generation", {})
    registry_section = data.get("registry", {})
    api_section = data.get("api", {})

    enabled = env_enabled if env_enabled is not None else generation_section.get("enabled", True)
    interval = env_interval if env_interval is not None else generation_section.get("interval", 10)

    return Settings(
        env=data.get("env", "dev"),
        redis_url=env_redis_url or redis_section["url"],
        postgres_dsn=env_postgres_dsn or (data.get("postgres") or {}).get("dsn"),
        service_name=generator_section.get("service_name", "event-generator"),
        registry_service_name=registry_section.get("service_name", "event-registry"),
        generation_enabled=parse_bool(enabled),
        generation_interval_seconds=parse_duration(interval),
        block_ms=int(stream_section.get("block_ms", 5000)),
        read_count=int(stream_section.get("read_count", 10)),
        max_attempts=int(stream_section.get("max_attempts", 5)),
        retry_backoff_seconds=float(stream_section.get("retry_backoff_seconds", 0.5)),
        api_host=api_section.get("host", "0.0.0.0"),
        api_port=int(api_section.get("port", 8000)),
    )
