from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _source_url() -> str:
    raw = os.getenv("CONVEX_URL") or os.getenv("NEXT_PUBLIC_CONVEX_URL") or ""
    return raw.rstrip("/")


def _default_worker_cmd() -> str:
    return f"{shlex.quote(sys.executable)} -m bot"


@dataclass(frozen=True)
class Settings:
    # Config source
    source_url: str = _source_url()
    backend_key: str | None = os.getenv("DISCORD_BACKEND_KEY")
    source_path: str = os.getenv("SUPERVISOR_SOURCE_PATH", "discord:listActiveConfigs")
    source_timeout_s: float = _env_float("SUPERVISOR_SOURCE_TIMEOUT_S", 10.0)

    # Reconciliation
    poll_interval_ms: int = _env_int("SUPERVISOR_POLL_MS", 30000)

    # Workers
    worker_cmd: str = os.getenv("SUPERVISOR_WORKER_CMD") or _default_worker_cmd()
    # Seconds between SIGTERM and SIGKILL for a stopped worker; 0 = never escalate.
    stop_grace_s: float = _env_float("SUPERVISOR_STOP_GRACE_S", 10.0)
    crash_backoff_s: float = _env_float("SUPERVISOR_CRASH_BACKOFF_S", 0.0)
    crash_backoff_max_s: float = _env_float("SUPERVISOR_CRASH_BACKOFF_MAX_S", 300.0)

    # Liveness endpoint
    host: str = os.getenv("SUPERVISOR_HOST", "0.0.0.0")
    port: int = _env_int("PORT", 0)

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "info")
    event_buffer: int = _env_int("SUPERVISOR_EVENT_BUFFER", 200)

    @property
    def poll_interval_s(self) -> float:
        return max(1, self.poll_interval_ms) / 1000.0

    def worker_command(self) -> list[str]:
        return shlex.split(self.worker_cmd)

    def missing(self) -> list[str]:
        """Names of required settings that are not configured."""
        out = []
        if not self.source_url:
            out.append("CONVEX_URL")
        if not self.backend_key:
            out.append("DISCORD_BACKEND_KEY")
        return out


settings = Settings()
