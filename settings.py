"""
settings.py

Environment-backed configuration for the relay.

All values come from environment variables (optionally loaded from .env at app startup).
Values are read once per app instance; tests build `Settings(...)` directly instead of touching os.environ.
"""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

from gitlab_helpers import parse_bool

DEFAULT_PORT = 33333
DEFAULT_HEARTBEAT_INTERVAL = 30.0
DEFAULT_INTERNAL_HOST_PATTERNS = ("gitlab-0",)


@dataclass(frozen=True)
class Settings:
    port: int = DEFAULT_PORT
    host: str = "0.0.0.0"
    # True when HOST was set explicitly (used as the display host in startup logs).
    host_configured: bool = False
    webhook_secret_token: str = ""
    wechat_work_webhook_url: str = ""
    heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL
    sse_queue_size: int = 200
    sse_write_timeout: float = 1.0
    dispatch_workers: int = 4
    internal_host_patterns: Tuple[str, ...] = field(default=DEFAULT_INTERNAL_HOST_PATTERNS)
    log_level: str = "INFO"
    debug_dump_events: bool = False

    def is_internal_instance_url(self, url: Optional[str]) -> bool:
        """
        True when an X-Gitlab-Instance value cannot be used to build links for humans:
        empty, or matching one of the configured internal host patterns (e.g. a k8s pod name).
        """
        if not url or not isinstance(url, str):
            return True
        u = url.strip()
        if not u:
            return True
        return any(p and p in u for p in self.internal_host_patterns)


def _env_str(env: Mapping[str, str], key: str, default: str = "") -> str:
    return (env.get(key, default) or default).strip()


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = _env_str(env, key)
    if not raw:
        return default
    try:
        v = int(raw)
    except ValueError:
        return default
    return v if v > 0 else default


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = _env_str(env, key)
    if not raw:
        return default
    try:
        v = float(raw)
    except ValueError:
        return default
    return v if v > 0 else default


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from environment variables.

    Env vars:
    - PORT (default: 33333), HOST (default: 0.0.0.0)
    - WEBHOOK_SECRET_TOKEN (optional): expected X-Gitlab-Token value
    - WECHAT_WORK_WEBHOOK_URL (optional): enables the chat-webhook notifier
    - SSE_HEARTBEAT_INTERVAL, SSE_QUEUE_SIZE, SSE_WRITE_TIMEOUT
    - DISPATCH_WORKERS
    - GITLAB_INTERNAL_HOST_PATTERNS (comma separated, default: gitlab-0)
    - LOG_LEVEL (default: INFO), WEBHOOK_DEBUG_DUMP_EVENT=1
    """
    env = os.environ if env is None else env

    raw_patterns = env.get("GITLAB_INTERNAL_HOST_PATTERNS")
    if raw_patterns is None:
        patterns = DEFAULT_INTERNAL_HOST_PATTERNS
    else:
        patterns = tuple(p.strip() for p in raw_patterns.split(",") if p.strip())

    host = _env_str(env, "HOST")
    return Settings(
        port=_env_int(env, "PORT", DEFAULT_PORT),
        host=host or "0.0.0.0",
        host_configured=bool(host),
        webhook_secret_token=_env_str(env, "WEBHOOK_SECRET_TOKEN"),
        wechat_work_webhook_url=_env_str(env, "WECHAT_WORK_WEBHOOK_URL"),
        heartbeat_interval=_env_float(env, "SSE_HEARTBEAT_INTERVAL", DEFAULT_HEARTBEAT_INTERVAL),
        sse_queue_size=_env_int(env, "SSE_QUEUE_SIZE", 200),
        sse_write_timeout=_env_float(env, "SSE_WRITE_TIMEOUT", 1.0),
        dispatch_workers=_env_int(env, "DISPATCH_WORKERS", 4),
        internal_host_patterns=patterns,
        log_level=(_env_str(env, "LOG_LEVEL", "INFO") or "INFO").upper(),
        debug_dump_events=parse_bool(env.get("WEBHOOK_DEBUG_DUMP_EVENT"), False),
    )
