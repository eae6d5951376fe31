"""
gitlab_helpers.py

Small helper utilities used across the Flask app, the client registry and the webhook pipeline.

Key goals:
- Keep the error taxonomy in one place
- Provide small, reusable utilities (safe field access, id normalization, URL rewriting)
"""

import json
import logging
import socket
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)


class RelayError(Exception):
    """Base class for errors raised by the relay."""


class InvalidArgument(RelayError, ValueError):
    """A required identity (e.g. userId) is missing or empty."""


class TransportWriteFailure(RelayError):
    """A single streaming connection refused a write (closed or backed up)."""


def safe_get(obj: Any, key: str, default: Any = None) -> Any:
    """
    Safely read a field from a dict-like payload node.
    GitLab payloads are loosely shaped: nested nodes can be missing, null or even a list.
    """
    if isinstance(obj, dict):
        value = obj.get(key, default)
        return default if value is None else value
    return default


def first_non_empty(*values: Any) -> Optional[str]:
    for v in values:
        if v is None:
            continue
        s = str(v).strip()
        if s:
            return s
    return None


def normalize_id(value: Any) -> Optional[str]:
    """
    Normalize a subscriber id to a trimmed, non-empty string.
    None and blank values return None.
    """
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def strip_trailing_slash(url: Any) -> str:
    """Non-string input (a stray number or bool from a JSON body) counts as no URL."""
    if not isinstance(url, str):
        return ""
    return url.strip().rstrip("/")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def resolve_url_with_instance(url: Optional[str], instance_base_url: Optional[str]) -> str:
    """
    Rewrite a GitLab link so that a human can open it.

    - Absolute http(s) URL: keep path + query + fragment, replace the origin with the instance base URL.
    - Anything else (relative path, or "gitlab-0/group/project" without scheme): append it as a path.
    - No base URL: return the link untouched.
    """
    if not url or not isinstance(url, str):
        return url or ""
    base = strip_trailing_slash(instance_base_url)
    if not base:
        return url
    if url.startswith("http://") or url.startswith("https://"):
        try:
            parts = urlsplit(url)
        except ValueError:
            return url
        out = base + parts.path
        if parts.query:
            out += "?" + parts.query
        if parts.fragment:
            out += "#" + parts.fragment
        return out
    path = url if url.startswith("/") else f"/{url}"
    return base + path


def get_local_ip() -> str:
    """
    Best-effort discovery of the first non-loopback IPv4 address (display only).
    Falls back to 127.0.0.1.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            # UDP connect does not send anything, it only selects the outbound interface.
            s.connect(("10.255.255.255", 1))
            ip = s.getsockname()[0]
            if ip and not ip.startswith("127."):
                return ip
    except OSError:
        pass
    try:
        for info in socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET):
            ip = info[4][0]
            if not ip.startswith("127."):
                return ip
    except OSError:
        pass
    return "127.0.0.1"


def debug_dump(obj: Any, enabled: bool) -> None:
    """
    Dump raw payloads only when explicitly enabled (useful for debugging webhooks without flooding logs).
    Enable with: WEBHOOK_DEBUG_DUMP_EVENT=1
    """
    if not enabled:
        return
    try:
        logger.debug("[debug-dump] %s", json.dumps(obj, ensure_ascii=False, default=str))
    except (TypeError, ValueError):
        logger.debug("[debug-dump] %r", obj)


def parse_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return bool(default)
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    s = str(value).strip().lower()
    if s in ("1", "true", "yes", "y", "on"):
        return True
    if s in ("0", "false", "no", "n", "off", ""):
        return False
    return bool(default)
