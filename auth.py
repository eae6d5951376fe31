"""
auth.py

Very small shared-secret check for the GitLab webhook endpoint.

GitLab sends the secret configured on the webhook in the X-Gitlab-Token header.
When WEBHOOK_SECRET_TOKEN is empty the check is disabled (local/dev setups).
"""

import hmac
import logging
from functools import wraps
from typing import Callable, TypeVar

from flask import Response, current_app, jsonify, request

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., object])

SETTINGS_KEY = "RELAY_SETTINGS"


def _unauthorized() -> Response:
    resp = jsonify({"error": "Unauthorized"})
    resp.status_code = 401
    return resp


def token_matches(provided: str, expected: str) -> bool:
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def requires_gitlab_token(fn: F) -> F:
    """
    Flask decorator enforcing the X-Gitlab-Token shared secret.

    Reads the expected token from the app's Settings (WEBHOOK_SECRET_TOKEN).
    """

    @wraps(fn)
    def wrapper(*args, **kwargs):  # type: ignore[misc]
        expected = current_app.config[SETTINGS_KEY].webhook_secret_token
        if not expected:
            return fn(*args, **kwargs)

        provided = (request.headers.get("X-Gitlab-Token", "") or "").strip()
        if not provided or not token_matches(provided, expected):
            logger.warning(
                "[gitlab-webhook] secret token mismatch provided=%s expected=[REDACTED]",
                "[REDACTED]" if provided else "missing",
            )
            return _unauthorized()

        return fn(*args, **kwargs)

    return wrapper  # type: ignore[return-value]
