"""Shared request dependencies."""
from __future__ import annotations

import hmac

from fastapi import Request

from tweetcache.errors import AuthError
from tweetcache.services import Services


def get_services(request: Request) -> Services:
    """FastAPI dependency: the process-wide service object built in lifespan."""
    return request.app.state.services


def verify_bearer(authorization: str | None, secret: str) -> None:
    """Byte-for-byte comparison of the Authorization header against the shared secret."""
    if not secret:
        raise AuthError("Cron secret is not configured")
    if not authorization:
        raise AuthError("Missing Authorization header")
    expected = f"Bearer {secret}".encode("utf-8")
    if not hmac.compare_digest(authorization.encode("utf-8"), expected):
        raise AuthError("Invalid bearer token")
