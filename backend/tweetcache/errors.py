"""Error taxonomy for the fetch/cache/select pipeline.

HTTP mapping happens at the API edge (``tweetcache.api.cron``):

- ``AuthError``      -> 401, never retried
- ``ConfigError``    -> 500, operator-fixable
- ``UpstreamError``  -> 500, retried only by the next scheduled trigger
- ``StorageError``   -> logged; best-effort, never surfaced
- ``InvalidItemError`` -> item filtered from the pool, never fatal
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tweetcache.rate_limit import UpstreamBudget


class TweetCacheError(Exception):
    """Base class for all pipeline errors."""

    step: str = "unknown"

    def __init__(self, message: str, *, step: str | None = None):
        super().__init__(message)
        if step is not None:
            self.step = step


class AuthError(TweetCacheError):
    step = "auth-check"


class ConfigError(TweetCacheError):
    step = "config-error"


class UpstreamError(TweetCacheError):
    """Upstream call failed or returned malformed data."""

    step = "search-error"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        budget: UpstreamBudget | None = None,
        step: str | None = None,
    ):
        super().__init__(message, step=step)
        self.status_code = status_code
        self.budget = budget


class StorageError(TweetCacheError):
    """Blob backend read/write/list/delete failure."""

    step = "storage-error"

    def __init__(self, message: str, *, operation: str = "unknown", step: str | None = None):
        super().__init__(message, step=step)
        self.operation = operation


class InvalidItemError(TweetCacheError, ValueError):
    step = "validation"
