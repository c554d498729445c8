"""Models package: re-export all ORM classes for metadata creation."""
from tweetcache.models.blob import Blob  # noqa: F401
