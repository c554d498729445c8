"""Blob storage backends.

The cache only needs four primitives (list by prefix, put, get, delete),
addressed by key on write and by the returned URL afterwards. Every backend
wraps its own failures in ``StorageError`` so callers handle one type.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable
from urllib.parse import unquote, urlparse

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tweetcache.db import Base
from tweetcache.errors import StorageError
from tweetcache.models.blob import Blob


@dataclass(frozen=True)
class BlobInfo:
    key: str
    url: str
    size: int
    written_at: datetime


class BlobBackend(ABC):
    """Abstract base class for blob storage backends."""

    @abstractmethod
    async def list(self, prefix: str) -> list[BlobInfo]:
        """Return every blob whose key starts with ``prefix``."""

    @abstractmethod
    async def put(self, key: str, body: bytes) -> str:
        """Store ``body`` under ``key`` (overwriting) and return its URL."""

    @abstractmethod
    async def get(self, url: str) -> bytes:
        """Fetch a blob body by URL."""

    @abstractmethod
    async def delete(self, url: str) -> None:
        """Delete a blob by URL."""


class InMemoryBlobBackend(BlobBackend):
    """Dict-backed backend for development and tests."""

    scheme = "memory://"

    def __init__(self, clock: Callable[[], datetime] | None = None):
        self._blobs: dict[str, tuple[bytes, datetime]] = {}
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _url(self, key: str) -> str:
        return f"{self.scheme}{key}"

    def _key(self, url: str) -> str:
        if not url.startswith(self.scheme):
            raise StorageError(f"Not a memory blob URL: {url}", operation="resolve")
        return url[len(self.scheme):]

    async def list(self, prefix: str) -> list[BlobInfo]:
        return [
            BlobInfo(key=key, url=self._url(key), size=len(body), written_at=written_at)
            for key, (body, written_at) in self._blobs.items()
            if key.startswith(prefix)
        ]

    async def put(self, key: str, body: bytes) -> str:
        self._blobs[key] = (bytes(body), self._clock())
        return self._url(key)

    async def get(self, url: str) -> bytes:
        key = self._key(url)
        try:
            return self._blobs[key][0]
        except KeyError:
            raise StorageError(f"Blob not found: {key}", operation="get") from None

    async def delete(self, url: str) -> None:
        key = self._key(url)
        if self._blobs.pop(key, None) is None:
            raise StorageError(f"Blob not found: {key}", operation="delete")


class LocalBlobBackend(BlobBackend):
    """Blobs as files under a root directory; key separators map to subdirectories."""

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root not in path.parents:
            raise StorageError(f"Key escapes storage root: {key}", operation="resolve")
        return path

    def _path_from_url(self, url: str) -> Path:
        parsed = urlparse(url)
        if parsed.scheme != "file":
            raise StorageError(f"Not a file URL: {url}", operation="resolve")
        path = Path(unquote(parsed.path)).resolve()
        if self.root not in path.parents:
            raise StorageError(f"URL outside storage root: {url}", operation="resolve")
        return path

    def _list_sync(self, prefix: str) -> list[BlobInfo]:
        if not self.root.exists():
            return []
        rows = []
        for path in self.root.rglob("*"):
            if not path.is_file() or path.suffix == ".tmp":
                continue
            key = path.relative_to(self.root).as_posix()
            if not key.startswith(prefix):
                continue
            stat = path.stat()
            rows.append(
                BlobInfo(
                    key=key,
                    url=path.as_uri(),
                    size=stat.st_size,
                    written_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                )
            )
        return rows

    def _put_sync(self, key: str, body: bytes) -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(body)
        tmp.replace(path)
        return path.as_uri()

    async def list(self, prefix: str) -> list[BlobInfo]:
        try:
            return await asyncio.to_thread(self._list_sync, prefix)
        except OSError as exc:
            raise StorageError(f"List failed for {prefix!r}: {exc}", operation="list") from exc

    async def put(self, key: str, body: bytes) -> str:
        try:
            return await asyncio.to_thread(self._put_sync, key, body)
        except OSError as exc:
            raise StorageError(f"Write failed for {key!r}: {exc}", operation="put") from exc

    async def get(self, url: str) -> bytes:
        path = self._path_from_url(url)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise StorageError(f"Read failed for {url}: {exc}", operation="get") from exc

    async def delete(self, url: str) -> None:
        path = self._path_from_url(url)
        try:
            await asyncio.to_thread(path.unlink)
        except OSError as exc:
            raise StorageError(f"Delete failed for {url}: {exc}", operation="delete") from exc


class SqlBlobBackend(BlobBackend):
    """Blobs as rows in the ``blobs`` table (SQLAlchemy async)."""

    scheme = "sql://blobs/"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create_schema(self) -> None:
        try:
            async with self._session_factory() as session:
                conn = await session.connection()
                await conn.run_sync(Base.metadata.create_all)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"Schema creation failed: {exc}", operation="schema") from exc

    def _key(self, url: str) -> str:
        if not url.startswith(self.scheme):
            raise StorageError(f"Not a SQL blob URL: {url}", operation="resolve")
        return url[len(self.scheme):]

    async def list(self, prefix: str) -> list[BlobInfo]:
        stmt = select(Blob.key, Blob.size, Blob.written_at).where(Blob.key.startswith(prefix, autoescape=True))
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            raise StorageError(f"List failed for {prefix!r}: {exc}", operation="list") from exc
        return [
            BlobInfo(key=key, url=f"{self.scheme}{key}", size=size, written_at=written_at)
            for key, size, written_at in rows
        ]

    async def put(self, key: str, body: bytes) -> str:
        try:
            async with self._session_factory() as session:
                existing = (await session.execute(select(Blob).where(Blob.key == key))).scalar()
                if existing is not None:
                    existing.body = body
                    existing.size = len(body)
                    existing.written_at = datetime.now(timezone.utc)
                else:
                    session.add(Blob(key=key, body=body, size=len(body), written_at=datetime.now(timezone.utc)))
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"Write failed for {key!r}: {exc}", operation="put") from exc
        return f"{self.scheme}{key}"

    async def get(self, url: str) -> bytes:
        key = self._key(url)
        try:
            async with self._session_factory() as session:
                body = (await session.execute(select(Blob.body).where(Blob.key == key))).scalar()
        except SQLAlchemyError as exc:
            raise StorageError(f"Read failed for {key!r}: {exc}", operation="get") from exc
        if body is None:
            raise StorageError(f"Blob not found: {key}", operation="get")
        return bytes(body)

    async def delete(self, url: str) -> None:
        key = self._key(url)
        try:
            async with self._session_factory() as session:
                await session.execute(delete(Blob).where(Blob.key == key))
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"Delete failed for {key!r}: {exc}", operation="delete") from exc
