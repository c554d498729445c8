"""Item / Snapshot / SelectionSet models and the NotFound / Failure read results.

Items keep the upstream (X API v2) field names on the wire so a snapshot body
is readable next to a raw API response. Metrics and entity payloads stay
opaque dicts; only entity presence is ever inspected.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

from tweetcache.errors import InvalidItemError

logger = logging.getLogger(__name__)

ENTITY_KINDS = ("urls", "mentions", "hashtags", "media")


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Best-effort ISO-8601 parse; None when the value is missing or malformed."""
    if isinstance(value, datetime):
        return _utc(value)
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return _utc(datetime.fromisoformat(raw))
    except ValueError:
        return None


class Entities(BaseModel):
    model_config = ConfigDict(extra="allow")

    urls: list[dict[str, Any]] = Field(default_factory=list)
    mentions: list[dict[str, Any]] = Field(default_factory=list)
    hashtags: list[dict[str, Any]] = Field(default_factory=list)
    media: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator(*ENTITY_KINDS, mode="before")
    @classmethod
    def coerce_entity_list(cls, v: Any) -> list[dict[str, Any]]:
        if not isinstance(v, list):
            return []
        return [e for e in v if isinstance(e, dict)]

    def count(self) -> int:
        return sum(len(getattr(self, kind)) for kind in ENTITY_KINDS)


class Item(BaseModel):
    """One upstream post, validated."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    text: str
    # absent keys still pass through repair_created_at
    created_at: datetime = Field(default=None, validate_default=True)
    author_id: str = ""
    metrics: dict[str, Any] = Field(default_factory=dict, alias="public_metrics")
    entities: Entities = Field(default_factory=Entities)
    edit_history_ids: list[str] = Field(default_factory=list, alias="edit_history_tweet_ids")

    @field_validator("id", "text", mode="before")
    @classmethod
    def require_non_empty(cls, v: Any) -> str:
        if v is None:
            raise ValueError("must be present")
        if isinstance(v, bool) or not isinstance(v, (str, int)):
            raise ValueError("must be a string")
        value = str(v)
        if not value.strip():
            raise ValueError("must be non-empty")
        return value

    @field_validator("created_at", mode="before")
    @classmethod
    def repair_created_at(cls, v: Any, info: ValidationInfo) -> datetime:
        parsed = parse_timestamp(v)
        if parsed is not None:
            return parsed
        context = info.context or {}
        fallback = context.get("fetched_at") or datetime.now(timezone.utc)
        logger.warning(
            "Repairing missing/malformed created_at with fetch time",
            extra={"step": "validation", "raw_created_at": str(v)[:64]},
        )
        return _utc(fallback)

    @field_validator("author_id", mode="before")
    @classmethod
    def coerce_author_id(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("metrics", mode="before")
    @classmethod
    def coerce_metrics(cls, v: Any) -> dict[str, Any]:
        return dict(v) if isinstance(v, Mapping) else {}

    @field_validator("entities", mode="before")
    @classmethod
    def coerce_entities(cls, v: Any) -> Any:
        return v if isinstance(v, (Mapping, Entities)) else {}

    @field_validator("edit_history_ids", mode="before")
    @classmethod
    def coerce_edit_history(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, (str, int)):
            return [str(v)]
        if isinstance(v, (list, tuple)):
            return [str(x) for x in v if x is not None and str(x).strip()]
        raise ValueError("edit_history_tweet_ids must be a sequence")

    @model_validator(mode="after")
    def default_edit_history(self) -> "Item":
        if not self.edit_history_ids:
            self.edit_history_ids = [self.id]
        return self

    @property
    def has_entities(self) -> bool:
        return self.entities.count() > 0

    @classmethod
    def from_raw(cls, raw: Any, *, fetched_at: datetime | None = None) -> "Item":
        """Validate one raw mapping; raises InvalidItemError on invariant failure."""
        if isinstance(raw, Item):
            return raw
        if not isinstance(raw, Mapping):
            raise InvalidItemError(f"item must be an object, got {type(raw).__name__}")
        try:
            return cls.model_validate(dict(raw), context={"fetched_at": fetched_at})
        except ValidationError as exc:
            raise InvalidItemError(f"invalid item {raw.get('id')!r}: {exc.error_count()} error(s)") from exc

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Snapshot(BaseModel):
    """Immutable, timestamp-keyed batch of items."""

    key: str
    items: list[Item]
    written_at: datetime

    def to_wire(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "writtenAt": self.written_at.isoformat(),
            "items": [item.to_wire() for item in self.items],
        }


class SelectionSet(BaseModel):
    """The single "currently displayed" slot."""

    items: list[Item]
    written_at: datetime

    def to_wire(self) -> dict[str, Any]:
        return {
            "writtenAt": self.written_at.isoformat(),
            "items": [item.to_wire() for item in self.items],
        }


@dataclass(frozen=True)
class NotFound:
    """Nothing stored yet, or the stored body is unreadable."""

    reason: str = "empty"


@dataclass(frozen=True)
class Failure:
    """The backend itself failed; worth alerting on."""

    reason: str
