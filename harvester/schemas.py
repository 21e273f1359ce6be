"""
Pydantic models validating remote payloads at the fetch boundary.

Only the fields the harvesters rely on are declared; unknown fields are
ignored so additive upstream changes do not break a sweep.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

LOGGER = logging.getLogger(__name__)

M = TypeVar("M")


class RemoteModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class FeedAttachment(RemoteModel):
    id: str
    type: Optional[str] = None
    image_url: Optional[str] = Field(default=None, alias="imageUrl")


class FeedComment(RemoteModel):
    id: Union[int, str]
    user_id: Union[int, str]
    body: Optional[str] = None
    body_json: Optional[Any] = None
    date: Optional[datetime] = None
    handle: Optional[str] = None
    name: Optional[str] = None
    photo_url: Optional[str] = None
    reaction_count: Optional[int] = None
    restacks: Optional[int] = None
    restacked: Optional[bool] = None
    reactions: Optional[Any] = None
    children_count: Optional[int] = None
    attachments: List[FeedAttachment] = Field(default_factory=list)


class FeedContext(RemoteModel):
    type: Optional[str] = None
    timestamp: Optional[datetime] = None


class FeedItem(RemoteModel):
    type: str
    entity_key: Optional[str] = None
    comment: Optional[FeedComment] = None
    context: FeedContext = Field(default_factory=FeedContext)


class FeedPage(RemoteModel):
    """A profile feed page: ``{items: [...], nextCursor?: str}``.

    Items stay raw here; they are validated one by one with
    :func:`validate_items` so a single malformed item does not sink the page.
    """

    items: List[Any] = Field(default_factory=list)
    next_cursor: Optional[str] = Field(default=None, alias="nextCursor")


class PublishedByline(RemoteModel):
    id: int
    name: Optional[str] = None
    handle: Optional[str] = None
    previous_name: Optional[str] = None
    photo_url: Optional[str] = None
    bio: Optional[str] = None
    profile_set_up_at: Optional[str] = None
    twitter_screen_name: Optional[str] = None
    is_guest: Optional[bool] = None
    bestseller_tier: Optional[int] = None


class ArchivePost(RemoteModel):
    id: int
    publication_id: int
    title: Optional[str] = None
    social_title: Optional[str] = None
    search_engine_title: Optional[str] = None
    search_engine_description: Optional[str] = None
    subtitle: Optional[str] = None
    slug: Optional[str] = None
    post_date: Optional[datetime] = None
    audience: Optional[str] = None
    canonical_url: Optional[str] = None
    description: Optional[str] = None
    cover_image: Optional[str] = None
    truncated_body_text: Optional[str] = None
    wordcount: Optional[int] = None
    reactions: Optional[Dict[str, Any]] = None
    reaction_count: Optional[int] = None
    comment_count: Optional[int] = None
    child_comment_count: Optional[int] = None
    hidden: Optional[bool] = None
    explicit: Optional[bool] = None
    published_bylines: List[PublishedByline] = Field(default_factory=list, alias="publishedBylines")


class PublicProfile(RemoteModel):
    id: Union[int, str]
    handle: str
    name: str
    slug: str
    photo_url: Optional[str] = None
    bio: Optional[str] = None
    bestseller_tier: Optional[int] = None
    profile_set_up_at: Optional[str] = None
    rough_num_free_subscribers: Optional[str] = None
    rough_num_free_subscribers_int: Optional[int] = None
    subscriber_count: Optional[str] = Field(default=None, alias="subscriberCount")
    subscriber_count_number: Optional[int] = Field(default=None, alias="subscriberCountNumber")
    subscriber_count_string: Optional[str] = Field(default=None, alias="subscriberCountString")


_ARCHIVE_ADAPTER = TypeAdapter(List[Any])


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert a remote timestamp to the naive UTC form stored in ``DateTime`` columns."""

    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def validate_payload(model: type[M], payload: Any, *, source: str) -> M | None:
    """Validate ``payload`` against ``model``; log and return ``None`` on mismatch."""

    if payload is None:
        return None
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        LOGGER.warning("Unexpected payload structure from %s: %s", source, exc.error_count())
        LOGGER.debug("Validation errors for %s: %s", source, exc)
        return None


def validate_items(model: type[M], items: Any, *, source: str) -> list[M]:
    """Validate each entry of ``items``; malformed entries are logged and skipped."""

    valid: list[M] = []
    for index, item in enumerate(items or ()):
        try:
            valid.append(model.model_validate(item))
        except ValidationError as exc:
            LOGGER.warning("Skipping malformed item %d from %s: %s", index, source, exc.error_count())
            LOGGER.debug("Validation errors for item %d from %s: %s", index, source, exc)
    return valid


def validate_archive(payload: Any, *, source: str) -> list[ArchivePost] | None:
    """Validate an archive page; ``None`` only when the payload is not a list."""

    if payload is None:
        return None
    try:
        raw_posts = _ARCHIVE_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        LOGGER.warning("Unexpected archive payload from %s: %s", source, exc.error_count())
        LOGGER.debug("Validation errors for %s: %s", source, exc)
        return None
    return validate_items(ArchivePost, raw_posts, source=source)


__all__ = [
    "ArchivePost",
    "FeedAttachment",
    "FeedComment",
    "FeedContext",
    "FeedItem",
    "FeedPage",
    "PublicProfile",
    "PublishedByline",
    "naive_utc",
    "validate_archive",
    "validate_items",
    "validate_payload",
]
