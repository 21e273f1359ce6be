"""Harvest an author's note comments from the profile feed."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from models import CommentAttachment, NoteComment, generate_uuid7

from .http_client import HttpFetcher
from .leases import Subject
from .pagination import CursorPaginator, Page, TerminationPolicy, collect_keys
from .schemas import FeedItem, FeedPage, naive_utc, validate_items, validate_payload
from .writer import BatchWriter, UpsertTarget

LOGGER = logging.getLogger(__name__)

PROFILE_FEED_URL = "https://substack.com/api/v1/reader/feed/profile/{author_id}"

COMMENT_MERGE_FIELDS = (
    "reactions",
    "children_count",
    "restacks",
    "reaction_count",
    "body",
    "body_json",
)

COMMENT_TARGET = UpsertTarget(
    model=NoteComment,
    key_columns=("comment_id", "user_id"),
    merge_fields=COMMENT_MERGE_FIELDS,
)
ATTACHMENT_TARGET = UpsertTarget(model=CommentAttachment, key_columns=("id",))


def feed_page_url(base_url: str, cursor: str | None) -> str:
    if cursor is None:
        return base_url
    return str(httpx.URL(base_url, params={"cursor": cursor}))


class FeedPageSource:
    """Loads and validates profile feed pages for one author."""

    def __init__(self, fetcher: HttpFetcher, base_url: str) -> None:
        self._fetcher = fetcher
        self._base_url = base_url

    def __call__(self, cursor: str | None) -> Page[FeedItem] | None:
        url = feed_page_url(self._base_url, cursor)
        page = validate_payload(FeedPage, self._fetcher.fetch_json(url), source=url)
        if page is None:
            return None
        return Page(items=validate_items(FeedItem, page.items, source=url), next_cursor=page.next_cursor)


def is_comment(item: FeedItem) -> bool:
    return item.type == "comment" and item.comment is not None


def comment_key(item: FeedItem) -> str:
    return str(item.comment.id)


def comment_timestamp(item: FeedItem) -> datetime | None:
    return item.context.timestamp or item.comment.date


def comment_rows(item: FeedItem) -> tuple[dict, list[dict]]:
    """Map a feed comment to its ``notes_comments`` row and attachment rows."""

    comment = item.comment
    context_type = item.context.type
    row = {
        "id": generate_uuid7(),
        "comment_id": str(comment.id),
        "user_id": str(comment.user_id),
        "type": item.type,
        "body": comment.body,
        "body_json": comment.body_json,
        "date": naive_utc(comment.date),
        "handle": comment.handle,
        "name": comment.name,
        "photo_url": comment.photo_url,
        "reaction_count": comment.reaction_count,
        "restacks": comment.restacks,
        "restacked": comment.restacked,
        "timestamp": naive_utc(item.context.timestamp),
        "context_type": context_type,
        "entity_key": item.entity_key,
        "note_is_restacked": context_type == "comment_restack",
        "reactions": comment.reactions,
        "children_count": comment.children_count,
    }
    attachments = [
        {
            "id": attachment.id,
            "comment_id": str(comment.id),
            "attachment_id": attachment.id,
            "type": attachment.type,
            "image_url": attachment.image_url,
        }
        for attachment in comment.attachments
    ]
    return row, attachments


def load_known_comment_ids(session: Session, user_id: str) -> set[str]:
    statement = select(NoteComment.comment_id).where(NoteComment.user_id == user_id)
    return collect_keys(session.execute(statement).all())


class NoteCommentHarvester:
    """Crawl one author's feed and upsert the comments it exposes."""

    def __init__(
        self,
        fetcher: HttpFetcher,
        session_factory: Callable[[], Session],
        writer: BatchWriter,
        policy: TerminationPolicy,
        *,
        clock: Callable[[], datetime] | None = None,
        feed_url_template: str = PROFILE_FEED_URL,
    ) -> None:
        self._fetcher = fetcher
        self._session_factory = session_factory
        self._writer = writer
        self._policy = policy
        self._clock = clock
        self._feed_url_template = feed_url_template

    def harvest(self, author_id: int | str) -> int:
        user_id = str(author_id)
        with self._session_factory() as session:
            known_ids = load_known_comment_ids(session, user_id)

        paginator = CursorPaginator(
            FeedPageSource(self._fetcher, self._feed_url_template.format(author_id=user_id)),
            self._policy,
            key_func=comment_key,
            include=is_comment,
            timestamp_func=comment_timestamp,
            clock=self._clock,
            label=f"author {user_id}",
        )
        result = paginator.walk(known_ids)
        LOGGER.info("Collected %d comments for author %s", len(result.items), user_id)
        if not result.items:
            return 0

        comments: list[dict] = []
        attachments: list[dict] = []
        for item in result.items:
            row, item_attachments = comment_rows(item)
            comments.append(row)
            attachments.extend(item_attachments)

        return self._writer.write([(COMMENT_TARGET, comments), (ATTACHMENT_TARGET, attachments)])

    def __call__(self, subject: Subject) -> int:
        if subject.author_id is None:
            LOGGER.warning("No author id for publication %s; skipping notes", subject.id)
            return 0
        return self.harvest(subject.author_id)


__all__ = [
    "ATTACHMENT_TARGET",
    "COMMENT_MERGE_FIELDS",
    "COMMENT_TARGET",
    "FeedPageSource",
    "NoteCommentHarvester",
    "comment_rows",
    "feed_page_url",
    "load_known_comment_ids",
]
