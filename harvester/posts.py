"""Harvest a publication's post archive together with post bodies and bylines."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Callable, Iterable, Sequence

import httpx
from bs4 import BeautifulSoup
from sqlalchemy import select
from sqlalchemy.orm import Session

from models import Byline, Post, PostByline

from .config import ArchiveConfig
from .http_client import HttpFetcher, normalize_https_url
from .leases import Subject
from .pagination import CursorPaginator, Page, TerminationPolicy, collect_keys
from .schemas import ArchivePost, naive_utc, validate_archive
from .writer import BatchWriter, UpsertTarget

LOGGER = logging.getLogger(__name__)

ARCHIVE_PATH = "api/v1/archive"
ARTICLE_BODY_SELECTOR = ".available-content .body"

POST_FIELDS = (
    "title",
    "social_title",
    "search_engine_title",
    "search_engine_description",
    "subtitle",
    "slug",
    "post_date",
    "audience",
    "canonical_url",
    "description",
    "cover_image",
    "truncated_body_text",
    "wordcount",
    "reactions",
    "reaction_count",
    "comment_count",
    "child_comment_count",
    "hidden",
    "explicit",
)

# body_text is written once; a failed body fetch must not blank a stored body.
POST_MERGE_FIELDS = POST_FIELDS

BYLINE_FIELDS = (
    "name",
    "handle",
    "previous_name",
    "photo_url",
    "bio",
    "profile_set_up_at",
    "twitter_screen_name",
    "is_guest",
    "bestseller_tier",
)

POST_TARGET = UpsertTarget(model=Post, key_columns=("id",), merge_fields=POST_MERGE_FIELDS)
BYLINE_TARGET = UpsertTarget(model=Byline, key_columns=("id",))
POST_BYLINE_TARGET = UpsertTarget(model=PostByline, key_columns=("post_id", "byline_id"))

_HEADING_TAGS = {"h1": "#", "h2": "##", "h3": "###", "h4": "####"}
_SKIPPED_TAGS = {"script", "style"}


def archive_page_url(publication_url: str, offset: int, limit: int) -> str:
    base = normalize_https_url(publication_url).rstrip("/")
    params = {"sort": "new", "search": "", "offset": offset, "limit": limit}
    return str(httpx.URL(f"{base}/{ARCHIVE_PATH}", params=params))


class ArchivePageSource:
    """Loads archive pages, using the numeric offset as the cursor.

    Every ``pause_every`` items requested since the last pause the source
    sleeps ``pause_seconds`` before fetching again.
    """

    def __init__(
        self,
        fetcher: HttpFetcher,
        publication_url: str,
        config: ArchiveConfig,
        *,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._publication_url = publication_url
        self._config = config
        self._sleep = sleep or time.sleep
        self._last_pause_offset = 0

    def __call__(self, cursor: str | None) -> Page[ArchivePost] | None:
        offset = int(cursor) if cursor else 0
        if self._config.pause_every and offset - self._last_pause_offset >= self._config.pause_every:
            LOGGER.info("Waiting %.0fs after %d posts", self._config.pause_seconds, offset)
            self._sleep(self._config.pause_seconds)
            self._last_pause_offset = offset

        url = archive_page_url(self._publication_url, offset, self._config.page_size)
        payload = self._fetcher.fetch_json(url)
        posts = validate_archive(payload, source=url)
        if posts is None:
            return None
        if not payload:
            return Page(items=[], next_cursor=None)
        return Page(items=posts, next_cursor=str(offset + self._config.page_size))


def extract_article_text(html: str) -> str:
    """Flatten the article body of a post page into lightly marked-up text."""

    soup = BeautifulSoup(html, "html.parser")
    root = soup.select_one(ARTICLE_BODY_SELECTOR)
    if root is None:
        return ""

    blocks: list[str] = []
    for element in root.find_all(recursive=False):
        tag = (element.name or "").lower()
        if tag in _SKIPPED_TAGS:
            continue
        text = element.get_text(strip=True)
        if not text:
            continue
        if tag in _HEADING_TAGS:
            blocks.append(f"{_HEADING_TAGS[tag]} {text}\n\n")
        elif tag in ("ul", "ol"):
            items = [f"- {li.get_text(strip=True)}\n" for li in element.find_all("li")]
            blocks.append("".join(items) + "\n")
        else:
            blocks.append(f"{text}\n\n")
    return "".join(blocks)


def fetch_post_body(fetcher: HttpFetcher, url: str | None) -> str:
    if not url:
        return ""
    html = fetcher.fetch_text(url)
    if not html:
        return ""
    return extract_article_text(html)


def fetch_post_bodies(
    fetcher: HttpFetcher,
    posts: Sequence[ArchivePost],
    *,
    max_workers: int = 10,
) -> dict[int, str]:
    """Fetch article bodies concurrently; a failed fetch yields an empty body."""

    bodies: dict[int, str] = {post.id: "" for post in posts}
    if not posts:
        return bodies

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
        futures = {executor.submit(fetch_post_body, fetcher, post.canonical_url): post for post in posts}
        for future in as_completed(futures):
            post = futures[future]
            try:
                bodies[post.id] = future.result()
            except Exception as exc:  # noqa: BLE001
                LOGGER.error("Failed to fetch body for post %s: %s", post.id, exc)
    return bodies


def post_row(post: ArchivePost, body_text: str) -> dict:
    row = post.model_dump(include={"id", "publication_id", *POST_FIELDS})
    row["post_date"] = naive_utc(post.post_date)
    row["body_text"] = body_text
    return row


def byline_rows(posts: Iterable[ArchivePost]) -> tuple[list[dict], list[dict]]:
    bylines: list[dict] = []
    links: list[dict] = []
    for post in posts:
        for byline in post.published_bylines:
            bylines.append(byline.model_dump(include={"id", *BYLINE_FIELDS}))
            links.append({"post_id": post.id, "byline_id": byline.id})
    return bylines, links


def load_known_post_ids(session: Session, publication_id: int) -> set[int]:
    statement = select(Post.id).where(Post.publication_id == publication_id)
    return collect_keys(session.execute(statement).all())


def post_key(post: ArchivePost) -> int:
    return post.id


def post_timestamp(post: ArchivePost) -> datetime | None:
    return post.post_date


class PostArchiveHarvester:
    """Walk a publication archive newest-first and upsert its posts."""

    def __init__(
        self,
        fetcher: HttpFetcher,
        session_factory: Callable[[], Session],
        writer: BatchWriter,
        policy: TerminationPolicy,
        archive: ArchiveConfig | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._session_factory = session_factory
        self._writer = writer
        self._policy = policy
        self._archive = archive or ArchiveConfig()
        self._clock = clock
        self._sleep = sleep

    def harvest(self, publication_id: int, publication_url: str) -> int:
        with self._session_factory() as session:
            known_ids = load_known_post_ids(session, publication_id)

        source = ArchivePageSource(self._fetcher, publication_url, self._archive, sleep=self._sleep)
        paginator = CursorPaginator(
            source,
            self._policy,
            key_func=post_key,
            timestamp_func=post_timestamp,
            clock=self._clock,
            label=f"publication {publication_id}",
        )
        result = paginator.walk(known_ids)
        LOGGER.info("Collected %d posts for publication %s", len(result.items), publication_id)
        if not result.items:
            return 0

        bodies = fetch_post_bodies(self._fetcher, result.items, max_workers=self._archive.body_workers)
        posts = [post_row(post, bodies.get(post.id, "")) for post in result.items]
        bylines, post_bylines = byline_rows(result.items)
        return self._writer.write(
            [
                (POST_TARGET, posts),
                (BYLINE_TARGET, bylines),
                (POST_BYLINE_TARGET, post_bylines),
            ]
        )

    def __call__(self, subject: Subject) -> int:
        if not subject.url:
            LOGGER.warning("No URL for publication %s; skipping posts", subject.id)
            return 0
        return self.harvest(subject.id, subject.url)


__all__ = [
    "ArchivePageSource",
    "BYLINE_TARGET",
    "POST_BYLINE_TARGET",
    "POST_MERGE_FIELDS",
    "POST_TARGET",
    "PostArchiveHarvester",
    "archive_page_url",
    "extract_article_text",
    "fetch_post_bodies",
]
