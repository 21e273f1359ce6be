"""Refresh byline profile metadata into ``byline_data``."""

from __future__ import annotations

import logging
import re
import unicodedata
from typing import Iterator

from models import BylineData

from .http_client import HttpFetcher
from .leases import Subject
from .schemas import PublicProfile, validate_payload
from .writer import BatchWriter, UpsertTarget

LOGGER = logging.getLogger(__name__)

PROFILE_FEED_URL = "https://substack.com/api/v1/reader/feed/profile/{byline_id}"
PUBLIC_PROFILE_URL = "https://substack.com/api/v1/user/{slug}/public_profile"

BYLINE_DATA_FIELDS = (
    "slug",
    "subscriber_count",
    "subscriber_count_number",
    "subscriber_count_string",
    "bestseller_tier",
    "photo_url",
    "profile_set_up_at",
    "rough_num_free_subscribers",
    "rough_num_free_subscribers_int",
)

BYLINE_DATA_TARGET = UpsertTarget(model=BylineData, key_columns=("id",), merge_fields=BYLINE_DATA_FIELDS)

_NON_SLUG_CHARS = re.compile(r"[^a-z0-9\s-]")
_SEPARATORS = re.compile(r"[\s-]+")


def slugify(value: str) -> str:
    """``"A B C DEFG.COM"`` -> ``"a-b-c-defgcom"``."""

    normalized = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    cleaned = _NON_SLUG_CHARS.sub("", normalized.lower())
    return _SEPARATORS.sub("-", cleaned).strip("-")


def compact_slug(value: str) -> str:
    """``"A B C"`` -> ``"abc"``; the form used by public profile URLs."""

    return slugify(value).replace("-", "")


def profile_urls(subject: Subject) -> Iterator[str]:
    yield PROFILE_FEED_URL.format(byline_id=subject.id)
    seen: set[str] = set()
    for candidate in (subject.handle, subject.name):
        if not candidate:
            continue
        slug = compact_slug(candidate)
        if slug and slug not in seen:
            seen.add(slug)
            yield PUBLIC_PROFILE_URL.format(slug=slug)


def _to_int(value: object) -> int | None:
    if value is None:
        return None
    try:
        return int(float(str(value).replace(",", "")))
    except (ValueError, OverflowError):
        return None


def byline_data_row(profile: PublicProfile) -> dict:
    return {
        "id": int(profile.id),
        "slug": profile.slug,
        "subscriber_count": _to_int(profile.subscriber_count),
        "subscriber_count_number": profile.subscriber_count_number,
        "subscriber_count_string": profile.subscriber_count_string,
        "bestseller_tier": profile.bestseller_tier,
        "photo_url": profile.photo_url,
        "profile_set_up_at": profile.profile_set_up_at,
        "rough_num_free_subscribers": _to_int(profile.rough_num_free_subscribers),
        "rough_num_free_subscribers_int": profile.rough_num_free_subscribers_int,
    }


class ProfileRefresher:
    """Resolve a byline's public profile and merge it into ``byline_data``."""

    def __init__(self, fetcher: HttpFetcher, writer: BatchWriter, *, fallback_attempts: int = 3) -> None:
        self._fetcher = fetcher
        self._writer = writer
        self._fallback_attempts = fallback_attempts

    def resolve(self, subject: Subject) -> PublicProfile | None:
        for url in profile_urls(subject):
            profile = validate_payload(
                PublicProfile,
                self._fetcher.fetch_json(url, max_attempts=self._fallback_attempts),
                source=url,
            )
            if profile is not None:
                return profile
        return None

    def __call__(self, subject: Subject) -> int:
        profile = self.resolve(subject)
        if profile is None:
            LOGGER.warning("No public profile found for byline %s (%s)", subject.id, subject.handle)
            return 0
        return self._writer.write([(BYLINE_DATA_TARGET, [byline_data_row(profile)])])


__all__ = [
    "BYLINE_DATA_TARGET",
    "ProfileRefresher",
    "byline_data_row",
    "compact_slug",
    "profile_urls",
    "slugify",
]
