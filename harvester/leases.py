"""Subject selection and processing-flag leases for the sweep scheduler."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Sequence

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import Byline, Publication, PublicationLink

LOGGER = logging.getLogger(__name__)


class SubjectStoreError(RuntimeError):
    """Raised when subjects cannot be selected, leased or reset."""


@dataclass(slots=True, frozen=True)
class Subject:
    """A crawl subject as seen by a harvester."""

    id: int
    url: str | None = None
    author_id: int | None = None
    name: str | None = None
    handle: str | None = None


@dataclass(slots=True, frozen=True)
class LeaseSpec:
    """Where a subject class keeps its lease and how its rows are selected."""

    model: type
    flag_column: str
    leased_at_column: str
    select_subjects: Callable[[], object]
    to_subject: Callable[[object], Subject]
    before_reset: Callable[[Session], None] | None = None

    @property
    def flag(self):
        return getattr(self.model, self.flag_column)

    @property
    def leased_at(self):
        return getattr(self.model, self.leased_at_column)


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the ``DateTime`` lease columns."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def publication_url(publication: Publication) -> str:
    subdomain = (publication.subdomain or "").strip()
    if "http" in subdomain:
        return subdomain
    if publication.custom_domain:
        return publication.custom_domain
    return f"https://{subdomain}.substack.com"


def backfill_publication_links(session: Session) -> int:
    """Create a completed link row for every publication that has none."""

    statement = (
        select(Publication)
        .outerjoin(PublicationLink, PublicationLink.id == Publication.id)
        .where(PublicationLink.id.is_(None))
    )
    missing = session.scalars(statement).all()
    for publication in missing:
        session.add(PublicationLink(id=publication.id, url=publication_url(publication), status="completed"))
    if missing:
        LOGGER.info("Backfilled %d publication links", len(missing))
    return len(missing)


def _publication_link_subjects():
    return (
        select(PublicationLink.id, PublicationLink.url, Publication.author_id, Publication.name)
        .join(Publication, Publication.id == PublicationLink.id)
    )


def _publication_link_to_subject(row) -> Subject:
    return Subject(id=row.id, url=row.url, author_id=row.author_id, name=row.name)


def _byline_subjects():
    return select(Byline.id, Byline.name, Byline.handle)


def _byline_to_subject(row) -> Subject:
    return Subject(id=row.id, name=row.name, handle=row.handle)


NOTES_LEASE = LeaseSpec(
    model=PublicationLink,
    flag_column="is_notes_scraping",
    leased_at_column="notes_leased_at",
    select_subjects=_publication_link_subjects,
    to_subject=_publication_link_to_subject,
    before_reset=backfill_publication_links,
)

POSTS_LEASE = LeaseSpec(
    model=PublicationLink,
    flag_column="is_posts_scraping",
    leased_at_column="posts_leased_at",
    select_subjects=_publication_link_subjects,
    to_subject=_publication_link_to_subject,
    before_reset=backfill_publication_links,
)

PROFILES_LEASE = LeaseSpec(
    model=Byline,
    flag_column="is_profile_scraping",
    leased_at_column="profile_leased_at",
    select_subjects=_byline_subjects,
    to_subject=_byline_to_subject,
)


class SubjectStore:
    """Lease bookkeeping for one subject class.

    A subject is idle (flag unset), leased (flag set, ``leased_at`` set) or
    done for the current generation (flag set, ``leased_at`` cleared). With a
    ``lease_timeout`` a lease older than the timeout is eligible again.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        lease: LeaseSpec,
        *,
        lease_timeout: timedelta | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._lease = lease
        self._lease_timeout = lease_timeout
        self._clock = clock or utcnow

    @property
    def lease(self) -> LeaseSpec:
        return self._lease

    def _eligible_clause(self):
        idle = or_(self._lease.flag.is_(False), self._lease.flag.is_(None))
        if self._lease_timeout is None:
            return idle
        cutoff = self._clock() - self._lease_timeout
        expired = and_(
            self._lease.flag.is_(True),
            self._lease.leased_at.is_not(None),
            self._lease.leased_at < cutoff,
        )
        return or_(idle, expired)

    def select_eligible(self, limit: int) -> list[Subject]:
        """Idle subjects first, then expired leases, each in id order."""

        expired_last = case((self._lease.flag.is_(True), 1), else_=0)
        statement = (
            self._lease.select_subjects()
            .where(self._eligible_clause())
            .order_by(expired_last, self._lease.model.id)
            .limit(limit)
        )
        try:
            with self._session_factory() as session:
                rows = session.execute(statement).all()
        except SQLAlchemyError as exc:
            raise SubjectStoreError(f"Failed to select subjects: {exc}") from exc
        return [self._lease.to_subject(row) for row in rows]

    def acquire(self, subject_ids: Sequence[int]) -> None:
        """Mark ``subject_ids`` as processing with a single bulk update."""

        if not subject_ids:
            return
        values = {self._lease.flag_column: True, self._lease.leased_at_column: self._clock()}
        self._bulk_update(self._lease.model.id.in_(list(subject_ids)), values, "lease subjects")

    def release(self, subject_id: int) -> None:
        """Mark a subject done for this generation; its flag stays set."""

        self._bulk_update(
            self._lease.model.id == subject_id,
            {self._lease.leased_at_column: None},
            f"release subject {subject_id}",
        )

    def reset(self) -> int:
        """Flip every lease of this subject class back to idle."""

        try:
            with self._session_factory() as session:
                with session.begin():
                    if self._lease.before_reset is not None:
                        self._lease.before_reset(session)
                    result = session.execute(
                        update(self._lease.model).values(
                            {self._lease.flag_column: False, self._lease.leased_at_column: None}
                        )
                    )
                    reset_count = result.rowcount or 0
        except SQLAlchemyError as exc:
            raise SubjectStoreError(f"Failed to reset leases: {exc}") from exc
        return reset_count

    def release_stale(self, older_than: timedelta | None = None) -> int:
        """Return leased subjects to idle; only leases older than ``older_than`` when given."""

        condition = and_(self._lease.flag.is_(True), self._lease.leased_at.is_not(None))
        if older_than is not None:
            condition = and_(condition, self._lease.leased_at < self._clock() - older_than)
        return self._bulk_update(
            condition,
            {self._lease.flag_column: False, self._lease.leased_at_column: None},
            "release stale leases",
        )

    def count_leased(self, older_than: timedelta | None = None) -> int:
        condition = and_(self._lease.flag.is_(True), self._lease.leased_at.is_not(None))
        if older_than is not None:
            condition = and_(condition, self._lease.leased_at < self._clock() - older_than)
        try:
            with self._session_factory() as session:
                return session.scalar(select(func.count()).select_from(self._lease.model).where(condition)) or 0
        except SQLAlchemyError as exc:
            raise SubjectStoreError(f"Failed to count leases: {exc}") from exc

    def _bulk_update(self, condition, values: dict, context: str) -> int:
        try:
            with self._session_factory() as session:
                with session.begin():
                    result = session.execute(update(self._lease.model).where(condition).values(values))
                    updated = result.rowcount or 0
        except SQLAlchemyError as exc:
            raise SubjectStoreError(f"Failed to {context}: {exc}") from exc
        return updated


__all__ = [
    "LeaseSpec",
    "NOTES_LEASE",
    "POSTS_LEASE",
    "PROFILES_LEASE",
    "Subject",
    "SubjectStore",
    "SubjectStoreError",
    "backfill_publication_links",
    "publication_url",
    "utcnow",
]
