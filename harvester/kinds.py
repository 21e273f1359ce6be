"""Registry of sweepable subject classes."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict

from sqlalchemy.orm import Session

from .config import HarvestConfig
from .http_client import HttpFetcher
from .leases import NOTES_LEASE, POSTS_LEASE, PROFILES_LEASE, LeaseSpec, Subject, SubjectStore
from .notes import NoteCommentHarvester
from .posts import PostArchiveHarvester
from .profiles import ProfileRefresher
from .scheduler import SweepScheduler
from .writer import BatchWriter

SubjectProcessor = Callable[[Subject], int]


@dataclass(slots=True)
class HarvestContext:
    """Shared collaborators handed to every processor factory."""

    config: HarvestConfig
    fetcher: HttpFetcher
    session_factory: Callable[[], Session]
    sleep: Callable[[float], None] | None = None
    clock: Callable[[], datetime] | None = None

    def build_writer(self) -> BatchWriter:
        return BatchWriter(self.session_factory, chunk_size=self.config.write_chunk_size)


@dataclass(slots=True)
class SweepKind:
    """A subject class: where its leases live and how one subject is harvested."""

    slug: str
    lease: LeaseSpec
    processor_factory: Callable[[HarvestContext], SubjectProcessor]

    def build_processor(self, context: HarvestContext) -> SubjectProcessor:
        return self.processor_factory(context)

    def build_store(self, context: HarvestContext) -> SubjectStore:
        return SubjectStore(
            context.session_factory,
            self.lease,
            lease_timeout=context.config.sweep.lease_timeout_delta(),
        )

    def build_scheduler(self, context: HarvestContext) -> SweepScheduler:
        sweep = context.config.sweep
        return SweepScheduler(
            self.build_store(context),
            self.build_processor(context),
            batch_size=sweep.batch_size,
            reset_sleep=sweep.reset_sleep,
            error_sleep=sweep.error_sleep,
            sleep=context.sleep,
            name=self.slug,
        )


def _build_notes(context: HarvestContext) -> SubjectProcessor:
    return NoteCommentHarvester(
        context.fetcher,
        context.session_factory,
        context.build_writer(),
        context.config.notes.policy(),
        clock=context.clock,
    )


def _build_posts(context: HarvestContext) -> SubjectProcessor:
    return PostArchiveHarvester(
        context.fetcher,
        context.session_factory,
        context.build_writer(),
        context.config.posts.policy(),
        context.config.archive,
        clock=context.clock,
        sleep=context.sleep,
    )


def _build_profiles(context: HarvestContext) -> SubjectProcessor:
    return ProfileRefresher(context.fetcher, context.build_writer())


_KIND_REGISTRY: Dict[str, SweepKind] = {
    "notes": SweepKind(slug="notes", lease=NOTES_LEASE, processor_factory=_build_notes),
    "posts": SweepKind(slug="posts", lease=POSTS_LEASE, processor_factory=_build_posts),
    "profiles": SweepKind(slug="profiles", lease=PROFILES_LEASE, processor_factory=_build_profiles),
}


def get_sweep_kind(slug: str) -> SweepKind:
    """Return the registered sweep kind for ``slug``."""

    try:
        return _KIND_REGISTRY[slug]
    except KeyError as exc:
        raise KeyError(f"Unknown sweep kind '{slug}'") from exc


def list_sweep_kinds() -> list[str]:
    return sorted(_KIND_REGISTRY)


__all__ = ["HarvestContext", "SweepKind", "get_sweep_kind", "list_sweep_kinds"]
