"""Cursor pagination with conservative, multi-signal termination."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Collection, Generic, Hashable, Sequence, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class StopReason(str, Enum):
    NO_RESPONSE = "no_response"
    END_OF_STREAM = "end_of_stream"
    EMPTY_PAGES = "empty_pages"
    CURSOR_REPEAT = "cursor_repeat"
    CAUGHT_UP = "caught_up"
    ITEM_CAP = "item_cap"


@dataclass(slots=True)
class Page(Generic[T]):
    """One fetched page: its items and the cursor of the following page.

    ``next_cursor`` of ``None`` means the service offered no further page.
    """

    items: Sequence[T]
    next_cursor: str | None = None


@dataclass(slots=True, frozen=True)
class TerminationPolicy:
    max_items: int = 1200
    max_empty_pages: int = 10
    margin_of_safety: int = 1
    # Items newer than this window count as new even when already stored.
    refetch_window: timedelta | None = None

    def __post_init__(self) -> None:
        if self.max_items < 1:
            raise ValueError("max_items must be at least 1")
        if self.max_empty_pages < 1:
            raise ValueError("max_empty_pages must be at least 1")
        if self.margin_of_safety < 1:
            raise ValueError("margin_of_safety must be at least 1")


@dataclass(slots=True)
class PaginationState(Generic[T]):
    cursor: str | None = None
    pages_fetched: int = 0
    empty_pages: int = 0
    stale_pages: int = 0
    items: dict[Hashable, T] = field(default_factory=dict)
    stop_reason: StopReason | None = None

    @property
    def done(self) -> bool:
        return self.stop_reason is not None


@dataclass(slots=True)
class PaginationResult(Generic[T]):
    items: list[T]
    stop_reason: StopReason
    pages_fetched: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CursorPaginator(Generic[T]):
    """Walk an opaque cursor sequence for a single subject.

    ``fetch_page`` receives the cursor to load (``None`` for the first page)
    and returns a :class:`Page` or ``None`` when the fetch gave up.
    """

    def __init__(
        self,
        fetch_page: Callable[[str | None], Page[T] | None],
        policy: TerminationPolicy,
        *,
        key_func: Callable[[T], Hashable],
        include: Callable[[T], bool] | None = None,
        timestamp_func: Callable[[T], datetime | None] | None = None,
        clock: Callable[[], datetime] | None = None,
        label: str = "subject",
    ) -> None:
        self._fetch_page = fetch_page
        self._policy = policy
        self._key_func = key_func
        self._include = include or (lambda _item: True)
        self._timestamp_func = timestamp_func
        self._clock = clock or _utcnow
        self._label = label

    @property
    def policy(self) -> TerminationPolicy:
        return self._policy

    def walk(self, known_keys: Collection[Hashable] = ()) -> PaginationResult[T]:
        state: PaginationState[T] = PaginationState()
        while not state.done:
            page = self._fetch_page(state.cursor)
            state = self.advance(state, page, known_keys)

        LOGGER.info(
            "Pagination for %s stopped (%s) after %d pages with %d items",
            self._label,
            state.stop_reason.value,
            state.pages_fetched,
            len(state.items),
        )
        return PaginationResult(
            items=list(state.items.values()),
            stop_reason=state.stop_reason,
            pages_fetched=state.pages_fetched,
        )

    def advance(
        self,
        state: PaginationState[T],
        page: Page[T] | None,
        known_keys: Collection[Hashable] = (),
    ) -> PaginationState[T]:
        """Fold ``page`` into ``state`` and decide whether to keep walking."""

        if state.done:
            return state
        if page is None:
            state.stop_reason = StopReason.NO_RESPONSE
            return state

        state.pages_fetched += 1
        wanted = [item for item in page.items if self._include(item)]
        next_cursor = page.next_cursor

        if not wanted:
            if next_cursor is None:
                state.stop_reason = StopReason.END_OF_STREAM
                return state
            state.empty_pages += 1
            LOGGER.debug("No items of interest for %s (%d consecutive pages)", self._label, state.empty_pages)
            if state.empty_pages >= self._policy.max_empty_pages:
                state.stop_reason = StopReason.EMPTY_PAGES
            elif next_cursor == state.cursor:
                state.stop_reason = StopReason.CURSOR_REPEAT
            else:
                state.cursor = next_cursor
            return state

        state.empty_pages = 0
        has_new = False
        for item in wanted:
            if len(state.items) >= self._policy.max_items:
                break
            key = self._key_func(item)
            if key not in state.items and self._is_new(item, key, known_keys):
                has_new = True
            state.items[key] = item

        state.stale_pages = 0 if has_new else state.stale_pages + 1

        if next_cursor is not None and next_cursor == state.cursor:
            state.stop_reason = StopReason.CURSOR_REPEAT
        elif state.stale_pages >= self._policy.margin_of_safety:
            state.stop_reason = StopReason.CAUGHT_UP
        elif len(state.items) >= self._policy.max_items:
            state.stop_reason = StopReason.ITEM_CAP
        elif not next_cursor:
            state.stop_reason = StopReason.END_OF_STREAM
        else:
            state.cursor = next_cursor
        return state

    def _is_new(self, item: T, key: Hashable, known_keys: Collection[Hashable]) -> bool:
        if key not in known_keys:
            return True
        if self._policy.refetch_window is None or self._timestamp_func is None:
            return False
        timestamp = self._timestamp_func(item)
        if timestamp is None:
            return False
        return _as_aware(timestamp) >= _as_aware(self._clock()) - self._policy.refetch_window


def collect_keys(rows: Sequence[Any]) -> set[Hashable]:
    """Return the first column of each row as a set of keys."""

    return {row[0] for row in rows if row[0] is not None}


__all__ = [
    "CursorPaginator",
    "Page",
    "PaginationResult",
    "PaginationState",
    "StopReason",
    "TerminationPolicy",
    "collect_keys",
]
