"""Deduplicating, conflict-merging bulk writer."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Sequence

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

LOGGER = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 100

_INSERT_BUILDERS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class PersistenceError(RuntimeError):
    """Raised when a write plan cannot be persisted."""


@dataclass(slots=True, frozen=True)
class UpsertTarget:
    """A table, its natural key and the fields merged on conflict.

    ``merge_fields`` of ``None`` or ``()`` turns the target into a
    conflict-ignore table: the first stored row wins.
    """

    model: Any
    key_columns: tuple[str, ...]
    merge_fields: tuple[str, ...] | None = None

    def __post_init__(self) -> None:
        if not self.key_columns:
            raise ValueError("key_columns must not be empty")
        overlap = set(self.key_columns) & set(self.merge_fields or ())
        if overlap:
            raise ValueError(f"Key columns cannot be merged: {sorted(overlap)}")

    @property
    def table(self):
        return self.model.__table__

    @property
    def name(self) -> str:
        return self.table.name

    def key_of(self, row: Mapping[str, Any]) -> tuple:
        return tuple(row[column] for column in self.key_columns)


def dedupe_rows(target: UpsertTarget, rows: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Collapse ``rows`` to one per natural key; the last row seen wins."""

    unique: dict[tuple, dict[str, Any]] = {}
    for row in rows:
        unique[target.key_of(row)] = dict(row)
    return list(unique.values())


def _chunked(rows: Sequence[dict[str, Any]], size: int) -> Iterable[Sequence[dict[str, Any]]]:
    for start in range(0, len(rows), size):
        yield rows[start : start + size]


class BatchWriter:
    """Persists write plans inside a single transaction per call."""

    def __init__(self, session_factory: Callable[[], Session], *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self._session_factory = session_factory
        self._chunk_size = chunk_size

    def write(self, plan: Sequence[tuple[UpsertTarget, Iterable[Mapping[str, Any]]]]) -> int:
        """Upsert every target of ``plan``; return the primary target's row count."""

        prepared = [(target, dedupe_rows(target, rows)) for target, rows in plan]
        if not prepared:
            return 0

        try:
            with self._session_factory() as session:
                with session.begin():
                    insert = self._insert_builder(session)
                    for target, rows in prepared:
                        for chunk in _chunked(rows, self._chunk_size):
                            session.execute(self._build_statement(insert, target, chunk))
                        LOGGER.debug("Upserted %d rows into %s", len(rows), target.name)
        except SQLAlchemyError as exc:
            raise PersistenceError(str(exc)) from exc

        primary_target, primary_rows = prepared[0]
        LOGGER.info("Persisted %d %s rows", len(primary_rows), primary_target.name)
        return len(primary_rows)

    @staticmethod
    def _insert_builder(session: Session):
        dialect = session.get_bind().dialect.name
        try:
            return _INSERT_BUILDERS[dialect]
        except KeyError as exc:
            raise PersistenceError(f"Upserts are not supported for dialect '{dialect}'") from exc

    @staticmethod
    def _build_statement(insert, target: UpsertTarget, chunk: Sequence[dict[str, Any]]):
        statement = insert(target.table).values(list(chunk))
        if not target.merge_fields:
            return statement.on_conflict_do_nothing(index_elements=list(target.key_columns))
        return statement.on_conflict_do_update(
            index_elements=list(target.key_columns),
            set_={field: statement.excluded[field] for field in target.merge_fields},
        )


__all__ = [
    "BatchWriter",
    "DEFAULT_CHUNK_SIZE",
    "PersistenceError",
    "UpsertTarget",
    "dedupe_rows",
]
