"""Perpetual sweep scheduler driving one subject class through generations."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol, Sequence

from .leases import Subject, SubjectStoreError

LOGGER = logging.getLogger(__name__)


class SweepPhase(str, Enum):
    SELECTING = "selecting"
    PROCESSING = "processing"
    RESETTING = "resetting"
    IDLE = "idle"


class SubjectSource(Protocol):
    def select_eligible(self, limit: int) -> list[Subject]:
        ...

    def acquire(self, subject_ids: Sequence[int]) -> None:
        ...

    def release(self, subject_id: int) -> None:
        ...

    def reset(self) -> int:
        ...


@dataclass(slots=True)
class SweepStats:
    generation: int = 0
    batches: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    records: int = 0


class SweepScheduler:
    """Select, lease and process subjects batch by batch, forever.

    Each call to :meth:`step` performs exactly one phase transition:
    ``SELECTING`` either leases a batch (-> ``PROCESSING``) or finds the
    backlog drained (-> ``RESETTING``); ``PROCESSING`` handles the batch
    sequentially (-> ``SELECTING``); ``RESETTING`` returns every lease to
    idle and starts a new generation (-> ``IDLE``); ``IDLE`` sleeps
    ``reset_sleep`` seconds (-> ``SELECTING``).
    """

    def __init__(
        self,
        source: SubjectSource,
        processor: Callable[[Subject], int | None],
        *,
        batch_size: int = 500,
        reset_sleep: float = 12 * 60 * 60,
        error_sleep: float = 60.0,
        sleep: Callable[[float], None] | None = None,
        name: str = "sweep",
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._source = source
        self._processor = processor
        self._batch_size = batch_size
        self._reset_sleep = max(0.0, reset_sleep)
        self._error_sleep = max(0.0, error_sleep)
        self._sleep = sleep or time.sleep
        self._name = name
        self._phase = SweepPhase.SELECTING
        self._batch: list[Subject] = []
        self.stats = SweepStats()

    @property
    def phase(self) -> SweepPhase:
        return self._phase

    @property
    def batch(self) -> tuple[Subject, ...]:
        return tuple(self._batch)

    def step(self) -> SweepPhase:
        if self._phase is SweepPhase.SELECTING:
            self._select()
        elif self._phase is SweepPhase.PROCESSING:
            self._process_batch()
        elif self._phase is SweepPhase.RESETTING:
            self._reset()
        else:
            LOGGER.info("[%s] Backlog drained; sleeping %.0fs before the next generation", self._name, self._reset_sleep)
            self._sleep(self._reset_sleep)
            self._phase = SweepPhase.SELECTING
        return self._phase

    def run_generation(self) -> SweepStats:
        """Step until one generation boundary (a global reset) has been crossed."""

        generation = self.stats.generation
        while self.stats.generation == generation:
            self.step()
        return self.stats

    def run_forever(self) -> None:
        while True:
            try:
                self.step()
            except SubjectStoreError as exc:
                LOGGER.error("[%s] Subject store failure in phase %s: %s", self._name, self._phase.value, exc)
                self._sleep(self._error_sleep)

    def _select(self) -> None:
        LOGGER.info("[%s] Fetching up to %d subjects not being processed", self._name, self._batch_size)
        subjects = self._source.select_eligible(self._batch_size)
        if not subjects:
            LOGGER.info("[%s] No eligible subjects found; resetting leases", self._name)
            self._phase = SweepPhase.RESETTING
            return

        LOGGER.info("[%s] Found %d subjects; marking as processing", self._name, len(subjects))
        self._source.acquire([subject.id for subject in subjects])
        self._batch = list(subjects)
        self.stats.batches += 1
        self._phase = SweepPhase.PROCESSING

    def _process_batch(self) -> None:
        while self._batch:
            subject = self._batch.pop(0)
            self._process_subject(subject)
        self._phase = SweepPhase.SELECTING

    def _process_subject(self, subject: Subject) -> None:
        self.stats.processed += 1
        LOGGER.info("[%s] Processing subject %s", self._name, subject.id)
        try:
            records = self._processor(subject)
        except Exception:
            self.stats.failed += 1
            LOGGER.exception("[%s] Failed processing subject %s", self._name, subject.id)
            return

        self.stats.succeeded += 1
        self.stats.records += records or 0
        try:
            self._source.release(subject.id)
        except SubjectStoreError as exc:
            LOGGER.warning("[%s] Could not release lease for subject %s: %s", self._name, subject.id, exc)
        LOGGER.info("[%s] Completed subject %s (%d records)", self._name, subject.id, records or 0)

    def _reset(self) -> None:
        released = self._source.reset()
        self.stats.generation += 1
        LOGGER.info(
            "[%s] Generation %d complete; reset %d leases", self._name, self.stats.generation, released
        )
        self._phase = SweepPhase.IDLE


__all__ = ["SubjectSource", "SweepPhase", "SweepScheduler", "SweepStats"]
