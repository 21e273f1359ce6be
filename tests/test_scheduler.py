import unittest
from datetime import datetime, timedelta

from harvester.leases import PROFILES_LEASE, Subject, SubjectStore, SubjectStoreError
from harvester.scheduler import SweepPhase, SweepScheduler
from models import Byline

from support import ManualClock, RecordingSleep, make_session_factory


class StopSweep(Exception):
    pass


class InMemorySource:
    """Lease bookkeeping over a plain dict, mirroring :class:`SubjectStore`."""

    def __init__(self, ids) -> None:
        self.state = {subject_id: "idle" for subject_id in ids}
        self.select_failures = 0

    def select_eligible(self, limit: int) -> list[Subject]:
        if self.select_failures:
            self.select_failures -= 1
            raise SubjectStoreError("database unavailable")
        eligible = [subject_id for subject_id in sorted(self.state) if self.state[subject_id] == "idle"]
        return [Subject(id=subject_id) for subject_id in eligible[:limit]]

    def acquire(self, subject_ids) -> None:
        for subject_id in subject_ids:
            self.state[subject_id] = "leased"

    def release(self, subject_id: int) -> None:
        self.state[subject_id] = "done"

    def reset(self) -> int:
        for subject_id in self.state:
            self.state[subject_id] = "idle"
        return len(self.state)


class SweepSchedulerTestCase(unittest.TestCase):
    def test_generations_cycle_fairly_through_backlog(self) -> None:
        source = InMemorySource(["A", "B", "C"])
        sleep = RecordingSleep()
        scheduler = SweepScheduler(source, lambda subject: 1, batch_size=2, reset_sleep=3600, sleep=sleep)

        batches = []
        phases = []
        for _ in range(8):
            phase = scheduler.step()
            phases.append(phase)
            if phase is SweepPhase.PROCESSING:
                batches.append([subject.id for subject in scheduler.batch])

        self.assertEqual(batches, [["A", "B"], ["C"], ["A", "B"]])
        self.assertEqual(
            phases,
            [
                SweepPhase.PROCESSING,
                SweepPhase.SELECTING,
                SweepPhase.PROCESSING,
                SweepPhase.SELECTING,
                SweepPhase.RESETTING,
                SweepPhase.IDLE,
                SweepPhase.SELECTING,
                SweepPhase.PROCESSING,
            ],
        )
        self.assertEqual(sleep.calls, [3600])
        self.assertEqual(scheduler.stats.generation, 1)

    def test_failed_subject_does_not_stop_batch(self) -> None:
        source = InMemorySource([1, 2, 3])

        def processor(subject: Subject) -> int:
            if subject.id == 2:
                raise RuntimeError("boom")
            return 5

        scheduler = SweepScheduler(source, processor, batch_size=10, sleep=RecordingSleep())
        scheduler.step()
        scheduler.step()

        self.assertEqual(source.state, {1: "done", 2: "leased", 3: "done"})
        self.assertEqual(scheduler.stats.failed, 1)
        self.assertEqual(scheduler.stats.succeeded, 2)
        self.assertEqual(scheduler.stats.records, 10)

    def test_run_generation_stops_at_reset(self) -> None:
        source = InMemorySource(range(5))
        seen = []
        sleep = RecordingSleep()
        scheduler = SweepScheduler(source, lambda subject: seen.append(subject.id), batch_size=2, sleep=sleep)

        stats = scheduler.run_generation()

        self.assertEqual(seen, [0, 1, 2, 3, 4])
        self.assertEqual(stats.generation, 1)
        self.assertEqual(stats.batches, 3)
        self.assertEqual(scheduler.phase, SweepPhase.IDLE)
        self.assertEqual(sleep.calls, [])

    def test_run_forever_survives_store_failures(self) -> None:
        source = InMemorySource([])
        source.select_failures = 1
        calls = []

        def sleep(seconds: float) -> None:
            calls.append(seconds)
            if seconds == 100:
                raise StopSweep()

        scheduler = SweepScheduler(source, lambda subject: 0, reset_sleep=100, error_sleep=7, sleep=sleep)
        with self.assertLogs("harvester.scheduler", level="ERROR"):
            with self.assertRaises(StopSweep):
                scheduler.run_forever()

        self.assertEqual(calls, [7, 100])
        self.assertEqual(scheduler.stats.generation, 1)

    def test_batch_size_must_be_positive(self) -> None:
        with self.assertRaises(ValueError):
            SweepScheduler(InMemorySource([]), lambda subject: 0, batch_size=0)


class SweepSchedulerStoreTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.Session = make_session_factory()
        with self.Session() as session:
            session.add_all([Byline(id=index, name=f"Writer {index}") for index in (1, 2, 3)])
            session.commit()
        self.clock = ManualClock(datetime(2024, 5, 1))

    def tearDown(self) -> None:
        self.engine.dispose()

    def test_failed_subject_keeps_live_lease_until_timeout(self) -> None:
        store = SubjectStore(self.Session, PROFILES_LEASE, lease_timeout=timedelta(hours=6), clock=self.clock)

        def processor(subject: Subject) -> int:
            if subject.id == 2:
                raise RuntimeError("remote changed shape")
            return 1

        scheduler = SweepScheduler(store, processor, batch_size=2, sleep=RecordingSleep())
        scheduler.step()
        scheduler.step()

        self.assertEqual([subject.id for subject in store.select_eligible(10)], [3])
        self.clock.advance(hours=7)
        self.assertEqual([subject.id for subject in store.select_eligible(10)], [3, 2])

        with self.Session() as session:
            self.assertIsNone(session.get(Byline, 1).profile_leased_at)
            self.assertIsNotNone(session.get(Byline, 2).profile_leased_at)

    def test_failing_subject_does_not_starve_unvisited_subjects(self) -> None:
        with self.Session() as session:
            session.add(Byline(id=4, name="Writer 4"))
            session.commit()
        store = SubjectStore(self.Session, PROFILES_LEASE, lease_timeout=timedelta(hours=6), clock=self.clock)
        visits = []

        def processor(subject: Subject) -> int:
            visits.append(subject.id)
            self.clock.advance(hours=4)
            if subject.id == 1:
                raise RuntimeError("remote changed shape")
            return 1

        scheduler = SweepScheduler(store, processor, batch_size=2, sleep=RecordingSleep())
        stats = scheduler.run_generation()

        self.assertEqual(visits, [1, 2, 3, 4, 1])
        self.assertEqual(stats.generation, 1)
        self.assertEqual(stats.failed, 2)
        self.assertEqual(stats.succeeded, 3)


if __name__ == "__main__":
    unittest.main()
