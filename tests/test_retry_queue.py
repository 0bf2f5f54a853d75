from __future__ import annotations

import tempfile
import unittest
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch

from _support import T0, FakeClock, make_services

from globalsched.core.errors import NotFoundError
from globalsched.core.timeutil import to_iso


class RetryQueueTests(unittest.TestCase):
    def _enqueue(self, svc) -> dict:
        return svc.retry_queue.enqueue("b1", "t1", "facebook", "fb-1", "timeout", now=T0)

    def test_new_entry_waits_for_first_slot(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            svc = make_services(Path(td))
            entry = self._enqueue(svc)
            self.assertEqual(entry["status"], "pending")
            self.assertEqual(entry["attempt_count"], 0)
            self.assertEqual(entry["next_attempt_at"], to_iso(T0 + timedelta(minutes=5)))

            early = svc.retry_queue.process_queue(now=T0 + timedelta(minutes=4))
            self.assertEqual(early["processed"], 0)
            self.assertEqual(svc.runner.tasks, [])

    def test_three_failed_attempts_freeze_the_entry(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            svc = make_services(Path(td))
            self._enqueue(svc)
            slots = [5, 20, 65]
            for attempt, minute in enumerate(slots, start=1):
                res = svc.retry_queue.process_queue(now=T0 + timedelta(minutes=minute))
                self.assertEqual(res["triggered"], 1, attempt)
                run_id = svc.runner.tasks[-1]["run_id"]
                self.assertEqual(svc.runner.tasks[-1]["metadata"]["attempt"], attempt)
                entry = svc.retry_queue.record_failure(
                    "b1", "facebook", f"failure {attempt}", run_id=run_id, now=T0 + timedelta(minutes=minute + 1)
                )
                self.assertEqual(entry["attempt_count"], attempt)

            self.assertEqual(entry["status"], "permanently_failed")
            self.assertEqual(entry["last_error"], "failure 3")
            later = svc.retry_queue.process_queue(now=T0 + timedelta(days=2))
            self.assertEqual(later["processed"], 0)
            self.assertEqual(len(svc.runner.tasks), 3)
            stats = svc.retry_queue.stats(now=T0 + timedelta(days=2))
            self.assertEqual((stats["pending"], stats["permanently_failed"], stats["due"]), (0, 1, 0))

    def test_silent_last_attempt_is_frozen_on_next_sweep(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            svc = make_services(Path(td))
            self._enqueue(svc)
            for minute in (5, 20, 65):
                svc.retry_queue.process_queue(now=T0 + timedelta(minutes=minute))
            res = svc.retry_queue.process_queue(now=T0 + timedelta(minutes=110))
            self.assertEqual(res["frozen"], 1)
            self.assertEqual(svc.retry_queue.list_entries(status="permanently_failed")[0]["business_id"], "b1")

    def test_batch_failure_does_not_freeze_in_flight_last_attempt(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            svc = make_services(Path(td))
            self._enqueue(svc)
            for minute in (5, 20, 65):
                svc.retry_queue.process_queue(now=T0 + timedelta(minutes=minute))

            entry = svc.retry_queue.enqueue("b1", "t1", "facebook", "fb-1", "batch timeout", now=T0 + timedelta(minutes=70))

            self.assertEqual(entry["status"], "pending")
            self.assertEqual(entry["attempt_count"], 3)
            self.assertEqual(entry["last_error"], "batch timeout")
            entry = svc.retry_queue.record_failure(
                "b1", "facebook", "captcha", run_id="task-3", now=T0 + timedelta(minutes=75)
            )
            self.assertEqual(entry["status"], "permanently_failed")

    def test_broken_entry_does_not_stop_sweep(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            svc = make_services(Path(td))
            self._enqueue(svc)
            svc.retry_queue.enqueue("b2", "t1", "facebook", "fb-2", "timeout", now=T0 + timedelta(minutes=1))
            original = svc.retry_queue._process_one
            seen: list[int] = []

            def first_one_breaks(entry_id, now):
                seen.append(entry_id)
                if len(seen) == 1:
                    raise RuntimeError("row vanished")
                return original(entry_id, now)

            with patch.object(svc.retry_queue, "_process_one", side_effect=first_one_breaks):
                res = svc.retry_queue.process_queue(now=T0 + timedelta(minutes=10))

            self.assertEqual(len(seen), 2)
            self.assertEqual(res, {"processed": 1, "triggered": 1, "failed": 1, "frozen": 0})
            self.assertEqual([t["identifier"] for t in svc.runner.tasks], ["fb-2"])
            by_business = {e["business_id"]: e for e in svc.retry_queue.list_entries()}
            self.assertEqual(by_business["b1"]["attempt_count"], 0)
            self.assertEqual(by_business["b2"]["attempt_count"], 1)

    def test_stale_failure_is_ignored(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            svc = make_services(Path(td))
            self._enqueue(svc)
            svc.retry_queue.process_queue(now=T0 + timedelta(minutes=5))
            svc.retry_queue.process_queue(now=T0 + timedelta(minutes=20))
            entry = svc.retry_queue.record_failure("b1", "facebook", "late", run_id="task-1")
            self.assertEqual(entry["last_run_id"], "task-2")
            self.assertEqual(entry["status"], "pending")
            self.assertIsNone(svc.retry_queue.record_failure("nobody", "facebook", "x"))

    def test_runner_failure_counts_as_attempt(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            svc = make_services(Path(td))
            self._enqueue(svc)
            svc.runner.fail_next(3)
            now = T0 + timedelta(minutes=5)
            res = svc.retry_queue.process_queue(now=now)
            self.assertEqual(res["failed"], 1)
            entry = svc.retry_queue.list_entries()[0]
            self.assertEqual(entry["attempt_count"], 1)
            self.assertEqual(entry["next_attempt_at"], to_iso(now + timedelta(minutes=15)))
            self.assertIn("SCHED_003_EXTERNAL_PROVIDER", entry["last_error"])

    def test_success_clears_entry(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            svc = make_services(Path(td))
            self._enqueue(svc)
            self.assertTrue(svc.retry_queue.record_success("b1", "facebook"))
            self.assertFalse(svc.retry_queue.record_success("b1", "facebook"))
            self.assertEqual(svc.retry_queue.stats()["total"], 0)

    def test_repeat_enqueue_keeps_single_entry(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            svc = make_services(Path(td))
            self._enqueue(svc)
            again = svc.retry_queue.enqueue("b1", "t1", "facebook", "fb-1", "second", now=T0 + timedelta(minutes=1))
            self.assertEqual(again["last_error"], "second")
            self.assertEqual(again["next_attempt_at"], to_iso(T0 + timedelta(minutes=5)))
            self.assertEqual(svc.retry_queue.stats()["total"], 1)

    def test_force_retry_resets_budget(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            clock = FakeClock(T0 + timedelta(days=1))
            svc = make_services(Path(td), clock=clock)
            svc.orchestrator.add_business_to_schedule("t1", "facebook", "b1", "fb-1")
            self._enqueue(svc)
            for minute in (5, 20, 65, 110):
                svc.retry_queue.process_queue(now=T0 + timedelta(minutes=minute))
            self.assertEqual(svc.retry_queue.stats()["permanently_failed"], 1)

            entries = svc.retry_queue.force_retry_business("b1")

            self.assertEqual(len(entries), 1)
            self.assertEqual(entries[0]["status"], "pending")
            self.assertEqual(entries[0]["attempt_count"], 0)
            self.assertEqual(entries[0]["next_attempt_at"], to_iso(clock.now))
            res = svc.retry_queue.process_queue()
            self.assertEqual(res["triggered"], 1)
            with self.assertRaises(NotFoundError):
                svc.retry_queue.force_retry_business("ghost")
            with self.assertRaises(NotFoundError):
                svc.retry_queue.force_retry_business("b1", "tripadvisor")

    def test_force_retry_creates_missing_entry(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            svc = make_services(Path(td))
            svc.orchestrator.add_business_to_schedule("t1", "tripadvisor", "b9", "ta-9")
            entries = svc.retry_queue.force_retry_business("b9", "tripadvisor")
            self.assertEqual(entries[0]["identifier"], "ta-9")
            self.assertEqual(entries[0]["last_error"], "manual retry")

    def test_cleanup_drops_old_entries(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            svc = make_services(Path(td))
            self._enqueue(svc)
            self.assertEqual(svc.retry_queue.cleanup(now=T0 + timedelta(days=3)), {"entries_deleted": 0, "runs_deleted": 0})
            res = svc.retry_queue.cleanup(now=T0 + timedelta(days=8))
            self.assertEqual(res["entries_deleted"], 1)
            self.assertEqual(svc.retry_queue.stats()["total"], 0)


if __name__ == "__main__":
    unittest.main()
