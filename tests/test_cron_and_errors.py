from __future__ import annotations

import unittest
from datetime import datetime, timezone

from globalsched.core.cron import interval_to_cron, next_fire_time, validate_interval_hours
from globalsched.core.errors import (
    HTTP_STATUS_BY_CODE,
    CallbackAuthError,
    CapacityExceededError,
    ExternalProviderError,
    NotFoundError,
    ValidationError,
)
from globalsched.core.timeutil import parse_iso, to_iso
from globalsched.services.external_calls import ExternalCallPolicy, call_external


class CronTests(unittest.TestCase):
    def test_sub_daily_intervals_use_hour_steps(self) -> None:
        self.assertEqual(interval_to_cron(6, 0), "0 */6 * * *")
        self.assertEqual(interval_to_cron(12, 1), "15 */12 * * *")
        self.assertEqual(interval_to_cron(6, 5), "15 */6 * * *")

    def test_daily_and_multi_day_intervals(self) -> None:
        self.assertEqual(interval_to_cron(24, 0), "0 9 * * *")
        self.assertEqual(interval_to_cron(24, 2), "30 9 * * *")
        self.assertEqual(interval_to_cron(72, 3), "45 10 */3 * *")
        self.assertEqual(interval_to_cron(168, 0), "0 10 */7 * *")

    def test_validate_interval_hours(self) -> None:
        self.assertEqual(validate_interval_hours(12), 12)
        self.assertEqual(validate_interval_hours("48"), 48)
        for bad in (0, 169, 36, 12.5, "abc", None, True):
            with self.subTest(value=bad):
                with self.assertRaises(ValidationError):
                    validate_interval_hours(bad)

    def test_next_fire_time(self) -> None:
        after = datetime(2026, 10, 18, 10, 0, tzinfo=timezone.utc)
        nxt = next_fire_time("0 9 * * *", after)
        self.assertEqual(nxt, datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc))
        nxt = next_fire_time("15 */6 * * *", after)
        self.assertEqual(nxt, datetime(2026, 10, 18, 12, 15, tzinfo=timezone.utc))

    def test_iso_strings_sort_by_time(self) -> None:
        a = to_iso(datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc))
        b = to_iso(datetime(2026, 10, 18, 10, 0, 0, 1, tzinfo=timezone.utc))
        self.assertLess(a, b)
        self.assertEqual(parse_iso(a), datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc))
        self.assertIsNone(parse_iso("not-a-date"))


class ErrorTests(unittest.TestCase):
    def test_codes_and_http_status(self) -> None:
        err = NotFoundError("schedule_id=x")
        self.assertEqual(err.code, "SCHED_002_NOT_FOUND")
        self.assertIn("schedule_id=x", str(err))
        self.assertEqual(HTTP_STATUS_BY_CODE[err.code], 404)
        self.assertEqual(HTTP_STATUS_BY_CODE[ValidationError().code], 400)
        self.assertEqual(HTTP_STATUS_BY_CODE[CallbackAuthError().code], 403)

    def test_capacity_error_carries_counts(self) -> None:
        err = CapacityExceededError("s1", 51, 50)
        self.assertEqual((err.schedule_id, err.count, err.capacity), ("s1", 51, 50))
        self.assertEqual(err.code, "SCHED_005_CAPACITY")


class ExternalCallTests(unittest.TestCase):
    def test_retries_until_success(self) -> None:
        sleeps: list[float] = []
        calls = {"n": 0}

        def flaky() -> str:
            calls["n"] += 1
            if calls["n"] < 3:
                raise RuntimeError("boom")
            return "ok"

        policy = ExternalCallPolicy(attempts=3, base_delay_seconds=0.5, sleep=sleeps.append)
        self.assertEqual(call_external("create_schedule", flaky, policy), "ok")
        self.assertEqual(sleeps, [0.5, 1.0])

    def test_exhaustion_raises_provider_error(self) -> None:
        def broken() -> None:
            raise RuntimeError("down")

        policy = ExternalCallPolicy(attempts=2, base_delay_seconds=0, sleep=lambda _: None)
        with self.assertRaises(ExternalProviderError) as ctx:
            call_external("pause_schedule", broken, policy)
        self.assertEqual(ctx.exception.op, "pause_schedule")
        self.assertEqual(ctx.exception.attempts, 2)
        self.assertIsInstance(ctx.exception.__cause__, RuntimeError)


if __name__ == "__main__":
    unittest.main()
