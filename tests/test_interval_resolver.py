from __future__ import annotations

import tempfile
import unittest
from datetime import timedelta
from pathlib import Path

from _support import FakeClock, make_services

from globalsched.core.errors import ValidationError


class _BrokenBilling:
    def get_team_tier(self, team_id: str) -> str | None:
        raise ConnectionError("billing offline")

    def get_tier_default_interval(self, tier: str, platform: str, schedule_type: str) -> int | None:
        return None


class IntervalResolverTests(unittest.TestCase):
    def test_fallback_and_tier_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            svc = make_services(Path(td), team_tiers={"t-pro": "professional", "t-ent": "enterprise"})
            self.assertEqual(svc.resolver.get_effective_interval("t-unknown", "google_reviews"), 24)
            self.assertEqual(svc.resolver.get_effective_interval("t-pro", "google_reviews"), 12)
            self.assertEqual(svc.resolver.get_effective_interval("t-pro", "google_reviews", "overview"), 24)
            self.assertEqual(svc.resolver.get_effective_interval("t-ent", "facebook"), 6)

    def test_override_wins_until_it_expires(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            clock = FakeClock()
            svc = make_services(Path(td), clock=clock, team_tiers={"t1": "professional"})
            expires = clock.now + timedelta(hours=1)
            out = svc.resolver.set_custom_interval("t1", "google_reviews", 6, expires, reason="pilot", set_by="ops")
            self.assertEqual(out["interval_hours"], 6)
            self.assertFalse(out["expired"])
            self.assertEqual(svc.resolver.get_effective_interval("t1", "google_reviews"), 6)
            # Other platforms of the same team are unaffected.
            self.assertEqual(svc.resolver.get_effective_interval("t1", "facebook"), 12)

            clock.advance(hours=2)
            self.assertEqual(svc.resolver.get_effective_interval("t1", "google_reviews"), 12)
            listed = svc.resolver.list_custom_intervals("t1")
            self.assertEqual(len(listed), 1)
            self.assertTrue(listed[0]["expired"])
            self.assertEqual(svc.resolver.purge_expired_overrides(), 1)
            self.assertEqual(svc.resolver.list_custom_intervals("t1"), [])

    def test_set_custom_interval_validation(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            clock = FakeClock()
            svc = make_services(Path(td), clock=clock)
            for hours in (0, 200, 30, "x"):
                with self.subTest(hours=hours):
                    with self.assertRaises(ValidationError):
                        svc.resolver.set_custom_interval("t1", "google_reviews", hours)
            with self.assertRaises(ValidationError):
                svc.resolver.set_custom_interval("t1", "myspace", 6)
            with self.assertRaises(ValidationError):
                svc.resolver.set_custom_interval("t1", "google_reviews", 6, "2020-01-01T00:00:00Z")
            with self.assertRaises(ValidationError):
                svc.resolver.set_custom_interval("t1", "google_reviews", 6, "soon")

    def test_setting_override_does_not_move_existing_mappings(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            svc = make_services(Path(td))
            svc.orchestrator.add_business_to_schedule("t1", "google_reviews", "b1", "place-1")
            calls_before = len(svc.scheduler.calls)
            svc.resolver.set_custom_interval("t1", "google_reviews", 6)
            mapping = svc.orchestrator.get_mapping("b1", "google_reviews")
            self.assertEqual(mapping["assigned_interval_hours"], 24)
            self.assertEqual(len(svc.scheduler.calls), calls_before)
            self.assertEqual(svc.resolver.get_effective_interval("t1", "google_reviews"), 6)

    def test_remove_custom_interval_is_idempotent(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            svc = make_services(Path(td))
            svc.resolver.set_custom_interval("t1", "facebook", 48)
            svc.resolver.set_custom_interval("t1", "facebook", 72)
            self.assertEqual(svc.resolver.get_effective_interval("t1", "facebook"), 72)
            self.assertTrue(svc.resolver.remove_custom_interval("t1", "facebook"))
            self.assertFalse(svc.resolver.remove_custom_interval("t1", "facebook"))
            self.assertEqual(svc.resolver.get_effective_interval("t1", "facebook"), 24)

    def test_billing_failure_falls_back(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            svc = make_services(Path(td))
            svc.resolver.billing = _BrokenBilling()
            with self.assertLogs("globalsched.interval_resolver", level="WARNING") as logs:
                self.assertEqual(svc.resolver.get_effective_interval("t1", "google_reviews"), 24)
            self.assertIn("billing_lookup_failed", "\n".join(logs.output))


if __name__ == "__main__":
    unittest.main()
