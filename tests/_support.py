from __future__ import annotations

import unittest
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from globalsched.adapters.memory import InMemoryScheduler, InMemoryTaskRunner
from globalsched.adapters.providers import StaticBillingSource
from globalsched.config import SchedulingSettings
from globalsched.db.repo import SchedulesRepo
from globalsched.services.container import Services, build_services
from globalsched.services.external_calls import ExternalCallPolicy

T0 = datetime(2026, 10, 18, 8, 0, tzinfo=timezone.utc)

SMALL_CAPACITY = {"google_reviews": 3, "facebook": 10, "tripadvisor": 50}


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_settings(root: Path, **overrides: Any) -> SchedulingSettings:
    base = SchedulingSettings(
        database_url=f"sqlite:///{(root / 'data' / 'test.db').as_posix()}",
        platform_capacity=dict(SMALL_CAPACITY),
        callback_token="cb-secret",
    )
    return replace(base, **overrides)


def make_services(
    root: Path,
    *,
    clock: FakeClock | None = None,
    team_tiers: dict[str, str] | None = None,
    **overrides: Any,
) -> Services:
    settings = make_settings(root, **overrides)
    return build_services(
        root,
        settings=settings,
        scheduler=InMemoryScheduler(),
        runner=InMemoryTaskRunner(),
        billing=StaticBillingSource(settings.tier_intervals, team_tiers),
        policy=ExternalCallPolicy(attempts=3, base_delay_seconds=0, sleep=lambda _: None),
        clock=clock or FakeClock(),
    )


def add_many(svc: Services, team_id: str, platform: str, count: int, *, prefix: str = "b") -> list[dict[str, Any]]:
    return [
        svc.orchestrator.add_business_to_schedule(team_id, platform, f"{prefix}{i}", f"id-{prefix}{i}")
        for i in range(1, count + 1)
    ]


def assert_consistent(tc: unittest.TestCase, svc: Services) -> None:
    """Checks mapping/schedule agreement in the database and at the fake provider."""
    with svc.store.session_scope() as s:
        repo = SchedulesRepo(s)
        seen: set[tuple[str, str]] = set()
        for sched in repo.list_schedules():
            mappings = repo.list_mappings(sched.id)
            tc.assertEqual(sched.current_business_count, len(mappings), sched.id)
            tc.assertLessEqual(len(mappings), sched.max_batch_capacity, sched.id)
            for m in mappings:
                tc.assertEqual(m.platform, sched.platform)
                tc.assertEqual(m.assigned_interval_hours, sched.interval_hours)
                key = (m.business_id, m.platform)
                tc.assertNotIn(key, seen)
                seen.add(key)
            ext = svc.scheduler.schedules.get(sched.external_schedule_id)
            tc.assertIsNotNone(ext, sched.external_schedule_id)
            tc.assertEqual(ext["input"]["identifiers"], [m.identifier for m in mappings])
            tc.assertEqual(ext["paused"], not mappings)
            tc.assertEqual(bool(sched.is_active), bool(mappings))
