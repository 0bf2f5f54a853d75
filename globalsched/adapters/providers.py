from __future__ import annotations

from typing import Any, Mapping, Protocol, runtime_checkable


@runtime_checkable
class ExternalScheduler(Protocol):
    """
    Schedule lifecycle capability.

    Schedules are created paused; the core resumes them once they hold work.
    Every method may raise; callers wrap them with bounded retry.
    """

    def create_schedule(self, *, name: str, cron: str, job_input: dict[str, Any]) -> str: ...

    def update_schedule_input(self, external_id: str, job_input: dict[str, Any]) -> None: ...

    def pause_schedule(self, external_id: str) -> None: ...

    def resume_schedule(self, external_id: str) -> None: ...

    def delete_schedule(self, external_id: str) -> None: ...

    def run_now(self, external_id: str) -> str: ...


@runtime_checkable
class TaskRunner(Protocol):
    """Single-run execution capability; results arrive later through the run callback."""

    def run_task(self, platform: str, identifier: str, *, metadata: dict[str, Any]) -> str: ...

    def run_batch(self, platform: str, identifiers: list[str], *, metadata: dict[str, Any]) -> str: ...


@runtime_checkable
class BillingSource(Protocol):
    def get_team_tier(self, team_id: str) -> str | None: ...

    def get_tier_default_interval(self, tier: str, platform: str, schedule_type: str) -> int | None: ...


class StaticBillingSource:
    """Tier defaults from settings, team tiers from a plain mapping."""

    def __init__(
        self,
        tier_intervals: Mapping[str, Mapping[str, int]],
        team_tiers: Mapping[str, str] | None = None,
    ) -> None:
        self.tier_intervals = {str(k): dict(v) for k, v in tier_intervals.items()}
        self.team_tiers: dict[str, str] = dict(team_tiers or {})

    def set_team_tier(self, team_id: str, tier: str | None) -> None:
        if tier is None:
            self.team_tiers.pop(team_id, None)
        else:
            self.team_tiers[team_id] = tier

    def get_team_tier(self, team_id: str) -> str | None:
        return self.team_tiers.get(team_id)

    def get_tier_default_interval(self, tier: str, platform: str, schedule_type: str) -> int | None:
        row = self.tier_intervals.get(tier) or {}
        value = row.get(schedule_type)
        return int(value) if value is not None else None
