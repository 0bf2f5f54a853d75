from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from globalsched.adapters.providers import BillingSource
from globalsched.config import SchedulingSettings
from globalsched.core.cron import validate_interval_hours
from globalsched.core.errors import ValidationError
from globalsched.core.timeutil import ensure_aware, parse_iso, to_iso, utc_now
from globalsched.db.models.scheduling import CustomIntervalOverride
from globalsched.db.repo import SchedulesRepo
from globalsched.services.store import SchedulingStore

logger = logging.getLogger("globalsched.interval_resolver")


def _override_dict(o: CustomIntervalOverride, now_iso: str) -> dict[str, Any]:
    return {
        "team_id": o.team_id,
        "platform": o.platform,
        "interval_hours": int(o.interval_hours),
        "expires_at": o.expires_at,
        "expired": bool(o.expires_at and o.expires_at <= now_iso),
        "reason": o.reason,
        "set_by": o.set_by,
        "created_at": o.created_at,
        "updated_at": o.updated_at,
    }


class IntervalResolver:
    """
    Effective collection interval per (team, platform).

    Order: unexpired custom override, then the team's tier default from billing,
    then the configured fallback. Reads never write.
    """

    def __init__(
        self,
        store: SchedulingStore,
        settings: SchedulingSettings,
        billing: BillingSource,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.settings = settings
        self.billing = billing
        self.clock = clock

    def _validate(self, hours: Any) -> int:
        return validate_interval_hours(
            hours, min_hours=self.settings.min_interval_hours, max_hours=self.settings.max_interval_hours
        )

    def get_effective_interval(
        self,
        team_id: str,
        platform: str,
        schedule_type: str = "reviews",
        now: datetime | None = None,
    ) -> int:
        self.settings.require_platform(platform)
        now_iso = to_iso(ensure_aware(now or self.clock()))
        with self.store.session_scope() as s:
            override = SchedulesRepo(s).get_override(team_id, platform)
            if override is not None and (not override.expires_at or override.expires_at > now_iso):
                return int(override.interval_hours)
        tier_default = self._tier_default(team_id, platform, schedule_type)
        if tier_default is not None:
            return tier_default
        return int(self.settings.fallback_interval_hours)

    def _tier_default(self, team_id: str, platform: str, schedule_type: str) -> int | None:
        try:
            tier = self.billing.get_team_tier(team_id)
            if not tier:
                return None
            hours = self.billing.get_tier_default_interval(tier, platform, schedule_type)
        except Exception as e:
            logger.warning("billing_lookup_failed team_id=%s platform=%s error=%s", team_id, platform, e)
            return None
        if hours is None:
            return None
        try:
            return self._validate(hours)
        except ValidationError:
            logger.warning("tier_default_invalid team_id=%s tier=%s hours=%r", team_id, tier, hours)
            return None

    def set_custom_interval(
        self,
        team_id: str,
        platform: str,
        hours: Any,
        expires_at: datetime | str | None = None,
        *,
        reason: str | None = None,
        set_by: str | None = None,
    ) -> dict[str, Any]:
        """Upserts the override only; existing mappings move through apply_interval_change."""
        if not str(team_id or "").strip():
            raise ValidationError("team_id is required")
        self.settings.require_platform(platform)
        interval = self._validate(hours)
        now_iso = to_iso(self.clock())
        expires_iso: str | None = None
        if expires_at is not None and expires_at != "":
            parsed = expires_at if isinstance(expires_at, datetime) else parse_iso(str(expires_at))
            if parsed is None:
                raise ValidationError(f"invalid expires_at={expires_at!r}")
            expires_iso = to_iso(parsed)
            if expires_iso <= now_iso:
                raise ValidationError("expires_at must be in the future")
        with self.store.session_scope() as s:
            repo = SchedulesRepo(s)
            row = repo.get_override(team_id, platform)
            if row is None:
                row = CustomIntervalOverride(
                    team_id=team_id,
                    platform=platform,
                    interval_hours=interval,
                    created_at=now_iso,
                    updated_at=now_iso,
                )
                s.add(row)
            row.interval_hours = interval
            row.expires_at = expires_iso
            row.reason = reason
            row.set_by = set_by
            row.updated_at = now_iso
            s.flush()
            out = _override_dict(row, now_iso)
        logger.info("custom_interval_set team_id=%s platform=%s hours=%d expires_at=%s", team_id, platform, interval, expires_iso)
        return out

    def remove_custom_interval(self, team_id: str, platform: str) -> bool:
        with self.store.session_scope() as s:
            removed = SchedulesRepo(s).delete_override(team_id, platform)
        if removed:
            logger.info("custom_interval_removed team_id=%s platform=%s", team_id, platform)
        return removed

    def list_custom_intervals(self, team_id: str) -> list[dict[str, Any]]:
        now_iso = to_iso(self.clock())
        with self.store.session_scope() as s:
            return [_override_dict(o, now_iso) for o in SchedulesRepo(s).list_overrides(team_id)]

    def purge_expired_overrides(self, now: datetime | None = None) -> int:
        now_iso = to_iso(ensure_aware(now or self.clock()))
        with self.store.session_scope() as s:
            return SchedulesRepo(s).purge_expired_overrides(now_iso)
