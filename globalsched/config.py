from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from globalsched.core.cron import MAX_INTERVAL_HOURS, MIN_INTERVAL_HOURS
from globalsched.core.errors import ValidationError
from globalsched.db.config import get_db_settings

DEFAULT_CONFIG_PATH = Path("config") / "scheduling.yaml"

SCHEDULE_TYPES = ("reviews", "overview")

DEFAULT_PLATFORM_CAPACITY: dict[str, int] = {
    "google_reviews": 50,
    "facebook": 30,
    "tripadvisor": 30,
    "booking": 30,
}

DEFAULT_TIER_INTERVALS: dict[str, dict[str, int]] = {
    "starter": {"reviews": 24, "overview": 48},
    "professional": {"reviews": 12, "overview": 24},
    "enterprise": {"reviews": 6, "overview": 12},
}

DEFAULT_RETRY_BACKOFF_MINUTES = (5, 15, 45)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class SchedulingSettings:
    database_url: str = ""
    platform_capacity: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_PLATFORM_CAPACITY))
    tier_intervals: dict[str, dict[str, int]] = field(
        default_factory=lambda: {k: dict(v) for k, v in DEFAULT_TIER_INTERVALS.items()}
    )
    fallback_interval_hours: int = 24
    min_interval_hours: int = MIN_INTERVAL_HOURS
    max_interval_hours: int = MAX_INTERVAL_HOURS
    consolidate_threshold: float = 0.3
    health_warning_ratio: float = 0.80
    health_critical_ratio: float = 0.95
    stall_factor: float = 2.0
    external_attempts: int = 3
    external_base_delay_seconds: float = 0.5
    external_timeout_seconds: float = 15.0
    retry_backoff_minutes: tuple[int, ...] = DEFAULT_RETRY_BACKOFF_MINUTES
    retry_sweep_batch: int = 50
    retry_sweep_seconds: int = 300
    retention_days: int = 7
    reconcile_seconds: int = 3600
    cron_mirror_seconds: int = 30
    empty_batch_policy: str = "pause"
    callback_token: str = ""
    task_runner_url: str = ""
    init_intervals: tuple[int, ...] = (6, 12, 24, 72)

    @property
    def max_retry_attempts(self) -> int:
        return len(self.retry_backoff_minutes)

    @property
    def platforms(self) -> list[str]:
        return sorted(self.platform_capacity)

    def capacity_for(self, platform: str) -> int:
        self.require_platform(platform)
        return int(self.platform_capacity[platform])

    def require_platform(self, platform: str) -> str:
        if platform not in self.platform_capacity:
            raise ValidationError(f"unknown platform={platform!r}")
        return platform

    def require_schedule_type(self, schedule_type: str) -> str:
        if schedule_type not in SCHEDULE_TYPES:
            raise ValidationError(f"unknown schedule_type={schedule_type!r}")
        return schedule_type

    def retry_delay_minutes(self, attempt: int) -> int:
        """Delay before retry `attempt` (1-based), capped at the last slot."""
        slots = self.retry_backoff_minutes
        idx = max(1, int(attempt)) - 1
        return int(slots[min(idx, len(slots) - 1)])


def _apply_yaml(base: SchedulingSettings, obj: dict[str, Any]) -> SchedulingSettings:
    updates: dict[str, Any] = {}
    platforms = obj.get("platforms")
    if isinstance(platforms, dict):
        caps: dict[str, int] = {}
        for name, entry in platforms.items():
            if isinstance(entry, dict):
                caps[str(name)] = int(entry.get("max_batch_size", 0) or 0)
            else:
                caps[str(name)] = int(entry or 0)
        updates["platform_capacity"] = {k: v for k, v in caps.items() if v > 0}
    tiers = obj.get("tiers")
    if isinstance(tiers, dict):
        updates["tier_intervals"] = {
            str(t): {str(k): int(v) for k, v in (d or {}).items()} for t, d in tiers.items() if isinstance(d, dict)
        }
    intervals = obj.get("intervals") or {}
    if isinstance(intervals, dict):
        for key in ("fallback_interval_hours", "min_interval_hours", "max_interval_hours"):
            if key in intervals:
                updates[key] = int(intervals[key])
        if isinstance(intervals.get("initialize"), list):
            updates["init_intervals"] = tuple(int(x) for x in intervals["initialize"])
    batches = obj.get("batches") or {}
    if isinstance(batches, dict):
        for key in ("consolidate_threshold", "health_warning_ratio", "health_critical_ratio", "stall_factor"):
            if key in batches:
                updates[key] = float(batches[key])
        if "empty_batch_policy" in batches:
            updates["empty_batch_policy"] = str(batches["empty_batch_policy"]).strip().lower()
        if "mirror_seconds" in batches:
            updates["cron_mirror_seconds"] = int(batches["mirror_seconds"])
    external = obj.get("external") or {}
    if isinstance(external, dict):
        if "attempts" in external:
            updates["external_attempts"] = int(external["attempts"])
        if "base_delay_seconds" in external:
            updates["external_base_delay_seconds"] = float(external["base_delay_seconds"])
        if "timeout_seconds" in external:
            updates["external_timeout_seconds"] = float(external["timeout_seconds"])
    retry = obj.get("retry") or {}
    if isinstance(retry, dict):
        if isinstance(retry.get("backoff_minutes"), list) and retry["backoff_minutes"]:
            updates["retry_backoff_minutes"] = tuple(int(x) for x in retry["backoff_minutes"])
        for src, dst in (
            ("sweep_batch", "retry_sweep_batch"),
            ("sweep_seconds", "retry_sweep_seconds"),
            ("retention_days", "retention_days"),
        ):
            if src in retry:
                updates[dst] = int(retry[src])
    return replace(base, **updates)


def load_settings_file(path: Path) -> dict[str, Any]:
    obj = yaml.safe_load(path.read_text(encoding="utf-8"))
    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise ValidationError(f"invalid scheduling config: {path}")
    return obj


def get_settings(project_root: Path | None = None) -> SchedulingSettings:
    root = project_root or Path(__file__).resolve().parents[1]
    settings = SchedulingSettings(database_url=get_db_settings().database_url)

    cfg_env = os.environ.get("SCHEDULING_CONFIG_FILE", "").strip()
    cfg_path = Path(cfg_env) if cfg_env else root / DEFAULT_CONFIG_PATH
    if cfg_path.exists():
        settings = _apply_yaml(settings, load_settings_file(cfg_path))

    return replace(
        settings,
        fallback_interval_hours=_env_int("FALLBACK_INTERVAL_HOURS", settings.fallback_interval_hours),
        consolidate_threshold=_env_float("CONSOLIDATE_THRESHOLD", settings.consolidate_threshold),
        external_attempts=_env_int("EXTERNAL_CALL_ATTEMPTS", settings.external_attempts),
        external_timeout_seconds=_env_float("EXTERNAL_CALL_TIMEOUT_SECONDS", settings.external_timeout_seconds),
        retry_sweep_seconds=_env_int("RETRY_SWEEP_SECONDS", settings.retry_sweep_seconds),
        cron_mirror_seconds=_env_int("CRON_MIRROR_SECONDS", settings.cron_mirror_seconds),
        retention_days=_env_int("RETRY_RETENTION_DAYS", settings.retention_days),
        callback_token=os.environ.get("CALLBACK_TOKEN", "").strip(),
        task_runner_url=os.environ.get("TASK_RUNNER_URL", "").strip(),
    )
