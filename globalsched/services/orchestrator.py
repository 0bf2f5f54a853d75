from __future__ import annotations

import logging
from typing import Any, Iterable

from sqlalchemy.exc import IntegrityError

from globalsched.core.cron import validate_interval_hours
from globalsched.core.errors import CapacityExceededError, NotFoundError, ValidationError
from globalsched.db.models.scheduling import BusinessScheduleMapping, CollectionRun
from globalsched.db.repo import RetryRepo, SchedulesRepo
from globalsched.services.batch_manager import ScheduleBatchManager
from globalsched.services.interval_resolver import IntervalResolver
from globalsched.services.schedule_registry import ScheduleRegistry, group_key, mapping_dict, schedule_dict

logger = logging.getLogger("globalsched.orchestrator")


def _require_text(name: str, value: Any) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValidationError(f"{name} is required")
    return text


class GlobalScheduleOrchestrator:
    """
    Tenant-facing add/move/remove of businesses on shared schedule batches.

    Each mutation holds the in-process lock of every (platform, type, interval)
    group it touches, runs as one registry unit, and retries once when a
    uniqueness constraint reports a concurrent writer.
    """

    def __init__(
        self,
        registry: ScheduleRegistry,
        batches: ScheduleBatchManager,
        resolver: IntervalResolver,
    ) -> None:
        self.registry = registry
        self.batches = batches
        self.resolver = resolver
        self.settings = registry.settings
        self.store = registry.store

    def _validate_interval(self, hours: Any) -> int:
        return validate_interval_hours(
            hours, min_hours=self.settings.min_interval_hours, max_hours=self.settings.max_interval_hours
        )

    def _split_if_needed(self, schedule_id: str, count: int, capacity: int) -> None:
        if count > capacity:
            logger.warning("capacity_race %s", CapacityExceededError(schedule_id, count, capacity))
            self.batches.split_if_over_capacity(schedule_id)

    def add_business_to_schedule(
        self,
        team_id: str,
        platform: str,
        business_id: str,
        identifier: str,
        schedule_type: str = "reviews",
    ) -> dict[str, Any]:
        team_id = _require_text("team_id", team_id)
        business_id = _require_text("business_id", business_id)
        identifier = _require_text("identifier", identifier)
        self.settings.require_platform(platform)
        self.settings.require_schedule_type(schedule_type)
        interval = self.resolver.get_effective_interval(team_id, platform, schedule_type)
        key = (platform, schedule_type, interval)

        for attempt in (1, 2):
            try:
                with self.registry.group_lock(key), self.registry.unit() as u:
                    existing = u.repo.get_mapping(business_id, platform)
                    if existing is not None:
                        if existing.team_id != team_id:
                            raise ValidationError(
                                f"business_id={business_id} platform={platform} belongs to another team"
                            )
                        return {**mapping_dict(existing), "created": False}
                    target = self.batches.find_or_create_in(u, platform, schedule_type, interval)
                    mapping = BusinessScheduleMapping(
                        team_id=team_id,
                        business_id=business_id,
                        platform=platform,
                        schedule_id=target.id,
                        identifier=identifier,
                        assigned_interval_hours=interval,
                        created_at=u.now_iso,
                        updated_at=u.now_iso,
                    )
                    u.session.add(mapping)
                    self.registry.sync_schedule(u, target)
                    out = {**mapping_dict(mapping), "created": True}
                    count = int(target.current_business_count)
                    capacity = int(target.max_batch_capacity)
                break
            except IntegrityError:
                if attempt == 2:
                    raise
                logger.info("add_conflict_retry business_id=%s platform=%s", business_id, platform)

        logger.info(
            "business_added business_id=%s platform=%s interval=%d schedule_id=%s",
            business_id,
            platform,
            interval,
            out["schedule_id"],
        )
        self._split_if_needed(out["schedule_id"], count, capacity)
        return out

    def _peek_mapping(self, business_id: str, platform: str) -> tuple[BusinessScheduleMapping, Any] | None:
        with self.store.session_scope() as s:
            repo = SchedulesRepo(s)
            mapping = repo.get_mapping(business_id, platform)
            if mapping is None:
                return None
            schedule = repo.get_schedule(mapping.schedule_id)
            return mapping, schedule

    def move_business_between_schedules(
        self,
        team_id: str,
        platform: str,
        business_id: str,
        new_interval_hours: Any = None,
    ) -> dict[str, Any]:
        """
        Re-points one mapping at a batch of the new interval.

        An unchanged interval is a no-op with no writes and no external calls.
        """
        self.settings.require_platform(platform)
        peek = self._peek_mapping(business_id, platform)
        if peek is None or peek[0].team_id != team_id:
            raise NotFoundError(f"business_id={business_id} platform={platform} team_id={team_id}")
        current, old_schedule = peek
        schedule_type = old_schedule.schedule_type if old_schedule is not None else "reviews"
        if new_interval_hours is None:
            new_interval = self.resolver.get_effective_interval(team_id, platform, schedule_type)
        else:
            new_interval = self._validate_interval(new_interval_hours)
        if int(current.assigned_interval_hours) == new_interval:
            return {**mapping_dict(current), "moved": False}

        old_key = group_key(old_schedule) if old_schedule is not None else (platform, schedule_type, new_interval)
        new_key = (platform, schedule_type, new_interval)
        with self.registry.group_lock(old_key, new_key), self.registry.unit() as u:
            mapping = u.repo.get_mapping(business_id, platform)
            if mapping is None:
                raise NotFoundError(f"business_id={business_id} platform={platform}")
            if int(mapping.assigned_interval_hours) == new_interval:
                return {**mapping_dict(mapping), "moved": False}
            old = u.repo.get_schedule(mapping.schedule_id, for_update=True)
            target = self.batches.find_or_create_in(u, platform, schedule_type, new_interval)
            mapping.schedule_id = target.id
            mapping.assigned_interval_hours = new_interval
            mapping.updated_at = u.now_iso
            self.registry.sync_schedule(u, target)
            retired = False
            if old is not None:
                self.registry.sync_schedule(u, old)
                retired = self.registry.retire_if_empty(u, old)
            out = {
                **mapping_dict(mapping),
                "moved": True,
                "from_schedule_id": current.schedule_id,
                "from_interval_hours": int(current.assigned_interval_hours),
                "old_schedule_retired": retired,
            }
            count = int(target.current_business_count)
            capacity = int(target.max_batch_capacity)
        logger.info(
            "business_moved business_id=%s platform=%s from_interval=%d to_interval=%d",
            business_id,
            platform,
            out["from_interval_hours"],
            new_interval,
        )
        self._split_if_needed(out["schedule_id"], count, capacity)
        return out

    def remove_business_from_schedule(self, team_id: str, platform: str, business_id: str) -> bool:
        self.settings.require_platform(platform)
        peek = self._peek_mapping(business_id, platform)
        if peek is None:
            return False
        current, schedule = peek
        if current.team_id != team_id:
            raise NotFoundError(f"business_id={business_id} platform={platform} team_id={team_id}")
        key = group_key(schedule) if schedule is not None else (platform, "reviews", int(current.assigned_interval_hours))
        with self.registry.group_lock(key), self.registry.unit() as u:
            mapping = u.repo.get_mapping(business_id, platform)
            if mapping is None:
                return False
            old = u.repo.get_schedule(mapping.schedule_id, for_update=True)
            u.session.delete(mapping)
            RetryRepo(u.session).delete_entry(business_id, platform)
            if old is not None:
                self.registry.sync_schedule(u, old)
                self.registry.retire_if_empty(u, old)
        logger.info("business_removed business_id=%s platform=%s", business_id, platform)
        return True

    def _schedule_key(self, schedule_id: str) -> tuple[str, str, int]:
        peek = self.registry.peek_schedule(schedule_id)
        if peek is None:
            raise NotFoundError(f"schedule_id={schedule_id}")
        return group_key(peek)

    def rebuild_schedule_input(self, schedule_id: str) -> dict[str, Any]:
        key = self._schedule_key(schedule_id)
        with self.registry.group_lock(key), self.registry.unit() as u:
            schedule = u.repo.get_schedule(schedule_id, for_update=True)
            if schedule is None:
                raise NotFoundError(f"schedule_id={schedule_id}")
            return self.registry.sync_schedule(u, schedule, force=True)

    def trigger_manual_run(self, schedule_id: str) -> dict[str, Any]:
        key = self._schedule_key(schedule_id)
        with self.registry.group_lock(key), self.registry.unit() as u:
            schedule = u.repo.get_schedule(schedule_id, for_update=True)
            if schedule is None:
                raise NotFoundError(f"schedule_id={schedule_id}")
            job_input = self.registry.sync_schedule(u, schedule, force=True)
            if not job_input["identifiers"]:
                raise ValidationError(f"schedule_id={schedule_id} has no businesses")
            external_id = schedule.external_schedule_id
            run_id = str(self.registry.call("run_now", lambda: self.registry.scheduler.run_now(external_id)))
            u.session.add(
                CollectionRun(
                    run_id=run_id,
                    kind="manual",
                    schedule_id=schedule.id,
                    platform=schedule.platform,
                    status="running",
                    created_at=u.now_iso,
                    updated_at=u.now_iso,
                )
            )
            out = {"schedule_id": schedule.id, "run_id": run_id, "business_count": len(job_input["identifiers"])}
        logger.info("manual_run schedule_id=%s run_id=%s", schedule_id, run_id)
        return out

    def pause_schedule(self, schedule_id: str) -> dict[str, Any]:
        key = self._schedule_key(schedule_id)
        with self.registry.group_lock(key), self.registry.unit() as u:
            schedule = u.repo.get_schedule(schedule_id, for_update=True)
            if schedule is None:
                raise NotFoundError(f"schedule_id={schedule_id}")
            external_id = schedule.external_schedule_id
            u.touched.add(schedule.id)
            self.registry.call("pause_schedule", lambda: self.registry.scheduler.pause_schedule(external_id))
            schedule.is_active = 0
            schedule.next_run_at = None
            schedule.updated_at = u.now_iso
            return schedule_dict(schedule)

    def resume_schedule(self, schedule_id: str) -> dict[str, Any]:
        key = self._schedule_key(schedule_id)
        with self.registry.group_lock(key), self.registry.unit() as u:
            schedule = u.repo.get_schedule(schedule_id, for_update=True)
            if schedule is None:
                raise NotFoundError(f"schedule_id={schedule_id}")
            if not u.repo.list_mappings(schedule.id):
                raise ValidationError(f"schedule_id={schedule_id} has no businesses")
            self.registry.sync_schedule(u, schedule, force=True)
            return schedule_dict(schedule)

    def apply_interval_change(self, team_id: str, platform: str | None = None) -> dict[str, Any]:
        """Moves each of the team's mappings to its freshly resolved interval."""
        with self.store.session_scope() as s:
            mappings = [(m.business_id, m.platform) for m in SchedulesRepo(s).list_team_mappings(team_id, platform=platform)]
        moved: list[dict[str, Any]] = []
        unchanged = 0
        for business_id, plat in mappings:
            res = self.move_business_between_schedules(team_id, plat, business_id)
            if res.get("moved"):
                moved.append(res)
            else:
                unchanged += 1
        return {"team_id": team_id, "moved": len(moved), "unchanged": unchanged, "moves": moved}

    def initialize_schedules(
        self,
        platforms: Iterable[str] | None = None,
        intervals: Iterable[int] | None = None,
        schedule_types: Iterable[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Pre-creates a paused batch 0 for every missing (platform, type, interval) group."""
        created: list[dict[str, Any]] = []
        for platform in list(platforms or self.settings.platforms):
            self.settings.require_platform(platform)
            for schedule_type in list(schedule_types or ("reviews", "overview")):
                self.settings.require_schedule_type(schedule_type)
                for hours in list(intervals or self.settings.init_intervals):
                    interval = self._validate_interval(hours)
                    key = (platform, schedule_type, interval)
                    with self.registry.group_lock(key), self.registry.unit() as u:
                        if u.repo.list_group(platform, schedule_type, interval, for_update=True):
                            continue
                        created.append(schedule_dict(self.registry.create_batch(u, platform, schedule_type, interval)))
        logger.info("schedules_initialized created=%d", len(created))
        return created

    def get_mapping(self, business_id: str, platform: str) -> dict[str, Any] | None:
        with self.store.session_scope() as s:
            m = SchedulesRepo(s).get_mapping(business_id, platform)
            return mapping_dict(m) if m is not None else None
