from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from globalsched.core.timeutil import ensure_aware, parse_iso
from globalsched.db.models.scheduling import GlobalSchedule
from globalsched.db.repo import SchedulesRepo
from globalsched.services.schedule_registry import ScheduleRegistry, ScheduleUnit, group_key, schedule_dict

logger = logging.getLogger("globalsched.batch_manager")


def pick_best_fit(group: list[GlobalSchedule], *, exclude: set[str] | None = None) -> GlobalSchedule | None:
    """Fullest batch that still has room; ties go to the lowest batch_index."""
    skip = exclude or set()
    candidates = [
        s
        for s in group
        if s.id not in skip and int(s.current_business_count or 0) < int(s.max_batch_capacity or 0)
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda s: (int(s.current_business_count or 0), -int(s.batch_index)))


class ScheduleBatchManager:
    def __init__(self, registry: ScheduleRegistry) -> None:
        self.registry = registry
        self.settings = registry.settings
        self.store = registry.store

    def find_best_schedule(
        self, platform: str, interval_hours: int, schedule_type: str = "reviews"
    ) -> dict[str, Any] | None:
        self.settings.require_platform(platform)
        with self.store.session_scope() as s:
            best = pick_best_fit(SchedulesRepo(s).list_group(platform, schedule_type, int(interval_hours)))
            return schedule_dict(best) if best is not None else None

    def find_or_create_in(
        self, u: ScheduleUnit, platform: str, schedule_type: str, interval_hours: int
    ) -> GlobalSchedule:
        group = u.repo.list_group(platform, schedule_type, interval_hours, for_update=True)
        best = pick_best_fit(group)
        if best is not None:
            return best
        return self.registry.create_batch(u, platform, schedule_type, interval_hours)

    def split_if_over_capacity(self, schedule_id: str) -> list[str]:
        """
        Moves the newest excess mappings of an overfull batch into new batches.

        The oldest `capacity` mappings keep their batch. Returns the new schedule ids.
        """
        peek = self.registry.peek_schedule(schedule_id)
        if peek is None:
            return []
        created: list[str] = []
        with self.registry.group_lock(group_key(peek)), self.registry.unit() as u:
            schedule = u.repo.get_schedule(schedule_id, for_update=True)
            if schedule is None:
                return []
            mappings = u.repo.list_mappings(schedule.id)
            cap = int(schedule.max_batch_capacity)
            if len(mappings) <= cap:
                self.registry.sync_schedule(u, schedule)
                return []
            excess = mappings[cap:]
            for start in range(0, len(excess), cap):
                chunk = excess[start : start + cap]
                batch = self.registry.create_batch(
                    u, schedule.platform, schedule.schedule_type, int(schedule.interval_hours)
                )
                for m in chunk:
                    m.schedule_id = batch.id
                    m.updated_at = u.now_iso
                self.registry.sync_schedule(u, batch)
                created.append(batch.id)
            self.registry.sync_schedule(u, schedule)
            logger.warning(
                "schedule_split schedule_id=%s overflow=%d new_batches=%d", schedule.id, len(excess), len(created)
            )
        return created

    def consolidate(
        self,
        platform: str,
        interval_hours: int,
        schedule_type: str = "reviews",
        threshold: float | None = None,
    ) -> dict[str, int]:
        """
        Drains under-filled batches into the fullest batch that can take them whole.

        Every merge commits on its own, so a provider failure keeps earlier merges.
        """
        self.settings.require_platform(platform)
        self.settings.require_schedule_type(schedule_type)
        limit = self.settings.consolidate_threshold if threshold is None else float(threshold)
        key = (platform, schedule_type, int(interval_hours))
        removed = 0
        moved = 0
        paused = 0
        drained: set[str] = set()
        while True:
            with self.registry.group_lock(key), self.registry.unit() as u:
                group = u.repo.list_group(platform, schedule_type, int(interval_hours), for_update=True)
                step = self._next_merge(group, limit, drained)
                if step is None:
                    break
                source, target = step
                drained.add(source.id)
                if target is not None:
                    n = self._merge_into(u, source, target)
                    moved += n
                if self.registry.retire_if_empty(u, source):
                    removed += 1
                elif int(source.current_business_count or 0) == 0:
                    paused += 1
        if removed or moved:
            logger.info(
                "schedules_consolidated platform=%s type=%s interval=%s removed=%d moved=%d",
                platform,
                schedule_type,
                interval_hours,
                removed,
                moved,
            )
        return {"batches_removed": removed, "businesses_moved": moved, "batches_paused": paused}

    def _next_merge(
        self, group: list[GlobalSchedule], threshold: float, drained: set[str]
    ) -> tuple[GlobalSchedule, GlobalSchedule | None] | None:
        def ratio(s: GlobalSchedule) -> float:
            cap = int(s.max_batch_capacity or 0)
            return int(s.current_business_count or 0) / cap if cap else 1.0

        under = sorted(
            (s for s in group if s.id not in drained and ratio(s) < threshold),
            key=lambda s: (int(s.current_business_count or 0), -int(s.batch_index)),
        )
        for source in under:
            count = int(source.current_business_count or 0)
            if count == 0:
                if int(source.batch_index) == 0 and self.settings.empty_batch_policy == "pause":
                    continue
                return source, None
            targets = [
                t
                for t in group
                if t.id != source.id
                and t.id not in drained
                and int(t.current_business_count or 0) + count <= int(t.max_batch_capacity or 0)
            ]
            if not targets:
                continue
            target = max(targets, key=lambda t: (int(t.current_business_count or 0), -int(t.batch_index)))
            return source, target
        return None

    def _merge_into(self, u: ScheduleUnit, source: GlobalSchedule, target: GlobalSchedule) -> int:
        mappings = u.repo.list_mappings(source.id)
        for m in mappings:
            m.schedule_id = target.id
            m.updated_at = u.now_iso
        self.registry.sync_schedule(u, target)
        self.registry.sync_schedule(u, source)
        return len(mappings)

    def stats(self, platform: str, interval_hours: int, schedule_type: str = "reviews") -> dict[str, Any]:
        with self.store.session_scope() as s:
            group = SchedulesRepo(s).list_group(platform, schedule_type, int(interval_hours))
            loads = [int(x.current_business_count or 0) for x in group]
            capacity = sum(int(x.max_batch_capacity or 0) for x in group)
        total = sum(loads)
        avg = total / len(loads) if loads else 0.0
        spread = (max(loads) - min(loads)) if loads else 0
        return {
            "platform": platform,
            "schedule_type": schedule_type,
            "interval_hours": int(interval_hours),
            "total_batches": len(loads),
            "total_businesses": total,
            "total_capacity": capacity,
            "utilization": round(total / capacity, 4) if capacity else 0.0,
            "average_load": round(avg, 2),
            "min_load": min(loads) if loads else 0,
            "max_load": max(loads) if loads else 0,
            "needs_rebalancing": len(loads) > 1 and spread > 0.2 * avg,
        }

    def health(self, now: datetime | None = None) -> dict[str, Any]:
        ts = ensure_aware(now or self.registry.clock())
        batches: list[dict[str, Any]] = []
        summary = {"total_batches": 0, "healthy": 0, "warning": 0, "critical": 0, "stalled": 0}
        with self.store.session_scope() as s:
            schedules = SchedulesRepo(s).list_schedules()
            for sched in schedules:
                row = schedule_dict(sched)
                ratio = float(row["fill_ratio"])
                if ratio >= self.settings.health_critical_ratio:
                    status = "critical"
                elif ratio >= self.settings.health_warning_ratio:
                    status = "warning"
                else:
                    status = "healthy"
                row["status"] = status
                row["stalled"] = self._is_stalled(sched, ts)
                summary["total_batches"] += 1
                summary[status] += 1
                if row["stalled"]:
                    summary["stalled"] += 1
                batches.append(row)
        summary["total_businesses"] = sum(int(b["current_business_count"]) for b in batches)
        summary["total_capacity"] = sum(int(b["max_batch_capacity"]) for b in batches)
        return {"summary": summary, "batches": batches}

    def _is_stalled(self, sched: GlobalSchedule, now: datetime) -> bool:
        if not sched.is_active or int(sched.current_business_count or 0) == 0:
            return False
        anchor = parse_iso(sched.last_run_at) or parse_iso(sched.created_at)
        if anchor is None:
            return False
        window = timedelta(hours=int(sched.interval_hours) * self.settings.stall_factor)
        return now - anchor > window

    def reconcile_counts(self) -> list[dict[str, Any]]:
        """Recount mappings per schedule and rebuild the input of every drifted batch."""
        with self.store.session_scope() as s:
            repo = SchedulesRepo(s)
            actual = repo.mapping_counts()
            drifted = []
            for sched in repo.list_schedules():
                expected_ids = [m.identifier for m in repo.list_mappings(sched.id)]
                stored_ids = list((sched.last_input_json or {}).get("identifiers") or [])
                stored = int(sched.current_business_count or 0)
                real = int(actual.get(sched.id, 0))
                if stored != real or stored_ids != expected_ids:
                    drifted.append((sched.id, group_key(sched), stored, real))
        fixed: list[dict[str, Any]] = []
        for schedule_id, key, stored, real in drifted:
            with self.registry.group_lock(key), self.registry.unit() as u:
                sched = u.repo.get_schedule(schedule_id, for_update=True)
                if sched is None:
                    continue
                self.registry.sync_schedule(u, sched, force=True)
                fixed.append({"schedule_id": schedule_id, "stored_count": stored, "actual_count": real})
            logger.warning("count_drift_fixed schedule_id=%s stored=%d actual=%d", schedule_id, stored, real)
        return fixed
