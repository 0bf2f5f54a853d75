from __future__ import annotations

from datetime import datetime
from typing import Any

from globalsched.core.errors import NotFoundError
from globalsched.db.repo import SchedulesRepo
from globalsched.services.batch_manager import ScheduleBatchManager
from globalsched.services.retry_queue import RetryQueue
from globalsched.services.schedule_registry import mapping_dict, schedule_dict
from globalsched.services.store import SchedulingStore


class ScheduleReadModel:
    """Admin read surface; no method here writes."""

    def __init__(self, store: SchedulingStore, batches: ScheduleBatchManager, retry_queue: RetryQueue) -> None:
        self.store = store
        self.batches = batches
        self.retry_queue = retry_queue

    def list_schedules(self, platform: str | None = None) -> list[dict[str, Any]]:
        with self.store.session_scope() as s:
            return [schedule_dict(x) for x in SchedulesRepo(s).list_schedules(platform=platform)]

    def get_businesses_in_schedule(self, schedule_id: str) -> dict[str, Any]:
        with self.store.session_scope() as s:
            repo = SchedulesRepo(s)
            schedule = repo.get_schedule(schedule_id)
            if schedule is None:
                raise NotFoundError(f"schedule_id={schedule_id}")
            return {
                "schedule": schedule_dict(schedule),
                "businesses": [mapping_dict(m) for m in repo.list_mappings(schedule_id)],
            }

    def get_team_schedule_assignments(self, team_id: str) -> list[dict[str, Any]]:
        with self.store.session_scope() as s:
            repo = SchedulesRepo(s)
            out: list[dict[str, Any]] = []
            for m in repo.list_team_mappings(team_id):
                row = mapping_dict(m)
                schedule = repo.get_schedule(m.schedule_id)
                row["schedule"] = schedule_dict(schedule) if schedule is not None else None
                out.append(row)
            return out

    def get_health(self, now: datetime | None = None) -> dict[str, Any]:
        health = self.batches.health(now)
        return {
            "summary": health["summary"],
            "batches": health["batches"],
            "retry_queue": self.retry_queue.stats(now),
        }
