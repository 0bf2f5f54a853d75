from __future__ import annotations

import logging
import threading
import uuid
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterator

from globalsched.adapters.providers import ExternalScheduler
from globalsched.config import SchedulingSettings
from globalsched.core.cron import interval_to_cron, next_fire_time
from globalsched.core.timeutil import to_iso, utc_now
from globalsched.db.models.scheduling import BusinessScheduleMapping, GlobalSchedule
from globalsched.db.repo import SchedulesRepo
from globalsched.services.external_calls import ExternalCallPolicy, call_external
from globalsched.services.store import SchedulingStore

logger = logging.getLogger("globalsched.registry")

GroupKey = tuple[str, str, int]


def schedule_dict(s: GlobalSchedule) -> dict[str, Any]:
    cap = int(s.max_batch_capacity or 0)
    count = int(s.current_business_count or 0)
    return {
        "id": s.id,
        "platform": s.platform,
        "schedule_type": s.schedule_type,
        "interval_hours": int(s.interval_hours),
        "batch_index": int(s.batch_index),
        "external_schedule_id": s.external_schedule_id,
        "cron_expression": s.cron_expression,
        "max_batch_capacity": cap,
        "current_business_count": count,
        "fill_ratio": round(count / cap, 4) if cap else 0.0,
        "is_active": bool(s.is_active),
        "last_run_at": s.last_run_at,
        "next_run_at": s.next_run_at,
        "created_at": s.created_at,
        "updated_at": s.updated_at,
    }


def mapping_dict(m: BusinessScheduleMapping) -> dict[str, Any]:
    return {
        "id": int(m.id) if m.id is not None else None,
        "team_id": m.team_id,
        "business_id": m.business_id,
        "platform": m.platform,
        "schedule_id": m.schedule_id,
        "identifier": m.identifier,
        "assigned_interval_hours": int(m.assigned_interval_hours),
        "created_at": m.created_at,
        "updated_at": m.updated_at,
    }


def group_key(s: GlobalSchedule) -> GroupKey:
    return (s.platform, s.schedule_type, int(s.interval_hours))


@dataclass
class ScheduleUnit:
    """One transaction plus the external side effects it has produced so far."""

    session: Any
    repo: SchedulesRepo
    now: datetime
    created_external: list[str] = field(default_factory=list)
    touched: set[str] = field(default_factory=set)
    deferred_deletes: list[str] = field(default_factory=list)

    @property
    def now_iso(self) -> str:
        return to_iso(self.now)


class ScheduleRegistry:
    """
    Shared lower layer for the orchestrator and batch manager.

    Owns external scheduler calls, batch creation, job input rebuilds and batch
    retirement. All of them run inside a `unit()`: the database transaction
    commits first, external deletes run after commit, and a failed unit rolls
    back and re-converges every external schedule it touched from committed rows.
    """

    def __init__(
        self,
        store: SchedulingStore,
        scheduler: ExternalScheduler,
        settings: SchedulingSettings,
        *,
        policy: ExternalCallPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.settings = settings
        self.policy = policy or ExternalCallPolicy(
            attempts=settings.external_attempts,
            base_delay_seconds=settings.external_base_delay_seconds,
        )
        self.clock = clock
        self._locks: dict[GroupKey, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ---- locking / units ----

    def _lock_for(self, key: GroupKey) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def group_lock(self, *keys: GroupKey) -> Iterator[None]:
        # Sorted acquisition keeps two-group moves deadlock free.
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self._lock_for(key))
            yield

    @contextmanager
    def unit(self) -> Iterator[ScheduleUnit]:
        session = self.store.session()
        u = ScheduleUnit(session=session, repo=SchedulesRepo(session, lock_rows=self.store.is_postgres), now=self.clock())
        try:
            yield u
            session.commit()
        except BaseException:
            session.rollback()
            session.close()
            self._compensate(u)
            raise
        session.close()
        for external_id in u.deferred_deletes:
            self._delete_external_after_commit(external_id)

    def call(self, op: str, fn: Callable[[], Any]) -> Any:
        return call_external(op, fn, self.policy)

    # ---- batch lifecycle ----

    def build_input(self, schedule: GlobalSchedule, mappings: list[BusinessScheduleMapping]) -> dict[str, Any]:
        return {
            "schedule_id": schedule.id,
            "platform": schedule.platform,
            "schedule_type": schedule.schedule_type,
            "identifiers": [m.identifier for m in mappings],
            "business_ids": [m.business_id for m in mappings],
        }

    def create_batch(self, u: ScheduleUnit, platform: str, schedule_type: str, interval_hours: int) -> GlobalSchedule:
        batch_index = u.repo.next_batch_index(platform, schedule_type, interval_hours)
        cron = interval_to_cron(interval_hours, batch_index)
        schedule = GlobalSchedule(
            id=str(uuid.uuid4()),
            platform=platform,
            schedule_type=schedule_type,
            interval_hours=int(interval_hours),
            batch_index=batch_index,
            cron_expression=cron,
            max_batch_capacity=self.settings.capacity_for(platform),
            current_business_count=0,
            is_active=0,
            created_at=u.now_iso,
            updated_at=u.now_iso,
        )
        job_input = self.build_input(schedule, [])
        name = f"{platform}-{schedule_type}-{int(interval_hours)}h-b{batch_index}"
        external_id = self.call(
            "create_schedule",
            lambda: self.scheduler.create_schedule(name=name, cron=cron, job_input=job_input),
        )
        u.created_external.append(external_id)
        schedule.external_schedule_id = str(external_id)
        schedule.last_input_json = job_input
        u.session.add(schedule)
        u.session.flush()
        logger.info(
            "schedule_created platform=%s type=%s interval=%s batch=%s external_id=%s",
            platform,
            schedule_type,
            interval_hours,
            batch_index,
            external_id,
        )
        return schedule

    def sync_schedule(self, u: ScheduleUnit, schedule: GlobalSchedule, *, force: bool = False) -> dict[str, Any]:
        """Recount, push the input rebuilt from mappings, pause when empty and resume otherwise."""
        u.session.flush()
        mappings = u.repo.list_mappings(schedule.id)
        job_input = self.build_input(schedule, mappings)
        count = len(mappings)
        changed = False
        if force or job_input != (schedule.last_input_json or {}):
            u.touched.add(schedule.id)
            self.call(
                "update_schedule_input",
                lambda: self.scheduler.update_schedule_input(schedule.external_schedule_id, job_input),
            )
            schedule.last_input_json = job_input
            changed = True
        if count == 0 and (schedule.is_active or force):
            u.touched.add(schedule.id)
            self.call("pause_schedule", lambda: self.scheduler.pause_schedule(schedule.external_schedule_id))
            schedule.is_active = 0
            schedule.next_run_at = None
            changed = True
        elif count > 0 and (not schedule.is_active or force):
            u.touched.add(schedule.id)
            self.call("resume_schedule", lambda: self.scheduler.resume_schedule(schedule.external_schedule_id))
            schedule.is_active = 1
            nxt = next_fire_time(schedule.cron_expression, u.now)
            schedule.next_run_at = to_iso(nxt) if nxt else None
            changed = True
        if schedule.current_business_count != count:
            schedule.current_business_count = count
            changed = True
        if changed:
            schedule.updated_at = u.now_iso
        return job_input

    def retire_if_empty(self, u: ScheduleUnit, schedule: GlobalSchedule) -> bool:
        """
        Deletes an empty batch after commit; returns True when it was removed.

        Under the `pause` policy batch 0 of a group stays (paused) for reuse.
        """
        if int(schedule.current_business_count or 0) > 0:
            return False
        if self.settings.empty_batch_policy == "pause" and int(schedule.batch_index) == 0:
            return False
        u.session.flush()
        if u.repo.list_mappings(schedule.id):
            return False
        u.deferred_deletes.append(schedule.external_schedule_id)
        u.session.delete(schedule)
        u.session.flush()
        logger.info(
            "schedule_retired platform=%s type=%s interval=%s batch=%s",
            schedule.platform,
            schedule.schedule_type,
            schedule.interval_hours,
            schedule.batch_index,
        )
        return True

    def peek_schedule(self, schedule_id: str) -> GlobalSchedule | None:
        with self.store.session_scope() as s:
            return SchedulesRepo(s).get_schedule(schedule_id)

    # ---- after-commit / failure paths ----

    def _delete_external_after_commit(self, external_id: str) -> None:
        try:
            self.call("delete_schedule", lambda: self.scheduler.delete_schedule(external_id))
        except Exception as e:
            # Row is already gone; the orphan only costs an idle paused job.
            logger.error("orphan_external_schedule external_id=%s error=%s", external_id, e)

    def _compensate(self, u: ScheduleUnit) -> None:
        for external_id in u.created_external:
            try:
                self.call("delete_schedule", lambda: self.scheduler.delete_schedule(external_id))
            except Exception as e:
                logger.error("compensation_failed op=delete external_id=%s error=%s", external_id, e)
        for schedule_id in sorted(u.touched):
            try:
                self.resync_committed(schedule_id)
            except Exception as e:
                logger.error("compensation_failed op=resync schedule_id=%s error=%s", schedule_id, e)

    def resync_committed(self, schedule_id: str) -> dict[str, Any] | None:
        """Re-converges one external schedule with committed mappings."""
        session = self.store.session()
        try:
            repo = SchedulesRepo(session)
            schedule = repo.get_schedule(schedule_id)
            if schedule is None:
                return None
            u = ScheduleUnit(session=session, repo=repo, now=self.clock())
            job_input = self.sync_schedule(u, schedule, force=True)
            session.commit()
            return job_input
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
