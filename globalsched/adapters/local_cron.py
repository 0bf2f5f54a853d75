from __future__ import annotations

import copy
import logging
import threading
import uuid
from typing import Any, Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from globalsched.adapters.providers import TaskRunner

logger = logging.getLogger("globalsched.local_cron")

InputLoader = Callable[[str], Optional[dict[str, Any]]]
FireHook = Callable[[str, dict[str, Any], str], None]


class LocalCronScheduler:
    """
    Self-hosted ExternalScheduler on APScheduler.

    Each external schedule is one cron job; when it fires, the schedule's current
    input is handed to the TaskRunner as a batch run.

    `input_loader` reads the persisted input for an external id, so a job fired in
    one process sees rebuilds committed by another. `on_fire` is told about every
    cron-fired run so its callback can be attributed by run id alone.
    """

    def __init__(
        self,
        runner: TaskRunner,
        *,
        timezone: str = "UTC",
        scheduler: BackgroundScheduler | None = None,
        input_loader: InputLoader | None = None,
        on_fire: FireHook | None = None,
    ):
        self.runner = runner
        self.scheduler = scheduler or BackgroundScheduler(
            timezone=timezone,
            job_defaults={
                "max_instances": 1,
                "coalesce": True,
                "misfire_grace_time": 600,
            },
        )
        self.input_loader = input_loader
        self.on_fire = on_fire
        self._inputs: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def _cached_input(self, external_id: str) -> dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._inputs.get(external_id) or {})

    def _fire(self, external_id: str) -> str:
        if self.input_loader is None:
            job_input = self._cached_input(external_id)
        else:
            loaded = self.input_loader(external_id)
            if loaded is None:
                logger.info("job_skipped_retired external_id=%s", external_id)
                return ""
            job_input = loaded
            with self._lock:
                self._inputs[external_id] = copy.deepcopy(job_input)
        run_id = self._dispatch(external_id, job_input)
        if run_id and self.on_fire is not None:
            self.on_fire(external_id, job_input, run_id)
        return run_id

    def _dispatch(self, external_id: str, job_input: dict[str, Any]) -> str:
        identifiers = [str(x) for x in job_input.get("identifiers") or []]
        platform = str(job_input.get("platform") or "")
        if not identifiers:
            logger.info("job_skipped_empty external_id=%s", external_id)
            return ""
        run_id = self.runner.run_batch(
            platform,
            identifiers,
            metadata={
                "schedule_id": job_input.get("schedule_id"),
                "external_schedule_id": external_id,
                "schedule_type": job_input.get("schedule_type"),
            },
        )
        logger.info("job_fired external_id=%s run_id=%s identifiers=%d", external_id, run_id, len(identifiers))
        return run_id

    def create_schedule(self, *, name: str, cron: str, job_input: dict[str, Any]) -> str:
        external_id = f"cron-{uuid.uuid4().hex[:12]}"
        trigger = CronTrigger.from_crontab(cron, timezone=self.scheduler.timezone)
        with self._lock:
            self._inputs[external_id] = copy.deepcopy(job_input)
        self.scheduler.add_job(
            self._fire,
            trigger=trigger,
            id=external_id,
            name=name,
            kwargs={"external_id": external_id},
            next_run_time=None,
            replace_existing=True,
        )
        return external_id

    def update_schedule_input(self, external_id: str, job_input: dict[str, Any]) -> None:
        self._require(external_id)
        with self._lock:
            self._inputs[external_id] = copy.deepcopy(job_input)

    def pause_schedule(self, external_id: str) -> None:
        self._require(external_id)
        self.scheduler.pause_job(external_id)

    def resume_schedule(self, external_id: str) -> None:
        self._require(external_id)
        self.scheduler.resume_job(external_id)

    def delete_schedule(self, external_id: str) -> None:
        try:
            self.scheduler.remove_job(external_id)
        except JobLookupError:
            logger.info("delete_missing external_id=%s", external_id)
        with self._lock:
            self._inputs.pop(external_id, None)

    def run_now(self, external_id: str) -> str:
        # Callers push the fresh input first and record the run themselves.
        self._require(external_id)
        return self._dispatch(external_id, self._cached_input(external_id))

    def is_paused(self, external_id: str) -> bool:
        job = self._require(external_id)
        return getattr(job, "next_run_time", None) is None

    def current_input(self, external_id: str) -> dict[str, Any]:
        if self.input_loader is not None:
            loaded = self.input_loader(external_id)
            if loaded is not None:
                return loaded
        return self._cached_input(external_id)

    def _require(self, external_id: str) -> Any:
        job = self.scheduler.get_job(external_id)
        if job is None:
            raise KeyError(f"unknown external schedule {external_id}")
        return job

    def mirror(self, rows: list[dict[str, Any]]) -> dict[str, int]:
        """
        Makes the job set match persisted schedule rows.

        Each row carries `external_schedule_id`, `name`, `cron`, `job_input` and
        `paused`. Jobs without a row are removed.
        """
        added = updated = removed = 0
        wanted: set[str] = set()
        for row in rows:
            external_id = str(row["external_schedule_id"])
            wanted.add(external_id)
            with self._lock:
                self._inputs[external_id] = copy.deepcopy(row.get("job_input") or {})
            job = self.scheduler.get_job(external_id)
            if job is None:
                self.scheduler.add_job(
                    self._fire,
                    trigger=CronTrigger.from_crontab(str(row["cron"]), timezone=self.scheduler.timezone),
                    id=external_id,
                    name=str(row.get("name") or external_id),
                    kwargs={"external_id": external_id},
                    next_run_time=None,
                    replace_existing=True,
                )
                added += 1
                if not row.get("paused"):
                    self.scheduler.resume_job(external_id)
                continue
            is_paused = getattr(job, "next_run_time", None) is None
            if bool(row.get("paused")) != is_paused:
                if row.get("paused"):
                    self.scheduler.pause_job(external_id)
                else:
                    self.scheduler.resume_job(external_id)
                updated += 1
        for job in list(self.scheduler.get_jobs()):
            if job.id not in wanted:
                self.delete_schedule(job.id)
                removed += 1
        return {"added": added, "updated": updated, "removed": removed}
