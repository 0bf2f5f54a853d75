from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from globalsched.adapters.http_runner import HttpTaskRunner
from globalsched.adapters.local_cron import LocalCronScheduler
from globalsched.adapters.memory import InMemoryTaskRunner
from globalsched.adapters.providers import BillingSource, ExternalScheduler, StaticBillingSource, TaskRunner
from globalsched.config import SchedulingSettings, get_settings
from globalsched.core.timeutil import to_iso, utc_now
from globalsched.db.models.scheduling import CollectionRun
from globalsched.db.repo import SchedulesRepo
from globalsched.services.batch_manager import ScheduleBatchManager
from globalsched.services.callbacks import CallbackProcessor
from globalsched.services.external_calls import ExternalCallPolicy
from globalsched.services.interval_resolver import IntervalResolver
from globalsched.services.orchestrator import GlobalScheduleOrchestrator
from globalsched.services.read_model import ScheduleReadModel
from globalsched.services.retry_queue import RetryQueue
from globalsched.services.schedule_registry import ScheduleRegistry
from globalsched.services.store import SchedulingStore

logger = logging.getLogger("globalsched.container")


@dataclass
class Services:
    settings: SchedulingSettings
    store: SchedulingStore
    scheduler: ExternalScheduler
    runner: TaskRunner
    billing: BillingSource
    registry: ScheduleRegistry
    resolver: IntervalResolver
    batches: ScheduleBatchManager
    orchestrator: GlobalScheduleOrchestrator
    retry_queue: RetryQueue
    callbacks: CallbackProcessor
    read_model: ScheduleReadModel


def _default_runner(settings: SchedulingSettings) -> TaskRunner:
    if settings.task_runner_url:
        return HttpTaskRunner(settings.task_runner_url, timeout_seconds=settings.external_timeout_seconds)
    logger.warning("TASK_RUNNER_URL not set; runs are recorded in memory only")
    return InMemoryTaskRunner()


def _persisted_input(store: SchedulingStore) -> Callable[[str], dict[str, Any] | None]:
    def load(external_id: str) -> dict[str, Any] | None:
        with store.session_scope() as s:
            sched = SchedulesRepo(s).get_by_external_id(external_id)
            if sched is None:
                return None
            return dict(sched.last_input_json or {})

    return load


def _record_cron_run(store: SchedulingStore, clock: Callable[[], datetime]) -> Callable[[str, dict[str, Any], str], None]:
    """Ledgers cron-fired batch runs so their callbacks resolve from the run id."""

    def record(external_id: str, job_input: dict[str, Any], run_id: str) -> None:
        now_iso = to_iso(clock())
        with store.session_scope() as s:
            sched = SchedulesRepo(s).get_by_external_id(external_id)
            if sched is None:
                logger.warning("cron_run_unrecorded external_id=%s run_id=%s", external_id, run_id)
                return
            schedule_id = sched.id
            s.add(
                CollectionRun(
                    run_id=run_id,
                    kind="schedule",
                    schedule_id=schedule_id,
                    platform=sched.platform,
                    status="running",
                    created_at=now_iso,
                    updated_at=now_iso,
                )
            )
        logger.info("cron_run_recorded schedule_id=%s run_id=%s", schedule_id, run_id)

    return record


def build_services(
    project_root: Path | None = None,
    *,
    settings: SchedulingSettings | None = None,
    scheduler: ExternalScheduler | None = None,
    runner: TaskRunner | None = None,
    billing: BillingSource | None = None,
    policy: ExternalCallPolicy | None = None,
    clock: Callable[[], datetime] = utc_now,
    auto_init: bool = True,
) -> Services:
    root = project_root or Path(__file__).resolve().parents[2]
    cfg = settings or get_settings(root)
    store = SchedulingStore(root, cfg.database_url, auto_init=auto_init)
    task_runner = runner or _default_runner(cfg)
    ext = scheduler or LocalCronScheduler(
        task_runner,
        input_loader=_persisted_input(store),
        on_fire=_record_cron_run(store, clock),
    )
    bill = billing or StaticBillingSource(cfg.tier_intervals)
    call_policy = policy or ExternalCallPolicy(
        attempts=cfg.external_attempts,
        base_delay_seconds=cfg.external_base_delay_seconds,
    )
    registry = ScheduleRegistry(store, ext, cfg, policy=call_policy, clock=clock)
    resolver = IntervalResolver(store, cfg, bill, clock=clock)
    batches = ScheduleBatchManager(registry)
    retry_queue = RetryQueue(store, task_runner, cfg, policy=call_policy, clock=clock)
    services = Services(
        settings=cfg,
        store=store,
        scheduler=ext,
        runner=task_runner,
        billing=bill,
        registry=registry,
        resolver=resolver,
        batches=batches,
        orchestrator=GlobalScheduleOrchestrator(registry, batches, resolver),
        retry_queue=retry_queue,
        callbacks=CallbackProcessor(store, retry_queue, cfg, clock=clock),
        read_model=ScheduleReadModel(store, batches, retry_queue),
    )
    if scheduler is None and auto_init:
        mirror_local_schedules(services)
    return services


def mirror_local_schedules(services: Services) -> dict[str, int] | None:
    """Rebuilds the self-hosted cron jobs from persisted schedules; None for other providers."""
    if not isinstance(services.scheduler, LocalCronScheduler):
        return None
    with services.store.session_scope() as s:
        rows = [
            {
                "external_schedule_id": sched.external_schedule_id,
                "name": f"{sched.platform}-{sched.schedule_type}-{sched.interval_hours}h-b{sched.batch_index}",
                "cron": sched.cron_expression,
                "job_input": dict(sched.last_input_json or {}),
                "paused": not bool(sched.is_active),
            }
            for sched in SchedulesRepo(s).list_schedules()
        ]
    return services.scheduler.mirror(rows)
