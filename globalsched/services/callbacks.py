from __future__ import annotations

import hmac
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from globalsched.config import SchedulingSettings
from globalsched.core.cron import next_fire_time
from globalsched.core.errors import AttributionError, BusinessScrapeFailure, CallbackAuthError, ValidationError
from globalsched.core.timeutil import to_iso, utc_now
from globalsched.db.models.scheduling import BusinessScheduleMapping, CollectionRun
from globalsched.db.repo import RetryRepo, RunsRepo, SchedulesRepo
from globalsched.services.retry_queue import RetryQueue
from globalsched.services.store import SchedulingStore

logger = logging.getLogger("globalsched.callbacks")

SUCCESS_EVENTS = {"ACTOR.RUN.SUCCEEDED"}
FAILURE_EVENTS = {"ACTOR.RUN.FAILED", "ACTOR.RUN.ABORTED", "ACTOR.RUN.TIMED_OUT"}
TEST_EVENT = "TEST"
SUCCESS_STATUSES = {"succeeded", "success", "ok"}


class RunOutcome(BaseModel):
    identifier: str = Field(min_length=1)
    status: str = "succeeded"
    error: Optional[str] = None


class RunCallback(BaseModel):
    eventType: str = Field(min_length=1)
    runId: str = ""
    datasetLocation: Optional[str] = None
    status: Optional[str] = None
    scheduleId: Optional[str] = None
    platform: Optional[str] = None
    outcomes: list[RunOutcome] = Field(default_factory=list)

    def run_succeeded(self) -> bool:
        if self.eventType in SUCCESS_EVENTS:
            return True
        if self.eventType in FAILURE_EVENTS:
            return False
        return str(self.status or "").strip().lower() in SUCCESS_STATUSES


class CallbackProcessor:
    """
    Applies run-completion callbacks from the external runner.

    Each run id is applied at most once: the run row is claimed in the same
    transaction that records the per-business results.
    """

    def __init__(
        self,
        store: SchedulingStore,
        retry_queue: RetryQueue,
        settings: SchedulingSettings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.retry_queue = retry_queue
        self.settings = settings
        self.clock = clock

    def verify_token(self, token: str | None) -> None:
        expected = self.settings.callback_token
        if not expected:
            raise CallbackAuthError("CALLBACK_TOKEN is not configured", configured=False)
        if not token or not hmac.compare_digest(str(token).encode("utf-8"), expected.encode("utf-8")):
            raise CallbackAuthError("invalid callback token")

    def handle(self, payload: Any, token: str | None) -> dict[str, Any]:
        self.verify_token(token)
        try:
            cb = RunCallback.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(f"invalid callback payload: {e.errors()}") from e
        if cb.eventType == TEST_EVENT:
            return {"ok": True, "skipped": "test_event"}
        if not cb.runId.strip():
            raise ValidationError("runId is required")
        try:
            with self.store.session_scope() as s:
                return self._apply(s, cb)
        except AttributionError as e:
            logger.warning("callback_discarded run_id=%s detail=%s", cb.runId, e.detail)
            return {"ok": True, "run_id": cb.runId, "discarded": True, "reason": e.detail}
        except IntegrityError:
            # A concurrent delivery inserted the same run first.
            logger.info("callback_duplicate run_id=%s", cb.runId)
            return {"ok": True, "run_id": cb.runId, "skipped": "already_processed"}

    def _apply(self, s: Session, cb: RunCallback) -> dict[str, Any]:
        now = self.clock()
        now_iso = to_iso(now)
        runs = RunsRepo(s)
        run = runs.get_run(cb.runId)
        if run is None:
            run = self._register_schedule_run(s, cb, now_iso)
        if not runs.claim(run.run_id, now_iso):
            logger.info("callback_duplicate run_id=%s", cb.runId)
            return {"ok": True, "run_id": cb.runId, "skipped": "already_processed"}
        succeeded = cb.run_succeeded()
        run.processed_at = now_iso
        run.status = "succeeded" if succeeded else "failed"
        run.result_location = cb.datasetLocation
        run.outcomes_json = {"outcomes": [o.model_dump() for o in cb.outcomes]} if cb.outcomes else None
        run.updated_at = now_iso
        if run.kind == "retry":
            result = self._apply_retry_run(s, run, cb, succeeded, now)
        else:
            result = self._apply_schedule_run(s, run, cb, succeeded, now)
        logger.info(
            "callback_applied run_id=%s kind=%s succeeded=%d failed=%d unattributed=%d",
            run.run_id,
            run.kind,
            result["succeeded"],
            result["failed"],
            result["unattributed"],
        )
        return {"ok": True, "run_id": run.run_id, "kind": run.kind, **result}

    def _register_schedule_run(self, s: Session, cb: RunCallback, now_iso: str) -> CollectionRun:
        if not cb.scheduleId:
            raise AttributionError(f"unknown run_id={cb.runId}")
        schedule = SchedulesRepo(s).get_schedule(cb.scheduleId)
        if schedule is None:
            raise AttributionError(f"run_id={cb.runId} references unknown schedule_id={cb.scheduleId}")
        run = CollectionRun(
            run_id=cb.runId,
            kind="schedule",
            schedule_id=schedule.id,
            platform=schedule.platform,
            status="running",
            created_at=now_iso,
            updated_at=now_iso,
        )
        s.add(run)
        s.flush()
        return run

    def _outcome_map(self, cb: RunCallback) -> dict[str, tuple[bool, str]]:
        out: dict[str, tuple[bool, str]] = {}
        for o in cb.outcomes:
            ok = str(o.status or "").strip().lower() in SUCCESS_STATUSES
            out[o.identifier] = (ok, o.error or ("" if ok else "collection failed"))
        return out

    def _apply_retry_run(
        self, s: Session, run: CollectionRun, cb: RunCallback, succeeded: bool, now: datetime
    ) -> dict[str, int]:
        result = {"succeeded": 0, "failed": 0, "unattributed": 0}
        entry = RetryRepo(s).get_entry(str(run.business_id or ""), run.platform)
        if entry is None:
            # Already cleared by a later success or removal.
            result["unattributed"] += 1
            return result
        ok, error = self._outcome_map(cb).get(
            entry.identifier, (succeeded, "" if succeeded else f"run {cb.eventType}")
        )
        if ok:
            self.retry_queue.record_success_in(s, entry.business_id, entry.platform)
            result["succeeded"] += 1
        else:
            self.retry_queue.record_failure_in(s, entry, error=error, run_id=run.run_id, now=now)
            result["failed"] += 1
        return result

    def _apply_schedule_run(
        self, s: Session, run: CollectionRun, cb: RunCallback, succeeded: bool, now: datetime
    ) -> dict[str, int]:
        result = {"succeeded": 0, "failed": 0, "unattributed": 0}
        repo = SchedulesRepo(s)
        schedule = repo.get_schedule(str(run.schedule_id or ""))
        if schedule is None:
            raise AttributionError(f"run_id={run.run_id} references retired schedule_id={run.schedule_id}")
        mappings = repo.list_mappings(schedule.id)
        by_identifier: dict[str, list[BusinessScheduleMapping]] = {}
        for m in mappings:
            by_identifier.setdefault(m.identifier, []).append(m)

        targets: list[tuple[BusinessScheduleMapping, bool, str]] = []
        if cb.outcomes:
            for identifier, (ok, error) in self._outcome_map(cb).items():
                # Tenants tracking the same place share an identifier; each gets the outcome.
                matched = by_identifier.get(identifier) or repo.find_mappings_by_identifier(schedule.platform, identifier)
                if not matched:
                    logger.warning(
                        "outcome_unattributed run_id=%s platform=%s identifier=%s",
                        run.run_id,
                        schedule.platform,
                        identifier,
                    )
                    result["unattributed"] += 1
                    continue
                targets.extend((m, ok, error) for m in matched)
        else:
            error = "" if succeeded else f"run {cb.eventType}"
            targets = [(m, succeeded, error) for m in mappings]

        for mapping, ok, error in targets:
            if ok:
                self.retry_queue.record_success_in(s, mapping.business_id, mapping.platform, pending_only=True)
                result["succeeded"] += 1
                continue
            failure = BusinessScrapeFailure(mapping.business_id, mapping.platform, error)
            logger.info("business_failure %s", failure)
            self.retry_queue.enqueue_in(
                s,
                business_id=mapping.business_id,
                team_id=mapping.team_id,
                platform=mapping.platform,
                identifier=mapping.identifier,
                error=failure.error,
                now=now,
            )
            result["failed"] += 1

        schedule.last_run_at = to_iso(now)
        nxt = next_fire_time(schedule.cron_expression, now) if schedule.is_active else None
        schedule.next_run_at = to_iso(nxt) if nxt else None
        schedule.updated_at = to_iso(now)
        return result
