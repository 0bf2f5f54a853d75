from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy.orm import Session

from globalsched.adapters.providers import TaskRunner
from globalsched.config import SchedulingSettings
from globalsched.core.errors import ExternalProviderError, NotFoundError
from globalsched.core.timeutil import ensure_aware, to_iso, utc_now
from globalsched.db.models.scheduling import CollectionRun, RetryEntry
from globalsched.db.repo import RetryRepo, RunsRepo, SchedulesRepo
from globalsched.services.external_calls import ExternalCallPolicy, call_external
from globalsched.services.store import SchedulingStore

logger = logging.getLogger("globalsched.retry_queue")

PENDING = "pending"
PERMANENTLY_FAILED = "permanently_failed"


def entry_dict(e: RetryEntry) -> dict[str, Any]:
    return {
        "id": int(e.id) if e.id is not None else None,
        "business_id": e.business_id,
        "team_id": e.team_id,
        "platform": e.platform,
        "identifier": e.identifier,
        "attempt_count": int(e.attempt_count or 0),
        "next_attempt_at": e.next_attempt_at,
        "last_error": e.last_error,
        "status": e.status,
        "last_run_id": e.last_run_id,
        "created_at": e.created_at,
        "updated_at": e.updated_at,
    }


class RetryQueue:
    """
    Per-business retry of failed collections, off the shared batch cadence.

    `attempt_count` counts retry runs already triggered. A pending entry is due at
    `next_attempt_at`; triggering attempt k moves it to now + delay(k + 1), which is
    also how long the queue waits for that run's callback. After the last attempt
    fails (or never reports back) the entry is frozen as permanently_failed.
    """

    def __init__(
        self,
        store: SchedulingStore,
        runner: TaskRunner,
        settings: SchedulingSettings,
        *,
        policy: ExternalCallPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.runner = runner
        self.settings = settings
        self.policy = policy or ExternalCallPolicy(
            attempts=settings.external_attempts,
            base_delay_seconds=settings.external_base_delay_seconds,
        )
        self.clock = clock

    @property
    def max_attempts(self) -> int:
        return self.settings.max_retry_attempts

    def _now(self, now: datetime | None) -> datetime:
        return ensure_aware(now or self.clock())

    def _slot_after(self, now: datetime, attempt: int) -> str:
        return to_iso(now + timedelta(minutes=self.settings.retry_delay_minutes(attempt)))

    # ---- in-session primitives (shared with the callback processor) ----

    def enqueue_in(
        self,
        s: Session,
        *,
        business_id: str,
        team_id: str,
        platform: str,
        identifier: str,
        error: str,
        now: datetime,
    ) -> RetryEntry:
        now_iso = to_iso(now)
        entry = RetryRepo(s).get_entry(business_id, platform)
        if entry is None:
            entry = RetryEntry(
                business_id=business_id,
                team_id=team_id,
                platform=platform,
                identifier=identifier,
                attempt_count=0,
                next_attempt_at=self._slot_after(now, 1),
                last_error=error,
                status=PENDING,
                created_at=now_iso,
                updated_at=now_iso,
            )
            s.add(entry)
            s.flush()
            logger.info(
                "retry_enqueued business_id=%s platform=%s next_attempt_at=%s",
                business_id,
                platform,
                entry.next_attempt_at,
            )
            return entry
        entry.identifier = identifier or entry.identifier
        return self.record_failure_in(s, entry, error=error, run_id=None, now=now)

    def record_failure_in(
        self, s: Session, entry: RetryEntry, *, error: str, run_id: str | None, now: datetime
    ) -> RetryEntry:
        entry.last_error = error
        entry.updated_at = to_iso(now)
        if entry.status == PERMANENTLY_FAILED:
            return entry
        if run_id and entry.last_run_id and run_id != entry.last_run_id:
            logger.info("retry_stale_callback business_id=%s run_id=%s", entry.business_id, run_id)
            return entry
        if run_id is None and entry.last_run_id:
            # The last retry run is still in flight; its own callback or the sweep decides.
            return entry
        if int(entry.attempt_count or 0) >= self.max_attempts:
            self._freeze(entry, now)
        # Otherwise the slot set when the attempt was triggered stays.
        return entry

    def record_success_in(self, s: Session, business_id: str, platform: str, *, pending_only: bool = False) -> bool:
        removed = RetryRepo(s).delete_entry(business_id, platform, pending_only=pending_only)
        if removed:
            logger.info("retry_cleared business_id=%s platform=%s", business_id, platform)
        return removed

    def _freeze(self, entry: RetryEntry, now: datetime) -> None:
        entry.status = PERMANENTLY_FAILED
        entry.updated_at = to_iso(now)
        logger.warning(
            "retry_exhausted business_id=%s platform=%s attempts=%d last_error=%s",
            entry.business_id,
            entry.platform,
            int(entry.attempt_count or 0),
            entry.last_error,
        )

    # ---- public API ----

    def enqueue(
        self,
        business_id: str,
        team_id: str,
        platform: str,
        identifier: str,
        error: str,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        ts = self._now(now)
        with self.store.session_scope() as s:
            entry = self.enqueue_in(
                s,
                business_id=business_id,
                team_id=team_id,
                platform=platform,
                identifier=identifier,
                error=error,
                now=ts,
            )
            return entry_dict(entry)

    def process_queue(self, now: datetime | None = None) -> dict[str, int]:
        ts = self._now(now)
        with self.store.session_scope() as s:
            due = RetryRepo(s).list_due_ids(to_iso(ts), self.settings.retry_sweep_batch)
        result = {"processed": 0, "triggered": 0, "failed": 0, "frozen": 0}
        for entry_id in due:
            try:
                outcome = self._process_one(entry_id, ts)
            except Exception as e:
                # One broken entry must not stall the rest of the sweep.
                logger.exception("retry_entry_error entry_id=%s error=%s", entry_id, e)
                result["failed"] += 1
                continue
            if outcome == "skipped":
                continue
            result["processed"] += 1
            result[outcome] += 1
        if due:
            logger.info("retry_sweep %s", " ".join(f"{k}={v}" for k, v in result.items()))
        return result

    def _process_one(self, entry_id: int, now: datetime) -> str:
        now_iso = to_iso(now)
        with self.store.session_scope() as s:
            entry = RetryRepo(s).get_by_id(entry_id)
            if entry is None or entry.status != PENDING or entry.next_attempt_at > now_iso:
                return "skipped"
            if int(entry.attempt_count or 0) >= self.max_attempts:
                self._freeze(entry, now)
                return "frozen"
            attempt = int(entry.attempt_count or 0) + 1
            entry.attempt_count = attempt
            entry.updated_at = now_iso
            try:
                run_id = call_external(
                    "run_task",
                    lambda: self.runner.run_task(
                        entry.platform,
                        entry.identifier,
                        metadata={"business_id": entry.business_id, "kind": "retry", "attempt": attempt},
                    ),
                    self.policy,
                )
            except ExternalProviderError as e:
                entry.last_error = str(e)
                if attempt >= self.max_attempts:
                    self._freeze(entry, now)
                    return "frozen"
                entry.next_attempt_at = self._slot_after(now, attempt + 1)
                return "failed"
            entry.last_run_id = str(run_id)
            entry.next_attempt_at = self._slot_after(now, attempt + 1)
            s.add(
                CollectionRun(
                    run_id=str(run_id),
                    kind="retry",
                    schedule_id=None,
                    business_id=entry.business_id,
                    platform=entry.platform,
                    status="running",
                    created_at=now_iso,
                    updated_at=now_iso,
                )
            )
            logger.info(
                "retry_triggered business_id=%s platform=%s attempt=%d run_id=%s",
                entry.business_id,
                entry.platform,
                attempt,
                run_id,
            )
            return "triggered"

    def record_success(self, business_id: str, platform: str) -> bool:
        with self.store.session_scope() as s:
            return self.record_success_in(s, business_id, platform)

    def record_failure(
        self,
        business_id: str,
        platform: str,
        error: str,
        run_id: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any] | None:
        ts = self._now(now)
        with self.store.session_scope() as s:
            entry = RetryRepo(s).get_entry(business_id, platform)
            if entry is None:
                return None
            return entry_dict(self.record_failure_in(s, entry, error=error, run_id=run_id, now=ts))

    def force_retry_business(self, business_id: str, platform: str | None = None) -> list[dict[str, Any]]:
        """Arms an immediate retry for each of the business's mappings with a fresh attempt budget."""
        ts = self._now(None)
        now_iso = to_iso(ts)
        out: list[dict[str, Any]] = []
        with self.store.session_scope() as s:
            mappings = SchedulesRepo(s).list_business_mappings(business_id)
            if platform:
                mappings = [m for m in mappings if m.platform == platform]
            if not mappings:
                raise NotFoundError(f"business_id={business_id} platform={platform or '*'}")
            retry = RetryRepo(s)
            for m in mappings:
                entry = retry.get_entry(m.business_id, m.platform)
                if entry is None:
                    entry = RetryEntry(
                        business_id=m.business_id,
                        team_id=m.team_id,
                        platform=m.platform,
                        created_at=now_iso,
                    )
                    s.add(entry)
                entry.team_id = m.team_id
                entry.identifier = m.identifier
                entry.attempt_count = 0
                entry.status = PENDING
                entry.next_attempt_at = now_iso
                entry.last_run_id = None
                entry.last_error = entry.last_error or "manual retry"
                entry.updated_at = now_iso
                s.flush()
                out.append(entry_dict(entry))
        logger.info("retry_forced business_id=%s entries=%d", business_id, len(out))
        return out

    def cleanup(self, max_age_days: int | None = None, now: datetime | None = None) -> dict[str, int]:
        days = self.settings.retention_days if max_age_days is None else int(max_age_days)
        cutoff = to_iso(self._now(now) - timedelta(days=days))
        with self.store.session_scope() as s:
            entries = RetryRepo(s).delete_not_updated_since(cutoff)
            runs = RunsRepo(s).delete_processed_before(cutoff)
        logger.info("retry_cleanup cutoff=%s entries_deleted=%d runs_deleted=%d", cutoff, entries, runs)
        return {"entries_deleted": entries, "runs_deleted": runs}

    def stats(self, now: datetime | None = None) -> dict[str, int]:
        ts = self._now(now)
        with self.store.session_scope() as s:
            repo = RetryRepo(s)
            counts = repo.count_by_status()
            due = repo.count_due(to_iso(ts))
        return {
            "pending": int(counts.get(PENDING, 0)),
            "permanently_failed": int(counts.get(PERMANENTLY_FAILED, 0)),
            "due": due,
            "total": sum(counts.values()),
        }

    def list_entries(self, status: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        with self.store.session_scope() as s:
            return [entry_dict(e) for e in RetryRepo(s).list_entries(status=status, limit=limit)]
