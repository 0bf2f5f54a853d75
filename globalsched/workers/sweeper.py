from __future__ import annotations

import json
import os
import sys
import time
from pathlib import Path
from typing import Any, Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from globalsched.adapters.local_cron import LocalCronScheduler
from globalsched.services.container import Services, build_services, mirror_local_schedules


def _log(msg: str) -> None:
    print(f"[SCHED] {msg}", file=sys.stderr, flush=True)


class SweepWorker:
    """
    Periodic driver: retry sweep, count reconciliation and daily maintenance.

    When the self-hosted cron provider is in use, its jobs run in this process
    and are re-mirrored from the database on a short tick, so batches created,
    paused or retired by the admin process are picked up here.
    """

    def __init__(self, project_root: Path | None = None, *, services: Services | None = None) -> None:
        self.project_root = project_root or Path(__file__).resolve().parents[2]
        self.services = services or build_services(self.project_root)
        self.settings = self.services.settings
        self.tick_seconds = int(os.environ.get("SCHEDULER_TICK_SECONDS", "5") or "5")
        self.heartbeat_path = self.project_root / "logs" / "sweep_worker_heartbeat.json"
        self.status_path = self.project_root / "logs" / "sweep_worker_status.json"
        self._last: dict[str, Any] = {}
        self.scheduler = BackgroundScheduler(
            timezone="UTC",
            job_defaults={
                "max_instances": 1,
                "coalesce": True,
                "misfire_grace_time": 300,
            },
        )

    def _run_job(self, name: str, fn: Callable[[], Any]) -> None:
        started = time.time()
        try:
            result = fn()
        except Exception as e:
            self._last[name] = {"ok": False, "error": str(e), "ts": started}
            _log(f"job_failed name={name} error={e}")
            return
        self._last[name] = {"ok": True, "result": result, "ts": started, "duration_ms": int((time.time() - started) * 1000)}
        _log(f"job_done name={name} result={json.dumps(result, ensure_ascii=False, default=str)}")

    def retry_sweep(self) -> None:
        self._run_job("retry_sweep", self.services.retry_queue.process_queue)

    def reconcile(self) -> None:
        self._run_job("reconcile", lambda: {"fixed": len(self.services.batches.reconcile_counts())})

    def mirror_jobs(self) -> None:
        self._run_job("mirror_jobs", lambda: mirror_local_schedules(self.services))

    def maintenance(self) -> None:
        def _maintenance() -> dict[str, Any]:
            cleaned = self.services.retry_queue.cleanup()
            purged = self.services.resolver.purge_expired_overrides()
            return {**cleaned, "overrides_purged": purged}

        self._run_job("maintenance", _maintenance)

    def configure(self) -> None:
        self.scheduler.add_job(
            self.retry_sweep,
            trigger=IntervalTrigger(seconds=max(10, int(self.settings.retry_sweep_seconds))),
            id="retry_sweep",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.reconcile,
            trigger=IntervalTrigger(seconds=max(30, int(self.settings.reconcile_seconds))),
            id="reconcile",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.mirror_jobs,
            trigger=IntervalTrigger(seconds=max(5, int(self.settings.cron_mirror_seconds))),
            id="mirror_jobs",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.maintenance,
            trigger=CronTrigger.from_crontab("30 3 * * *", timezone="UTC"),
            id="maintenance",
            replace_existing=True,
        )
        _log(
            f"scheduled_jobs=4 retry_sweep={self.settings.retry_sweep_seconds}s "
            f"reconcile={self.settings.reconcile_seconds}s mirror={self.settings.cron_mirror_seconds}s"
        )

    def _write_heartbeat(self) -> None:
        self.heartbeat_path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "ts": time.time(),
            "jobs": len(self.scheduler.get_jobs()),
            "last": self._last,
        }
        self.heartbeat_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, default=str), encoding="utf-8")

    def _write_status(self) -> None:
        self.status_path.parent.mkdir(parents=True, exist_ok=True)
        jobs = []
        for j in self.scheduler.get_jobs():
            nrt = getattr(j, "next_run_time", None)
            jobs.append({"id": str(j.id), "next_run_time": nrt.isoformat() if nrt else None})
        payload = {"ts": time.time(), "jobs": jobs, "db": self.services.store.observability_info()}
        self.status_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")

    def run_forever(self) -> None:
        _log(f"start tick_seconds={self.tick_seconds} db={self.services.store.observability_info()['db_url']}")
        self.configure()
        self.scheduler.start()
        if isinstance(self.services.scheduler, LocalCronScheduler):
            self.services.scheduler.start()
            _log(f"local_cron started jobs={len(self.services.scheduler.scheduler.get_jobs())}")
        self._write_heartbeat()
        self._write_status()
        try:
            while True:
                time.sleep(max(1, self.tick_seconds))
                self._write_heartbeat()
                self._write_status()
        except KeyboardInterrupt:
            _log("stop (keyboard interrupt)")
        finally:
            self.scheduler.shutdown(wait=False)
            if isinstance(self.services.scheduler, LocalCronScheduler):
                self.services.scheduler.shutdown()


def main() -> None:
    SweepWorker().run_forever()


if __name__ == "__main__":
    main()
