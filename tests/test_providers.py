from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from _support import make_settings

from globalsched.adapters.http_runner import HttpTaskRunner
from globalsched.adapters.local_cron import LocalCronScheduler
from globalsched.adapters.memory import InMemoryScheduler, InMemoryTaskRunner
from globalsched.adapters.providers import BillingSource, ExternalScheduler, StaticBillingSource, TaskRunner
from globalsched.services.container import build_services
from globalsched.services.external_calls import ExternalCallPolicy
from globalsched.workers.sweeper import SweepWorker

TOKEN = "cb-secret"


def _cron_services(root: Path, settings):
    policy = ExternalCallPolicy(attempts=1, base_delay_seconds=0, sleep=lambda _: None)
    return build_services(root, settings=settings, runner=InMemoryTaskRunner(), policy=policy)


def _external_id(svc, schedule_id: str) -> str:
    return svc.read_model.get_businesses_in_schedule(schedule_id)["schedule"]["external_schedule_id"]


class LocalCronSchedulerTests(unittest.TestCase):
    def test_schedule_lifecycle_without_starting(self) -> None:
        runner = InMemoryTaskRunner()
        cron = LocalCronScheduler(runner)
        ext = cron.create_schedule(name="facebook-reviews-24h-b0", cron="0 9 * * *", job_input={"identifiers": []})
        self.assertTrue(cron.is_paused(ext))
        self.assertEqual(cron.run_now(ext), "")

        cron.update_schedule_input(ext, {"platform": "facebook", "identifiers": ["fb-1", "fb-2"], "schedule_id": "s1"})
        cron.resume_schedule(ext)
        self.assertFalse(cron.is_paused(ext))
        run_id = cron.run_now(ext)
        self.assertEqual(run_id, runner.batches[-1]["run_id"])
        self.assertEqual(runner.batches[-1]["identifiers"], ["fb-1", "fb-2"])
        self.assertEqual(runner.batches[-1]["metadata"]["schedule_id"], "s1")

        cron.pause_schedule(ext)
        self.assertTrue(cron.is_paused(ext))
        cron.delete_schedule(ext)
        cron.delete_schedule(ext)
        with self.assertRaises(KeyError):
            cron.update_schedule_input(ext, {})
        self.assertEqual(cron.current_input(ext), {})

    def test_mirror_matches_rows(self) -> None:
        cron = LocalCronScheduler(InMemoryTaskRunner())
        stray = cron.create_schedule(name="stray", cron="0 9 * * *", job_input={})
        rows = [
            {"external_schedule_id": "cron-a", "name": "a", "cron": "0 */6 * * *", "job_input": {"identifiers": ["x"]}, "paused": False},
            {"external_schedule_id": "cron-b", "name": "b", "cron": "15 9 * * *", "job_input": {}, "paused": True},
        ]
        self.assertEqual(cron.mirror(rows), {"added": 2, "updated": 0, "removed": 1})
        self.assertFalse(cron.is_paused("cron-a"))
        self.assertTrue(cron.is_paused("cron-b"))
        self.assertIsNone(cron.scheduler.get_job(stray))

        rows[0]["paused"] = True
        self.assertEqual(cron.mirror(rows), {"added": 0, "updated": 1, "removed": 0})
        self.assertTrue(cron.is_paused("cron-a"))

    def test_loader_and_fire_hook(self) -> None:
        runner = InMemoryTaskRunner()
        persisted = {"cron-a": {"platform": "facebook", "identifiers": ["fb-9"], "schedule_id": "s9"}}
        fired: list[tuple[str, str]] = []
        cron = LocalCronScheduler(
            runner,
            input_loader=persisted.get,
            on_fire=lambda ext, job_input, run_id: fired.append((ext, run_id)),
        )
        cron.mirror([{"external_schedule_id": "cron-a", "name": "a", "cron": "0 9 * * *", "job_input": {}, "paused": False}])

        run_id = cron._fire("cron-a")

        self.assertEqual(runner.batches[-1]["identifiers"], ["fb-9"])
        self.assertEqual(fired, [("cron-a", run_id)])
        self.assertEqual(cron.current_input("cron-a")["schedule_id"], "s9")
        cron.run_now("cron-a")
        self.assertEqual(len(fired), 1)
        self.assertEqual(cron._fire("cron-gone"), "")
        self.assertEqual(len(runner.batches), 2)

    def test_restart_rebuilds_jobs_from_database(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            settings = make_settings(root)
            policy = ExternalCallPolicy(attempts=1, base_delay_seconds=0, sleep=lambda _: None)
            first = build_services(root, settings=settings, runner=InMemoryTaskRunner(), policy=policy)
            self.assertIsInstance(first.scheduler, LocalCronScheduler)
            mapping = first.orchestrator.add_business_to_schedule("t1", "facebook", "b1", "fb-1")
            ext = first.read_model.get_businesses_in_schedule(mapping["schedule_id"])["schedule"]["external_schedule_id"]

            second = build_services(root, settings=settings, runner=InMemoryTaskRunner(), policy=policy)

            self.assertFalse(second.scheduler.is_paused(ext))
            self.assertEqual(second.scheduler.current_input(ext)["identifiers"], ["fb-1"])


class CronFiredRunTests(unittest.TestCase):
    def test_cron_fired_run_is_attributed_by_run_id(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            svc = _cron_services(root, make_settings(root))
            sid = svc.orchestrator.add_business_to_schedule("t1", "facebook", "b1", "fb-1")["schedule_id"]
            svc.orchestrator.add_business_to_schedule("t1", "facebook", "b2", "fb-2")

            run_id = svc.scheduler._fire(_external_id(svc, sid))
            self.assertEqual(svc.runner.batches[-1]["identifiers"], ["fb-1", "fb-2"])
            res = svc.callbacks.handle(
                {"eventType": "ACTOR.RUN.FAILED", "runId": run_id, "datasetLocation": "s3://bucket/run.json", "status": "FAILED"},
                TOKEN,
            )

            self.assertEqual((res["kind"], res["failed"]), ("schedule", 2))
            self.assertEqual(svc.retry_queue.stats()["total"], 2)
            self.assertIsNotNone(svc.read_model.get_businesses_in_schedule(sid)["schedule"]["last_run_at"])

    def test_worker_fires_input_committed_by_admin_process(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            settings = make_settings(root)
            admin = _cron_services(root, settings)
            worker = _cron_services(root, settings)
            sweeper = SweepWorker(root, services=worker)

            sid = admin.orchestrator.add_business_to_schedule("t1", "facebook", "b1", "fb-1")["schedule_id"]
            admin.orchestrator.add_business_to_schedule("t1", "facebook", "b2", "fb-2")
            admin.orchestrator.remove_business_from_schedule("t1", "facebook", "b1")
            ext = _external_id(admin, sid)
            self.assertIsNone(worker.scheduler.scheduler.get_job(ext))

            sweeper.mirror_jobs()
            self.assertFalse(worker.scheduler.is_paused(ext))
            run_id = worker.scheduler._fire(ext)
            self.assertEqual(worker.runner.batches[-1]["identifiers"], ["fb-2"])
            res = admin.callbacks.handle({"eventType": "ACTOR.RUN.SUCCEEDED", "runId": run_id}, TOKEN)
            self.assertEqual((res["kind"], res["succeeded"]), ("schedule", 1))

            # Later rebuilds reach the worker without another mirror pass.
            admin.orchestrator.add_business_to_schedule("t1", "facebook", "b3", "fb-3")
            worker.scheduler._fire(ext)
            self.assertEqual(worker.runner.batches[-1]["identifiers"], ["fb-2", "fb-3"])
            self.assertEqual(worker.scheduler.current_input(ext)["identifiers"], ["fb-2", "fb-3"])


class HttpTaskRunnerTests(unittest.TestCase):
    @patch("globalsched.adapters.http_runner.urlopen")
    def test_posts_run_request(self, mock_urlopen) -> None:
        mock_urlopen.return_value.__enter__.return_value.read.return_value = b'{"run_id": "r-9"}'
        runner = HttpTaskRunner("http://runner.local/", token="tkn", timeout_seconds=3)

        run_id = runner.run_task("facebook", "fb-1", metadata={"kind": "retry"})

        self.assertEqual(run_id, "r-9")
        req = mock_urlopen.call_args[0][0]
        self.assertEqual(req.full_url, "http://runner.local/runs")
        self.assertEqual(req.get_header("Authorization"), "Bearer tkn")
        self.assertEqual(json.loads(req.data.decode("utf-8"))["identifiers"], ["fb-1"])
        self.assertEqual(mock_urlopen.call_args[1]["timeout"], 3.0)

    @patch("globalsched.adapters.http_runner.urlopen")
    def test_missing_run_id_is_an_error(self, mock_urlopen) -> None:
        mock_urlopen.return_value.__enter__.return_value.read.return_value = b"{}"
        with self.assertRaises(RuntimeError):
            HttpTaskRunner("http://runner.local").run_batch("facebook", ["a"], metadata={})


class ProtocolTests(unittest.TestCase):
    def test_builtin_providers_satisfy_protocols(self) -> None:
        self.assertIsInstance(InMemoryScheduler(), ExternalScheduler)
        self.assertIsInstance(LocalCronScheduler(InMemoryTaskRunner()), ExternalScheduler)
        self.assertIsInstance(InMemoryTaskRunner(), TaskRunner)
        self.assertIsInstance(HttpTaskRunner("http://x"), TaskRunner)
        billing = StaticBillingSource({"pro": {"reviews": 12}}, {"t1": "pro"})
        self.assertIsInstance(billing, BillingSource)
        self.assertEqual(billing.get_tier_default_interval("pro", "facebook", "overview"), None)
        billing.set_team_tier("t1", None)
        self.assertIsNone(billing.get_team_tier("t1"))


if __name__ == "__main__":
    unittest.main()
