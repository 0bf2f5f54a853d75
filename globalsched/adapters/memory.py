from __future__ import annotations

import copy
import itertools
import threading
from typing import Any


class InMemoryScheduler:
    """Recording ExternalScheduler; `fail_next(op, n)` makes the next n calls of op raise."""

    def __init__(self) -> None:
        self.schedules: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[str, int] = {}
        self._ids = itertools.count(1)
        self._runs = itertools.count(1)
        self._lock = threading.Lock()

    def fail_next(self, op: str, times: int = 1) -> None:
        with self._lock:
            self._failures[op] = self._failures.get(op, 0) + int(times)

    def _enter(self, op: str, external_id: str = "") -> None:
        with self._lock:
            self.calls.append((op, external_id))
            left = self._failures.get(op, 0)
            if left > 0:
                self._failures[op] = left - 1
                raise RuntimeError(f"injected failure op={op}")

    def _get(self, external_id: str) -> dict[str, Any]:
        sched = self.schedules.get(external_id)
        if sched is None:
            raise KeyError(f"unknown external schedule {external_id}")
        return sched

    def create_schedule(self, *, name: str, cron: str, job_input: dict[str, Any]) -> str:
        self._enter("create_schedule")
        external_id = f"ext-{next(self._ids)}"
        self.schedules[external_id] = {
            "name": name,
            "cron": cron,
            "input": copy.deepcopy(job_input),
            "paused": True,
        }
        return external_id

    def update_schedule_input(self, external_id: str, job_input: dict[str, Any]) -> None:
        self._enter("update_schedule_input", external_id)
        self._get(external_id)["input"] = copy.deepcopy(job_input)

    def pause_schedule(self, external_id: str) -> None:
        self._enter("pause_schedule", external_id)
        self._get(external_id)["paused"] = True

    def resume_schedule(self, external_id: str) -> None:
        self._enter("resume_schedule", external_id)
        self._get(external_id)["paused"] = False

    def delete_schedule(self, external_id: str) -> None:
        self._enter("delete_schedule", external_id)
        self.schedules.pop(external_id, None)

    def run_now(self, external_id: str) -> str:
        self._enter("run_now", external_id)
        self._get(external_id)
        return f"run-{external_id}-{next(self._runs)}"


class InMemoryTaskRunner:
    """Recording TaskRunner; nothing is executed, run ids are returned immediately."""

    def __init__(self) -> None:
        self.tasks: list[dict[str, Any]] = []
        self.batches: list[dict[str, Any]] = []
        self._failures = 0
        self._runs = itertools.count(1)
        self._lock = threading.Lock()

    def fail_next(self, times: int = 1) -> None:
        with self._lock:
            self._failures += int(times)

    def _maybe_fail(self) -> None:
        with self._lock:
            if self._failures > 0:
                self._failures -= 1
                raise RuntimeError("injected runner failure")

    def run_task(self, platform: str, identifier: str, *, metadata: dict[str, Any]) -> str:
        self._maybe_fail()
        run_id = f"task-{next(self._runs)}"
        self.tasks.append({"run_id": run_id, "platform": platform, "identifier": identifier, "metadata": dict(metadata)})
        return run_id

    def run_batch(self, platform: str, identifiers: list[str], *, metadata: dict[str, Any]) -> str:
        self._maybe_fail()
        run_id = f"batch-{next(self._runs)}"
        self.batches.append(
            {"run_id": run_id, "platform": platform, "identifiers": list(identifiers), "metadata": dict(metadata)}
        )
        return run_id
