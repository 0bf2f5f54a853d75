from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

from globalsched.adapters.memory import InMemoryScheduler, InMemoryTaskRunner
from globalsched.core.errors import ExternalProviderError, NotFoundError, SchedulingError, ValidationError
from globalsched.services.container import Services, build_services

USAGE = (
    "Usage: python -m globalsched.workers.cli "
    "schedules:list|schedules:health|schedules:reconcile|schedules:consolidate|schedules:init|"
    "retry:process|retry:cleanup|db:status [options]"
)


def _get_opt(argv: list[str], key: str) -> str | None:
    if key not in argv:
        return None
    idx = argv.index(key)
    if idx + 1 >= len(argv):
        return None
    return argv[idx + 1]


def _csv(value: str | None) -> list[str] | None:
    if not value:
        return None
    return [x.strip() for x in value.split(",") if x.strip()]


def _print(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, default=str))


def _services(argv: list[str]) -> Services:
    root_opt = _get_opt(argv, "--root")
    root = Path(root_opt).resolve() if root_opt else None
    if "--dry" in argv:
        return build_services(root, scheduler=InMemoryScheduler(), runner=InMemoryTaskRunner())
    return build_services(root)


def cmd_schedules_list(argv: list[str]) -> int:
    svc = _services(argv)
    rows = svc.read_model.list_schedules(platform=_get_opt(argv, "--platform"))
    _print({"ok": True, "count": len(rows), "schedules": rows})
    return 0


def cmd_schedules_health(argv: list[str]) -> int:
    svc = _services(argv)
    health = svc.read_model.get_health()
    _print({"ok": True, **health})
    summary = health["summary"]
    return 3 if summary.get("critical") or summary.get("stalled") else 0


def cmd_schedules_reconcile(argv: list[str]) -> int:
    svc = _services(argv)
    fixed = svc.batches.reconcile_counts()
    _print({"ok": True, "fixed": fixed})
    return 0


def cmd_schedules_consolidate(argv: list[str]) -> int:
    platform = _get_opt(argv, "--platform")
    interval = _get_opt(argv, "--interval")
    if not platform or not interval:
        raise ValidationError("--platform and --interval are required")
    threshold = _get_opt(argv, "--threshold")
    svc = _services(argv)
    result = svc.batches.consolidate(
        platform,
        int(interval),
        _get_opt(argv, "--type") or "reviews",
        threshold=float(threshold) if threshold else None,
    )
    _print({"ok": True, **result})
    return 0


def cmd_schedules_init(argv: list[str]) -> int:
    svc = _services(argv)
    intervals = _csv(_get_opt(argv, "--intervals"))
    created = svc.orchestrator.initialize_schedules(
        platforms=_csv(_get_opt(argv, "--platforms")),
        intervals=[int(x) for x in intervals] if intervals else None,
        schedule_types=_csv(_get_opt(argv, "--types")),
    )
    _print({"ok": True, "created": len(created), "schedules": created})
    return 0


def cmd_retry_process(argv: list[str]) -> int:
    svc = _services(argv)
    _print({"ok": True, **svc.retry_queue.process_queue()})
    return 0


def cmd_retry_cleanup(argv: list[str]) -> int:
    days = _get_opt(argv, "--days")
    svc = _services(argv)
    _print({"ok": True, **svc.retry_queue.cleanup(int(days) if days else None)})
    return 0


def cmd_db_status(argv: list[str]) -> int:
    svc = _services(argv)
    _print({"ok": True, **svc.store.db_status()})
    return 0


COMMANDS = {
    "schedules:list": cmd_schedules_list,
    "schedules:health": cmd_schedules_health,
    "schedules:reconcile": cmd_schedules_reconcile,
    "schedules:consolidate": cmd_schedules_consolidate,
    "schedules:init": cmd_schedules_init,
    "retry:process": cmd_retry_process,
    "retry:cleanup": cmd_retry_cleanup,
    "db:status": cmd_db_status,
}


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv:
        print(USAGE, file=sys.stderr)
        return 2

    cmd = argv[0]
    tail = argv[1:]
    handler = COMMANDS.get(cmd)
    if handler is None:
        print(f"Unknown command: {cmd}", file=sys.stderr)
        return 2
    try:
        return handler(tail)
    except ValidationError as e:
        _print({"ok": False, "error_code": e.code, "error": str(e)})
        return 10
    except NotFoundError as e:
        _print({"ok": False, "error_code": e.code, "error": str(e)})
        return 11
    except ExternalProviderError as e:
        _print({"ok": False, "error_code": e.code, "error": str(e)})
        return 12
    except SchedulingError as e:
        _print({"ok": False, "error_code": e.code, "error": str(e)})
        return 13
    except Exception as e:  # pragma: no cover - last resort for operators
        _print({"ok": False, "error_code": "SCHED_999_UNEXPECTED", "error": str(e)})
        return 19


if __name__ == "__main__":
    raise SystemExit(main())
