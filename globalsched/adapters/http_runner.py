from __future__ import annotations

import json
from typing import Any
from urllib.request import Request, urlopen


class HttpTaskRunner:
    """
    TaskRunner that POSTs run requests to a remote runner service.

    The service answers `{"run_id": "..."}` and reports results later through
    the run callback endpoint.
    """

    def __init__(self, base_url: str, *, token: str = "", timeout_seconds: float = 15.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_seconds = float(timeout_seconds)

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        req = Request(
            f"{self.base_url}{path}",
            data=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
            headers=headers,
            method="POST",
        )
        with urlopen(req, timeout=self.timeout_seconds) as r:
            body = r.read().decode("utf-8")
        obj = json.loads(body or "{}")
        if not isinstance(obj, dict) or not str(obj.get("run_id") or "").strip():
            raise RuntimeError(f"runner response missing run_id: {body[:200]}")
        return obj

    def run_task(self, platform: str, identifier: str, *, metadata: dict[str, Any]) -> str:
        obj = self._post("/runs", {"platform": platform, "identifiers": [identifier], "metadata": metadata})
        return str(obj["run_id"])

    def run_batch(self, platform: str, identifiers: list[str], *, metadata: dict[str, Any]) -> str:
        obj = self._post("/runs", {"platform": platform, "identifiers": list(identifiers), "metadata": metadata})
        return str(obj["run_id"])
