from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from typing import Any


LOGGER = logging.getLogger("drone_hub.daemon")


class DroneDaemonClient:
    """Reads the in-container drone daemon's status endpoint over the host loopback port."""

    def __init__(self, *, timeout_seconds: float = 5.0, host: str = "127.0.0.1") -> None:
        self.timeout_seconds = float(timeout_seconds)
        self.host = host

    def status(self, *, host_port: int, token: str) -> dict[str, Any]:
        url = f"http://{self.host}:{int(host_port)}/v1/status"
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        request = urllib.request.Request(url, method="GET", headers=headers)
        try:
            with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:
                status_code = int(response.getcode() or 0)
                body = response.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="replace")
            LOGGER.info(
                "Drone daemon status returned http %s on port %s",
                exc.code,
                host_port,
                extra={"component": "daemon", "operation": "status", "result": "http_error"},
            )
            return {"ok": False, "statusCode": int(exc.code or 0), "error": body.strip() or str(exc)}
        except (urllib.error.URLError, OSError, TimeoutError) as exc:
            reason = getattr(exc, "reason", exc)
            return {"ok": False, "error": f"drone daemon unreachable: {reason}"}
        try:
            payload = json.loads(body) if body.strip() else {}
        except json.JSONDecodeError:
            return {"ok": False, "statusCode": status_code, "error": "drone daemon returned invalid JSON"}
        if not isinstance(payload, dict):
            payload = {"value": payload}
        payload.setdefault("ok", 200 <= status_code < 300)
        return payload


__all__ = ["DroneDaemonClient"]
