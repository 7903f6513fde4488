from __future__ import annotations

import io
import sys
import unittest
import urllib.error
from pathlib import Path
from unittest.mock import patch

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from drone_hub.integrations.drone_daemon import DroneDaemonClient


class _FakeResponse:
    def __init__(self, *, code: int, body: str) -> None:
        self._code = code
        self._body = body.encode("utf-8")

    def __enter__(self) -> "_FakeResponse":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None

    def getcode(self) -> int:
        return self._code

    def read(self) -> bytes:
        return self._body


URLOPEN = "drone_hub.integrations.drone_daemon.urllib.request.urlopen"


class DroneDaemonClientTests(unittest.TestCase):
    def test_status_sends_bearer_token_to_loopback_port(self) -> None:
        client = DroneDaemonClient(timeout_seconds=2)
        with patch(URLOPEN, return_value=_FakeResponse(code=200, body='{"status": "ready"}')) as urlopen:
            payload = client.status(host_port=40100, token="drone-secret")

        self.assertEqual(payload, {"status": "ready", "ok": True})
        request = urlopen.call_args.args[0]
        self.assertEqual(request.full_url, "http://127.0.0.1:40100/v1/status")
        self.assertEqual(request.get_header("Authorization"), "Bearer drone-secret")
        self.assertEqual(urlopen.call_args.kwargs["timeout"], 2.0)

    def test_unreachable_daemon_is_reported_not_raised(self) -> None:
        client = DroneDaemonClient()
        with patch(URLOPEN, side_effect=urllib.error.URLError("connection refused")):
            payload = client.status(host_port=40100, token="t")
        self.assertFalse(payload["ok"])
        self.assertIn("connection refused", payload["error"])

        with patch(URLOPEN, side_effect=TimeoutError("timed out")):
            self.assertFalse(client.status(host_port=40100, token="t")["ok"])

    def test_http_error_carries_status_code(self) -> None:
        error = urllib.error.HTTPError(
            "http://127.0.0.1:40100/v1/status", 401, "Unauthorized", {}, io.BytesIO(b"bad token")
        )
        with patch(URLOPEN, side_effect=error):
            payload = DroneDaemonClient().status(host_port=40100, token="t")
        self.assertEqual(payload, {"ok": False, "statusCode": 401, "error": "bad token"})

    def test_invalid_json_is_not_healthy(self) -> None:
        with patch(URLOPEN, return_value=_FakeResponse(code=200, body="<html>")):
            payload = DroneDaemonClient().status(host_port=40100, token="t")
        self.assertFalse(payload["ok"])


if __name__ == "__main__":
    unittest.main()
