from __future__ import annotations

import logging
import re
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable

from fastapi import HTTPException

from drone_hub.integrations.dvm import host_port_for


LOGGER = logging.getLogger("drone_hub.preview")

LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1", "[::1]"})
REACHABILITY_CHECKING = "checking"
REACHABILITY_UP = "up"
REACHABILITY_DOWN = "down"
PROXY_DROPPED_RESPONSE_HEADERS = frozenset(
    {
        "content-length",
        "transfer-encoding",
        "connection",
        "keep-alive",
        "x-frame-options",
        "content-security-policy",
        "cache-control",
    }
)
PROXY_FORWARDED_REQUEST_HEADERS = ("accept", "accept-language", "user-agent", "if-none-match", "if-modified-since")
PROXY_PATH_SAFE_CHARS = "/:@!$&'()*+,;=~-._"
_PREVIEW_PATH_PATTERN = re.compile(r"^/api/drones/([^/]+)/preview/(\d{1,5})(/.*)?$")


def parse_container_port(raw_value: Any) -> int:
    text = str(raw_value or "").strip()
    if not text.isdigit():
        raise HTTPException(status_code=400, detail=f"Invalid container port: {raw_value}")
    port = int(text)
    if not 1 <= port <= 65535:
        raise HTTPException(status_code=400, detail=f"Invalid container port: {raw_value}")
    return port


def preview_path(drone_id: str, container_port: int, tail: str = "/") -> str:
    suffix = tail if tail.startswith("/") else f"/{tail}"
    return f"/api/drones/{urllib.parse.quote(str(drone_id), safe='')}/preview/{int(container_port)}{suffix}"


def _split_tail(parsed: urllib.parse.SplitResult) -> str:
    tail = parsed.path or "/"
    if parsed.query:
        tail += f"?{parsed.query}"
    if parsed.fragment:
        tail += f"#{parsed.fragment}"
    return tail


def loopback_url_to_preview_path(raw_url: str, *, drone_id: str, port_rows: list[dict[str, int]]) -> str | None:
    """Rewrite ``http://localhost:PORT/x`` into the drone's stable preview path.

    PORT is read as a container port when one is mapped under that number,
    then as a host port of a current mapping, and otherwise kept as given.
    Non-loopback URLs return None.
    """
    try:
        parsed = urllib.parse.urlsplit(str(raw_url or "").strip())
        port = parsed.port
    except ValueError:
        return None
    if parsed.scheme not in {"http", "https"} or (parsed.hostname or "").lower() not in LOOPBACK_HOSTS:
        return None
    if port is None:
        port = 443 if parsed.scheme == "https" else 80
    container_ports = {row["containerPort"] for row in port_rows}
    container_port = port
    if port not in container_ports:
        for row in port_rows:
            if row["hostPort"] == port:
                container_port = row["containerPort"]
                break
    return preview_path(drone_id, container_port, _split_tail(parsed))


def preview_path_to_loopback_url(path_or_url: str, *, port_rows: list[dict[str, int]]) -> str | None:
    """Resolve a stable preview path back to the current host loopback URL."""
    parsed = urllib.parse.urlsplit(str(path_or_url or "").strip())
    match = _PREVIEW_PATH_PATTERN.match(parsed.path or "")
    if not match:
        return None
    container_port = int(match.group(2))
    host_port = host_port_for(port_rows, container_port)
    if host_port is None:
        # A host-port form from an older rewrite still resolves.
        host_port = next((row["hostPort"] for row in port_rows if row["hostPort"] == container_port), None)
    if host_port is None:
        return None
    tail = urllib.parse.urlunsplit(("", "", match.group(3) or "/", parsed.query, parsed.fragment))
    return f"http://localhost:{host_port}{tail}"


def preview_path_to_display_url(path_or_url: str) -> str | None:
    """Container-relative form shown to users: ``http://localhost:<containerPort>/...``."""
    parsed = urllib.parse.urlsplit(str(path_or_url or "").strip())
    match = _PREVIEW_PATH_PATTERN.match(parsed.path or "")
    if not match:
        return None
    tail = urllib.parse.urlunsplit(("", "", match.group(3) or "/", parsed.query, parsed.fragment))
    return f"http://localhost:{int(match.group(2))}{tail}"


def probe_tcp_port(host_port: int, *, timeout_seconds: float, host: str = "127.0.0.1") -> bool:
    try:
        with socket.create_connection((host, int(host_port)), timeout=timeout_seconds):
            return True
    except OSError:
        return False


class PortReachabilityTracker:
    """Advisory up/down/checking state per (drone id, host port). Never persisted."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 0.5,
        probe: Callable[..., bool] = probe_tcp_port,
    ) -> None:
        self.timeout_seconds = float(timeout_seconds)
        self._probe = probe
        self._lock = Lock()
        self._states: dict[tuple[str, int], str] = {}

    def state(self, drone_id: str, host_port: int) -> str | None:
        with self._lock:
            return self._states.get((drone_id, int(host_port)))

    def refresh(self, drone_id: str, host_port: int) -> str:
        key = (drone_id, int(host_port))
        with self._lock:
            self._states[key] = REACHABILITY_CHECKING
        reachable = self._probe(int(host_port), timeout_seconds=self.timeout_seconds)
        state = REACHABILITY_UP if reachable else REACHABILITY_DOWN
        with self._lock:
            # forget() during the probe wins; a removed drone must not reappear.
            if key in self._states:
                self._states[key] = state
        return state

    def snapshot(self, drone_id: str) -> dict[int, str]:
        with self._lock:
            return {port: state for (owner, port), state in self._states.items() if owner == drone_id}

    def forget(self, drone_id: str) -> None:
        with self._lock:
            for key in [key for key in self._states if key[0] == drone_id]:
                self._states.pop(key, None)


class _NoRedirectHandler(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):  # type: ignore[override]
        return None


@dataclass(frozen=True)
class ProxiedResponse:
    status_code: int
    body: bytes
    headers: list[tuple[str, str]]


def filter_proxy_response_headers(headers: Any) -> list[tuple[str, str]]:
    """Drop hop-by-hop and framing headers, keeping repeated ones such as Set-Cookie."""
    filtered: list[tuple[str, str]] = []
    for key, value in (headers.items() if headers is not None else []):
        if str(key).lower() in PROXY_DROPPED_RESPONSE_HEADERS:
            continue
        filtered.append((str(key), str(value)))
    filtered.append(("cache-control", "no-store"))
    return filtered


class PreviewDomain:
    def __init__(
        self,
        *,
        lifecycle: Any,
        reachability: PortReachabilityTracker,
        proxy_timeout_seconds: float = 30.0,
        opener: urllib.request.OpenerDirector | None = None,
    ) -> None:
        self._lifecycle = lifecycle
        self._reachability = reachability
        self.proxy_timeout_seconds = float(proxy_timeout_seconds)
        self._opener = opener or urllib.request.build_opener(_NoRedirectHandler())

    def _mapped_host_port(self, drone_ref: str, container_port: int) -> tuple[dict[str, Any], int]:
        record = self._lifecycle.require(drone_ref)
        rows = self._lifecycle.runtime_ports(record)
        host_port = host_port_for(rows, container_port)
        if host_port is None:
            raise HTTPException(
                status_code=404,
                detail=f"Container port {container_port} is not mapped for drone {record['name']}.",
            )
        return record, host_port

    def proxy(
        self,
        drone_ref: str,
        raw_container_port: Any,
        *,
        tail: str,
        query: str,
        headers: dict[str, str],
    ) -> ProxiedResponse:
        container_port = parse_container_port(raw_container_port)
        record, host_port = self._mapped_host_port(drone_ref, container_port)
        # ``tail`` arrives decoded from the route; re-encode it for the upstream request line.
        quoted_tail = urllib.parse.quote(str(tail or "").lstrip("/"), safe=PROXY_PATH_SAFE_CHARS)
        target = f"http://127.0.0.1:{host_port}/{quoted_tail}"
        if query:
            target += f"?{query}"
        forwarded = {
            key: value for key, value in headers.items() if key.lower() in PROXY_FORWARDED_REQUEST_HEADERS
        }
        request = urllib.request.Request(target, method="GET", headers=forwarded)
        try:
            with self._opener.open(request, timeout=self.proxy_timeout_seconds) as response:
                status_code = int(response.getcode() or 200)
                body = response.read()
                response_headers = filter_proxy_response_headers(response.headers)
        except urllib.error.HTTPError as exc:
            status_code = int(exc.code or 502)
            body = exc.read()
            response_headers = filter_proxy_response_headers(exc.headers)
        except (urllib.error.URLError, OSError, TimeoutError) as exc:
            LOGGER.info(
                "Preview proxy to drone %s port %s failed: %s",
                record["name"],
                container_port,
                exc,
                extra={"component": "preview", "operation": "proxy", "result": "error", "drone": record["name"]},
            )
            raise HTTPException(status_code=502, detail=f"Preview upstream is unreachable: {exc}") from exc
        except ValueError as exc:
            # http.client rejects request lines it cannot encode (InvalidURL, UnicodeEncodeError).
            raise HTTPException(status_code=400, detail=f"Preview path cannot be forwarded: {exc}") from exc
        return ProxiedResponse(status_code=status_code, body=body, headers=response_headers)

    def rewrite_url(self, drone_ref: str, raw_url: Any) -> dict[str, Any]:
        record = self._lifecycle.require(drone_ref)
        text = str(raw_url or "").strip()
        if not text:
            raise HTTPException(status_code=400, detail="url is required.")
        rows = self._lifecycle.runtime_ports(record)
        path = (
            text
            if _PREVIEW_PATH_PATTERN.match(urllib.parse.urlsplit(text).path or "")
            else loopback_url_to_preview_path(text, drone_id=record["id"], port_rows=rows)
        )
        if path is None:
            raise HTTPException(status_code=400, detail="url must be a loopback URL or a drone preview path.")
        return {
            "id": record["id"],
            "name": record["name"],
            "previewPath": path,
            "hostUrl": preview_path_to_loopback_url(path, port_rows=rows),
            "displayUrl": preview_path_to_display_url(path),
        }

    def port_reachability(self, record: dict[str, Any], rows: list[dict[str, int]]) -> dict[str, str]:
        states: dict[str, str] = {}
        for row in rows:
            states[str(row["hostPort"])] = self._reachability.refresh(record["id"], row["hostPort"])
        return states


__all__ = [
    "PortReachabilityTracker",
    "PreviewDomain",
    "ProxiedResponse",
    "REACHABILITY_CHECKING",
    "REACHABILITY_DOWN",
    "REACHABILITY_UP",
    "filter_proxy_response_headers",
    "loopback_url_to_preview_path",
    "parse_container_port",
    "preview_path",
    "preview_path_to_display_url",
    "preview_path_to_loopback_url",
    "probe_tcp_port",
]
