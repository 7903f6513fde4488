from __future__ import annotations

import logging
import re
import shlex
import socket
import time
from pathlib import Path
from typing import Any, Callable

from drone_core.errors import RuntimeCommandError
from drone_hub.integrations.command_runner import CommandResult, command_error, run_command


LOGGER = logging.getLogger("drone_hub.runtime")

START_MODE_PRESERVE = "preserve"
START_MODE_START = "start"
START_MODE_NO_START = "no-start"
START_MODES = (START_MODE_PRESERVE, START_MODE_START, START_MODE_NO_START)
CREATE_PORT_ATTEMPTS = 5
DRONE_TOKEN_PATH = "/dvm-data/drone/token"
DEFAULT_CONTAINER_REPO_PATH = "/work/repo"

_MISSING_CONTAINER_MARKERS = (
    "no such container",
    "not found",
    "unknown container",
    "could not find",
    "does not exist",
)
_PORT_CONFLICT_PATTERN = re.compile(
    r"port is already allocated|address already in use|bind for .* failed|ports are not available",
    re.IGNORECASE,
)
_PORT_LINE_PATTERN = re.compile(r"^\s*(?:[\w.:\[\]-]*:)?(\d{1,5})\s*(?::|->)\s*(\d{1,5})(?:/\w+)?\s*$")
_EXPORT_PATH_PATTERN = re.compile(r"^Exported\s+\w+\s+->\s+(.+?)\s*$")

CommandRunner = Callable[..., CommandResult]


def looks_like_missing_container_error(message: Any) -> bool:
    lowered = str(message or "").lower()
    return any(marker in lowered for marker in _MISSING_CONTAINER_MARKERS)


def looks_like_port_conflict_error(message: Any) -> bool:
    return bool(_PORT_CONFLICT_PATTERN.search(str(message or "")))


def parse_ports_output(text: str) -> list[dict[str, int]]:
    """Parse ``dvm ports`` output: one ``host:container`` mapping per line."""
    rows: list[dict[str, int]] = []
    seen: set[tuple[int, int]] = set()
    for line in str(text or "").splitlines():
        match = _PORT_LINE_PATTERN.match(line)
        if not match:
            continue
        host_port, container_port = int(match.group(1)), int(match.group(2))
        if not (1 <= host_port <= 65535 and 1 <= container_port <= 65535):
            continue
        if (host_port, container_port) in seen:
            continue
        seen.add((host_port, container_port))
        rows.append({"hostPort": host_port, "containerPort": container_port})
    return rows


def parse_ls_output(text: str) -> list[str]:
    names: list[str] = []
    for line in str(text or "").splitlines():
        stripped = line.strip()
        if stripped.lower().startswith("name:"):
            name = stripped[len("name:"):].strip()
            if name and name not in names:
                names.append(name)
    return names


def parse_repo_export_path(text: str) -> str | None:
    for line in reversed([line.strip() for line in str(text or "").splitlines() if line.strip()]):
        match = _EXPORT_PATH_PATTERN.match(line)
        if match:
            return match.group(1).strip()
    return None


def host_port_for(rows: list[dict[str, int]], container_port: int | None) -> int | None:
    if container_port is None:
        return None
    for row in rows:
        if row.get("containerPort") == container_port:
            return row.get("hostPort")
    return None


def allocate_free_host_ports(count: int, *, exclude: set[int] | None = None) -> list[int]:
    excluded = set(exclude or ())
    ports: list[int] = []
    sockets: list[socket.socket] = []
    try:
        while len(ports) < count:
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            sockets.append(sock)
            sock.bind(("127.0.0.1", 0))
            port = int(sock.getsockname()[1])
            if port in excluded or port in ports:
                continue
            ports.append(port)
    finally:
        for sock in sockets:
            sock.close()
    return ports


class DvmRuntime:
    """Blocking, timeout-bounded wrapper around the ``dvm`` container CLI."""

    def __init__(
        self,
        *,
        command: tuple[str, ...] | list[str] = ("dvm",),
        timeout_seconds: float = 30.0,
        create_timeout_seconds: float = 180.0,
        runner: CommandRunner = run_command,
        port_allocator: Callable[..., list[int]] = allocate_free_host_ports,
    ) -> None:
        self.command = tuple(command)
        self.timeout_seconds = float(timeout_seconds)
        self.create_timeout_seconds = float(create_timeout_seconds)
        self._runner = runner
        self._port_allocator = port_allocator

    def _run(self, args: list[str], *, timeout: float | None = None, check: bool = True) -> CommandResult:
        cmd = [*self.command, *args]
        started = time.monotonic()
        result = self._runner(cmd, check=False, timeout=timeout or self.timeout_seconds)
        duration_ms = int((time.monotonic() - started) * 1000)
        LOGGER.debug(
            "dvm %s exit=%s",
            shlex.join(args[:2]),
            result.returncode,
            extra={
                "component": "runtime",
                "operation": args[0] if args else "",
                "result": "success" if result.ok else ("timeout" if result.timed_out else "error"),
                "duration_ms": duration_ms,
            },
        )
        if check and not result.ok:
            raise command_error(result, action=f"dvm {args[0]}" if args else "dvm")
        return result

    def create(self, name: str, *, container_port: int, extra_container_ports: tuple[int, ...] = ()) -> list[dict[str, int]]:
        container_ports = [container_port, *[port for port in extra_container_ports if port != container_port]]
        last_error: RuntimeCommandError | None = None
        for _attempt in range(CREATE_PORT_ATTEMPTS):
            host_ports = self._port_allocator(len(container_ports))
            mappings = [
                {"hostPort": host, "containerPort": container}
                for host, container in zip(host_ports, container_ports)
            ]
            port_map = ",".join(f"{row['hostPort']}:{row['containerPort']}" for row in mappings)
            try:
                self._run(["create", name, "--ports", port_map], timeout=self.create_timeout_seconds)
                return mappings
            except RuntimeCommandError as exc:
                if exc.timed_out or not looks_like_port_conflict_error(exc.diagnostic):
                    raise
                last_error = exc
                LOGGER.warning(
                    "dvm create hit a host port collision for %s; retrying with new ports",
                    name,
                    extra={"component": "runtime", "operation": "create", "result": "retry", "drone": name},
                )
                self._run(["rm", name], check=False)
        if last_error is None:
            raise RuntimeCommandError(f"dvm create {name} failed without a diagnostic")
        raise last_error

    def rename(
        self,
        old_name: str,
        new_name: str,
        *,
        start_mode: str = START_MODE_PRESERVE,
        migrate_volume_name: bool = False,
    ) -> None:
        args = ["rename", old_name, new_name]
        if migrate_volume_name:
            args.append("--migrate-volume-name")
        if start_mode == START_MODE_START:
            args.append("--start")
        elif start_mode == START_MODE_NO_START:
            args.append("--no-start")
        self._run(args)

    def remove(self, name: str, *, keep_volume: bool = False) -> CommandResult:
        args = ["rm", name]
        if keep_volume:
            args.append("--keep-volume")
        return self._run(args, check=False)

    def ports(self, name: str) -> list[dict[str, int]]:
        return parse_ports_output(self._run(["ports", name]).stdout)

    def list_containers(self) -> list[str]:
        return parse_ls_output(self._run(["ls"]).stdout)

    def container_exists(self, name: str) -> bool:
        """Best-effort existence check; unknown answers count as present."""
        try:
            return name in self.list_containers()
        except RuntimeCommandError:
            return True

    def exec(self, name: str, cmd: str, args: list[str] | None = None, *, timeout: float | None = None) -> CommandResult:
        return self._run(["exec", name, "--", cmd, *(args or [])], timeout=timeout, check=False)

    def write_token(self, name: str, token: str) -> None:
        script = (
            f"mkdir -p {shlex.quote(str(Path(DRONE_TOKEN_PATH).parent))} && "
            f"umask 077 && printf %s {shlex.quote(token)} > {shlex.quote(DRONE_TOKEN_PATH)}"
        )
        result = self.exec(name, "bash", ["-lc", script])
        if not result.ok:
            raise command_error(result, action=f"writing drone token into {name}")

    def start(self, name: str) -> None:
        self._run(["start", name])

    def stop(self, name: str) -> None:
        self._run(["stop", name])

    def repo_export(
        self,
        name: str,
        *,
        out_dir: Path,
        repo_path_in_container: str = DEFAULT_CONTAINER_REPO_PATH,
        export_format: str = "patches",
        base: str | None = None,
    ) -> Path:
        args = [
            "repo",
            "export",
            name,
            "--repo",
            repo_path_in_container,
            "--out",
            str(out_dir),
            "--format",
            export_format,
        ]
        if base:
            args.extend(["--base", base])
        result = self._run(args, timeout=self.create_timeout_seconds)
        exported = parse_repo_export_path(result.stdout)
        if not exported:
            raise RuntimeCommandError(
                f"dvm repo export did not report an output path: {result.stdout.strip() or '(no stdout)'}",
                command=list(result.cmd),
                returncode=result.returncode,
            )
        return Path(exported)


__all__ = [
    "DvmRuntime",
    "START_MODES",
    "START_MODE_NO_START",
    "START_MODE_PRESERVE",
    "START_MODE_START",
    "allocate_free_host_ports",
    "host_port_for",
    "looks_like_missing_container_error",
    "looks_like_port_conflict_error",
    "parse_ls_output",
    "parse_ports_output",
    "parse_repo_export_path",
]
