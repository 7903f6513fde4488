from __future__ import annotations

import logging
import posixpath
import secrets
import shlex
import time
from pathlib import Path
from typing import Any, Callable

from fastapi import HTTPException

from drone_core.errors import (
    CompensationFailedError,
    RegistryError,
    RolledBackError,
    RuntimeCommandError,
)
from drone_hub.domains.saga import commit_or_compensate
from drone_hub.integrations.dvm import (
    START_MODE_PRESERVE,
    START_MODES,
    host_port_for,
    looks_like_missing_container_error,
)
from drone_hub.store.records import (
    HUB_PHASE_CREATING,
    HUB_PHASE_ERROR,
    HUB_PHASE_RUNNING,
    HUB_PHASE_STARTING,
    drone_name_taken,
    drone_summary,
    find_drone,
    find_drone_by_id,
    iso_now,
    new_drone_record,
    new_group_record,
    normalize_group_assignment,
    require_drone,
    vacate_drone_key,
    validate_drone_name,
)


LOGGER = logging.getLogger("drone_hub.lifecycle")

REMOVE_ATTEMPTS = 3
REMOVE_RETRY_DELAY_SECONDS = 0.5
DEFAULT_FS_LIST_PATH = "/dvm-data/home"
_FS_LIST_SCRIPT = "\n".join(
    [
        "set -euo pipefail",
        "target={target}",
        'if [ ! -d "$target" ]; then',
        '  echo "__ERR__\tnot-dir"',
        "  exit 3",
        "fi",
        'cd "$target"',
        'printf "__PATH__\\t%s\\n" "$(pwd -P)"',
        "shopt -s dotglob nullglob",
        "for p in ./*; do",
        '  [ -e "$p" ] || continue',
        '  name=$(basename -- "$p")',
        "  kind=o",
        '  if [ -d "$p" ]; then kind=d; elif [ -f "$p" ]; then kind=f; fi',
        '  size=$(stat -c %s -- "$p" 2>/dev/null || echo 0)',
        '  mtime=$(stat -c %Y -- "$p" 2>/dev/null || echo 0)',
        '  printf "%s\\t%s\\t%s\\t%s\\n" "$name" "$kind" "$size" "$mtime"',
        "done",
    ]
)


def normalize_container_path(raw_path: Any) -> str:
    text = str(raw_path or "").strip()
    if not text:
        return DEFAULT_FS_LIST_PATH
    return posixpath.normpath(text if text.startswith("/") else f"/{text}")


def parse_fs_list_output(text: str) -> tuple[str, list[dict[str, Any]]]:
    resolved_path = "/"
    entries: list[dict[str, Any]] = []
    for line in str(text or "").splitlines():
        line = line.rstrip("\r")
        if not line:
            continue
        if line.startswith("__PATH__\t"):
            resolved_path = normalize_container_path(line[len("__PATH__\t"):]) or "/"
            continue
        parts = line.split("\t")
        if len(parts) < 4:
            continue
        name, kind_code, raw_size, raw_mtime = parts[:4]
        if not name or name in {".", ".."}:
            continue
        kind = {"d": "directory", "f": "file"}.get(kind_code, "other")
        try:
            size = int(raw_size)
        except ValueError:
            size = 0
        try:
            mtime_ms = int(raw_mtime) * 1000
        except ValueError:
            mtime_ms = 0
        entries.append(
            {
                "name": name,
                "path": posixpath.join(resolved_path, name),
                "kind": kind,
                "size": size,
                "mtimeMs": mtime_ms,
            }
        )
    entries.sort(key=lambda entry: (entry["kind"] != "directory", entry["name"].lower()))
    return resolved_path, entries


def _parse_container_port(raw_value: Any, *, default: int) -> int:
    if raw_value is None or raw_value == "":
        return default
    if isinstance(raw_value, bool):
        raise HTTPException(status_code=400, detail="containerPort must be an integer between 1 and 65535.")
    try:
        port = int(raw_value)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="containerPort must be an integer between 1 and 65535.") from None
    if not 1 <= port <= 65535:
        raise HTTPException(status_code=400, detail="containerPort must be an integer between 1 and 65535.")
    return port


def _normalize_repo_path(raw_value: Any) -> str | None:
    text = str(raw_value or "").strip()
    if not text or text.lower() in {"-", "none"}:
        return None
    return str(Path(text).expanduser().resolve())


class LifecycleDomain:
    """Sequences runtime calls and registry commits for drone lifecycle operations.

    Runtime calls never happen inside ``store.update``: each operation calls the
    runtime first and then commits to the registry, compensating the runtime
    step when the commit fails.
    """

    def __init__(
        self,
        *,
        store: Any,
        runtime: Any,
        daemon_client: Any,
        reachability: Any,
        default_container_port: int = 7777,
        preview_container_ports: tuple[int, ...] = (),
        exec_timeout_seconds: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
        token_factory: Callable[[], str] = lambda: secrets.token_urlsafe(32),
    ) -> None:
        self._store = store
        self._runtime = runtime
        self._daemon = daemon_client
        self._reachability = reachability
        self.default_container_port = int(default_container_port)
        self.preview_container_ports = tuple(preview_container_ports)
        self.exec_timeout_seconds = float(exec_timeout_seconds)
        self._sleep = sleep
        self._token_factory = token_factory

    # Lookups

    def require(self, ref: str) -> dict[str, Any]:
        _key, record = require_drone(self._store.read(), ref)
        return record

    def list_drones(self) -> list[dict[str, Any]]:
        registry = self._store.read()
        records = sorted(registry["drones"].values(), key=lambda record: record["name"])
        return [drone_summary(record) for record in records]

    def summary(self, ref: str) -> dict[str, Any]:
        return drone_summary(self.require(ref))

    def runtime_ports(self, record: dict[str, Any]) -> list[dict[str, int]]:
        return self._runtime.ports(record["name"])

    # Create

    def create(
        self,
        *,
        name: Any,
        group: Any = None,
        repo_path: Any = None,
        container_port: Any = None,
        chats: list[str] | None = None,
    ) -> dict[str, Any]:
        drone_name = validate_drone_name(name)
        group_name = normalize_group_assignment(group)
        resolved_repo_path = _normalize_repo_path(repo_path)
        port = _parse_container_port(container_port, default=self.default_container_port)
        if drone_name_taken(self._store.read(), drone_name):
            raise HTTPException(status_code=409, detail=f"Drone already exists: {drone_name}")

        log_extra = {"component": "lifecycle", "operation": "create", "drone": drone_name}
        started = time.monotonic()
        LOGGER.info("Provisioning drone container", extra={**log_extra, "result": "start"})
        mappings = self._runtime.create(
            drone_name,
            container_port=port,
            extra_container_ports=self.preview_container_ports,
        )
        token = self._token_factory()

        def compensate() -> None:
            result = self._runtime.remove(drone_name, keep_volume=False)
            if not result.ok and not looks_like_missing_container_error(f"{result.stderr}\n{result.stdout}"):
                raise RuntimeCommandError(
                    f"failed to remove container {drone_name}: {(result.stderr or result.stdout).strip()}",
                    command=list(result.cmd),
                    returncode=result.returncode,
                )

        def provision_and_commit() -> dict[str, Any]:
            self._runtime.write_token(drone_name, token)
            host_port = self._best_effort_host_port(drone_name, port) or host_port_for(mappings, port)
            record = new_drone_record(
                name=drone_name,
                container_port=port,
                token=token,
                group=group_name,
                repo_path=resolved_repo_path,
                host_port=host_port,
                chats=chats,
            )

            def insert(registry: dict[str, Any]) -> None:
                if drone_name_taken(registry, drone_name):
                    raise HTTPException(status_code=409, detail=f"Drone already exists: {drone_name}")
                if group_name and group_name not in registry["groups"]:
                    registry["groups"][group_name] = new_group_record(group_name)
                vacate_drone_key(registry, drone_name)
                registry["drones"][drone_name] = record

            self._store.update(insert)
            return record

        record = commit_or_compensate(
            "create",
            commit=provision_and_commit,
            compensate=compensate,
            on_rolled_back=lambda exc: exc
            if isinstance(exc, HTTPException)
            else RolledBackError(
                f"create {drone_name} failed and the container was removed: {exc}",
                operation="create",
            ),
            logger=LOGGER,
            log_extra={"drone": drone_name},
        )
        LOGGER.info(
            "Drone created",
            extra={**log_extra, "result": "success", "duration_ms": int((time.monotonic() - started) * 1000)},
        )
        return {
            "id": record["id"],
            "name": record["name"],
            "phase": record["hubPhase"],
            "group": record["group"],
            "containerPort": record["containerPort"],
            "hostPort": record["hostPort"],
        }

    # Rename

    def rename(
        self,
        ref: str,
        new_name: Any,
        *,
        start_mode: Any = None,
        migrate_volume_name: bool = False,
    ) -> dict[str, Any]:
        target = validate_drone_name(new_name, field_name="newName")
        mode = str(start_mode or START_MODE_PRESERVE).strip().lower()
        if mode not in START_MODES:
            raise HTTPException(status_code=400, detail=f"startMode must be one of: {', '.join(START_MODES)}.")

        registry = self._store.read()
        _key, record = require_drone(registry, ref)
        old_name = record["name"]
        drone_id = record["id"]
        if target == old_name:
            return {"id": drone_id, "oldName": old_name, "newName": target, "renamed": False, "reason": "same-name"}
        if drone_name_taken(registry, target, except_id=drone_id):
            raise HTTPException(status_code=409, detail=f"Drone already exists: {target}")

        log_extra = {"component": "lifecycle", "operation": "rename", "drone": old_name}
        started = time.monotonic()
        try:
            self._runtime.rename(old_name, target, start_mode=mode, migrate_volume_name=migrate_volume_name)
        except RuntimeCommandError as exc:
            self._reconcile_failed_forward_rename(old_name, target, exc, migrate_volume_name=migrate_volume_name)
            raise

        host_port = self._best_effort_host_port(target, record["containerPort"])

        def commit(registry: dict[str, Any]) -> None:
            found = find_drone_by_id(registry, drone_id)
            if found is None:
                raise RegistryError(f"Drone {old_name} disappeared from the registry during rename.")
            if drone_name_taken(registry, target, except_id=drone_id):
                raise HTTPException(status_code=409, detail=f"Drone already exists: {target}")
            current_key, current = found
            del registry["drones"][current_key]
            current["name"] = target
            if host_port is not None:
                current["hostPort"] = host_port
            vacate_drone_key(registry, target)
            registry["drones"][target] = current

        commit_or_compensate(
            "rename",
            commit=lambda: self._store.update(commit),
            compensate=lambda: self._runtime.rename(
                target,
                old_name,
                start_mode=START_MODE_PRESERVE,
                migrate_volume_name=migrate_volume_name,
            ),
            on_rolled_back=lambda exc: RolledBackError(
                f"rename {old_name} -> {target} failed and was rolled back: {exc}",
                operation="rename",
            ),
            logger=LOGGER,
            log_extra={"drone": old_name},
        )
        LOGGER.info(
            "Drone renamed to %s",
            target,
            extra={**log_extra, "result": "success", "duration_ms": int((time.monotonic() - started) * 1000)},
        )
        return {
            "id": drone_id,
            "oldName": old_name,
            "newName": target,
            "renamed": True,
            "containerPort": record["containerPort"],
            "hostPort": host_port if host_port is not None else record["hostPort"],
        }

    def _reconcile_failed_forward_rename(
        self,
        old_name: str,
        new_name: str,
        error: RuntimeCommandError,
        *,
        migrate_volume_name: bool,
    ) -> None:
        """Undo a runtime rename that reported failure but may have been applied."""
        try:
            names = self._runtime.list_containers()
        except RuntimeCommandError as list_exc:
            if error.timed_out:
                raise CompensationFailedError(
                    f"rename {old_name} -> {new_name} timed out and the container state could not be "
                    f"verified ({list_exc}); check which name the container answers to.",
                    operation="rename",
                    original_error=str(error),
                ) from list_exc
            return
        if new_name not in names or old_name in names:
            return
        LOGGER.warning(
            "Runtime rename reported failure but container now answers to %s; renaming back",
            new_name,
            extra={"component": "lifecycle", "operation": "rename", "result": "compensating", "drone": old_name},
        )
        try:
            self._runtime.rename(new_name, old_name, start_mode=START_MODE_PRESERVE, migrate_volume_name=migrate_volume_name)
        except RuntimeCommandError as undo_exc:
            raise CompensationFailedError(
                f"rename {old_name} -> {new_name} failed ({error}) after the container was renamed, "
                f"and renaming it back failed ({undo_exc}).",
                operation="rename",
                original_error=str(error),
            ) from undo_exc

    # Remove

    def remove(self, ref: str, *, keep_volume: bool = False, forget: bool = True) -> dict[str, Any]:
        registry = self._store.read()
        match = find_drone(registry, ref)
        if match is None:
            container_name = validate_drone_name(ref)
            drone_id = None
        else:
            container_name = match[1]["name"]
            drone_id = match[1]["id"]

        log_extra = {"component": "lifecycle", "operation": "remove", "drone": container_name}
        container_gone, remove_error = self._remove_container(container_name, keep_volume=keep_volume)
        removed_registry = False
        if drone_id is not None and forget and container_gone:

            def drop(registry: dict[str, Any]) -> None:
                found = find_drone_by_id(registry, drone_id)
                if found is not None:
                    del registry["drones"][found[0]]

            self._store.update(drop)
            removed_registry = True
            self._reachability.forget(drone_id)
        if remove_error is not None:
            LOGGER.warning(
                "Container removal failed: %s",
                remove_error,
                extra={**log_extra, "result": "error", "error_class": type(remove_error).__name__},
            )
            raise remove_error
        LOGGER.info("Drone removed", extra={**log_extra, "result": "success"})
        return {
            "id": drone_id,
            "name": container_name,
            "removedRegistry": removed_registry,
            "alreadyRemoved": drone_id is None,
            "keepVolume": keep_volume,
        }

    def _remove_container(self, name: str, *, keep_volume: bool) -> tuple[bool, RuntimeCommandError | None]:
        last_error: RuntimeCommandError | None = None
        for attempt in range(REMOVE_ATTEMPTS):
            if attempt:
                self._sleep(REMOVE_RETRY_DELAY_SECONDS)
            result = self._runtime.remove(name, keep_volume=keep_volume)
            diagnostic = f"{result.stderr}\n{result.stdout}".strip()
            if result.ok or looks_like_missing_container_error(diagnostic):
                return True, None
            if not self._runtime.container_exists(name):
                return True, None
            last_error = RuntimeCommandError(
                f"dvm rm {name} failed (exit {result.returncode}): {diagnostic or 'no output'}",
                command=list(result.cmd),
                returncode=result.returncode,
                diagnostic=diagnostic,
            )
        return False, last_error

    # Read-through

    def _best_effort_host_port(self, name: str, container_port: int | None) -> int | None:
        try:
            return host_port_for(self._runtime.ports(name), container_port)
        except RuntimeCommandError:
            return None

    def status(self, ref: str) -> dict[str, Any]:
        record = self.require(ref)
        host_port = self._best_effort_host_port(record["name"], record["containerPort"]) or record["hostPort"]
        if host_port is None:
            daemon: dict[str, Any] = {"ok": False, "error": "no host port is mapped for the drone daemon"}
        else:
            daemon = self._daemon.status(host_port=host_port, token=record["token"])
        healthy = bool(daemon.get("ok"))
        promote = healthy and record["hubPhase"] in {HUB_PHASE_CREATING, HUB_PHASE_STARTING}
        if promote or (host_port is not None and host_port != record["hostPort"]):
            record = self._refresh_record(record["id"], host_port=host_port, promote=promote) or record
        return {
            "id": record["id"],
            "name": record["name"],
            "group": record["group"],
            "containerPort": record["containerPort"],
            "hostPort": host_port,
            "phase": record["hubPhase"],
            "message": record["hubMessage"],
            "daemon": daemon,
        }

    def _refresh_record(self, drone_id: str, *, host_port: int | None, promote: bool) -> dict[str, Any] | None:
        updated: dict[str, Any] = {}

        def apply(registry: dict[str, Any]) -> None:
            found = find_drone_by_id(registry, drone_id)
            if found is None:
                return
            current = found[1]
            if host_port is not None:
                current["hostPort"] = host_port
            if promote and current["hubPhase"] in {HUB_PHASE_CREATING, HUB_PHASE_STARTING}:
                current["hubPhase"] = HUB_PHASE_RUNNING
                current["hubMessage"] = ""
            updated.update(current)

        self._store.update(apply)
        return updated or None

    def exec(self, ref: str, *, cmd: Any, args: Any = None, timeout_seconds: Any = None) -> dict[str, Any]:
        record = self.require(ref)
        command, command_args = _parse_exec_command(cmd, args)
        timeout = self.exec_timeout_seconds
        if timeout_seconds not in (None, ""):
            try:
                timeout = float(timeout_seconds)
            except (TypeError, ValueError):
                raise HTTPException(status_code=400, detail="timeoutSeconds must be a number.") from None
            if timeout <= 0:
                raise HTTPException(status_code=400, detail="timeoutSeconds must be positive.")
        result = self._runtime.exec(record["name"], command, command_args, timeout=timeout)
        if result.timed_out:
            raise HTTPException(status_code=504, detail=f"exec in {record['name']} timed out after {timeout}s.")
        if result.returncode != 0 and looks_like_missing_container_error(result.stderr):
            raise HTTPException(status_code=404, detail=f"Container for drone {record['name']} was not found.")
        return {
            "id": record["id"],
            "name": record["name"],
            "exitCode": result.returncode,
            "stdout": result.stdout,
            "stderr": result.stderr,
        }

    def ports(self, ref: str) -> tuple[dict[str, Any], list[dict[str, int]]]:
        record = self.require(ref)
        return record, self.runtime_ports(record)

    def fs_list(self, ref: str, raw_path: Any = None) -> dict[str, Any]:
        record = self.require(ref)
        target = normalize_container_path(raw_path)
        script = _FS_LIST_SCRIPT.format(target=shlex.quote(target))
        result = self._runtime.exec(record["name"], "bash", ["-lc", script])
        if not result.ok:
            combined = f"{result.stdout}\n{result.stderr}"
            if "not-dir" in combined:
                raise HTTPException(status_code=404, detail=f"Path is not a directory: {target}")
            if looks_like_missing_container_error(result.stderr):
                raise HTTPException(status_code=404, detail=f"Container for drone {record['name']} was not found.")
            raise RuntimeCommandError(
                f"listing {target} in {record['name']} failed: {(result.stderr or result.stdout).strip()}",
                command=list(result.cmd),
                returncode=result.returncode,
            )
        resolved, entries = parse_fs_list_output(result.stdout)
        return {"id": record["id"], "name": record["name"], "path": resolved, "entries": entries}

    # Phase bookkeeping

    def set_phase(self, drone_id: str, phase: str, message: str = "") -> None:
        def apply(registry: dict[str, Any]) -> None:
            found = find_drone_by_id(registry, drone_id)
            if found is not None:
                found[1]["hubPhase"] = phase
                found[1]["hubMessage"] = message

        self._store.update(apply)

    def clear_hub_error(self, ref: str) -> dict[str, Any]:
        record = self.require(ref)
        cleared: dict[str, Any] = {}

        def apply(registry: dict[str, Any]) -> None:
            found = find_drone_by_id(registry, record["id"])
            if found is None:
                raise HTTPException(status_code=404, detail=f"Unknown drone: {ref}")
            current = found[1]
            if current["hubPhase"] == HUB_PHASE_ERROR:
                current["hubPhase"] = HUB_PHASE_RUNNING
            current["hubMessage"] = ""
            cleared.update(current)

        self._store.update(apply)
        return {"id": cleared["id"], "name": cleared["name"], "phase": cleared["hubPhase"], "clearedAt": iso_now()}


def _parse_exec_command(cmd: Any, args: Any) -> tuple[str, list[str]]:
    if isinstance(cmd, list):
        parts = [str(item) for item in cmd]
        if not parts or not parts[0].strip():
            raise HTTPException(status_code=400, detail="cmd must not be empty.")
        return parts[0], parts[1:]
    command = str(cmd or "").strip()
    if not command:
        raise HTTPException(status_code=400, detail="cmd is required.")
    if args is None:
        return command, []
    if not isinstance(args, list):
        raise HTTPException(status_code=400, detail="args must be a list of strings.")
    return command, [str(item) for item in args]


__all__ = ["LifecycleDomain", "normalize_container_path", "parse_fs_list_output"]
