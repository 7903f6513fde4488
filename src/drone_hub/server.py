from __future__ import annotations

import hmac
import json
import logging
import os
import secrets
import time
import uuid
from dataclasses import replace
from pathlib import Path
from threading import Lock
from typing import Any

import click
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from drone_core import logging as core_logging
from drone_core.config import HubConfig, load_hub_config, parse_dvm_command
from drone_core.errors import ConfigError, TypedDroneError, typed_error_payload
from drone_core.paths import api_token_path, registry_path, resolve_drone_data_dir
from drone_hub.api import register_hub_routes
from drone_hub.domains import GroupsDomain, LifecycleDomain, PortReachabilityTracker, PreviewDomain, RepoDomain
from drone_hub.integrations import DroneDaemonClient, DvmRuntime, GithubPullRequests
from drone_hub.services import DroneService, GroupService, PreviewService, RepoService
from drone_hub.store import RegistryStore


LOGGER = logging.getLogger("drone_hub")
if not LOGGER.handlers:
    LOGGER.addHandler(logging.NullHandler())

AUTH_REALM = 'Bearer realm="drone-hub-api"'
REQUEST_ID_HEADER = "x-request-id"
_STATUS_BY_ERROR_CODE = {
    "CONFIG_ERROR": 400,
    "RUNTIME_ERROR": 502,
    "RUNTIME_TIMEOUT": 504,
    "REGISTRY_ERROR": 500,
    "OPERATION_ROLLED_BACK": 500,
    "COMPENSATION_FAILED": 500,
    "patch_apply_conflict": 409,
    "patch_apply_failed": 500,
    "GITHUB_ERROR": 502,
}


class HubState:
    """Composition root: one registry store, one runtime and the domains built on them."""

    def __init__(
        self,
        *,
        data_dir: Path,
        config: HubConfig,
        store: Any = None,
        runtime: Any = None,
        daemon_client: Any = None,
        github: Any = None,
        reachability: PortReachabilityTracker | None = None,
    ) -> None:
        runtime_config = config.runtime
        self.data_dir = Path(data_dir)
        self.config = config
        self.registry_store = store or RegistryStore(registry_file=registry_path(self.data_dir), lock=Lock())
        self.runtime = runtime or DvmRuntime(
            command=runtime_config.dvm_command,
            timeout_seconds=runtime_config.command_timeout_seconds,
            create_timeout_seconds=runtime_config.create_timeout_seconds,
        )
        self.reachability = reachability or PortReachabilityTracker(
            timeout_seconds=runtime_config.probe_timeout_seconds
        )
        self.lifecycle_domain = LifecycleDomain(
            store=self.registry_store,
            runtime=self.runtime,
            daemon_client=daemon_client or DroneDaemonClient(timeout_seconds=runtime_config.daemon_timeout_seconds),
            reachability=self.reachability,
            default_container_port=runtime_config.default_container_port,
            preview_container_ports=runtime_config.preview_container_ports,
            exec_timeout_seconds=runtime_config.command_timeout_seconds,
        )
        self.groups_domain = GroupsDomain(store=self.registry_store, lifecycle=self.lifecycle_domain)
        self.preview_domain = PreviewDomain(
            lifecycle=self.lifecycle_domain,
            reachability=self.reachability,
            proxy_timeout_seconds=runtime_config.proxy_timeout_seconds,
        )
        self.repo_domain = RepoDomain(
            lifecycle=self.lifecycle_domain,
            runtime=self.runtime,
            github=github or GithubPullRequests(timeout_seconds=runtime_config.command_timeout_seconds),
        )
        self.drone_service = DroneService(domain=self.lifecycle_domain, preview_domain=self.preview_domain)
        self.group_service = GroupService(domain=self.groups_domain)
        self.preview_service = PreviewService(domain=self.preview_domain)
        self.repo_service = RepoService(domain=self.repo_domain)


def apply_env_overrides(config: HubConfig, environ: dict[str, str] | None = None) -> HubConfig:
    env = os.environ if environ is None else environ
    token = str(env.get("DRONE_HUB_API_TOKEN") or "").strip()
    dvm_command = str(env.get("DRONE_DVM_COMMAND") or "").strip()
    if token:
        config = replace(config, hub=replace(config.hub, api_token=token))
    if dvm_command:
        config = replace(
            config,
            runtime=replace(config.runtime, dvm_command=parse_dvm_command(dvm_command, label="DRONE_DVM_COMMAND")),
        )
    return config


def resolve_api_token(config: HubConfig, data_dir: Path) -> str:
    """Return the configured token, or the one persisted under ``data_dir`` (created on first use)."""
    if config.hub.api_token:
        return config.hub.api_token
    token_file = api_token_path(data_dir)
    if token_file.exists():
        existing = token_file.read_text(encoding="utf-8").strip()
        if existing:
            return existing
    token = secrets.token_urlsafe(32)
    token_file.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(token_file), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as fp:
        fp.write(token + "\n")
    return token


def build_hub_state(*, config_file: Path | None = None, data_dir: Path | None = None) -> HubState:
    config = apply_env_overrides(load_hub_config(config_file))
    resolved_data_dir = Path(data_dir) if data_dir else resolve_drone_data_dir(config.paths.data_dir)
    return HubState(data_dir=resolved_data_dir, config=config)


def _coerce_bool(value: Any, default: bool, field_name: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized == "":
            return default
        if normalized in {"1", "true", "yes", "y", "on"}:
            return True
        if normalized in {"0", "false", "no", "n", "off"}:
            return False
    if isinstance(value, (int, float)) and value in {0, 1}:
        return bool(value)
    raise HTTPException(status_code=400, detail=f"{field_name} must be a boolean.")


async def _read_json_object(request: Request) -> dict[str, Any]:
    body = await request.body()
    if not body.strip():
        return {}
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail=f"Request body must be valid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object.")
    return payload


def _core_error_payload(exc: BaseException) -> tuple[int, dict[str, Any]]:
    typed_payload = typed_error_payload(exc)
    if typed_payload is not None:
        code = str(typed_payload.get("error_code") or "")
        status = _STATUS_BY_ERROR_CODE.get(code, 500)
        return status, {"ok": False, "error": typed_payload["detail"], "code": code, **typed_payload}
    return 500, {"ok": False, "error": str(exc) or type(exc).__name__, "code": "INTERNAL_ERROR"}


def _http_error_code(status_code: int) -> str:
    status = int(status_code or 500)
    if status == 400:
        return "BAD_REQUEST"
    if status == 401:
        return "UNAUTHORIZED"
    if status == 404:
        return "NOT_FOUND"
    if status == 409:
        return "CONFLICT"
    if status in {500, 502, 503, 504}:
        return "UPSTREAM_ERROR"
    return f"HTTP_{status}"


def _bearer_token_matches(header_value: str | None, expected_token: str) -> bool:
    raw = str(header_value or "")
    if not raw.lower().startswith("bearer "):
        return False
    presented = raw[len("bearer "):].strip()
    return hmac.compare_digest(presented.encode("utf-8"), expected_token.encode("utf-8"))


def create_app(state: HubState, *, api_token: str, allowed_origins: tuple[str, ...] = ()) -> FastAPI:
    if not api_token:
        raise ConfigError("The hub API token must not be empty.")
    app = FastAPI(title="drone-hub")
    app.state.hub_state = state

    @app.middleware("http")
    async def _authenticate_and_log(request: Request, call_next: Any) -> Any:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        started = time.monotonic()
        is_api = request.url.path.startswith("/api/")
        if is_api and request.method != "OPTIONS" and not _bearer_token_matches(
            request.headers.get("authorization"), api_token
        ):
            response: Any = JSONResponse(
                status_code=401,
                content={"ok": False, "error": "unauthorized"},
                headers={"www-authenticate": AUTH_REALM},
            )
        else:
            response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        if is_api:
            LOGGER.info(
                "%s %s -> %s",
                request.method,
                request.url.path,
                response.status_code,
                extra={
                    "request_id": request_id,
                    "component": "http",
                    "operation": request.method.lower(),
                    "result": "success" if response.status_code < 400 else "error",
                    "duration_ms": int((time.monotonic() - started) * 1000),
                },
            )
        return response

    if allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(allowed_origins),
            allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
            allow_headers=["authorization", "content-type", REQUEST_ID_HEADER],
        )

    @app.exception_handler(TypedDroneError)
    async def _handle_typed_drone_error(_request: Request, exc: TypedDroneError) -> JSONResponse:
        status, payload = _core_error_payload(exc)
        log = LOGGER.error if payload.get("code") == "COMPENSATION_FAILED" else LOGGER.warning
        log(
            "Request failed: %s",
            exc,
            extra={"component": "http", "result": "error", "error_class": payload.get("code", "")},
        )
        return JSONResponse(status_code=status, content=payload)

    @app.exception_handler(HTTPException)
    async def _handle_http_exception(_request: Request, exc: HTTPException) -> JSONResponse:
        status = int(exc.status_code or 500)
        return JSONResponse(
            status_code=status,
            content={"ok": False, "error": exc.detail, "code": _http_error_code(status)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def _handle_unexpected_error(_request: Request, exc: Exception) -> JSONResponse:
        LOGGER.exception(
            "Unhandled error while serving request",
            extra={"component": "http", "result": "error", "error_class": type(exc).__name__},
        )
        status, payload = _core_error_payload(exc)
        return JSONResponse(status_code=status, content=payload)

    register_hub_routes(
        app,
        state=state,
        logger=LOGGER,
        coerce_bool=_coerce_bool,
        read_json_object=_read_json_object,
    )
    return app


@click.command(help="Run the local drone hub.")
@click.option("--config-file", default=None, type=click.Path(exists=True, dir_okay=False, path_type=Path), help="Hub TOML config file.")
@click.option("--data-dir", default=None, type=click.Path(file_okay=False, path_type=Path), help="Directory for the registry and hub token.")
@click.option("--host", default=None, help="Bind host (defaults to hub.host from config).")
@click.option("--port", default=None, type=int, help="Bind port (defaults to hub.port from config).")
@click.option("--log-level", default=None, type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False))
def main(
    config_file: Path | None,
    data_dir: Path | None,
    host: str | None,
    port: int | None,
    log_level: str | None,
) -> None:
    try:
        state = build_hub_state(config_file=config_file, data_dir=data_dir)
        api_token = resolve_api_token(state.config, state.data_dir)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    normalized_log_level = core_logging.normalize_log_level(log_level or state.config.logging.level)
    core_logging.configure_structured_logger(LOGGER, level=normalized_log_level)
    bind_host = host or state.config.hub.host
    bind_port = port or state.config.hub.port
    LOGGER.info(
        "Starting drone hub host=%s port=%s data_dir=%s",
        bind_host,
        bind_port,
        state.data_dir,
        extra={"component": "startup", "operation": "hub_start", "result": "started"},
    )
    if not state.config.hub.api_token:
        click.echo(f"API token stored at {api_token_path(state.data_dir)}", err=True)
    app = create_app(state, api_token=api_token, allowed_origins=state.config.hub.allowed_origins)
    uvicorn.run(app, host=bind_host, port=bind_port, log_level=normalized_log_level)


if __name__ == "__main__":
    main()
