from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response


def register_hub_routes(
    app: FastAPI,
    *,
    state: Any,
    logger: logging.Logger,
    coerce_bool: Callable[..., bool],
    read_json_object: Callable[[Request], Awaitable[dict[str, Any]]],
) -> None:
    @app.get("/api/health")
    def api_health() -> dict[str, Any]:
        registry = state.registry_store.read()
        return {"ok": True, "drones": len(registry["drones"]), "groups": len(registry["groups"])}

    # Drones

    @app.get("/api/drones")
    async def api_list_drones() -> dict[str, Any]:
        return await asyncio.to_thread(state.drone_service.list_drones)

    @app.post("/api/drones", status_code=201)
    async def api_create_drone(request: Request) -> dict[str, Any]:
        payload = await read_json_object(request)
        chats = payload.get("chats")
        if chats is not None and not isinstance(chats, list):
            raise HTTPException(status_code=400, detail="chats must be a list of names.")
        return await asyncio.to_thread(
            state.drone_service.create_drone,
            name=payload.get("name"),
            group=payload.get("group"),
            repo_path=payload.get("repoPath"),
            container_port=payload.get("containerPort"),
            chats=chats,
        )

    @app.post("/api/drones/group-set")
    async def api_set_drone_group(request: Request) -> dict[str, Any]:
        payload = await read_json_object(request)
        return await asyncio.to_thread(state.group_service.assign_drones, payload.get("drones"), payload.get("group"))

    @app.get("/api/drones/{drone_ref}")
    async def api_drone(drone_ref: str) -> dict[str, Any]:
        return await asyncio.to_thread(state.drone_service.drone, drone_ref)

    @app.post("/api/drones/{drone_ref}/rename")
    async def api_rename_drone(drone_ref: str, request: Request) -> dict[str, Any]:
        payload = await read_json_object(request)
        migrate_volume_name = coerce_bool(payload.get("migrateVolumeName"), False, "migrateVolumeName")
        return await asyncio.to_thread(
            state.drone_service.rename_drone,
            drone_ref,
            payload.get("newName"),
            start_mode=payload.get("startMode"),
            migrate_volume_name=migrate_volume_name,
        )

    @app.delete("/api/drones/{drone_ref}")
    async def api_remove_drone(drone_ref: str, request: Request) -> dict[str, Any]:
        keep_volume = coerce_bool(request.query_params.get("keepVolume"), False, "keepVolume")
        forget = coerce_bool(request.query_params.get("forget"), True, "forget")
        return await asyncio.to_thread(
            state.drone_service.remove_drone,
            drone_ref,
            keep_volume=keep_volume,
            forget=forget,
        )

    @app.get("/api/drones/{drone_ref}/status")
    async def api_drone_status(drone_ref: str) -> dict[str, Any]:
        return await asyncio.to_thread(state.drone_service.status, drone_ref)

    @app.get("/api/drones/{drone_ref}/ports")
    async def api_drone_ports(drone_ref: str, request: Request) -> dict[str, Any]:
        probe = coerce_bool(request.query_params.get("probe"), False, "probe")
        return await asyncio.to_thread(state.drone_service.ports, drone_ref, probe=probe)

    @app.get("/api/drones/{drone_ref}/fs/list")
    async def api_drone_fs_list(drone_ref: str, request: Request) -> dict[str, Any]:
        return await asyncio.to_thread(state.drone_service.fs_list, drone_ref, request.query_params.get("path"))

    @app.post("/api/drones/{drone_ref}/exec")
    async def api_drone_exec(drone_ref: str, request: Request) -> dict[str, Any]:
        payload = await read_json_object(request)
        cmd = payload.get("cmd")
        if cmd is None:
            cmd = payload.get("command")
        return await asyncio.to_thread(
            state.drone_service.exec,
            drone_ref,
            cmd=cmd,
            args=payload.get("args"),
            timeout_seconds=payload.get("timeoutSeconds"),
        )

    @app.post("/api/drones/{drone_ref}/hub/error/clear")
    async def api_clear_hub_error(drone_ref: str) -> dict[str, Any]:
        return await asyncio.to_thread(state.drone_service.clear_hub_error, drone_ref)

    # Repo routes are registered ahead of the /api catch-all below.

    @app.get("/api/drones/{drone_ref}/repo/pull-requests")
    async def api_drone_pull_requests(drone_ref: str, request: Request) -> dict[str, Any]:
        return await asyncio.to_thread(
            state.repo_service.pull_requests,
            drone_ref,
            state=request.query_params.get("state"),
        )

    @app.get("/api/drones/{drone_ref}/repo/pull-requests/{number}/changes")
    async def api_drone_pull_request_changes(drone_ref: str, number: str) -> dict[str, Any]:
        return await asyncio.to_thread(state.repo_service.pull_request_changes, drone_ref, number)

    @app.post("/api/drones/{drone_ref}/repo/pull")
    async def api_drone_repo_pull(drone_ref: str, request: Request) -> dict[str, Any]:
        payload = await read_json_object(request)
        return await asyncio.to_thread(state.repo_service.pull_changes, drone_ref, base=payload.get("base"))

    # Preview

    @app.post("/api/drones/{drone_ref}/preview-url")
    async def api_drone_preview_url(drone_ref: str, request: Request) -> dict[str, Any]:
        payload = await read_json_object(request)
        return await asyncio.to_thread(state.preview_service.rewrite_url, drone_ref, payload.get("url"))

    async def _proxy_preview(drone_ref: str, container_port: str, tail: str, request: Request) -> Response:
        proxied = await asyncio.to_thread(
            state.preview_service.proxy,
            drone_ref,
            container_port,
            tail=tail,
            query=request.url.query,
            headers=dict(request.headers),
        )
        response = Response(content=proxied.body, status_code=proxied.status_code)
        for key, value in proxied.headers:
            response.headers.append(key, value)
        return response

    @app.get("/api/drones/{drone_ref}/preview/{container_port}")
    async def api_drone_preview_root(drone_ref: str, container_port: str, request: Request) -> Response:
        return await _proxy_preview(drone_ref, container_port, "", request)

    @app.get("/api/drones/{drone_ref}/preview/{container_port}/{tail:path}")
    async def api_drone_preview(drone_ref: str, container_port: str, tail: str, request: Request) -> Response:
        return await _proxy_preview(drone_ref, container_port, tail, request)

    # Groups

    @app.get("/api/groups")
    async def api_list_groups() -> dict[str, Any]:
        return await asyncio.to_thread(state.group_service.list_groups)

    @app.post("/api/groups", status_code=201)
    async def api_create_group(request: Request) -> dict[str, Any]:
        payload = await read_json_object(request)
        return await asyncio.to_thread(state.group_service.create_group, payload.get("name"))

    @app.post("/api/groups/{group_name}/rename")
    async def api_rename_group(group_name: str, request: Request) -> dict[str, Any]:
        payload = await read_json_object(request)
        return await asyncio.to_thread(state.group_service.rename_group, group_name, payload.get("newName"))

    @app.delete("/api/groups/{group_name}")
    async def api_delete_group(group_name: str, request: Request) -> Any:
        keep_volume = coerce_bool(request.query_params.get("keepVolume"), False, "keepVolume")
        result = await asyncio.to_thread(state.group_service.delete_group, group_name, keep_volume=keep_volume)
        if not result["ok"]:
            logger.warning(
                "Group delete left %s member(s) in place",
                len(result["errors"]),
                extra={"component": "groups", "operation": "delete", "result": "partial"},
            )
            return JSONResponse(status_code=502, content={**result, "error": "Some member drones could not be removed."})
        return result

    @app.api_route("/api/{unknown_path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
    def api_not_found(unknown_path: str) -> JSONResponse:
        return JSONResponse(status_code=404, content={"ok": False, "error": "not found", "code": "NOT_FOUND"})
