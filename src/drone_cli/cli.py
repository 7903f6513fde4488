from __future__ import annotations

import functools
import json
import sys
from pathlib import Path
from typing import Any, Callable

import click
from fastapi import HTTPException

from drone_core import logging as core_logging
from drone_core.errors import ConfigError, TypedDroneError, typed_error_payload
from drone_hub import server as hub_server


def _echo_json(payload: dict[str, Any], *, err: bool = False) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True), err=err)


def _error_payload(exc: BaseException) -> dict[str, Any]:
    if isinstance(exc, HTTPException):
        return {"ok": False, "error": exc.detail, "status": exc.status_code}
    typed = typed_error_payload(exc) or {}
    return {"ok": False, "error": str(exc), "code": typed.get("error_code"), **typed}


def _hub_command(func: Callable[..., dict[str, Any] | None]) -> Callable[..., None]:
    """Run ``func`` with the local hub state and print its payload as JSON."""

    @click.pass_obj
    @functools.wraps(func)
    def wrapper(obj: dict[str, Any], *args: Any, **kwargs: Any) -> None:
        try:
            state = obj.get("state") or hub_server.build_hub_state(
                config_file=obj.get("config_file"),
                data_dir=obj.get("data_dir"),
            )
            obj["state"] = state
            payload = func(state, *args, **kwargs)
        except (TypedDroneError, HTTPException) as exc:
            _echo_json(_error_payload(exc), err=True)
            raise click.exceptions.Exit(1) from exc
        if payload is not None:
            _echo_json(payload)

    return wrapper


@click.group(help="Manage drones through the local hub registry.")
@click.option("--config-file", default=None, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--data-dir", default=None, type=click.Path(file_okay=False, path_type=Path))
@click.option("--log-level", default="warning", show_default=True, type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False))
@click.pass_context
def main(ctx: click.Context, config_file: Path | None, data_dir: Path | None, log_level: str) -> None:
    core_logging.configure_structured_logger(hub_server.LOGGER, level=log_level)
    ctx.ensure_object(dict)
    ctx.obj.setdefault("config_file", config_file)
    ctx.obj.setdefault("data_dir", data_dir)


@main.command("create")
@click.argument("name")
@click.option("--group", default=None, help="Group to place the drone in (created if missing).")
@click.option("--repo", "repo_path", default=None, type=click.Path(file_okay=False, path_type=Path))
@click.option("--container-port", default=None, type=int, help="Container port of the drone daemon.")
@_hub_command
def create_command(state: Any, name: str, group: str | None, repo_path: Path | None, container_port: int | None) -> dict[str, Any]:
    return state.drone_service.create_drone(
        name=name,
        group=group,
        repo_path=str(repo_path) if repo_path else None,
        container_port=container_port,
    )


@main.command("rename")
@click.argument("old_name")
@click.argument("new_name")
@click.option("--migrate-volume-name", is_flag=True, default=False)
@click.option("--start/--no-start", "start", default=None, help="Start or leave stopped after rename.")
@_hub_command
def rename_command(state: Any, old_name: str, new_name: str, migrate_volume_name: bool, start: bool | None) -> dict[str, Any]:
    start_mode = "preserve" if start is None else ("start" if start else "no-start")
    return state.drone_service.rename_drone(
        old_name,
        new_name,
        start_mode=start_mode,
        migrate_volume_name=migrate_volume_name,
    )


@main.command("status")
@click.argument("name")
@_hub_command
def status_command(state: Any, name: str) -> dict[str, Any]:
    return state.drone_service.status(name)


@main.command("exec", context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False})
@click.argument("name")
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.option("--raw", is_flag=True, default=False, help="Pass the command's stdout and stderr through instead of printing JSON.")
@_hub_command
def exec_command(state: Any, name: str, command: tuple[str, ...], raw: bool) -> None:
    """Run a command in the drone and exit with its exit code."""
    parts = list(command)
    if parts and parts[0] == "--":
        parts = parts[1:]
    payload = state.drone_service.exec(name, cmd=parts)
    if raw:
        if payload["stdout"]:
            click.echo(payload["stdout"], nl=False)
        if payload["stderr"]:
            click.echo(payload["stderr"], nl=False, err=True)
    else:
        _echo_json(payload)
    sys.stdout.flush()
    raise click.exceptions.Exit(int(payload["exitCode"]))


@main.command("rm")
@click.argument("name")
@click.option("--keep-volume", is_flag=True, default=False, help="Keep the drone's data volume.")
@click.option("--keep-record", is_flag=True, default=False, help="Keep the registry entry after removing the container.")
@_hub_command
def rm_command(state: Any, name: str, keep_volume: bool, keep_record: bool) -> dict[str, Any]:
    return state.drone_service.remove_drone(name, keep_volume=keep_volume, forget=not keep_record)


@main.command("ls")
@_hub_command
def ls_command(state: Any) -> dict[str, Any]:
    return state.drone_service.list_drones()


@main.command("groups")
@_hub_command
def groups_command(state: Any) -> dict[str, Any]:
    return state.group_service.list_groups()


@main.command("serve", context_settings={"ignore_unknown_options": True})
@click.argument("hub_args", nargs=-1, type=click.UNPROCESSED)
@click.pass_obj
def serve_command(obj: dict[str, Any], hub_args: tuple[str, ...]) -> None:
    """Run the hub HTTP server (options as for drone-hub)."""
    args = list(hub_args)
    if obj.get("config_file") and "--config-file" not in args:
        args.extend(["--config-file", str(obj["config_file"])])
    if obj.get("data_dir") and "--data-dir" not in args:
        args.extend(["--data-dir", str(obj["data_dir"])])
    try:
        hub_server.main.main(args=args, standalone_mode=False)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


if __name__ == "__main__":
    main()
