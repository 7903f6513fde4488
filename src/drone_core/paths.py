from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping


REGISTRY_FILE_NAME = "registry.json"
API_TOKEN_FILE_NAME = "hub-api-token"


def default_drone_data_dir(home: Path | None = None, environ: Mapping[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ
    xdg_data_home = str(env.get("XDG_DATA_HOME") or "").strip()
    if xdg_data_home:
        return Path(xdg_data_home).expanduser() / "drone"
    resolved_home = (home or Path.home()).expanduser()
    return resolved_home / ".local" / "share" / "drone"


def resolve_drone_data_dir(
    configured: str | Path | None = None,
    environ: Mapping[str, Any] | None = None,
) -> Path:
    env = os.environ if environ is None else environ
    override = str(env.get("DRONE_DATA_DIR") or "").strip()
    if override:
        return Path(override).expanduser().resolve()
    configured_value = str(configured or "").strip()
    if configured_value:
        return Path(configured_value).expanduser().resolve()
    return default_drone_data_dir(environ=env)


def registry_path(data_dir: Path) -> Path:
    return Path(data_dir) / REGISTRY_FILE_NAME


def api_token_path(data_dir: Path) -> Path:
    return Path(data_dir) / API_TOKEN_FILE_NAME
