from __future__ import annotations

import re
import time
import uuid
from typing import Any

from fastapi import HTTPException


REGISTRY_VERSION = 1
DRONE_NAME_MAX_LENGTH = 48
DRONE_NAME_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
UNGROUPED_SENTINEL = "ungrouped"
HUB_PHASE_CREATING = "creating"
HUB_PHASE_STARTING = "starting"
HUB_PHASE_SEEDING = "seeding"
HUB_PHASE_RUNNING = "running"
HUB_PHASE_ERROR = "error"
HUB_PHASES = (
    HUB_PHASE_CREATING,
    HUB_PHASE_STARTING,
    HUB_PHASE_SEEDING,
    HUB_PHASE_RUNNING,
    HUB_PHASE_ERROR,
)


def iso_now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def new_registry() -> dict[str, Any]:
    return {"version": REGISTRY_VERSION, "drones": {}, "groups": {}}


def validate_drone_name(raw_name: Any, *, field_name: str = "name") -> str:
    name = str(raw_name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail=f"{field_name} is required.")
    if len(name) > DRONE_NAME_MAX_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"{field_name} must be at most {DRONE_NAME_MAX_LENGTH} characters.",
        )
    if not DRONE_NAME_PATTERN.match(name):
        raise HTTPException(
            status_code=400,
            detail=f"{field_name} must be dash-case (lowercase letters, digits and single dashes).",
        )
    return name


def is_ungrouped_sentinel(value: Any) -> bool:
    return str(value or "").strip().lower() == UNGROUPED_SENTINEL


def normalize_group_assignment(raw_group: Any) -> str | None:
    """Return the group name a drone should carry, or None for ungrouped."""
    group = str(raw_group or "").strip()
    if not group or is_ungrouped_sentinel(group):
        return None
    return validate_group_name(group)


def validate_group_name(raw_name: Any, *, field_name: str = "group") -> str:
    name = str(raw_name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail=f"{field_name} is required.")
    if is_ungrouped_sentinel(name):
        raise HTTPException(status_code=400, detail=f"'{UNGROUPED_SENTINEL}' is reserved and cannot be a group name.")
    if len(name) > 80:
        raise HTTPException(status_code=400, detail=f"{field_name} must be at most 80 characters.")
    if any(ch in name for ch in "/\\") or any(ord(ch) < 32 for ch in name):
        raise HTTPException(status_code=400, detail=f"{field_name} contains unsupported characters.")
    return name


def new_drone_record(
    *,
    name: str,
    container_port: int,
    token: str,
    group: str | None = None,
    repo_path: str | None = None,
    host_port: int | None = None,
    chats: list[str] | None = None,
    drone_id: str | None = None,
) -> dict[str, Any]:
    return {
        "id": drone_id or uuid.uuid4().hex,
        "name": name,
        "group": group,
        "repoPath": repo_path or None,
        "containerPort": int(container_port),
        "hostPort": host_port,
        "token": token,
        "createdAt": iso_now(),
        "chats": _normalize_chats(chats),
        "hubPhase": HUB_PHASE_STARTING,
        "hubMessage": "",
    }


def new_group_record(name: str) -> dict[str, Any]:
    now = iso_now()
    return {"name": name, "createdAt": now, "updatedAt": now}


def _normalize_chats(raw_chats: Any) -> list[str]:
    if isinstance(raw_chats, dict):
        raw_chats = list(raw_chats.keys())
    if not isinstance(raw_chats, list):
        return []
    chats: list[str] = []
    seen: set[str] = set()
    for item in raw_chats:
        chat = str(item or "").strip()
        if chat and chat not in seen:
            seen.add(chat)
            chats.append(chat)
    return chats


def _optional_port(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        port = int(value)
    except (TypeError, ValueError):
        return None
    return port if 1 <= port <= 65535 else None


def normalize_drone_record(key: str, raw_record: Any) -> dict[str, Any] | None:
    if not isinstance(raw_record, dict):
        return None
    record = dict(raw_record)
    record["name"] = str(record.get("name") or key).strip() or key
    # Legacy records without an id get one derived from their key so repeated reads agree.
    record["id"] = str(record.get("id") or "").strip() or uuid.uuid5(uuid.NAMESPACE_URL, f"drone:{key}").hex
    group = str(record.get("group") or "").strip()
    record["group"] = None if not group or is_ungrouped_sentinel(group) else group
    record["repoPath"] = str(record.get("repoPath") or "").strip() or None
    record["containerPort"] = _optional_port(record.get("containerPort"))
    record["hostPort"] = _optional_port(record.get("hostPort"))
    record["token"] = str(record.get("token") or "")
    record["createdAt"] = str(record.get("createdAt") or "")
    record["chats"] = _normalize_chats(record.get("chats"))
    phase = str(record.get("hubPhase") or "").strip().lower()
    record["hubPhase"] = phase if phase in HUB_PHASES else HUB_PHASE_RUNNING
    record["hubMessage"] = str(record.get("hubMessage") or "")
    return record


def normalize_registry(raw: Any) -> dict[str, Any]:
    registry = new_registry()
    if not isinstance(raw, dict):
        return registry
    raw_drones = raw.get("drones")
    if isinstance(raw_drones, dict):
        for key, raw_record in raw_drones.items():
            record = normalize_drone_record(str(key), raw_record)
            if record is not None:
                registry["drones"][str(key)] = record
    raw_groups = raw.get("groups")
    if isinstance(raw_groups, dict):
        for key, raw_group in raw_groups.items():
            group = dict(raw_group) if isinstance(raw_group, dict) else {}
            name = str(group.get("name") or key).strip()
            if not name or is_ungrouped_sentinel(name):
                continue
            group["name"] = name
            group.setdefault("createdAt", "")
            group.setdefault("updatedAt", group["createdAt"])
            registry["groups"][name] = group
    return registry


def reindex_drones(registry: dict[str, Any]) -> list[tuple[str, str]]:
    """Re-key drone records whose map key drifted from their own name.

    A record only moves when its name is not already used as a key, so a
    duplicate-name registry keeps both entries rather than losing one.
    """
    drones = registry.get("drones")
    if not isinstance(drones, dict):
        return []
    moved: list[tuple[str, str]] = []
    for key in list(drones.keys()):
        record = drones.get(key)
        if not isinstance(record, dict):
            continue
        name = str(record.get("name") or "").strip()
        if not name or name == key or name in drones:
            continue
        drones[name] = drones.pop(key)
        moved.append((key, name))
    return moved


def find_drone_entries(registry: dict[str, Any], ref: str) -> list[tuple[str, dict[str, Any]]]:
    """Return (key, record) pairs whose own name, or failing that id, equals ``ref``.

    The map key is only an index and is never used to answer a lookup.
    """
    value = str(ref or "").strip()
    drones = registry.get("drones") or {}
    if not value:
        return []
    by_name = [(key, rec) for key, rec in drones.items() if rec.get("name") == value]
    if by_name:
        return by_name
    by_id = [(key, rec) for key, rec in drones.items() if rec.get("id") == value]
    return by_id


def find_drone(registry: dict[str, Any], ref: str) -> tuple[str, dict[str, Any]] | None:
    matches = find_drone_entries(registry, ref)
    if len(matches) > 1:
        raise HTTPException(status_code=409, detail=f"Multiple drones match '{ref}'; resolve the duplicate first.")
    return matches[0] if matches else None


def require_drone(registry: dict[str, Any], ref: str) -> tuple[str, dict[str, Any]]:
    match = find_drone(registry, ref)
    if match is None:
        raise HTTPException(status_code=404, detail=f"Unknown drone: {ref}")
    return match


def find_drone_by_id(registry: dict[str, Any], drone_id: str) -> tuple[str, dict[str, Any]] | None:
    for key, record in (registry.get("drones") or {}).items():
        if record.get("id") == drone_id:
            return key, record
    return None


def drone_name_taken(registry: dict[str, Any], name: str, *, except_id: str | None = None) -> bool:
    for record in (registry.get("drones") or {}).values():
        if except_id is not None and record.get("id") == except_id:
            continue
        if record.get("name") == name:
            return True
    return False


def vacate_drone_key(registry: dict[str, Any], key: str, *, keep_id: str | None = None) -> None:
    """Move whatever record sits under ``key`` to its own name (or id) so ``key`` can be reused.

    The occupant is a drifted entry whose name differs from ``key``; it is
    re-keyed, never dropped.
    """
    drones = registry["drones"]
    occupant = drones.get(key)
    if occupant is None or (keep_id is not None and occupant.get("id") == keep_id):
        return
    candidates = [str(occupant.get("name") or "").strip(), str(occupant.get("id") or "").strip()]
    new_key = next((candidate for candidate in candidates if candidate and candidate not in drones), None)
    drones[new_key or uuid.uuid4().hex] = drones.pop(key)


def drone_summary(record: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": record.get("id"),
        "name": record.get("name"),
        "group": record.get("group"),
        "repoPath": record.get("repoPath"),
        "containerPort": record.get("containerPort"),
        "hostPort": record.get("hostPort"),
        "createdAt": record.get("createdAt"),
        "chats": list(record.get("chats") or []),
        "hubPhase": record.get("hubPhase"),
        "hubMessage": record.get("hubMessage") or "",
    }


__all__ = [
    "DRONE_NAME_MAX_LENGTH",
    "HUB_PHASES",
    "HUB_PHASE_CREATING",
    "HUB_PHASE_ERROR",
    "HUB_PHASE_RUNNING",
    "HUB_PHASE_SEEDING",
    "HUB_PHASE_STARTING",
    "UNGROUPED_SENTINEL",
    "drone_name_taken",
    "drone_summary",
    "find_drone",
    "find_drone_by_id",
    "find_drone_entries",
    "is_ungrouped_sentinel",
    "iso_now",
    "new_drone_record",
    "new_group_record",
    "new_registry",
    "normalize_group_assignment",
    "normalize_registry",
    "reindex_drones",
    "require_drone",
    "vacate_drone_key",
    "validate_drone_name",
    "validate_group_name",
]
