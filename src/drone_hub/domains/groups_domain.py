from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException

from drone_core.errors import TypedDroneError
from drone_hub.store.records import (
    drone_summary,
    find_drone,
    is_ungrouped_sentinel,
    iso_now,
    new_group_record,
    normalize_group_assignment,
    validate_group_name,
)


LOGGER = logging.getLogger("drone_hub.groups")


def _member_records(registry: dict[str, Any], group_name: str) -> list[dict[str, Any]]:
    return sorted(
        (record for record in registry["drones"].values() if record.get("group") == group_name),
        key=lambda record: record["name"],
    )


class GroupsDomain:
    """Named groups as registry records whose existence does not depend on membership."""

    def __init__(self, *, store: Any, lifecycle: Any) -> None:
        self._store = store
        self._lifecycle = lifecycle

    def list_groups(self) -> dict[str, Any]:
        registry = self._store.read()
        names = set(registry["groups"].keys())
        # Drones can reference a group that never got a record (older registries).
        names.update(record["group"] for record in registry["drones"].values() if record.get("group"))
        groups: list[dict[str, Any]] = []
        for name in sorted(names, key=str.lower):
            record = registry["groups"].get(name) or {}
            members = _member_records(registry, name)
            groups.append(
                {
                    "name": name,
                    "createdAt": record.get("createdAt") or None,
                    "updatedAt": record.get("updatedAt") or None,
                    "implicit": name not in registry["groups"],
                    "totalCount": len(members),
                    "drones": [member["name"] for member in members],
                }
            )
        ungrouped = sum(1 for record in registry["drones"].values() if not record.get("group"))
        return {"groups": groups, "ungroupedCount": ungrouped}

    def create_group(self, raw_name: Any) -> dict[str, Any]:
        name = validate_group_name(raw_name, field_name="name")
        created: dict[str, Any] = {}

        def insert(registry: dict[str, Any]) -> None:
            if name in registry["groups"]:
                raise HTTPException(status_code=409, detail=f"Group already exists: {name}")
            record = new_group_record(name)
            registry["groups"][name] = record
            created.update(record)

        self._store.update(insert)
        LOGGER.info("Group created", extra={"component": "groups", "operation": "create", "result": "success"})
        return created

    def rename_group(self, old_name: str, raw_new_name: Any) -> dict[str, Any]:
        source = str(old_name or "").strip()
        if is_ungrouped_sentinel(source):
            raise HTTPException(status_code=400, detail="The ungrouped bucket cannot be renamed.")
        target = validate_group_name(raw_new_name, field_name="newName")
        moved: list[str] = []

        def apply(registry: dict[str, Any]) -> None:
            members = _member_records(registry, source)
            if source not in registry["groups"] and not members:
                raise HTTPException(status_code=404, detail=f"Unknown group: {source}")
            if target == source:
                return
            if target in registry["groups"]:
                raise HTTPException(status_code=409, detail=f"Group already exists: {target}")
            record = registry["groups"].pop(source, None) or new_group_record(target)
            record["name"] = target
            record["updatedAt"] = iso_now()
            registry["groups"][target] = record
            for member in members:
                member["group"] = target
                moved.append(member["name"])

        self._store.update(apply)
        return {"oldName": source, "newName": target, "moved": moved}

    def delete_group(self, raw_name: str, *, keep_volume: bool = False) -> dict[str, Any]:
        name = str(raw_name or "").strip()
        if is_ungrouped_sentinel(name):
            raise HTTPException(status_code=400, detail="The ungrouped bucket cannot be deleted.")
        registry = self._store.read()
        members = _member_records(registry, name)
        if name not in registry["groups"] and not members:
            raise HTTPException(status_code=404, detail=f"Unknown group: {name}")

        removed: list[str] = []
        errors: list[dict[str, Any]] = []
        for member in members:
            try:
                self._lifecycle.remove(member["id"], keep_volume=keep_volume)
                removed.append(member["name"])
            except (TypedDroneError, HTTPException) as exc:
                detail = exc.detail if isinstance(exc, HTTPException) else str(exc)
                errors.append({"name": member["name"], "error": detail})
                LOGGER.warning(
                    "Removing group member %s failed: %s",
                    member["name"],
                    detail,
                    extra={"component": "groups", "operation": "delete", "result": "error", "drone": member["name"]},
                )

        if not errors:

            def drop(registry: dict[str, Any]) -> None:
                registry["groups"].pop(name, None)

            self._store.update(drop)
        return {
            "group": name,
            "deleted": not errors,
            "removed": removed,
            "removedCount": len(removed),
            "errors": errors,
            "total": len(members),
        }

    def assign_drones(self, raw_refs: Any, raw_group: Any) -> dict[str, Any]:
        if not isinstance(raw_refs, list) or not raw_refs:
            raise HTTPException(status_code=400, detail="drones must be a non-empty list.")
        group = normalize_group_assignment(raw_group)
        refs = [str(item or "").strip() for item in raw_refs]
        moved: list[dict[str, Any]] = []
        missing: list[str] = []

        def apply(registry: dict[str, Any]) -> None:
            if group and group not in registry["groups"]:
                registry["groups"][group] = new_group_record(group)
            for ref in refs:
                match = find_drone(registry, ref)
                if match is None:
                    missing.append(ref)
                    continue
                match[1]["group"] = group
                moved.append(drone_summary(match[1]))

        self._store.update(apply)
        return {"group": group, "moved": moved, "missing": missing}


__all__ = ["GroupsDomain"]
