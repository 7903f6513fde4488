from __future__ import annotations

from typing import Any


class GroupService:
    def __init__(self, *, domain: Any) -> None:
        self._domain = domain

    def list_groups(self) -> dict[str, Any]:
        return {"ok": True, **self._domain.list_groups()}

    def create_group(self, name: Any) -> dict[str, Any]:
        group = self._domain.create_group(name)
        return {"ok": True, "name": group["name"], "group": group}

    def rename_group(self, old_name: str, new_name: Any) -> dict[str, Any]:
        return {"ok": True, **self._domain.rename_group(old_name, new_name)}

    def delete_group(self, name: str, *, keep_volume: bool) -> dict[str, Any]:
        result = self._domain.delete_group(name, keep_volume=keep_volume)
        return {"ok": result["deleted"], **result}

    def assign_drones(self, drones: Any, group: Any) -> dict[str, Any]:
        return {"ok": True, **self._domain.assign_drones(drones, group)}


__all__ = ["GroupService"]
