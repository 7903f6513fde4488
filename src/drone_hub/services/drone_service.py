from __future__ import annotations

from typing import Any


class DroneService:
    def __init__(self, *, domain: Any, preview_domain: Any) -> None:
        self._domain = domain
        self._preview = preview_domain

    def list_drones(self) -> dict[str, Any]:
        return {"ok": True, "drones": self._domain.list_drones()}

    def drone(self, drone_ref: str) -> dict[str, Any]:
        return {"ok": True, "drone": self._domain.summary(drone_ref)}

    def create_drone(self, **kwargs: Any) -> dict[str, Any]:
        return {"ok": True, **self._domain.create(**kwargs)}

    def rename_drone(self, drone_ref: str, new_name: Any, *, start_mode: Any, migrate_volume_name: bool) -> dict[str, Any]:
        return {
            "ok": True,
            **self._domain.rename(
                drone_ref,
                new_name,
                start_mode=start_mode,
                migrate_volume_name=migrate_volume_name,
            ),
        }

    def remove_drone(self, drone_ref: str, *, keep_volume: bool, forget: bool = True) -> dict[str, Any]:
        return {"ok": True, **self._domain.remove(drone_ref, keep_volume=keep_volume, forget=forget)}

    def status(self, drone_ref: str) -> dict[str, Any]:
        return {"ok": True, **self._domain.status(drone_ref)}

    def exec(self, drone_ref: str, *, cmd: Any, args: Any = None, timeout_seconds: Any = None) -> dict[str, Any]:
        result = self._domain.exec(drone_ref, cmd=cmd, args=args, timeout_seconds=timeout_seconds)
        return {"ok": result["exitCode"] == 0, **result}

    def ports(self, drone_ref: str, *, probe: bool) -> dict[str, Any]:
        record, rows = self._domain.ports(drone_ref)
        payload: dict[str, Any] = {"ok": True, "id": record["id"], "name": record["name"], "ports": rows}
        if probe:
            payload["reachability"] = self._preview.port_reachability(record, rows)
        return payload

    def fs_list(self, drone_ref: str, path: Any) -> dict[str, Any]:
        return {"ok": True, **self._domain.fs_list(drone_ref, path)}

    def clear_hub_error(self, drone_ref: str) -> dict[str, Any]:
        return {"ok": True, **self._domain.clear_hub_error(drone_ref)}


__all__ = ["DroneService"]
