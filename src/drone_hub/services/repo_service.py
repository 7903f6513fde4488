from __future__ import annotations

from typing import Any


class RepoService:
    def __init__(self, *, domain: Any) -> None:
        self._domain = domain

    def pull_requests(self, drone_ref: str, *, state: Any) -> dict[str, Any]:
        return {"ok": True, **self._domain.pull_requests(drone_ref, state=state)}

    def pull_request_changes(self, drone_ref: str, number: Any) -> dict[str, Any]:
        return {"ok": True, **self._domain.pull_request_changes(drone_ref, number)}

    def pull_changes(self, drone_ref: str, *, base: Any = None) -> dict[str, Any]:
        return {"ok": True, **self._domain.pull_changes(drone_ref, base=base)}


__all__ = ["RepoService"]
