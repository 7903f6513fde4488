from __future__ import annotations

from typing import Any


class PreviewService:
    def __init__(self, *, domain: Any) -> None:
        self._domain = domain

    def proxy(self, drone_ref: str, container_port: Any, *, tail: str, query: str, headers: dict[str, str]) -> Any:
        return self._domain.proxy(drone_ref, container_port, tail=tail, query=query, headers=headers)

    def rewrite_url(self, drone_ref: str, url: Any) -> dict[str, Any]:
        return {"ok": True, **self._domain.rewrite_url(drone_ref, url)}


__all__ = ["PreviewService"]
