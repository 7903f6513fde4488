from __future__ import annotations

from drone_hub.services.drone_service import DroneService
from drone_hub.services.group_service import GroupService
from drone_hub.services.preview_service import PreviewService
from drone_hub.services.repo_service import RepoService

__all__ = ["DroneService", "GroupService", "PreviewService", "RepoService"]
