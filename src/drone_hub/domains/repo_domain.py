from __future__ import annotations

import logging
import tempfile
from pathlib import Path
from typing import Any

from fastapi import HTTPException

from drone_core.errors import RepoPatchApplyError, TypedDroneError
from drone_hub.integrations.git_patches import apply_patch_series
from drone_hub.integrations.github import PULL_REQUEST_STATES
from drone_hub.store.records import HUB_PHASE_ERROR, HUB_PHASE_RUNNING, HUB_PHASE_SEEDING


LOGGER = logging.getLogger("drone_hub.repo")

NO_REPO_ATTACHED = "drone has no repo attached"


class RepoDomain:
    def __init__(self, *, lifecycle: Any, runtime: Any, github: Any, patch_timeout_seconds: float = 60.0) -> None:
        self._lifecycle = lifecycle
        self._runtime = runtime
        self._github = github
        self.patch_timeout_seconds = float(patch_timeout_seconds)

    def _repo_root(self, drone_ref: str) -> tuple[dict[str, Any], Path]:
        record = self._lifecycle.require(drone_ref)
        repo_path = str(record.get("repoPath") or "").strip()
        if not repo_path:
            raise HTTPException(status_code=400, detail=NO_REPO_ATTACHED)
        return record, Path(repo_path)

    def pull_requests(self, drone_ref: str, *, state: Any = None) -> dict[str, Any]:
        record, repo_root = self._repo_root(drone_ref)
        normalized_state = str(state or "open").strip().lower()
        if normalized_state not in PULL_REQUEST_STATES:
            raise HTTPException(status_code=400, detail=f"state must be one of: {', '.join(PULL_REQUEST_STATES)}.")
        pulls = self._github.list_pull_requests(repo_root=repo_root, state=normalized_state)
        return {"id": record["id"], "name": record["name"], "state": normalized_state, "pullRequests": pulls}

    def pull_request_changes(self, drone_ref: str, raw_number: Any) -> dict[str, Any]:
        record, repo_root = self._repo_root(drone_ref)
        text = str(raw_number or "").strip()
        if not text.isdigit() or int(text) <= 0:
            raise HTTPException(status_code=400, detail=f"Invalid pull request number: {raw_number}")
        changes = self._github.pull_request_changes(repo_root=repo_root, number=int(text))
        return {"id": record["id"], "name": record["name"], "pullRequest": changes}

    def pull_changes(self, drone_ref: str, *, base: Any = None) -> dict[str, Any]:
        """Export the drone's commits as patches and apply them to the host repo."""
        record, repo_root = self._repo_root(drone_ref)
        log_extra = {"component": "repo", "operation": "pull", "drone": record["name"]}
        self._lifecycle.set_phase(record["id"], HUB_PHASE_SEEDING, "Pulling repo changes")
        try:
            with tempfile.TemporaryDirectory(prefix="drone-export-") as tmp_dir:
                exported = self._runtime.repo_export(
                    record["name"],
                    out_dir=Path(tmp_dir),
                    base=str(base).strip() if base else None,
                )
                patches_dir = exported if exported.is_dir() else exported.parent
                applied = apply_patch_series(
                    repo_root=repo_root,
                    patches_dir=patches_dir,
                    timeout=self.patch_timeout_seconds,
                )
        except RepoPatchApplyError as exc:
            self._lifecycle.set_phase(record["id"], HUB_PHASE_ERROR, str(exc)[:500])
            LOGGER.warning(
                "Applying drone patches failed: %s",
                exc.kind,
                extra={**log_extra, "result": "error", "error_class": exc.kind},
            )
            raise
        except TypedDroneError as exc:
            self._lifecycle.set_phase(record["id"], HUB_PHASE_ERROR, str(exc)[:500])
            raise
        self._lifecycle.set_phase(record["id"], HUB_PHASE_RUNNING, "")
        LOGGER.info("Applied %s patch(es) to %s", applied, repo_root, extra={**log_extra, "result": "success"})
        return {"id": record["id"], "name": record["name"], "repoPath": str(repo_root), "applied": applied}


__all__ = ["NO_REPO_ATTACHED", "RepoDomain"]
