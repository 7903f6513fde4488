from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable

from drone_core.errors import GithubCommandError
from drone_hub.integrations.command_runner import CommandResult, run_command, summarize_command_output


PULL_REQUEST_STATES = ("open", "closed", "merged", "all")
_LIST_FIELDS = (
    "number,title,state,isDraft,url,createdAt,updatedAt,author,"
    "headRefName,baseRefName,isCrossRepository,mergeable,reviewDecision"
)
_VIEW_FIELDS = "number,title,url,state,baseRefName,headRefName,baseRefOid,headRefOid,files"


class GithubPullRequests:
    """Pull request lookups through the ``gh`` CLI, run inside the drone's host repo."""

    def __init__(
        self,
        *,
        command: tuple[str, ...] = ("gh",),
        timeout_seconds: float = 30.0,
        limit: int = 50,
        runner: Callable[..., CommandResult] = run_command,
    ) -> None:
        self.command = tuple(command)
        self.timeout_seconds = float(timeout_seconds)
        self.limit = int(limit)
        self._runner = runner

    def _gh_json(self, args: list[str], *, repo_root: Path) -> Any:
        result = self._runner([*self.command, *args], cwd=repo_root, check=False, timeout=self.timeout_seconds)
        if not result.ok:
            diagnostic = summarize_command_output(result.stdout, result.stderr)
            raise GithubCommandError(f"gh {' '.join(args[:2])} failed: {diagnostic or 'no output'}")
        try:
            return json.loads(result.stdout or "null")
        except json.JSONDecodeError as exc:
            raise GithubCommandError(f"gh {' '.join(args[:2])} returned invalid JSON") from exc

    def list_pull_requests(self, *, repo_root: Path, state: str = "open") -> list[dict[str, Any]]:
        raw = self._gh_json(
            ["pr", "list", "--state", state, "--limit", str(self.limit), "--json", _LIST_FIELDS],
            repo_root=repo_root,
        )
        if not isinstance(raw, list):
            return []
        return [_pull_request_summary(item) for item in raw if isinstance(item, dict)]

    def pull_request_changes(self, *, repo_root: Path, number: int) -> dict[str, Any]:
        raw = self._gh_json(["pr", "view", str(int(number)), "--json", _VIEW_FIELDS], repo_root=repo_root)
        if not isinstance(raw, dict):
            raise GithubCommandError(f"gh pr view {number} returned an unexpected payload")
        files: list[dict[str, Any]] = []
        for entry in raw.get("files") or []:
            if not isinstance(entry, dict):
                continue
            files.append(
                {
                    "path": str(entry.get("path") or ""),
                    "additions": int(entry.get("additions") or 0),
                    "deletions": int(entry.get("deletions") or 0),
                    "changeType": str(entry.get("changeType") or "").lower() or None,
                }
            )
        return {
            "number": int(raw.get("number") or number),
            "title": str(raw.get("title") or ""),
            "url": str(raw.get("url") or ""),
            "state": str(raw.get("state") or "").lower(),
            "baseRefName": raw.get("baseRefName"),
            "headRefName": raw.get("headRefName"),
            "baseSha": raw.get("baseRefOid"),
            "headSha": raw.get("headRefOid"),
            "files": files,
        }


def _pull_request_summary(item: dict[str, Any]) -> dict[str, Any]:
    author = item.get("author") if isinstance(item.get("author"), dict) else {}
    return {
        "number": int(item.get("number") or 0),
        "title": str(item.get("title") or ""),
        "state": str(item.get("state") or "").lower(),
        "draft": bool(item.get("isDraft")),
        "url": str(item.get("url") or ""),
        "createdAt": item.get("createdAt"),
        "updatedAt": item.get("updatedAt"),
        "author": str(author.get("login") or "") or None,
        "headRefName": item.get("headRefName"),
        "baseRefName": item.get("baseRefName"),
        "isCrossRepository": bool(item.get("isCrossRepository")),
        "mergeable": item.get("mergeable"),
        "reviewDecision": item.get("reviewDecision"),
    }


__all__ = ["GithubPullRequests", "PULL_REQUEST_STATES"]
