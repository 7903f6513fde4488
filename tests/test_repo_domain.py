from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path
from typing import Any
from unittest import mock

from fastapi import HTTPException

from runtime_fakes import FakeDvmRuntime, build_state

from drone_core.errors import GithubCommandError, RepoPatchApplyError
from drone_hub.domains.repo_domain import NO_REPO_ATTACHED
from drone_hub.integrations.command_runner import CommandResult
from drone_hub.integrations.git_patches import apply_patch_series, parse_patch_conflict_files
from drone_hub.integrations.github import GithubPullRequests


class _ScriptedRunner:
    """Returns queued results for commands matching a substring, ok otherwise."""

    def __init__(self, scripted: list[tuple[str, CommandResult]] | None = None) -> None:
        self.scripted = list(scripted or [])
        self.calls: list[list[str]] = []

    def __call__(self, cmd: list[str], **_kwargs: Any) -> CommandResult:
        self.calls.append(list(cmd))
        joined = " ".join(cmd)
        for index, (needle, result) in enumerate(self.scripted):
            if needle in joined:
                del self.scripted[index]
                return result
        return CommandResult(cmd=tuple(cmd), returncode=0, stdout="", stderr="")


def _result(code: int, stdout: str = "", stderr: str = "") -> CommandResult:
    return CommandResult(cmd=("git",), returncode=code, stdout=stdout, stderr=stderr)


class GitPatchesTests(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.patches_dir = Path(tmp.name)
        (self.patches_dir / "0001-first.patch").write_text("patch 1\n", encoding="utf-8")
        (self.patches_dir / "0002-second.patch").write_text("patch 2\n", encoding="utf-8")
        (self.patches_dir / "notes.txt").write_text("ignored\n", encoding="utf-8")

    def test_parse_patch_conflict_files(self) -> None:
        text = "\n".join(
            [
                "error: patch failed: src/app.py:12",
                "error: src/app.py: patch does not apply",
                "CONFLICT (content): Merge conflict in README.md",
            ]
        )
        self.assertEqual(parse_patch_conflict_files(text), ["README.md", "src/app.py"])

    def test_applies_patches_in_order(self) -> None:
        runner = _ScriptedRunner()

        applied = apply_patch_series(repo_root=Path("/repo"), patches_dir=self.patches_dir, runner=runner)

        self.assertEqual(applied, 2)
        am_calls = [call[-1] for call in runner.calls if "--3way" in call]
        self.assertEqual([Path(item).name for item in am_calls], ["0001-first.patch", "0002-second.patch"])

    def test_conflict_aborts_and_reports_files(self) -> None:
        runner = _ScriptedRunner(
            [("0002-second.patch", _result(1, stderr="error: patch failed: src/app.py:3\nerror: src/app.py: patch does not apply"))]
        )

        with self.assertRaises(RepoPatchApplyError) as ctx:
            apply_patch_series(repo_root=Path("/repo"), patches_dir=self.patches_dir, runner=runner)

        self.assertEqual(ctx.exception.kind, "patch_apply_conflict")
        self.assertEqual(ctx.exception.patch_name, "0002-second.patch")
        self.assertEqual(ctx.exception.conflict_files, ["src/app.py"])
        self.assertEqual(runner.calls[-1][-2:], ["am", "--abort"])

    def test_missing_ancestor_retries_without_three_way(self) -> None:
        runner = _ScriptedRunner(
            [("0001-first.patch", _result(1, stderr="error: sha1 information is lacking or useless (a.txt)."))]
        )

        applied = apply_patch_series(repo_root=Path("/repo"), patches_dir=self.patches_dir, runner=runner)

        self.assertEqual(applied, 2)
        self.assertTrue(any("--no-3way" in call for call in runner.calls))

    def test_non_conflict_failure(self) -> None:
        runner = _ScriptedRunner([("0001-first.patch", _result(128, stderr="fatal: not a git repository"))])

        with self.assertRaises(RepoPatchApplyError) as ctx:
            apply_patch_series(repo_root=Path("/repo"), patches_dir=self.patches_dir, runner=runner)

        self.assertEqual(ctx.exception.kind, "patch_apply_failed")
        self.assertEqual(ctx.exception.conflict_files, [])


class GithubPullRequestsTests(unittest.TestCase):
    def test_list_pull_requests_normalizes_rows(self) -> None:
        payload = [{"number": 7, "title": "Fix", "state": "OPEN", "isDraft": True, "author": {"login": "octo"}}]
        runner = _ScriptedRunner([("pr list", _result(0, stdout=json.dumps(payload)))])
        github = GithubPullRequests(runner=runner)

        pulls = github.list_pull_requests(repo_root=Path("/repo"), state="open")

        self.assertEqual(pulls[0]["number"], 7)
        self.assertEqual(pulls[0]["state"], "open")
        self.assertTrue(pulls[0]["draft"])
        self.assertEqual(pulls[0]["author"], "octo")
        self.assertEqual(runner.calls[0][:3], ["gh", "pr", "list"])

    def test_pull_request_changes_lists_files(self) -> None:
        payload = {
            "number": 7,
            "state": "MERGED",
            "baseRefOid": "abc",
            "headRefOid": "def",
            "files": [{"path": "a.py", "additions": 3, "deletions": 1, "changeType": "MODIFIED"}],
        }
        github = GithubPullRequests(runner=_ScriptedRunner([("pr view 7", _result(0, stdout=json.dumps(payload)))]))

        changes = github.pull_request_changes(repo_root=Path("/repo"), number=7)

        self.assertEqual(changes["headSha"], "def")
        self.assertEqual(changes["files"], [{"path": "a.py", "additions": 3, "deletions": 1, "changeType": "modified"}])

    def test_gh_failure_raises_typed_error(self) -> None:
        github = GithubPullRequests(runner=_ScriptedRunner([("pr list", _result(1, stderr="gh: not logged in"))]))
        with self.assertRaises(GithubCommandError) as ctx:
            github.list_pull_requests(repo_root=Path("/repo"))
        self.assertIn("not logged in", str(ctx.exception))


class _FakeGithub:
    def __init__(self) -> None:
        self.calls: list[tuple[Any, ...]] = []

    def list_pull_requests(self, *, repo_root: Path, state: str) -> list[dict[str, Any]]:
        self.calls.append(("list", repo_root, state))
        return [{"number": 1}]

    def pull_request_changes(self, *, repo_root: Path, number: int) -> dict[str, Any]:
        self.calls.append(("view", repo_root, number))
        return {"number": number, "files": []}


class RepoDomainTests(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.tmp_path = Path(tmp.name)
        self.repo_root = self.tmp_path / "repo"
        self.repo_root.mkdir()
        self.runtime = FakeDvmRuntime()
        self.github = _FakeGithub()
        self.state = build_state(self.tmp_path, runtime=self.runtime, github=self.github)
        self.lifecycle = self.state.lifecycle_domain
        self.repo = self.state.repo_domain
        self.lifecycle.create(name="with-repo", repo_path=str(self.repo_root))
        self.lifecycle.create(name="bare")

    def test_operations_without_repo_are_rejected(self) -> None:
        for call in (
            lambda: self.repo.pull_requests("bare"),
            lambda: self.repo.pull_request_changes("bare", "1"),
            lambda: self.repo.pull_changes("bare"),
        ):
            with self.assertRaises(HTTPException) as ctx:
                call()
            self.assertEqual(ctx.exception.status_code, 400)
            self.assertEqual(ctx.exception.detail, NO_REPO_ATTACHED)
        self.assertEqual(self.github.calls, [])

    def test_pull_requests_validates_state_and_number(self) -> None:
        listed = self.repo.pull_requests("with-repo", state="ALL")
        self.assertEqual(listed["state"], "all")
        self.assertEqual(self.github.calls[0], ("list", self.repo_root.resolve(), "all"))

        with self.assertRaises(HTTPException):
            self.repo.pull_requests("with-repo", state="draft")
        with self.assertRaises(HTTPException):
            self.repo.pull_request_changes("with-repo", "abc")

        changes = self.repo.pull_request_changes("with-repo", "12")
        self.assertEqual(changes["pullRequest"]["number"], 12)

    def test_pull_changes_with_no_patches_returns_to_running(self) -> None:
        result = self.repo.pull_changes("with-repo", base="main")

        self.assertEqual(result["applied"], 0)
        self.assertEqual(self.lifecycle.summary("with-repo")["hubPhase"], "running")
        self.assertIn(("repo-export", "with-repo", "main"), self.runtime.calls)

    def test_pull_changes_conflict_marks_drone_error(self) -> None:
        conflict = RepoPatchApplyError(
            "Patch apply conflict while applying 0001.patch: boom",
            kind="patch_apply_conflict",
            patch_name="0001.patch",
            conflict_files=["a.py"],
        )
        with mock.patch("drone_hub.domains.repo_domain.apply_patch_series", side_effect=conflict):
            with self.assertRaises(RepoPatchApplyError):
                self.repo.pull_changes("with-repo")

        summary = self.lifecycle.summary("with-repo")
        self.assertEqual(summary["hubPhase"], "error")
        self.assertIn("conflict", summary["hubMessage"])


if __name__ == "__main__":
    unittest.main()
