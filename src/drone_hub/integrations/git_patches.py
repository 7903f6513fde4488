from __future__ import annotations

import re
from pathlib import Path
from typing import Callable

from drone_core.errors import PATCH_APPLY_CONFLICT, PATCH_APPLY_FAILED, RepoPatchApplyError
from drone_hub.integrations.command_runner import CommandResult, run_command


_CONFLICT_PATTERN = re.compile(r"patch does not apply|CONFLICT|could not apply|failed to merge", re.IGNORECASE)
_THREE_WAY_ANCESTOR_PATTERN = re.compile(
    r"sha1 information is lacking or useless|could not build fake ancestor", re.IGNORECASE
)
_PATCH_FAILED_FILE = re.compile(r"patch failed:\s+(.+?):\d+", re.IGNORECASE)
_MERGE_CONFLICT_FILE = re.compile(r"CONFLICT\s+\([^)]+\):\s+.*\s+in\s+(.+)$", re.IGNORECASE | re.MULTILINE)
_DOES_NOT_APPLY_FILE = re.compile(r"error:\s+(.+?):\s+patch does not apply$", re.IGNORECASE | re.MULTILINE)


def parse_patch_conflict_files(text: str) -> list[str]:
    files: set[str] = set()
    for pattern in (_PATCH_FAILED_FILE, _MERGE_CONFLICT_FILE, _DOES_NOT_APPLY_FILE):
        for match in pattern.finditer(str(text or "")):
            value = match.group(1).strip()
            if value:
                files.add(value)
    return sorted(files)


def looks_like_patch_conflict(text: str) -> bool:
    raw = str(text or "")
    return bool(_CONFLICT_PATTERN.search(raw) or _THREE_WAY_ANCESTOR_PATTERN.search(raw))


def list_patch_files(patches_dir: Path) -> list[Path]:
    return sorted(path for path in Path(patches_dir).iterdir() if path.name.lower().endswith(".patch"))


def apply_patch_series(
    *,
    repo_root: Path,
    patches_dir: Path,
    runner: Callable[..., CommandResult] = run_command,
    timeout: float = 60.0,
) -> int:
    """Apply exported ``*.patch`` files to ``repo_root`` with ``git am --3way``.

    A failing patch aborts the ``am`` session so the host repo is left as it
    was before that patch, and raises RepoPatchApplyError describing it.
    """
    patches = list_patch_files(patches_dir)
    if not patches:
        return 0
    git = ["git", "-C", str(repo_root)]
    runner([*git, "am", "--abort"], check=False, timeout=timeout)
    for patch in patches:
        result = runner([*git, "am", "--3way", str(patch)], check=False, timeout=timeout)
        if not result.ok and _THREE_WAY_ANCESTOR_PATTERN.search(f"{result.stderr}\n{result.stdout}"):
            runner([*git, "am", "--abort"], check=False, timeout=timeout)
            result = runner([*git, "am", "--no-3way", str(patch)], check=False, timeout=timeout)
        if result.ok:
            continue
        runner([*git, "am", "--abort"], check=False, timeout=timeout)
        combined = f"{result.stderr}\n{result.stdout}".strip()
        conflict_files = parse_patch_conflict_files(combined)
        conflict = bool(conflict_files) or looks_like_patch_conflict(combined)
        details = (result.stderr or result.stdout or f"git am failed (exit {result.returncode})").strip()
        message = (
            f"Patch apply conflict while applying {patch.name}: {details}"
            if conflict
            else f"Failed applying patch {patch.name}: {details}"
        )
        raise RepoPatchApplyError(
            message,
            kind=PATCH_APPLY_CONFLICT if conflict else PATCH_APPLY_FAILED,
            patch_name=patch.name,
            conflict_files=conflict_files,
        )
    return len(patches)


__all__ = ["apply_patch_series", "list_patch_files", "looks_like_patch_conflict", "parse_patch_conflict_files"]
