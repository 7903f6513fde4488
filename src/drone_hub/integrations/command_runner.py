from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

from drone_core.errors import RuntimeCommandError, RuntimeTimeoutError


TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127
DIAGNOSTIC_LIMIT = 2000


@dataclass(frozen=True)
class CommandResult:
    cmd: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


def summarize_command_output(stdout: str, stderr: str, *, limit: int = DIAGNOSTIC_LIMIT) -> str:
    text = (stderr or "").strip() or (stdout or "").strip()
    if len(text) > limit:
        return "..." + text[-limit:]
    return text


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def run_command(
    cmd: list[str],
    *,
    cwd: Path | None = None,
    check: bool = True,
    env: dict[str, str] | None = None,
    timeout: float | None = None,
    input_text: str | None = None,
) -> CommandResult:
    resolved_env: dict[str, str] | None = None
    if env:
        resolved_env = dict(os.environ)
        for key, value in env.items():
            resolved_env[str(key)] = str(value)
    try:
        completed = subprocess.run(
            cmd,
            cwd=str(cwd) if cwd else None,
            check=False,
            text=True,
            capture_output=True,
            env=resolved_env,
            timeout=timeout,
            input=input_text,
        )
        result = CommandResult(
            cmd=tuple(cmd),
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
    except subprocess.TimeoutExpired as exc:
        result = CommandResult(
            cmd=tuple(cmd),
            returncode=TIMEOUT_EXIT_CODE,
            stdout=_as_text(exc.stdout),
            stderr=(_as_text(exc.stderr) + f"\nTimed out after {timeout}s").strip(),
            timed_out=True,
        )
    except FileNotFoundError as exc:
        result = CommandResult(
            cmd=tuple(cmd),
            returncode=NOT_FOUND_EXIT_CODE,
            stdout="",
            stderr=f"Command not found: {cmd[0]} ({exc})",
        )
    if check and not result.ok:
        raise command_error(result)
    return result


def command_error(result: CommandResult, *, action: str | None = None) -> RuntimeCommandError:
    diagnostic = summarize_command_output(result.stdout, result.stderr)
    label = action or " ".join(result.cmd[:3])
    if result.timed_out:
        return RuntimeTimeoutError(
            f"{label} timed out: {diagnostic}",
            command=list(result.cmd),
            returncode=result.returncode,
            diagnostic=diagnostic,
        )
    return RuntimeCommandError(
        f"{label} failed (exit {result.returncode}): {diagnostic or 'no output'}",
        command=list(result.cmd),
        returncode=result.returncode,
        diagnostic=diagnostic,
    )
