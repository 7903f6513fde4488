from __future__ import annotations

from drone_hub.integrations.command_runner import CommandResult, run_command, summarize_command_output
from drone_hub.integrations.drone_daemon import DroneDaemonClient
from drone_hub.integrations.dvm import DvmRuntime
from drone_hub.integrations.github import GithubPullRequests

__all__ = [
    "CommandResult",
    "DroneDaemonClient",
    "DvmRuntime",
    "GithubPullRequests",
    "run_command",
    "summarize_command_output",
]
