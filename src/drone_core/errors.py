from __future__ import annotations

from typing import Any


class TypedDroneError(RuntimeError):
    """Base class for typed operational errors surfaced to users."""

    error_code = "INTERNAL_ERROR"
    failure_class = "internal"
    user_message = "An internal error occurred."

    def metadata(self) -> dict[str, Any]:
        return {
            "error_code": self.error_code,
            "failure_class": self.failure_class,
            "user_message": self.user_message,
        }

    def payload(self, *, detail: str | None = None) -> dict[str, Any]:
        payload = self.metadata()
        payload["detail"] = str(self) if detail is None else str(detail)
        return payload


def typed_error_metadata(exc: BaseException) -> dict[str, Any] | None:
    if isinstance(exc, TypedDroneError):
        return exc.metadata()
    return None


def typed_error_payload(exc: BaseException) -> dict[str, Any] | None:
    if isinstance(exc, TypedDroneError):
        return exc.payload()
    return None


class ConfigError(TypedDroneError):
    """Configuration parsing or validation error."""

    error_code = "CONFIG_ERROR"
    failure_class = "configuration"
    user_message = "Configuration is invalid."


class RuntimeCommandError(TypedDroneError):
    """The container runtime CLI exited non-zero or could not be started."""

    error_code = "RUNTIME_ERROR"
    failure_class = "runtime"
    user_message = "The container runtime reported an error."

    def __init__(
        self,
        message: str,
        *,
        command: list[str] | None = None,
        returncode: int | None = None,
        diagnostic: str = "",
    ) -> None:
        super().__init__(message)
        self.command = list(command or [])
        self.returncode = returncode
        self.diagnostic = diagnostic

    @property
    def timed_out(self) -> bool:
        return False

    def metadata(self) -> dict[str, Any]:
        payload = super().metadata()
        if self.returncode is not None:
            payload["returncode"] = self.returncode
        return payload


class RuntimeTimeoutError(RuntimeCommandError):
    """The container runtime CLI did not finish within its timeout."""

    error_code = "RUNTIME_TIMEOUT"
    user_message = "The container runtime did not respond in time."

    @property
    def timed_out(self) -> bool:
        return True


class RegistryError(TypedDroneError):
    """The registry document could not be read or persisted."""

    error_code = "REGISTRY_ERROR"
    failure_class = "registry"
    user_message = "The drone registry could not be read or written."


class RolledBackError(TypedDroneError):
    """A two-phase operation failed after its first step and was compensated."""

    error_code = "OPERATION_ROLLED_BACK"
    failure_class = "partial_failure"
    user_message = "The operation failed and its changes were rolled back."

    def __init__(self, message: str, *, operation: str) -> None:
        super().__init__(message)
        self.operation = operation

    def metadata(self) -> dict[str, Any]:
        payload = super().metadata()
        payload["operation"] = self.operation
        return payload


class CompensationFailedError(TypedDroneError):
    """Rolling back a partially applied operation failed; state needs manual repair."""

    error_code = "COMPENSATION_FAILED"
    failure_class = "operator_attention"
    user_message = "The operation failed and could not be rolled back. Manual intervention is required."

    def __init__(self, message: str, *, operation: str, original_error: str = "") -> None:
        super().__init__(message)
        self.operation = operation
        self.original_error = original_error

    def metadata(self) -> dict[str, Any]:
        payload = super().metadata()
        payload["operation"] = self.operation
        if self.original_error:
            payload["original_error"] = self.original_error
        return payload


PATCH_APPLY_CONFLICT = "patch_apply_conflict"
PATCH_APPLY_FAILED = "patch_apply_failed"


class RepoPatchApplyError(TypedDroneError):
    """Applying a drone's exported patch series to the host repo failed."""

    error_code = PATCH_APPLY_FAILED
    failure_class = "repo"
    user_message = "Drone changes could not be applied to the host repository."

    def __init__(
        self,
        message: str,
        *,
        kind: str = PATCH_APPLY_FAILED,
        patch_name: str | None = None,
        conflict_files: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind if kind in {PATCH_APPLY_CONFLICT, PATCH_APPLY_FAILED} else PATCH_APPLY_FAILED
        self.error_code = self.kind
        self.patch_name = patch_name
        self.conflict_files = list(conflict_files or [])

    def metadata(self) -> dict[str, Any]:
        payload = super().metadata()
        payload["patchName"] = self.patch_name
        payload["conflictFiles"] = list(self.conflict_files)
        return payload


class GithubCommandError(TypedDroneError):
    """The GitHub CLI failed while listing or inspecting pull requests."""

    error_code = "GITHUB_ERROR"
    failure_class = "github"
    user_message = "GitHub pull request lookup failed."
