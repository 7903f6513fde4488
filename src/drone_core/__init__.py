from __future__ import annotations

from .config import (
    DEFAULT_CONTAINER_PORT,
    HubConfig,
    HubSectionConfig,
    LoggingConfig,
    RuntimeConfig,
    load_hub_config,
    load_hub_config_dict,
)
from .errors import (
    CompensationFailedError,
    ConfigError,
    GithubCommandError,
    RegistryError,
    RepoPatchApplyError,
    RolledBackError,
    RuntimeCommandError,
    RuntimeTimeoutError,
    TypedDroneError,
    typed_error_metadata,
    typed_error_payload,
)

__all__ = [
    "CompensationFailedError",
    "ConfigError",
    "DEFAULT_CONTAINER_PORT",
    "GithubCommandError",
    "HubConfig",
    "HubSectionConfig",
    "LoggingConfig",
    "RegistryError",
    "RepoPatchApplyError",
    "RolledBackError",
    "RuntimeCommandError",
    "RuntimeConfig",
    "RuntimeTimeoutError",
    "TypedDroneError",
    "load_hub_config",
    "load_hub_config_dict",
    "typed_error_metadata",
    "typed_error_payload",
]
