from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - Python < 3.11
    import tomli as tomllib

from drone_core.errors import ConfigError


_SECTION_KEYS = ("hub", "runtime", "logging", "paths")
DEFAULT_CONTAINER_PORT = 7777
DEFAULT_HUB_HOST = "127.0.0.1"
DEFAULT_HUB_PORT = 5050
DEFAULT_DVM_COMMAND = ("dvm",)
LOG_LEVEL_CHOICES = ("debug", "info", "warning", "error", "critical")


def _ensure_dict(value: object, *, label: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{label} must be a table/object.")
    return dict(value)


def _ensure_optional_str(value: object, *, label: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{label} must be a string.")
    return value


def _ensure_port(value: object, *, label: str, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 65535:
        raise ConfigError(f"{label} must be an integer port between 1 and 65535.")
    return value


def _ensure_seconds(value: object, *, label: str, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{label} must be a positive number of seconds.")
    return float(value)


def _reject_unknown_keys(values: dict[str, Any], *, section: str) -> None:
    if values:
        unknown = ", ".join(sorted(str(key) for key in values))
        raise ConfigError(f"Unknown key(s) in section '{section}': {unknown}")


@dataclass(frozen=True)
class HubSectionConfig:
    host: str = DEFAULT_HUB_HOST
    port: int = DEFAULT_HUB_PORT
    api_token: str | None = None
    allowed_origins: tuple[str, ...] = ()


@dataclass(frozen=True)
class RuntimeConfig:
    dvm_command: tuple[str, ...] = DEFAULT_DVM_COMMAND
    command_timeout_seconds: float = 30.0
    create_timeout_seconds: float = 180.0
    default_container_port: int = DEFAULT_CONTAINER_PORT
    preview_container_ports: tuple[int, ...] = ()
    daemon_timeout_seconds: float = 5.0
    proxy_timeout_seconds: float = 30.0
    probe_timeout_seconds: float = 0.5


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "info"


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str | None = None


@dataclass(frozen=True)
class HubConfig:
    hub: HubSectionConfig = field(default_factory=HubSectionConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | dict[str, Any]) -> "HubConfig":
        if not isinstance(payload, Mapping):
            raise ConfigError("Config payload root must be a table/object.")

        raw = dict(payload)
        unknown_sections = [section for section in raw if section not in _SECTION_KEYS]
        if unknown_sections:
            raise ConfigError("Unknown config section(s): " + ", ".join(sorted(unknown_sections)))

        return cls(
            hub=_parse_hub(raw),
            runtime=_parse_runtime(raw),
            logging=_parse_logging(raw),
            paths=_parse_paths(raw),
        )

    @classmethod
    def from_toml_path(cls, path: str | Path) -> "HubConfig":
        config_path = Path(path)
        try:
            raw = config_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Unable to read config file {config_path}: {exc}") from exc
        try:
            parsed = tomllib.loads(raw)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ConfigError("Config payload root must be a table/object.")
        return cls.from_dict(parsed)


def _parse_hub(raw_root: dict[str, Any]) -> HubSectionConfig:
    hub_raw = _ensure_dict(raw_root.get("hub"), label="section 'hub'")
    host = _ensure_optional_str(hub_raw.pop("host", None), label="hub.host") or DEFAULT_HUB_HOST
    port = _ensure_port(hub_raw.pop("port", None), label="hub.port", default=DEFAULT_HUB_PORT)
    api_token = _ensure_optional_str(hub_raw.pop("api_token", None), label="hub.api_token")
    raw_origins = hub_raw.pop("allowed_origins", None)
    if raw_origins is None:
        origins: tuple[str, ...] = ()
    elif isinstance(raw_origins, list) and all(isinstance(item, str) for item in raw_origins):
        origins = tuple(item.strip() for item in raw_origins if item.strip())
    else:
        raise ConfigError("hub.allowed_origins must be a list of strings.")
    _reject_unknown_keys(hub_raw, section="hub")
    return HubSectionConfig(
        host=host,
        port=port,
        api_token=(api_token or "").strip() or None,
        allowed_origins=origins,
    )


def parse_dvm_command(value: object, *, label: str = "runtime.dvm_command") -> tuple[str, ...]:
    if value is None:
        return DEFAULT_DVM_COMMAND
    if isinstance(value, str):
        parts = tuple(shlex.split(value))
    elif isinstance(value, list) and all(isinstance(item, str) for item in value):
        parts = tuple(item for item in value if item)
    else:
        raise ConfigError(f"{label} must be a string or a list of strings.")
    if not parts:
        raise ConfigError(f"{label} must not be empty.")
    return parts


def _parse_runtime(raw_root: dict[str, Any]) -> RuntimeConfig:
    runtime_raw = _ensure_dict(raw_root.get("runtime"), label="section 'runtime'")
    defaults = RuntimeConfig()
    raw_preview_ports = runtime_raw.pop("preview_container_ports", None)
    preview_ports: tuple[int, ...] = ()
    if raw_preview_ports is not None:
        if not isinstance(raw_preview_ports, list):
            raise ConfigError("runtime.preview_container_ports must be a list of ports.")
        preview_ports = tuple(
            _ensure_port(item, label="runtime.preview_container_ports[]", default=0) for item in raw_preview_ports
        )
    config = RuntimeConfig(
        dvm_command=parse_dvm_command(runtime_raw.pop("dvm_command", None)),
        command_timeout_seconds=_ensure_seconds(
            runtime_raw.pop("command_timeout_seconds", None),
            label="runtime.command_timeout_seconds",
            default=defaults.command_timeout_seconds,
        ),
        create_timeout_seconds=_ensure_seconds(
            runtime_raw.pop("create_timeout_seconds", None),
            label="runtime.create_timeout_seconds",
            default=defaults.create_timeout_seconds,
        ),
        default_container_port=_ensure_port(
            runtime_raw.pop("default_container_port", None),
            label="runtime.default_container_port",
            default=defaults.default_container_port,
        ),
        preview_container_ports=preview_ports,
        daemon_timeout_seconds=_ensure_seconds(
            runtime_raw.pop("daemon_timeout_seconds", None),
            label="runtime.daemon_timeout_seconds",
            default=defaults.daemon_timeout_seconds,
        ),
        proxy_timeout_seconds=_ensure_seconds(
            runtime_raw.pop("proxy_timeout_seconds", None),
            label="runtime.proxy_timeout_seconds",
            default=defaults.proxy_timeout_seconds,
        ),
        probe_timeout_seconds=_ensure_seconds(
            runtime_raw.pop("probe_timeout_seconds", None),
            label="runtime.probe_timeout_seconds",
            default=defaults.probe_timeout_seconds,
        ),
    )
    _reject_unknown_keys(runtime_raw, section="runtime")
    return config


def _parse_logging(raw_root: dict[str, Any]) -> LoggingConfig:
    logging_raw = _ensure_dict(raw_root.get("logging"), label="section 'logging'")
    level = _ensure_optional_str(logging_raw.pop("level", None), label="logging.level")
    _reject_unknown_keys(logging_raw, section="logging")
    if level is None:
        return LoggingConfig()
    normalized = level.strip().lower()
    if normalized not in LOG_LEVEL_CHOICES:
        raise ConfigError(f"logging.level must be one of: {', '.join(LOG_LEVEL_CHOICES)}.")
    return LoggingConfig(level=normalized)


def _parse_paths(raw_root: dict[str, Any]) -> PathsConfig:
    paths_raw = _ensure_dict(raw_root.get("paths"), label="section 'paths'")
    data_dir = _ensure_optional_str(paths_raw.pop("data_dir", None), label="paths.data_dir")
    _reject_unknown_keys(paths_raw, section="paths")
    return PathsConfig(data_dir=(data_dir or "").strip() or None)


def load_hub_config(path: str | Path | None = None) -> HubConfig:
    if path is None:
        return HubConfig()
    return HubConfig.from_toml_path(path)


def load_hub_config_dict(payload: Mapping[str, Any] | dict[str, Any]) -> HubConfig:
    return HubConfig.from_dict(payload)
