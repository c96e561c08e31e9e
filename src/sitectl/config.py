"""Configuration loader for sitectl.

Configuration values are merged from several sources, later sources winning:

1. Built-in defaults.
2. ``/etc/sitectl/config.yml`` (or an override path).
3. Environment variables prefixed with ``SITECTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export SITECTL_NGINX__USE_SUDO=false
    export SITECTL_HOSTS__PATH=/tmp/hosts

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.

The storage root (``base_path``) may also come from the pointer file written
by ``sitectl init``; see :func:`resolve_base_path`.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load sitectl configuration. Install with "
        "`pip install sitectl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "SITECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
BASE_POINTER_ENV_VAR = f"{ENV_PREFIX}BASE_POINTER"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR, BASE_POINTER_ENV_VAR}

DATA_DIR_NAME = "nginx_data"
INDEX_FILE_NAME = "config_index"
DEFAULT_BASE_POINTER = "~/.sitectl_base"


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


class BasePathError(ConfigError):
    """Raised when the storage root has not been initialised."""


@dataclass(frozen=True)
class NginxConfig:
    """Locations and binaries used to manage nginx sites."""

    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    nginx_bin: str = "nginx"
    ln_bin: str = "ln"
    use_sudo: bool = True
    sudo_bin: str = "sudo"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "sites_available": str(self.sites_available),
            "sites_enabled": str(self.sites_enabled),
            "nginx_bin": self.nginx_bin,
            "ln_bin": self.ln_bin,
            "use_sudo": self.use_sudo,
            "sudo_bin": self.sudo_bin,
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Service manager integration values."""

    systemctl_bin: str = "systemctl"
    unit: str = "nginx"
    ss_bin: str = "ss"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "systemctl_bin": self.systemctl_bin,
            "unit": self.unit,
            "ss_bin": self.ss_bin,
        }


@dataclass(frozen=True)
class HostsConfig:
    """Static name resolution file settings."""

    path: Path = Path("/etc/hosts")
    marker: str = "Added by FastNginx"
    default_ip: str = "127.0.0.1"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "path": str(self.path),
            "marker": self.marker,
            "default_ip": self.default_ip,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for sitectl."""

    config_file: Path
    base_path: Path | None
    base_pointer: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    backend_host: str
    nginx: NginxConfig
    systemd: SystemdConfig
    hosts: HostsConfig

    @property
    def data_dir(self) -> Path:
        """Return the data directory beneath the storage root."""
        return resolve_base_path(self) / DATA_DIR_NAME

    @property
    def index_file(self) -> Path:
        """Return the path of the registry index file."""
        return self.data_dir / INDEX_FILE_NAME

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "base_path": str(self.base_path) if self.base_path is not None else None,
            "base_pointer": str(self.base_pointer),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "defaults": {"backend_host": self.backend_host},
            "nginx": self.nginx.to_dict(),
            "systemd": self.systemd.to_dict(),
            "hosts": self.hosts.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/sitectl/config.yml",
    "base_path": None,
    "base_pointer": DEFAULT_BASE_POINTER,
    "logs_dir": "/var/log/sitectl",
    "runtime_dir": "/run/sitectl",
    "templates_dir": "/etc/sitectl/templates",
    "lock_timeout": 30.0,
    "defaults": {
        "backend_host": "127.0.0.1",
    },
    "nginx": {
        "sites_available": "/etc/nginx/sites-available",
        "sites_enabled": "/etc/nginx/sites-enabled",
        "nginx_bin": "nginx",
        "ln_bin": "ln",
        "use_sudo": True,
        "sudo_bin": "sudo",
    },
    "systemd": {
        "systemctl_bin": "systemctl",
        "unit": "nginx",
        "ss_bin": "ss",
    },
    "hosts": {
        "path": "/etc/hosts",
        "marker": "Added by FastNginx",
        "default_ip": "127.0.0.1",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "defaults": {"backend_host"},
    "nginx": {"sites_available", "sites_enabled", "nginx_bin", "ln_bin", "use_sudo", "sudo_bin"},
    "systemd": {"systemctl_bin", "unit", "ss_bin"},
    "hosts": {"path", "marker", "default_ip"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)
    if BASE_POINTER_ENV_VAR in resolved_env:
        merged["base_pointer"] = resolved_env[BASE_POINTER_ENV_VAR]

    _validate_structure(merged)

    return _build_app_config(merged)


def resolve_base_path(config: AppConfig) -> Path:
    """Return the storage root, consulting the pointer file when unset.

    Raises :class:`BasePathError` when neither ``base_path`` nor the pointer
    file provide an existing directory.
    """
    if config.base_path is not None:
        candidate = config.base_path
    else:
        pointer = config.base_pointer
        try:
            lines = pointer.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            raise BasePathError(
                f"No storage path configured (pointer {pointer} missing). Run `sitectl init`."
            ) from None
        except OSError as exc:
            raise BasePathError(f"Unable to read storage pointer {pointer}: {exc}") from exc
        first = lines[0].strip() if lines else ""
        if not first:
            raise BasePathError(f"Storage pointer {pointer} is empty. Run `sitectl init`.")
        candidate = Path(first).expanduser()
    if not candidate.is_dir():
        raise BasePathError(f"Storage path not found: {candidate}")
    return candidate


def write_base_pointer(config: AppConfig, base_path: Path) -> Path:
    """Persist *base_path* as the first line of the pointer file."""
    pointer = config.base_pointer
    pointer.parent.mkdir(parents=True, exist_ok=True)
    pointer.write_text(f"{base_path}\n", encoding="utf-8")
    return pointer


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in _ALLOWED_SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    hosts_map = _as_dict(raw.get("hosts"), "hosts")
    marker = hosts_map.get("marker")
    if marker is not None and (not isinstance(marker, str) or not marker.strip()):
        raise ConfigError("hosts.marker must be a non-empty string.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    base_path_value = raw.get("base_path")
    base_path = _to_path(base_path_value) if base_path_value else None

    defaults_mapping = _as_dict(raw.get("defaults"), "defaults")
    nginx_mapping = _as_dict(raw.get("nginx"), "nginx")
    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    hosts_mapping = _as_dict(raw.get("hosts"), "hosts")

    nginx = NginxConfig(
        sites_available=_to_path(
            nginx_mapping.get("sites_available", "/etc/nginx/sites-available")
        ),
        sites_enabled=_to_path(nginx_mapping.get("sites_enabled", "/etc/nginx/sites-enabled")),
        nginx_bin=str(nginx_mapping.get("nginx_bin", "nginx")),
        ln_bin=str(nginx_mapping.get("ln_bin", "ln")),
        use_sudo=_expect_bool(nginx_mapping.get("use_sudo"), "nginx.use_sudo", default=True),
        sudo_bin=str(nginx_mapping.get("sudo_bin", "sudo")),
    )
    systemd = SystemdConfig(
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
        unit=str(systemd_mapping.get("unit", "nginx")),
        ss_bin=str(systemd_mapping.get("ss_bin", "ss")),
    )
    hosts = HostsConfig(
        path=_to_path(hosts_mapping.get("path", "/etc/hosts")),
        marker=str(hosts_mapping.get("marker", "Added by FastNginx")).strip(),
        default_ip=str(hosts_mapping.get("default_ip", "127.0.0.1")),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        base_path=base_path,
        base_pointer=_to_path(raw.get("base_pointer") or DEFAULT_BASE_POINTER),
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        lock_timeout=_expect_positive_float(
            raw.get("lock_timeout"), "lock_timeout", default=30.0
        ),
        backend_host=str(defaults_mapping.get("backend_host", "127.0.0.1")),
        nginx=nginx,
        systemd=systemd,
        hosts=hosts,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BasePathError",
    "ConfigError",
    "HostsConfig",
    "NginxConfig",
    "SystemdConfig",
    "load_config",
    "resolve_base_path",
    "write_base_pointer",
]
