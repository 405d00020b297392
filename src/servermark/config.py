"""Configuration loader for servermark.

Configuration values are merged from several sources, later sources winning:

1. Built-in defaults.
2. ``~/.config/servermark/config.yml`` (or an override path).
3. Environment variables prefixed with ``SERVERMARK_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export SERVERMARK_WEBSERVER__SSL_DIR=/etc/servermark/ssl
    export SERVERMARK_ELEVATION__HELPER=sudo

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

from .errors import ServermarkError
from .exit_codes import ExitCode

ENV_PREFIX = "SERVERMARK_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

CONTAINER_HOSTNAMES: tuple[str, ...] = (
    "mysql",
    "mariadb",
    "postgres",
    "redis",
    "memcached",
    "mailhog",
    "mailpit",
    "meilisearch",
    "elasticsearch",
    "mongo",
    "mongodb",
    "rabbitmq",
    "minio",
)


class ConfigError(ServermarkError):
    """Raised when configuration parsing fails."""

    exit_code = ExitCode.VALIDATION


@dataclass(frozen=True)
class WebServerConfig:
    """Locations of generated web-server fragments and TLS material."""

    caddy_sites_dir: Path = Path("/etc/caddy/sites.d")
    caddyfile: Path = Path("/etc/caddy/Caddyfile")
    nginx_sites_available: Path = Path("/etc/nginx/sites-available")
    nginx_sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    nginx_bin: str = "nginx"
    openssl_bin: str = "openssl"
    ssl_dir: Path = Path("/etc/servermark/ssl")
    php_socket_pattern: str = "/var/run/php/php{version}-fpm.sock"
    fragment_prefix: str = "servermark-"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "caddy_sites_dir": str(self.caddy_sites_dir),
            "caddyfile": str(self.caddyfile),
            "nginx_sites_available": str(self.nginx_sites_available),
            "nginx_sites_enabled": str(self.nginx_sites_enabled),
            "nginx_bin": self.nginx_bin,
            "openssl_bin": self.openssl_bin,
            "ssl_dir": str(self.ssl_dir),
            "php_socket_pattern": self.php_socket_pattern,
            "fragment_prefix": self.fragment_prefix,
        }


@dataclass(frozen=True)
class HostsConfig:
    """System hosts table settings."""

    file: Path = Path("/etc/hosts")
    address: str = "127.0.0.1"
    container_hostnames: tuple[str, ...] = CONTAINER_HOSTNAMES

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "file": str(self.file),
            "address": self.address,
            "container_hostnames": list(self.container_hostnames),
        }


@dataclass(frozen=True)
class ElevationConfig:
    """How the reconciliation script obtains root privileges."""

    helper: str = "pkexec"
    shell: str = "bash"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"helper": self.helper, "shell": self.shell}


@dataclass(frozen=True)
class SystemdConfig:
    """Service names and binaries used for backend service control."""

    systemctl_bin: str = "systemctl"
    caddy_service: str = "caddy"
    nginx_service: str = "nginx"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "systemctl_bin": self.systemctl_bin,
            "caddy_service": self.caddy_service,
            "nginx_service": self.nginx_service,
        }


@dataclass(frozen=True)
class LaravelConfig:
    """Settings for the Laravel best-effort helpers."""

    web_group: str = "www-data"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"web_group": self.web_group}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for servermark."""

    config_file: Path
    state_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    default_php_version: str
    php_bin: str
    webserver: WebServerConfig
    hosts: HostsConfig
    elevation: ElevationConfig
    systemd: SystemdConfig
    laravel: LaravelConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "default_php_version": self.default_php_version,
            "php_bin": self.php_bin,
            "webserver": self.webserver.to_dict(),
            "hosts": self.hosts.to_dict(),
            "elevation": self.elevation.to_dict(),
            "systemd": self.systemd.to_dict(),
            "laravel": self.laravel.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/servermark/config.yml",
    "state_dir": "~/.config/servermark",
    "logs_dir": None,  # derived from state_dir when absent
    "runtime_dir": None,  # derived from state_dir when absent
    "templates_dir": None,  # derived from state_dir when absent
    "lock_timeout": 30.0,
    "default_php_version": "8.3",
    "php_bin": "php",
    "webserver": {
        "caddy_sites_dir": "/etc/caddy/sites.d",
        "caddyfile": "/etc/caddy/Caddyfile",
        "nginx_sites_available": "/etc/nginx/sites-available",
        "nginx_sites_enabled": "/etc/nginx/sites-enabled",
        "nginx_bin": "nginx",
        "openssl_bin": "openssl",
        "ssl_dir": "/etc/servermark/ssl",
        "php_socket_pattern": "/var/run/php/php{version}-fpm.sock",
        "fragment_prefix": "servermark-",
    },
    "hosts": {
        "file": "/etc/hosts",
        "address": "127.0.0.1",
        "container_hostnames": list(CONTAINER_HOSTNAMES),
    },
    "elevation": {
        "helper": "pkexec",
        "shell": "bash",
    },
    "systemd": {
        "systemctl_bin": "systemctl",
        "caddy_service": "caddy",
        "nginx_service": "nginx",
    },
    "laravel": {
        "web_group": "www-data",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("webserver", "hosts", "elevation", "systemd", "laravel")
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

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


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

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    webserver = _as_dict(raw.get("webserver"), "webserver")
    pattern = webserver.get("php_socket_pattern")
    if pattern is not None and "{version}" not in str(pattern):
        raise ConfigError("webserver.php_socket_pattern must contain a '{version}' placeholder.")

    elevation = _as_dict(raw.get("elevation"), "elevation")
    for key in ("helper", "shell"):
        value = elevation.get(key)
        if value is not None and not str(value).strip():
            raise ConfigError(f"elevation.{key} must be a non-empty string.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))

    logs_dir_value = raw.get("logs_dir")
    logs_dir = _to_path(logs_dir_value) if logs_dir_value else state_dir / "logs"
    runtime_dir_value = raw.get("runtime_dir")
    runtime_dir = _to_path(runtime_dir_value) if runtime_dir_value else state_dir / "run"
    templates_dir_value = raw.get("templates_dir")
    templates_dir = (
        _to_path(templates_dir_value) if templates_dir_value else state_dir / "templates"
    )
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    web_mapping = _as_dict(raw.get("webserver"), "webserver")
    default_web = WebServerConfig()
    webserver = WebServerConfig(
        caddy_sites_dir=_to_path(web_mapping.get("caddy_sites_dir", default_web.caddy_sites_dir)),
        caddyfile=_to_path(web_mapping.get("caddyfile", default_web.caddyfile)),
        nginx_sites_available=_to_path(
            web_mapping.get("nginx_sites_available", default_web.nginx_sites_available)
        ),
        nginx_sites_enabled=_to_path(
            web_mapping.get("nginx_sites_enabled", default_web.nginx_sites_enabled)
        ),
        nginx_bin=str(web_mapping.get("nginx_bin", default_web.nginx_bin)),
        openssl_bin=str(web_mapping.get("openssl_bin", default_web.openssl_bin)),
        ssl_dir=_to_path(web_mapping.get("ssl_dir", default_web.ssl_dir)),
        php_socket_pattern=str(
            web_mapping.get("php_socket_pattern", default_web.php_socket_pattern)
        ),
        fragment_prefix=str(web_mapping.get("fragment_prefix", default_web.fragment_prefix)),
    )

    hosts_mapping = _as_dict(raw.get("hosts"), "hosts")
    hostnames_raw = hosts_mapping.get("container_hostnames", list(CONTAINER_HOSTNAMES))
    hostnames = tuple(
        str(item).strip()
        for item in _as_sequence(hostnames_raw, "hosts.container_hostnames")
        if str(item).strip()
    )
    hosts = HostsConfig(
        file=_to_path(hosts_mapping.get("file", "/etc/hosts")),
        address=str(hosts_mapping.get("address", "127.0.0.1")),
        container_hostnames=hostnames,
    )

    elevation_mapping = _as_dict(raw.get("elevation"), "elevation")
    elevation = ElevationConfig(
        helper=str(elevation_mapping.get("helper", "pkexec")),
        shell=str(elevation_mapping.get("shell", "bash")),
    )

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
        caddy_service=str(systemd_mapping.get("caddy_service", "caddy")),
        nginx_service=str(systemd_mapping.get("nginx_service", "nginx")),
    )

    laravel_mapping = _as_dict(raw.get("laravel"), "laravel")
    laravel = LaravelConfig(web_group=str(laravel_mapping.get("web_group", "www-data")))

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        default_php_version=str(raw.get("default_php_version", "8.3")),
        php_bin=str(raw.get("php_bin", "php")),
        webserver=webserver,
        hosts=hosts,
        elevation=elevation,
        systemd=systemd,
        laravel=laravel,
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
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, str):
        # Environment overrides arrive as a single whitespace/comma separated string.
        return [part for part in value.replace(",", " ").split() if part]
    if isinstance(value, bytes) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


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
    "CONTAINER_HOSTNAMES",
    "ConfigError",
    "ElevationConfig",
    "HostsConfig",
    "LaravelConfig",
    "SystemdConfig",
    "WebServerConfig",
    "load_config",
]
