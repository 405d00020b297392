"""Provider interfaces for servermark."""
from __future__ import annotations

from .caddy import CaddyProvider
from .elevation import ExecutionResult, PrivilegedExecutor
from .nginx import NginxProvider
from .php import detect_active_php_version, normalize_php_version
from .systemd import SystemdError, SystemdProvider
from .webserver import WebServerProviders, render_fragment

__all__ = [
    "CaddyProvider",
    "ExecutionResult",
    "NginxProvider",
    "PrivilegedExecutor",
    "SystemdError",
    "SystemdProvider",
    "WebServerProviders",
    "detect_active_php_version",
    "normalize_php_version",
    "render_fragment",
]
