"""Systemd provider for the web server services.

Mutating commands (enable, start, reload, ...) are emitted as shell lines for
the privileged reconciliation script. Read-only queries run directly since
``systemctl is-active`` needs no elevation.
"""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from ..models import Backend


class SystemdError(RuntimeError):
    """Raised when systemd queries fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Build and run systemctl commands for Caddy and Nginx."""

    systemctl_bin: str = "systemctl"
    caddy_service: str = "caddy"
    nginx_service: str = "nginx"

    def service_name(self, backend: Backend) -> str:
        """Return the systemd unit managing *backend*."""
        if backend is Backend.CADDY:
            return self.caddy_service
        if backend is Backend.NGINX:
            return self.nginx_service
        raise SystemdError(f"Unknown backend: {backend!r}")

    def command(self, action: str, backend: Backend) -> str:
        """Return ``systemctl <action> <service>`` for *backend*."""
        return f"{self.systemctl_bin} {action} {self.service_name(backend)}"

    def reload_or_restart(self, backend: Backend) -> str:
        """Return a line that reloads *backend*, restarting when reload fails."""
        return f"{self.command('reload', backend)} || {self.command('restart', backend)}"

    def stop_and_disable(self, backend: Backend) -> list[str]:
        """Return lines that stop and disable *backend*, tolerating failures."""
        return [
            f"{self.command('stop', backend)} || true",
            f"{self.command('disable', backend)} || true",
        ]

    def enable_and_start(self, backend: Backend) -> list[str]:
        """Return lines that enable and start *backend*."""
        return [self.command("enable", backend), self.command("start", backend)]

    def is_active(self, backend: Backend) -> bool:
        """Return True when the service for *backend* is running."""
        result = self._systemctl("is-active", self.service_name(backend))
        return result.returncode == 0

    def is_enabled(self, backend: Backend) -> bool:
        """Return True when the service for *backend* starts at boot."""
        result = self._systemctl("is-enabled", self.service_name(backend))
        return result.returncode == 0

    # ------------------------------------------------------------------
    def _systemctl(self, command: str, unit: str) -> subprocess.CompletedProcess[str]:
        return self._run_command([self.systemctl_bin, command, unit])

    def _run_command(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(  # noqa: S603
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc


__all__ = ["SystemdError", "SystemdProvider"]
