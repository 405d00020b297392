"""Error hierarchy shared by the registry, script builder and executor.

Every error raised towards the CLI derives from :class:`ServermarkError` and
carries an :class:`~servermark.exit_codes.ExitCode` so the CLI can map
failures without inspecting message text.
"""
from __future__ import annotations

from .exit_codes import ExitCode


class ServermarkError(RuntimeError):
    """Base class for servermark failures."""

    exit_code: ExitCode = ExitCode.FAILURE


class ValidationError(ServermarkError):
    """Raised when a requested change violates a registry invariant."""

    exit_code = ExitCode.VALIDATION


class UnsupportedSiteError(ValidationError):
    """Raised when no fragment can be generated for a site/backend combination."""

    def __init__(self, site_name: str, reason: str) -> None:
        """Record which site could not be rendered and why."""
        super().__init__(f"Cannot generate configuration for site '{site_name}': {reason}")
        self.site_name = site_name
        self.reason = reason


class SiteNotFound(ServermarkError):
    """Raised when a site id is not present in the registry."""

    exit_code = ExitCode.VALIDATION

    def __init__(self, site_id: str) -> None:
        """Record the missing identifier."""
        super().__init__(f"Site '{site_id}' not found.")
        self.site_id = site_id


class PersistenceError(ServermarkError):
    """Raised when a registry document cannot be read or written."""

    exit_code = ExitCode.ENVIRONMENT


class ElevationDenied(ServermarkError):
    """Raised when the privilege helper is missing or the prompt was refused."""

    exit_code = ExitCode.ENVIRONMENT


class ScriptFailure(ServermarkError):
    """Raised when the reconciliation script ran but one of its steps failed."""

    exit_code = ExitCode.PROVIDER

    def __init__(self, returncode: int, stderr: str) -> None:
        """Keep the exit status and the captured error stream verbatim."""
        detail = stderr.strip() or "no output"
        super().__init__(f"Reconciliation script failed (exit {returncode}): {detail}")
        self.returncode = returncode
        self.stderr = stderr


__all__ = [
    "ElevationDenied",
    "PersistenceError",
    "ScriptFailure",
    "ServermarkError",
    "SiteNotFound",
    "UnsupportedSiteError",
    "ValidationError",
]
