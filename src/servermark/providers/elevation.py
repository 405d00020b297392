"""Run reconciliation scripts through a graphical privilege helper.

Every privileged change of one user action is bundled into a single script
and executed with one invocation of the helper (``pkexec bash -s``), so the
user authenticates at most once per action. The script is fed on stdin and
never appears in the argv of any process.
"""
from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass

from ..errors import ElevationDenied, ScriptFailure

_LOG = logging.getLogger(__name__)

# pkexec exits 126 when the dialog is dismissed and 127 when authorization
# could not be obtained.
DENIED_EXIT_CODES = frozenset({126, 127})


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of one privileged script run."""

    returncode: int
    stdout: str = ""
    stderr: str = ""
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        """Return True when the script exited successfully."""
        return self.returncode == 0


@dataclass(slots=True)
class PrivilegedExecutor:
    """Execute shell scripts with elevated privileges."""

    helper: str = "pkexec"
    shell: str = "bash"

    def command(self) -> list[str]:
        """Return the argv of the helper; the script itself is read from stdin."""
        return [self.helper, self.shell, "-s"]

    def run(self, script: str, *, dry_run: bool = False) -> ExecutionResult:
        """Run *script* once under the privilege helper.

        Raises
        ------
        ElevationDenied
            The helper could not be spawned or the user refused the prompt.
        ScriptFailure
            The script ran and exited non-zero; ``stderr`` is kept verbatim.
        """
        if dry_run:
            _LOG.debug("dry-run: skipping privileged script (%d bytes)", len(script))
            return ExecutionResult(returncode=0, dry_run=True)

        argv = self.command()
        try:
            result = subprocess.run(  # noqa: S603
                argv,
                input=script,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise ElevationDenied(f"Cannot run privilege helper '{self.helper}': {exc}") from exc

        stdout = result.stdout or ""
        stderr = result.stderr or ""
        if result.returncode in DENIED_EXIT_CODES:
            detail = stderr.strip() or "authorization was not granted"
            raise ElevationDenied(f"Privilege elevation denied: {detail}")
        if result.returncode != 0:
            raise ScriptFailure(result.returncode, stderr)
        return ExecutionResult(returncode=0, stdout=stdout, stderr=stderr)


__all__ = ["DENIED_EXIT_CODES", "ExecutionResult", "PrivilegedExecutor"]
