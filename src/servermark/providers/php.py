"""Query the PHP interpreter on PATH."""
from __future__ import annotations

import logging
import re
import subprocess

from packaging.version import InvalidVersion, Version

_LOG = logging.getLogger(__name__)

VERSION_QUERY = "echo PHP_MAJOR_VERSION . '.' . PHP_MINOR_VERSION;"
_MINOR_RE = re.compile(r"^\d+\.\d+$")


def detect_active_php_version(php_bin: str = "php", default: str = "8.3") -> str:
    """Return the ``major.minor`` version of *php_bin*, or *default*."""
    try:
        result = subprocess.run(  # noqa: S603
            [php_bin, "-r", VERSION_QUERY],
            capture_output=True,
            text=True,
            check=False,
            timeout=10,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        _LOG.debug("PHP version query failed: %s", exc)
        return default
    version = (result.stdout or "").strip()
    if result.returncode != 0 or not _MINOR_RE.match(version):
        return default
    return version


def normalize_php_version(value: str) -> str:
    """Return *value* as ``major.minor`` or raise ``ValueError``."""
    text = value.strip()
    if not _MINOR_RE.match(text):
        raise ValueError(f"PHP version must look like '8.3', got '{value}'.")
    try:
        parsed = Version(text)
    except InvalidVersion as exc:
        raise ValueError(f"Invalid PHP version '{value}': {exc}") from exc
    return f"{parsed.major}.{parsed.minor}"


__all__ = ["VERSION_QUERY", "detect_active_php_version", "normalize_php_version"]
