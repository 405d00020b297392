"""Detect the framework family of a project directory from filesystem markers."""
from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from pathlib import Path

from .errors import ValidationError
from .models import FrameworkInfo, SiteType

_LOG = logging.getLogger(__name__)


def detect_site_type(path: Path) -> SiteType:
    """Return the :class:`SiteType` for the project rooted at *path*.

    Markers are checked in order: Laravel (``artisan`` + ``composer.json``),
    Symfony (``bin/console`` + ``symfony.lock``), WordPress (``wp-config.php``
    or ``wp-content``). Anything else is served as a static site. Proxy sites
    are never detected.
    """
    root = Path(path).expanduser()
    if not root.exists():
        raise ValidationError(f"Path does not exist: {root}")

    if (root / "artisan").exists() and (root / "composer.json").exists():
        return SiteType.LARAVEL
    if (root / "bin" / "console").exists() and (root / "symfony.lock").exists():
        return SiteType.SYMFONY
    if (root / "wp-config.php").exists() or (root / "wp-content").exists():
        return SiteType.WORDPRESS
    return SiteType.STATIC


def detect_laravel_info(path: Path) -> FrameworkInfo | None:
    """Read framework constraints from ``composer.json``.

    Returns ``None`` when the manifest is missing or unreadable. The installed
    framework version is not resolved; only the declared constraints are.
    """
    manifest = Path(path).expanduser() / "composer.json"
    try:
        data = json.loads(manifest.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        _LOG.debug("Cannot read %s: %s", manifest, exc)
        return None
    if not isinstance(data, Mapping):
        return None
    require = data.get("require")
    if not isinstance(require, Mapping):
        require = {}
    constraint = require.get("laravel/framework")
    php_constraint = require.get("php")
    return FrameworkInfo(
        detected=True,
        version=None,
        constraint=constraint if isinstance(constraint, str) else None,
        php_version=php_constraint if isinstance(php_constraint, str) else None,
    )


__all__ = ["detect_laravel_info", "detect_site_type"]
