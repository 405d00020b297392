"""Best-effort helpers for Laravel projects.

These run as the invoking user and never require elevation. Callers treat
:class:`LaravelError` as a warning: a site that was registered and published
stays registered even when its ``.env`` or storage tree cannot be touched.
"""
from __future__ import annotations

import logging
import os
import re
import shutil
import stat
from pathlib import Path

_LOG = logging.getLogger(__name__)

ENV_FILE = ".env"

# Keys and the container hostnames they commonly point at when a project was
# previously run under docker-compose or Sail.
CONTAINER_HOST_ASSIGNMENTS: dict[str, tuple[str, ...]] = {
    "DB_HOST": ("mysql", "mariadb", "postgres"),
    "REDIS_HOST": ("redis",),
    "CACHE_HOST": ("redis",),
    "SESSION_HOST": ("redis",),
    "QUEUE_HOST": ("redis",),
    "MAIL_HOST": ("mailhog", "mailpit"),
    "MEILISEARCH_HOST": ("meilisearch",),
    "ELASTICSEARCH_HOST": ("elasticsearch",),
    "MONGODB_HOST": ("mongo", "mongodb"),
}

WRITABLE_DIRS: tuple[str, ...] = ("storage", "bootstrap/cache")
STORAGE_LAYOUT: tuple[str, ...] = (
    "storage/app/public",
    "storage/framework/cache",
    "storage/framework/sessions",
    "storage/framework/views",
    "storage/logs",
    "bootstrap/cache",
)
DIR_MODE = 0o775
FILE_MODE = 0o664

_ASSIGNMENT_RE = re.compile(r"^(?P<key>[A-Z0-9_]+)=(?P<value>.*)$")


class LaravelError(RuntimeError):
    """Raised when a Laravel project cannot be adjusted."""


def _read_env(site_path: Path) -> tuple[Path, str] | None:
    env_path = Path(site_path) / ENV_FILE
    if not env_path.exists():
        return None
    try:
        return env_path, env_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise LaravelError(f"Failed to read {env_path}: {exc}") from exc


def _write_env(env_path: Path, content: str) -> None:
    try:
        env_path.write_text(content, encoding="utf-8")
    except OSError as exc:
        raise LaravelError(f"Failed to write {env_path}: {exc}") from exc


def update_app_url(site_path: Path, url: str) -> bool:
    """Point ``APP_URL`` in the project's ``.env`` at *url*.

    An existing ``APP_URL=`` line is replaced. Otherwise the assignment is
    inserted before ``APP_NAME=`` or, failing that, prepended. Returns
    ``False`` when the project has no ``.env`` or nothing changed.
    """
    loaded = _read_env(site_path)
    if loaded is None:
        return False
    env_path, content = loaded
    assignment = f"APP_URL={url}"
    lines = content.splitlines(keepends=True)

    if any(line.startswith("APP_URL=") for line in lines):
        updated = [
            _replace_line(line, assignment) if line.startswith("APP_URL=") else line
            for line in lines
        ]
    else:
        index = next(
            (i for i, line in enumerate(lines) if line.startswith("APP_NAME=")),
            0,
        )
        updated = list(lines)
        updated.insert(index, assignment + "\n")

    new_content = "".join(updated)
    if new_content == content:
        return False
    _write_env(env_path, new_content)
    return True


def fix_container_hostnames(site_path: Path, address: str = "127.0.0.1") -> list[str]:
    """Rewrite container hostnames in ``*_HOST=`` assignments to *address*.

    Returns the keys that were rewritten.
    """
    loaded = _read_env(site_path)
    if loaded is None:
        return []
    env_path, content = loaded
    changed: list[str] = []
    updated: list[str] = []
    for line in content.splitlines(keepends=True):
        match = _ASSIGNMENT_RE.match(line.rstrip("\r\n"))
        if match is not None:
            key = match.group("key")
            value = match.group("value").strip()
            if value in CONTAINER_HOST_ASSIGNMENTS.get(key, ()):
                updated.append(_replace_line(line, f"{key}={address}"))
                changed.append(key)
                continue
        updated.append(line)
    if changed:
        _write_env(env_path, "".join(updated))
    return changed


def normalize_permissions(site_path: Path, web_group: str = "www-data") -> list[str]:
    """Create the writable Laravel directories and normalise their modes.

    Directories become ``0775`` and files ``0664``. The group is set to
    *web_group* where the current user may do so. Returns warnings for the
    entries that could not be changed.
    """
    root = Path(site_path)
    if not root.is_dir():
        raise LaravelError(f"Project directory does not exist: {root}")

    for relative in STORAGE_LAYOUT:
        try:
            (root / relative).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise LaravelError(f"Cannot create {root / relative}: {exc}") from exc

    warnings: list[str] = []
    group_ok = True
    for relative in WRITABLE_DIRS:
        base = root / relative
        for current, dirs, files in os.walk(base):
            entries = [(Path(current), DIR_MODE)]
            entries.extend((Path(current) / name, DIR_MODE) for name in dirs)
            entries.extend((Path(current) / name, FILE_MODE) for name in files)
            for entry, mode in entries:
                if entry.is_symlink():
                    continue
                try:
                    if stat.S_IMODE(entry.stat().st_mode) != mode:
                        entry.chmod(mode)
                except OSError as exc:
                    warnings.append(f"chmod {entry}: {exc}")
                if group_ok:
                    try:
                        shutil.chown(entry, group=web_group)
                    except (LookupError, OSError) as exc:
                        # Not a member of the web group; modes alone still apply.
                        warnings.append(f"chgrp {web_group}: {exc}")
                        group_ok = False
    if warnings:
        _LOG.debug("Permission normalisation for %s: %s", root, warnings)
    return warnings


def _replace_line(line: str, replacement: str) -> str:
    ending = line[len(line.rstrip("\r\n")):]
    return replacement + ending


__all__ = [
    "CONTAINER_HOST_ASSIGNMENTS",
    "LaravelError",
    "fix_container_hostnames",
    "normalize_permissions",
    "update_app_url",
]
