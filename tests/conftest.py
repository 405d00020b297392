"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from servermark.config import AppConfig, load_config
from servermark.errors import ServermarkError
from servermark.manager import SiteManager
from servermark.providers.elevation import ExecutionResult


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


class RecordingExecutor:
    """Stand-in for :class:`PrivilegedExecutor` that records scripts."""

    def __init__(self) -> None:
        """Start with no recorded scripts."""
        self.scripts: list[str] = []
        self.dry_runs: list[bool] = []
        self.failure: ServermarkError | None = None

    def run(self, script: str, *, dry_run: bool = False) -> ExecutionResult:
        """Record *script* and fail when a failure was armed."""
        self.scripts.append(script)
        self.dry_runs.append(dry_run)
        if self.failure is not None:
            raise self.failure
        return ExecutionResult(returncode=0, dry_run=dry_run)


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Return a configuration whose every path lives under ``tmp_path``."""
    etc = tmp_path / "etc"
    return load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={
            "state_dir": str(tmp_path / "state"),
            "php_bin": str(tmp_path / "bin" / "php-missing"),
            "webserver": {
                "caddy_sites_dir": str(etc / "caddy" / "sites.d"),
                "caddyfile": str(etc / "caddy" / "Caddyfile"),
                "nginx_sites_available": str(etc / "nginx" / "sites-available"),
                "nginx_sites_enabled": str(etc / "nginx" / "sites-enabled"),
                "ssl_dir": str(etc / "servermark" / "ssl"),
            },
            "hosts": {"file": str(etc / "hosts")},
        },
    )


@pytest.fixture
def executor() -> RecordingExecutor:
    """Return a fresh recording executor."""
    return RecordingExecutor()


@pytest.fixture
def manager(app_config: AppConfig, executor: RecordingExecutor) -> SiteManager:
    """Return a manager wired to the recording executor."""
    return SiteManager.from_config(app_config, executor=executor)  # type: ignore[arg-type]


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """Return a plain project directory called ``blog``."""
    path = tmp_path / "code" / "blog"
    path.mkdir(parents=True)
    (path / "index.html").write_text("<h1>blog</h1>\n", encoding="utf-8")
    return path


@pytest.fixture
def laravel_project(tmp_path: Path) -> Path:
    """Return a minimal Laravel project directory called ``shop``."""
    path = tmp_path / "code" / "shop"
    (path / "public").mkdir(parents=True)
    (path / "artisan").write_text("#!/usr/bin/env php\n", encoding="utf-8")
    (path / "composer.json").write_text(
        '{"require": {"php": "^8.2", "laravel/framework": "^11.0"}}\n',
        encoding="utf-8",
    )
    (path / ".env").write_text(
        "APP_NAME=Shop\nAPP_URL=http://localhost\nDB_HOST=mysql\nREDIS_HOST=redis\n",
        encoding="utf-8",
    )
    return path
