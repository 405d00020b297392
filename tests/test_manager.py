"""Tests for the site lifecycle manager."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from conftest import RecordingExecutor
from servermark.config import AppConfig
from servermark.errors import ElevationDenied, ScriptFailure, SiteNotFound, ValidationError
from servermark.logging import StructuredLogger
from servermark.manager import SiteManager
from servermark.models import Backend, SiteType
from servermark.scripts import Operation


def _caddy_dir(config: AppConfig) -> Path:
    return config.webserver.caddy_sites_dir


def _nginx_dir(config: AppConfig) -> Path:
    return config.webserver.nginx_sites_available


def _make_project(tmp_path: Path, name: str) -> Path:
    path = tmp_path / "code" / name
    path.mkdir(parents=True)
    return path


def test_add_site_registers_and_publishes(
    manager: SiteManager,
    executor: RecordingExecutor,
    app_config: AppConfig,
    project: Path,
) -> None:
    """Adding a project derives its domain and runs one script."""
    site = manager.add_site(project)

    assert site.name == "blog"
    assert site.domain == "blog.test"
    assert site.php_version == "8.3"
    assert site.site_type is SiteType.STATIC
    assert site.secured is False
    assert site.path == str(project.resolve())
    assert manager.list_sites() == [site]
    assert len(executor.scripts) == 1
    script = manager.last_script
    assert script is not None
    assert script.operation is Operation.ADD_SITE
    assert script.written_paths(_caddy_dir(app_config)) == [_caddy_dir(app_config) / "blog.conf"]
    assert "'127.0.0.1 blog.test'" in executor.scripts[0]


def test_add_site_with_explicit_name_and_php(manager: SiteManager, project: Path) -> None:
    """Name and PHP version can be given explicitly."""
    site = manager.add_site(project, name="My Blog", php_version="8.1")

    assert site.domain == "my-blog.test"
    assert site.php_version == "8.1"
    assert manager.get_site(site.id) == site


def test_add_site_rejects_missing_path(
    manager: SiteManager, executor: RecordingExecutor, tmp_path: Path
) -> None:
    """Paths must exist."""
    with pytest.raises(ValidationError, match="does not exist"):
        manager.add_site(tmp_path / "missing")

    assert executor.scripts == []


def test_add_site_rejects_bad_php_version(manager: SiteManager, project: Path) -> None:
    """Malformed PHP versions are validation errors."""
    with pytest.raises(ValidationError, match="PHP version"):
        manager.add_site(project, php_version="eight")


def test_domain_collision_is_rejected_before_any_script(
    manager: SiteManager,
    executor: RecordingExecutor,
    tmp_path: Path,
) -> None:
    """Two names that normalise to the same domain cannot coexist."""
    manager.add_site(_make_project(tmp_path, "one"), name="My Blog")
    before = manager.list_sites()

    with pytest.raises(ValidationError, match="my-blog.test"):
        manager.add_site(_make_project(tmp_path, "two"), name="my blog")

    assert manager.list_sites() == before
    assert len(executor.scripts) == 1


def test_duplicate_path_and_name_are_rejected(
    manager: SiteManager, project: Path, tmp_path: Path
) -> None:
    """Paths and names are unique in the registry."""
    manager.add_site(project)

    with pytest.raises(ValidationError, match="already registered"):
        manager.add_site(project, name="other")
    with pytest.raises(ValidationError, match="already exists"):
        manager.add_site(_make_project(tmp_path, "elsewhere"), name="blog")


def test_laravel_site_is_prepared(manager: SiteManager, laravel_project: Path) -> None:
    """Laravel projects get APP_URL and loopback container hosts."""
    site = manager.add_site(laravel_project)

    assert site.site_type is SiteType.LARAVEL
    assert site.framework is not None
    assert site.framework.constraint == "^11.0"
    env = (laravel_project / ".env").read_text(encoding="utf-8")
    assert "APP_URL=http://shop.test\n" in env
    assert "DB_HOST=127.0.0.1\n" in env
    assert "REDIS_HOST=127.0.0.1\n" in env
    assert (laravel_project / "storage" / "framework" / "views").is_dir()


def test_secure_and_unsecure_rewrite_app_url(
    manager: SiteManager, laravel_project: Path
) -> None:
    """Toggling HTTPS keeps APP_URL in step with the scheme."""
    site = manager.add_site(laravel_project)
    env_path = laravel_project / ".env"

    secured = manager.secure_site(site.id)
    assert secured.secured is True
    assert "APP_URL=https://shop.test\n" in env_path.read_text(encoding="utf-8")
    assert manager.get_site(site.id).secured is True

    manager.unsecure_site(site.id)
    assert "APP_URL=http://shop.test\n" in env_path.read_text(encoding="utf-8")


def test_laravel_env_is_written_before_the_script_runs(
    manager: SiteManager, executor: RecordingExecutor, laravel_project: Path
) -> None:
    """A failing script still leaves ``.env`` matching the saved registry."""
    env_path = laravel_project / ".env"
    executor.failure = ScriptFailure(1, "caddy: reload failed")

    with pytest.raises(ScriptFailure):
        manager.add_site(laravel_project)
    assert "APP_URL=http://shop.test\n" in env_path.read_text(encoding="utf-8")
    assert "DB_HOST=127.0.0.1\n" in env_path.read_text(encoding="utf-8")

    site = manager.list_sites()[0]
    with pytest.raises(ScriptFailure):
        manager.secure_site(site.id)

    assert manager.get_site(site.id).secured is True
    assert "APP_URL=https://shop.test\n" in env_path.read_text(encoding="utf-8")


def test_update_site_php_republishes(
    manager: SiteManager, executor: RecordingExecutor, project: Path
) -> None:
    """Changing the PHP version rewrites the fragment with the new socket."""
    site = manager.add_site(project)

    updated = manager.update_site_php(site.id, "8.1")

    assert updated.php_version == "8.1"
    assert manager.get_site(site.id).php_version == "8.1"
    assert "php8.1-fpm.sock" in executor.scripts[-1]
    with pytest.raises(SiteNotFound):
        manager.update_site_php("site-404", "8.1")


def test_switch_backend_moves_all_sites(
    manager: SiteManager,
    executor: RecordingExecutor,
    app_config: AppConfig,
    tmp_path: Path,
) -> None:
    """After switching to nginx no Caddy fragment is written and all sites are enabled."""
    for name in ("blog", "shop", "api"):
        manager.add_site(_make_project(tmp_path, name))

    manager.switch_active_backend("nginx")

    assert manager.active_backend() is Backend.NGINX
    script = manager.last_script
    assert script is not None
    assert script.operation is Operation.SWITCH_SERVER
    assert script.written_paths(_caddy_dir(app_config)) == []
    assert len(script.written_paths(_nginx_dir(app_config))) == 3
    assert f"{_caddy_dir(app_config)}/*.conf" in script.removals
    assert "systemctl stop caddy || true" in executor.scripts[-1]
    assert "systemctl start nginx" in executor.scripts[-1]


def test_switch_to_unknown_backend_is_rejected(manager: SiteManager) -> None:
    """Only caddy and nginx are accepted."""
    with pytest.raises(ValidationError, match="apache"):
        manager.switch_active_backend("apache")

    assert manager.active_backend() is Backend.CADDY


def test_remove_site_cleans_both_backends(
    manager: SiteManager,
    executor: RecordingExecutor,
    app_config: AppConfig,
    project: Path,
) -> None:
    """Removal drops the registry entry, every fragment and the hosts line."""
    site = manager.add_site(project)

    manager.remove_site(site.id)

    assert manager.list_sites() == []
    script = manager.last_script
    assert script is not None
    assert str(_caddy_dir(app_config) / "blog.conf") in script.removals
    assert str(_nginx_dir(app_config) / "servermark-blog") in script.removals
    assert "sed -i -E '/^127\\.0\\.0\\.1[[:space:]]+blog\\.test$/d'" in executor.scripts[-1]
    with pytest.raises(SiteNotFound):
        manager.remove_site(site.id)


def test_remove_then_add_restores_identical_fragment(
    manager: SiteManager, app_config: AppConfig, project: Path
) -> None:
    """Re-adding a removed project publishes the same fragment at the same path."""
    first = manager.add_site(project, php_version="8.2")
    added = manager.last_script
    manager.remove_site(first.id)

    second = manager.add_site(project, php_version="8.2")
    readded = manager.last_script

    assert added is not None and readded is not None
    assert second.domain == first.domain
    assert readded.writes == added.writes
    assert readded.written_paths() == [_caddy_dir(app_config) / "blog.conf"]


def test_remove_after_switch_clears_fragments_of_both_backends(
    manager: SiteManager, app_config: AppConfig, project: Path
) -> None:
    """A site published under caddy then nginx loses every fragment on removal."""
    site = manager.add_site(project)
    manager.switch_active_backend(Backend.NGINX)
    switched = manager.last_script
    assert switched is not None
    assert switched.written_paths(_nginx_dir(app_config)) == [
        _nginx_dir(app_config) / "servermark-blog"
    ]

    manager.remove_site(site.id)

    script = manager.last_script
    assert script is not None
    assert script.backend is Backend.NGINX
    assert script.removals == (
        str(_caddy_dir(app_config) / "blog.conf"),
        str(app_config.webserver.nginx_sites_enabled / "servermark-blog"),
        str(_nginx_dir(app_config) / "servermark-blog"),
    )


def test_sync_all_is_idempotent(
    manager: SiteManager, executor: RecordingExecutor, tmp_path: Path
) -> None:
    """Running sync twice with no changes produces the same script."""
    manager.add_site(_make_project(tmp_path, "blog"))
    site = manager.add_site(_make_project(tmp_path, "shop"))
    manager.secure_site(site.id)

    manager.sync_all()
    manager.sync_all()

    assert executor.scripts[-1] == executor.scripts[-2]
    assert executor.scripts[-1].count("cat > ") == 2


def test_script_failure_keeps_registry_change(
    manager: SiteManager, executor: RecordingExecutor, project: Path
) -> None:
    """The registry is saved before the script runs."""
    executor.failure = ScriptFailure(1, "caddy: reload failed")

    with pytest.raises(ScriptFailure, match="reload failed"):
        manager.add_site(project)

    assert [site.name for site in manager.list_sites()] == ["blog"]


def test_denied_elevation_keeps_registry_change(
    manager: SiteManager, executor: RecordingExecutor, project: Path
) -> None:
    """A dismissed prompt leaves the registry ahead of the live configuration."""
    site = manager.add_site(project)
    executor.failure = ElevationDenied("Privilege elevation denied")

    with pytest.raises(ElevationDenied):
        manager.secure_site(site.id)

    assert manager.get_site(site.id).secured is True


def test_registry_roundtrip_through_a_new_manager(
    manager: SiteManager,
    app_config: AppConfig,
    executor: RecordingExecutor,
    laravel_project: Path,
    project: Path,
) -> None:
    """A fresh manager over the same state directory sees identical sites."""
    manager.add_site(project)
    manager.add_site(laravel_project)

    other = SiteManager.from_config(app_config, executor=executor)  # type: ignore[arg-type]

    assert other.list_sites() == manager.list_sites()


def test_tld_change_recomputes_domains(
    manager: SiteManager, executor: RecordingExecutor, project: Path
) -> None:
    """A new TLD renames every domain and retires the old hosts entries."""
    site = manager.add_site(project)

    document = manager.update_settings(tld="local")

    assert document.tld == "local"
    assert manager.get_site(site.id).domain == "blog.local"
    script = executor.scripts[-1]
    assert "blog\\.test$/d" in script
    assert "'127.0.0.1 blog.local'" in script
    assert manager.settings().tld == "local"


def test_settings_without_changes_run_nothing(
    manager: SiteManager, executor: RecordingExecutor, tmp_path: Path
) -> None:
    """Unchanged settings and a sites path change need no privileged script."""
    manager.update_settings(tld="test")
    document = manager.update_settings(sites_path=str(tmp_path / "Sites"))

    assert document.sites_path == str(tmp_path / "Sites")
    assert executor.scripts == []
    with pytest.raises(ValidationError):
        manager.update_settings(tld="not valid")


def test_preview_does_not_execute(
    manager: SiteManager, executor: RecordingExecutor, project: Path
) -> None:
    """Previews build scripts without running or saving anything."""
    site = manager.add_site(project)
    runs = len(executor.scripts)

    switch = manager.preview("switch-server")
    removal = manager.preview(Operation.REMOVE_SITE, site.id)

    assert switch.backend is Backend.NGINX
    assert removal.target == site
    assert removal.sites == ()
    assert len(executor.scripts) == runs
    assert manager.list_sites() == [site]
    assert manager.active_backend() is Backend.CADDY


def test_dry_run_passes_through_to_executor(
    app_config: AppConfig, executor: RecordingExecutor, project: Path
) -> None:
    """Dry-run managers still save but ask the executor not to run."""
    manager = SiteManager.from_config(
        app_config, executor=executor, dry_run=True  # type: ignore[arg-type]
    )

    manager.add_site(project)

    assert executor.dry_runs == [True]
    assert manager.last_result is not None
    assert manager.last_result.dry_run is True


def test_operation_steps_are_logged(
    manager: SiteManager, project: Path, tmp_path: Path
) -> None:
    """Mutations record lock wait, registry save and script steps."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("site add", args={"path": str(project)}) as op:
        manager.add_site(project, op=op)
        op.success("Site added.")

    record = json.loads(logger.path.read_text(encoding="utf-8").splitlines()[0])
    names = [step["name"] for step in record["steps"]]
    assert names[:2] == ["registry.save", "script.add_site"]
    assert isinstance(record["lock_wait_ms"], int)
