"""Site lifecycle facade.

:class:`SiteManager` is the only writer of the registry documents. Every
mutating call follows the same sequence::

    lock -> load -> mutate -> validate -> build script -> save -> execute

The registry is persisted before the privileged script runs, and so are the
unprivileged Laravel project edits (``.env`` and storage permissions). A
failing script therefore leaves the registry ahead of the live web-server
configuration; ``sync_all`` reconciles the two.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path

from .config import AppConfig
from .detection import detect_laravel_info, detect_site_type
from .errors import ValidationError
from .laravel import LaravelError, fix_container_hostnames, normalize_permissions, update_app_url
from .locking import LockManager
from .logging import OperationScope
from .models import (
    Backend,
    BackendSelection,
    Site,
    SitesDocument,
    SiteType,
    compute_domain,
    new_site_id,
    validate_site_name,
    validate_tld,
)
from .providers.elevation import ExecutionResult, PrivilegedExecutor
from .providers.php import detect_active_php_version, normalize_php_version
from .providers.systemd import SystemdProvider
from .providers.webserver import WebServerProviders
from .scripts import Operation, ReconcileScript, ScriptBuilder
from .state import SitesStore, StateRegistry
from .templates import TemplateEngine

_LOG = logging.getLogger(__name__)


class SiteManager:
    """Register sites and keep the web server in step with the registry."""

    def __init__(
        self,
        *,
        store: SitesStore,
        builder: ScriptBuilder,
        executor: PrivilegedExecutor,
        locks: LockManager,
        php_resolver: Callable[[], str] | None = None,
        web_group: str = "www-data",
        hosts_address: str = "127.0.0.1",
        dry_run: bool = False,
    ) -> None:
        """Wire the manager to its collaborators."""
        self.store = store
        self.builder = builder
        self.executor = executor
        self.locks = locks
        self.php_resolver = php_resolver or detect_active_php_version
        self.web_group = web_group
        self.hosts_address = hosts_address
        self.dry_run = dry_run
        self.last_script: ReconcileScript | None = None
        self.last_result: ExecutionResult | None = None
        self.warnings: list[str] = []

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        executor: PrivilegedExecutor | None = None,
        dry_run: bool = False,
    ) -> SiteManager:
        """Build a manager and its collaborators from *config*."""
        templates = TemplateEngine.with_overrides(config.templates_dir)
        webservers = WebServerProviders.from_config(config.webserver, templates)
        systemd = SystemdProvider(
            systemctl_bin=config.systemd.systemctl_bin,
            caddy_service=config.systemd.caddy_service,
            nginx_service=config.systemd.nginx_service,
        )
        builder = ScriptBuilder(webservers, systemd, config.hosts)
        elevation = executor or PrivilegedExecutor(
            helper=config.elevation.helper,
            shell=config.elevation.shell,
        )

        def resolve_php() -> str:
            return detect_active_php_version(config.php_bin, config.default_php_version)

        return cls(
            store=SitesStore(StateRegistry(config.state_dir)),
            builder=builder,
            executor=elevation,
            locks=LockManager(config.runtime_dir, config.lock_timeout),
            php_resolver=resolve_php,
            web_group=config.laravel.web_group,
            hosts_address=config.hosts.address,
            dry_run=dry_run,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def list_sites(self) -> list[Site]:
        """Return every registered site in registry order."""
        return list(self.store.load().sites)

    def get_site(self, site_id: str) -> Site:
        """Return the site identified by *site_id*."""
        return self.store.load().find(site_id)

    def settings(self) -> SitesDocument:
        """Return the registry document including ``tld`` and ``sites_path``."""
        return self.store.load()

    def active_backend(self) -> Backend:
        """Return the backend currently serving the sites."""
        return self.store.load_backend().active

    def preview(self, operation: Operation | str, target: str | None = None) -> ReconcileScript:
        """Build the script for *operation* without running it.

        ``switch_server`` previews a switch to the inactive backend. Single-site
        operations need *target*, the id of a registered site.
        """
        op = Operation.parse(operation)
        document = self.store.load()
        backend = self.active_backend()
        site = document.find(target) if target is not None else None
        if op is Operation.SWITCH_SERVER:
            backend = backend.other
        sites = document.sites
        if op is Operation.REMOVE_SITE and site is not None:
            sites = tuple(each for each in document.sites if each.id != site.id)
        return self.builder.build(op, sites, backend, target=site)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def add_site(
        self,
        path: str | Path,
        name: str | None = None,
        php_version: str | None = None,
        *,
        op: OperationScope | None = None,
    ) -> Site:
        """Register the project at *path* and publish it on the active backend."""
        self.warnings = []
        root = Path(path).expanduser()
        if not root.exists():
            raise ValidationError(f"Path does not exist: {root}")
        root = root.resolve()
        display_name = validate_site_name(name if name else root.name)
        php = self._php_version(php_version)
        site_type = detect_site_type(root)
        framework = detect_laravel_info(root) if site_type is SiteType.LARAVEL else None

        with self._locked(op):
            document = self.store.load()
            site = Site(
                id=new_site_id(),
                name=display_name,
                path=str(root),
                domain=compute_domain(display_name, document.tld),
                php_version=php,
                secured=False,
                site_type=site_type,
                framework=framework,
            )
            self._ensure_unique(document, site)
            document = document.with_site(site)
            script = self.builder.build(
                Operation.ADD_SITE, document.sites, self.active_backend(), target=site
            )
            self._save(document, op)
            if site.site_type is SiteType.LARAVEL:
                self._prepare_laravel(site, op)
            self._execute(script, op)
        return site

    def remove_site(self, site_id: str, *, op: OperationScope | None = None) -> None:
        """Unregister *site_id* and delete its configuration from both backends."""
        self.warnings = []
        with self._locked(op):
            document = self.store.load()
            site = document.find(site_id)
            document = document.without_site(site_id)
            script = self.builder.build(
                Operation.REMOVE_SITE, document.sites, self.active_backend(), target=site
            )
            self._save(document, op)
            self._execute(script, op)

    def update_site_php(
        self,
        site_id: str,
        version: str,
        *,
        op: OperationScope | None = None,
    ) -> Site:
        """Switch *site_id* to PHP *version* and republish it."""
        self.warnings = []
        php = self._php_version(version)
        return self._update_site(site_id, op, php_version=php)

    def secure_site(self, site_id: str, *, op: OperationScope | None = None) -> Site:
        """Serve *site_id* over HTTPS."""
        return self._set_secured(site_id, True, op)

    def unsecure_site(self, site_id: str, *, op: OperationScope | None = None) -> Site:
        """Serve *site_id* over plain HTTP."""
        return self._set_secured(site_id, False, op)

    def switch_active_backend(
        self,
        name: str | Backend,
        *,
        op: OperationScope | None = None,
    ) -> None:
        """Make *name* the active backend and regenerate every site for it."""
        self.warnings = []
        backend = Backend.parse(name)
        with self._locked(op):
            document = self.store.load()
            script = self.builder.build(Operation.SWITCH_SERVER, document.sites, backend)
            self.store.save_backend(BackendSelection(active=backend))
            if op is not None:
                op.add_step("registry.backend", detail=backend.value)
            self._execute(script, op)

    def sync_all(self, *, op: OperationScope | None = None) -> None:
        """Regenerate every fragment for the active backend and reload it."""
        self.warnings = []
        with self._locked(op):
            document = self.store.load()
            script = self.builder.build(Operation.SYNC_ALL, document.sites, self.active_backend())
            self._execute(script, op)

    def update_settings(
        self,
        *,
        tld: str | None = None,
        sites_path: str | None = None,
        op: OperationScope | None = None,
    ) -> SitesDocument:
        """Change the global settings.

        A new ``tld`` recomputes every domain, is rejected when two sites would
        collide, and is followed by a full reconciliation.
        """
        self.warnings = []
        with self._locked(op):
            document = self.store.load()
            updated = document
            retired: list[Site] = []
            if sites_path is not None:
                updated = replace(updated, sites_path=str(Path(sites_path).expanduser()))
            if tld is not None:
                new_tld = validate_tld(tld)
                if new_tld != document.tld:
                    renamed = tuple(
                        site.with_changes(domain=compute_domain(site.name, new_tld))
                        for site in document.sites
                    )
                    _ensure_distinct_domains(renamed)
                    retired = list(document.sites)
                    updated = replace(updated, tld=new_tld, sites=renamed)

            if updated == document:
                return document
            script = None
            if retired:
                script = self.builder.build(
                    Operation.SYNC_ALL, updated.sites, self.active_backend(), retired=retired
                )
            self._save(updated, op)
            if script is not None:
                for site in updated.sites:
                    if site.site_type is SiteType.LARAVEL:
                        self._rewrite_app_url(site, op)
                self._execute(script, op)
        return updated

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _update_site(self, site_id: str, op: OperationScope | None, **changes: object) -> Site:
        with self._locked(op):
            document = self.store.load()
            site = document.find(site_id).with_changes(**changes)
            document = document.with_site(site)
            script = self.builder.build(
                Operation.UPDATE_SITE, document.sites, self.active_backend(), target=site
            )
            self._save(document, op)
            if site.site_type is SiteType.LARAVEL:
                self._rewrite_app_url(site, op)
            self._execute(script, op)
        return site

    def _set_secured(self, site_id: str, secured: bool, op: OperationScope | None) -> Site:
        self.warnings = []
        return self._update_site(site_id, op, secured=secured)

    def _prepare_laravel(self, site: Site, op: OperationScope | None) -> None:
        root = Path(site.path)
        self._best_effort(
            op, "laravel.hostnames", fix_container_hostnames, root, self.hosts_address
        )
        self._rewrite_app_url(site, op)
        skipped = self._best_effort(
            op, "laravel.permissions", normalize_permissions, root, self.web_group
        )
        if isinstance(skipped, list) and skipped:
            detail = f"{len(skipped)} entries not adjusted: {skipped[0]}"
            self._warn(op, "laravel.permissions", detail)

    def _rewrite_app_url(self, site: Site, op: OperationScope | None) -> None:
        self._best_effort(op, "laravel.app_url", update_app_url, Path(site.path), site.url)

    def _best_effort(
        self,
        op: OperationScope | None,
        name: str,
        func: Callable[..., object],
        *args: object,
    ) -> object:
        try:
            result = func(*args)
        except (LaravelError, OSError) as exc:
            self._warn(op, name, str(exc))
            return None
        if op is not None:
            op.add_step(name)
        return result

    def _warn(self, op: OperationScope | None, name: str, message: str) -> None:
        _LOG.warning("%s: %s", name, message)
        self.warnings.append(f"{name}: {message}")
        if op is not None:
            op.add_step(name, status="warning", detail=message)

    def _php_version(self, value: str | None) -> str:
        if value is None or not value.strip():
            return self.php_resolver()
        try:
            return normalize_php_version(value)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

    @contextmanager
    def _locked(self, op: OperationScope | None) -> Iterator[None]:
        with self.locks.registry_lock() as handle:
            if op is not None:
                op.set_lock_wait_ms(handle.wait_ms)
            yield

    def _save(self, document: SitesDocument, op: OperationScope | None) -> None:
        self.store.save(document)
        if op is not None:
            op.add_step("registry.save", detail=f"{len(document.sites)} site(s)")

    def _execute(self, script: ReconcileScript, op: OperationScope | None) -> ExecutionResult:
        self.last_script = script
        result = self.executor.run(script.text, dry_run=self.dry_run)
        self.last_result = result
        if op is not None:
            status = "skipped" if result.dry_run else "success"
            name = f"script.{script.operation.value}"
            op.add_step(name, status=status, detail=script.backend.value)
        return result

    @staticmethod
    def _ensure_unique(document: SitesDocument, candidate: Site) -> None:
        for site in document.sites:
            if site.id == candidate.id:
                continue
            if site.path == candidate.path:
                raise ValidationError(
                    f"Path {candidate.path} is already registered as '{site.name}'."
                )
            if site.name == candidate.name:
                raise ValidationError(f"A site named '{candidate.name}' already exists.")
            if site.domain == candidate.domain:
                raise ValidationError(
                    f"Domain {candidate.domain} is already used by site '{site.name}'."
                )


def _ensure_distinct_domains(sites: Sequence[Site]) -> None:
    seen: dict[str, str] = {}
    for site in sites:
        other = seen.get(site.domain)
        if other is not None:
            raise ValidationError(
                f"Sites '{other}' and '{site.name}' would both use domain {site.domain}."
            )
        seen[site.domain] = site.name


__all__ = ["SiteManager"]
