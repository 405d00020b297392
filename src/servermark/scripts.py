"""Assemble privileged reconciliation scripts.

A :class:`ScriptBuilder` turns one user action plus an immutable snapshot of
the registry into a single bash script. The whole text is produced in memory
before anything runs; the executor then hands it to the privilege helper in
one invocation.

Every script has the same shape::

    #!/bin/bash
    set -euo pipefail
    <preamble: directories, Caddyfile import, container hostnames>
    <operation body: fragments, TLS material, hosts entries>
    <validate and reload the active backend>
"""
from __future__ import annotations

import shlex
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .config import HostsConfig
from .errors import ValidationError
from .models import Backend, Site
from .providers.systemd import SystemdProvider
from .providers.webserver import WebServerProviders

SHEBANG = "#!/bin/bash"
_ERE_SPECIAL = set(".[]()*+?{}|^$\\")


class Operation(str, Enum):
    """Reconciliation operations a script can perform."""

    SYNC_ALL = "sync_all"
    ADD_SITE = "add_site"
    UPDATE_SITE = "update_site"
    REMOVE_SITE = "remove_site"
    SWITCH_SERVER = "switch_server"

    @classmethod
    def parse(cls, value: str | Operation) -> Operation:
        """Return the operation named *value* (dashes accepted)."""
        if isinstance(value, Operation):
            return value
        normalized = value.strip().lower().replace("-", "_")
        try:
            return cls(normalized)
        except ValueError as exc:
            valid = ", ".join(op.value for op in cls)
            message = f"Unknown operation '{value}'. Expected one of: {valid}."
            raise ValidationError(message) from exc

    @property
    def needs_target(self) -> bool:
        """Return True when the operation acts on a single site."""
        return self in {Operation.ADD_SITE, Operation.UPDATE_SITE, Operation.REMOVE_SITE}


@dataclass(frozen=True)
class ReconcileScript:
    """A fully assembled script plus what it will do."""

    operation: Operation
    backend: Backend
    text: str
    sites: tuple[Site, ...] = ()
    target: Site | None = None
    writes: tuple[tuple[Path, str], ...] = ()
    removals: tuple[str, ...] = ()

    def written_paths(self, directory: Path | None = None) -> list[Path]:
        """Return fragment paths the script writes, optionally under *directory*."""
        paths = [path for path, _ in self.writes]
        if directory is None:
            return paths
        return [path for path in paths if path.parent == directory]

    def __str__(self) -> str:
        return self.text


@dataclass
class _Plan:
    lines: list[str] = field(default_factory=list)
    writes: list[tuple[Path, str]] = field(default_factory=list)
    removals: list[str] = field(default_factory=list)

    def emit(self, *lines: str) -> None:
        self.lines.extend(lines)

    def blank(self) -> None:
        if self.lines and self.lines[-1] != "":
            self.lines.append("")


class ScriptBuilder:
    """Build reconciliation scripts for Caddy and Nginx."""

    def __init__(
        self,
        webservers: WebServerProviders,
        systemd: SystemdProvider,
        hosts: HostsConfig,
    ) -> None:
        """Store the collaborators used to render each section."""
        self.webservers = webservers
        self.systemd = systemd
        self.hosts = hosts

    def build(
        self,
        operation: Operation | str,
        sites: Sequence[Site],
        backend: Backend,
        target: Site | None = None,
        retired: Sequence[Site] = (),
    ) -> ReconcileScript:
        """Return the script performing *operation* against *backend*.

        ``sites`` is the registry snapshot after the mutation. ``target`` is
        required for single-site operations; for ``remove_site`` it is the
        site that was just removed and is therefore absent from ``sites``.
        ``retired`` lists previous versions of sites whose domains changed;
        their hosts entries are dropped during ``sync_all``.
        """
        op = Operation.parse(operation)
        if op.needs_target and target is None:
            raise ValidationError(f"Operation '{op.value}' requires a target site.")
        snapshot = tuple(sites)

        plan = _Plan()
        plan.emit(
            SHEBANG,
            f"# servermark: {op.value} ({backend.value})",
            "set -euo pipefail",
            "umask 022",
        )
        plan.blank()
        self._preamble(plan, backend)

        if op is Operation.SYNC_ALL:
            self._sync_all(plan, snapshot, backend, retired)
        elif op is Operation.ADD_SITE or op is Operation.UPDATE_SITE:
            assert target is not None
            self._publish_site(plan, target, backend)
            self._reload(plan, backend)
        elif op is Operation.REMOVE_SITE:
            assert target is not None
            self._remove_site(plan, target, backend)
        elif op is Operation.SWITCH_SERVER:
            self._switch_server(plan, snapshot, backend)
        else:  # pragma: no cover - enum is closed
            raise ValidationError(f"Unsupported operation: {op!r}")

        plan.blank()
        plan.emit("exit 0")
        return ReconcileScript(
            operation=op,
            backend=backend,
            text="\n".join(plan.lines) + "\n",
            sites=snapshot,
            target=target,
            writes=tuple(plan.writes),
            removals=tuple(plan.removals),
        )

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------
    def _preamble(self, plan: _Plan, backend: Backend) -> None:
        caddy = self.webservers.caddy
        nginx = self.webservers.nginx
        dirs = [caddy.sites_dir, nginx.sites_available, nginx.sites_enabled, nginx.ssl_dir]
        plan.emit("# directories")
        plan.emit("install -d -m 0755 -o root -g root " + " ".join(_q(d) for d in dirs))

        if backend is Backend.CADDY:
            directive = caddy.import_directive
            plan.blank()
            plan.emit(
                "# caddyfile import",
                f"mkdir -p {_q(caddy.caddyfile.parent)}",
                f"touch {_q(caddy.caddyfile)}",
                f"grep -qxF {_q(directive)} {_q(caddy.caddyfile)} "
                f"|| printf '%s\\n' {_q(directive)} >> {_q(caddy.caddyfile)}",
            )

        names = list(self.hosts.container_hostnames)
        if names:
            hosts_file = _q(self.hosts.file)
            plan.blank()
            plan.emit(
                "# container hostnames",
                f"for host in {' '.join(_q(name) for name in names)}; do",
                f'    grep -qw -- "$host" {hosts_file} '
                f"|| printf '%s %s\\n' {_q(self.hosts.address)} \"$host\" >> {hosts_file}",
                "done",
            )

    def _sync_all(
        self,
        plan: _Plan,
        sites: Sequence[Site],
        backend: Backend,
        retired: Sequence[Site] = (),
    ) -> None:
        self._wipe(plan, backend)
        if retired:
            plan.blank()
            plan.emit("# retired domains", *(self._hosts_remove(site) for site in retired))
        for site in sites:
            self._publish_site(plan, site, backend)
        self._reload(plan, backend)

    def _remove_site(self, plan: _Plan, site: Site, backend: Backend) -> None:
        plan.blank()
        plan.emit(f"# remove {site.name}")
        paths: list[Path] = []
        for each in (Backend.CADDY, Backend.NGINX):
            paths.extend(self.webservers.fragment_paths(site, each))
        plan.emit("rm -f -- " + " ".join(_q(path) for path in paths))
        plan.removals.extend(str(path) for path in paths)
        plan.emit(self._hosts_remove(site))
        self._reload(plan, backend)

    def _switch_server(self, plan: _Plan, sites: Sequence[Site], backend: Backend) -> None:
        outgoing = backend.other
        plan.blank()
        plan.emit(f"# stop {outgoing.value}", *self.systemd.stop_and_disable(outgoing))
        self._wipe(plan, outgoing)
        self._wipe(plan, backend)
        for site in sites:
            self._publish_site(plan, site, backend)
        self._validate(plan, backend)
        plan.blank()
        plan.emit(f"# start {backend.value}", *self.systemd.enable_and_start(backend))

    def _publish_site(self, plan: _Plan, site: Site, backend: Backend) -> None:
        provider = self.webservers.for_backend(backend)
        text = provider.render(site)
        plan.blank()
        plan.emit(f"# site {site.name} ({site.domain})")
        if backend is Backend.CADDY:
            path = self.webservers.caddy.fragment_path(site)
            plan.emit(*_write_file(path, text), f"chmod 0644 {_q(path)}")
            plan.writes.append((path, text))
        else:
            nginx = self.webservers.nginx
            path = nginx.site_path(site)
            plan.emit(
                *_write_file(path, text),
                f"chmod 0644 {_q(path)}",
                f"ln -sfn {_q(path)} {_q(nginx.enabled_path(site))}",
            )
            plan.writes.append((path, text))
            if site.secured:
                self._tls_material(plan, site)
        plan.emit(self._hosts_add(site))

    def _tls_material(self, plan: _Plan, site: Site) -> None:
        nginx = self.webservers.nginx
        material = nginx.tls_material(site)
        crt, key = _q(material.certificate), _q(material.key)
        plan.emit(
            f"if [ ! -f {crt} ] || [ ! -f {key} ]; then",
            "    umask 077",
            f"    {nginx.certificate_command(site)}",
            "    umask 022",
            f"    chmod 0644 {crt}",
            "fi",
        )

    def _wipe(self, plan: _Plan, backend: Backend) -> None:
        plan.blank()
        plan.emit(f"# clear {backend.value} fragments")
        if backend is Backend.CADDY:
            globs = [self.webservers.caddy.fragment_glob]
        else:
            globs = self.webservers.nginx.fragment_globs
        plan.emit("rm -f -- " + " ".join(globs))
        plan.removals.extend(globs)

    def _validate(self, plan: _Plan, backend: Backend) -> None:
        if backend is Backend.NGINX:
            plan.blank()
            plan.emit("# validate", f"{self.webservers.nginx.nginx_bin} -t")

    def _reload(self, plan: _Plan, backend: Backend) -> None:
        self._validate(plan, backend)
        plan.blank()
        plan.emit(f"# reload {backend.value}", self.systemd.reload_or_restart(backend))

    def _hosts_line(self, site: Site) -> str:
        return f"{self.hosts.address} {site.domain}"

    def _hosts_pattern(self, site: Site) -> str:
        return f"^{_ere_escape(self.hosts.address)}[[:space:]]+{_ere_escape(site.domain)}$"

    def _hosts_add(self, site: Site) -> str:
        hosts_file = _q(self.hosts.file)
        return (
            f"grep -qE {_q(self._hosts_pattern(site))} {hosts_file} "
            f"|| printf '%s\\n' {_q(self._hosts_line(site))} >> {hosts_file}"
        )

    def _hosts_remove(self, site: Site) -> str:
        expression = f"/{self._hosts_pattern(site)}/d"
        return f"sed -i -E {_q(expression)} {_q(self.hosts.file)}"


def _q(value: object) -> str:
    return shlex.quote(str(value))


def _ere_escape(text: str) -> str:
    return "".join(f"\\{char}" if char in _ERE_SPECIAL else char for char in text)


def _write_file(path: Path, text: str, *, delimiter: str = "SITEEOF") -> list[str]:
    """Return lines writing *text* to *path* through a quoted heredoc."""
    body = text if text.endswith("\n") else text + "\n"
    existing = set(body.splitlines())
    while delimiter in existing:
        delimiter += "_"
    return [f"cat > {_q(path)} <<'{delimiter}'", body[:-1], delimiter]


__all__ = [
    "Operation",
    "ReconcileScript",
    "SHEBANG",
    "ScriptBuilder",
]
