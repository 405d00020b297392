"""Caddy provider: one ``<slug>.conf`` fragment per site in a sites directory."""
from __future__ import annotations

import shlex
from dataclasses import dataclass
from pathlib import Path

from ..models import Site
from ..templates import TemplateEngine
from .base import DEFAULT_PHP_SOCKET_PATTERN, ensure_renderable, php_socket_path

TEMPLATE_NAME = "caddy/site.j2"


@dataclass(slots=True)
class CaddyProvider:
    """Render Caddy site blocks and name their files."""

    templates: TemplateEngine
    sites_dir: Path = Path("/etc/caddy/sites.d")
    caddyfile: Path = Path("/etc/caddy/Caddyfile")
    php_socket_pattern: str = DEFAULT_PHP_SOCKET_PATTERN

    def fragment_name(self, site: Site) -> str:
        """Return the file name of the fragment for *site*."""
        return f"{site.slug}.conf"

    def fragment_path(self, site: Site) -> Path:
        """Return the path of the fragment for *site*."""
        return self.sites_dir / self.fragment_name(site)

    def fragment_paths(self, site: Site) -> list[Path]:
        """Return every file that belongs to *site*."""
        return [self.fragment_path(site)]

    @property
    def fragment_glob(self) -> str:
        """Return the shell glob matching all generated fragments."""
        return f"{shlex.quote(str(self.sites_dir))}/*.conf"

    @property
    def import_directive(self) -> str:
        """Return the Caddyfile line that pulls in the fragments."""
        return f"import {self.sites_dir}/*.conf"

    def context(self, site: Site) -> dict[str, object]:
        """Return the template context for *site*."""
        return {
            "scheme": site.scheme,
            "domain": site.domain,
            "secured": site.secured,
            "document_root": site.document_root,
            "php_socket": php_socket_path(site.php_version, self.php_socket_pattern),
        }

    def render(self, site: Site) -> str:
        """Return the Caddy site block for *site*."""
        ensure_renderable(site)
        return self.templates.render_to_string(TEMPLATE_NAME, self.context(site))


__all__ = ["CaddyProvider"]
