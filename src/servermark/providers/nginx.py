"""Nginx provider: ``sites-available`` fragments enabled through symlinks."""
from __future__ import annotations

import shlex
from dataclasses import dataclass
from pathlib import Path

from ..models import Site
from ..templates import TemplateEngine
from ..tls import DEFAULT_KEY_SIZE, DEFAULT_VALIDITY_DAYS, TLSMaterial
from .base import DEFAULT_PHP_SOCKET_PATTERN, ensure_renderable, php_socket_path

TEMPLATE_NAME = "nginx/site.conf.j2"


@dataclass(slots=True)
class NginxProvider:
    """Render nginx server blocks for servermark sites."""

    templates: TemplateEngine
    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    ssl_dir: Path = Path("/etc/servermark/ssl")
    prefix: str = "servermark-"
    nginx_bin: str = "nginx"
    openssl_bin: str = "openssl"
    php_socket_pattern: str = DEFAULT_PHP_SOCKET_PATTERN

    def site_name(self, site: Site) -> str:
        """Return the canonical fragment name for *site*."""
        return f"{self.prefix}{site.slug}"

    def site_path(self, site: Site) -> Path:
        """Return the path to the fragment in sites-available."""
        return self.sites_available / self.site_name(site)

    def enabled_path(self, site: Site) -> Path:
        """Return the path of the symlink in sites-enabled for *site*."""
        return self.sites_enabled / self.site_name(site)

    def fragment_paths(self, site: Site) -> list[Path]:
        """Return every file that belongs to *site*."""
        return [self.enabled_path(site), self.site_path(site)]

    @property
    def fragment_globs(self) -> list[str]:
        """Return shell globs matching all generated fragments and links."""
        prefix = shlex.quote(self.prefix)
        return [
            f"{shlex.quote(str(self.sites_enabled))}/{prefix}*",
            f"{shlex.quote(str(self.sites_available))}/{prefix}*",
        ]

    def tls_material(self, site: Site) -> TLSMaterial:
        """Return the certificate/key paths used by *site* when secured."""
        return TLSMaterial(
            certificate=self.ssl_dir / f"{site.domain}.crt",
            key=self.ssl_dir / f"{site.domain}.key",
        )

    def certificate_command(self, site: Site) -> str:
        """Return the openssl line creating a self-signed pair for *site*.

        The key is generated by the privileged shell itself and never passes
        through servermark.
        """
        material = self.tls_material(site)
        argv = [
            self.openssl_bin,
            "req",
            "-x509",
            "-nodes",
            "-newkey",
            f"rsa:{DEFAULT_KEY_SIZE}",
            "-days",
            str(DEFAULT_VALIDITY_DAYS),
            "-subj",
            f"/CN={site.domain}",
            "-addext",
            f"subjectAltName=DNS:{site.domain}",
            "-keyout",
            str(material.key),
            "-out",
            str(material.certificate),
        ]
        return shlex.join(argv)

    def context(self, site: Site) -> dict[str, object]:
        """Return the template context for *site*."""
        material = self.tls_material(site)
        return {
            "domain": site.domain,
            "secured": site.secured,
            "certificate": str(material.certificate),
            "certificate_key": str(material.key),
            "document_root": site.document_root,
            "php_socket": php_socket_path(site.php_version, self.php_socket_pattern),
        }

    def render(self, site: Site) -> str:
        """Return the nginx server block(s) for *site*."""
        ensure_renderable(site)
        return self.templates.render_to_string(TEMPLATE_NAME, self.context(site))


__all__ = ["NginxProvider"]
