"""Backend dispatch for fragment rendering."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from ..config import WebServerConfig
from ..models import Backend, Site
from ..templates import TemplateEngine
from .caddy import CaddyProvider
from .nginx import NginxProvider


@dataclass(slots=True)
class WebServerProviders:
    """The Caddy and Nginx providers, addressed by :class:`Backend`."""

    caddy: CaddyProvider
    nginx: NginxProvider

    @classmethod
    def from_config(
        cls,
        config: WebServerConfig,
        templates: TemplateEngine | None = None,
    ) -> WebServerProviders:
        """Build both providers from the ``webserver`` config section."""
        engine = templates or TemplateEngine.with_overrides(None)
        return cls(
            caddy=CaddyProvider(
                templates=engine,
                sites_dir=config.caddy_sites_dir,
                caddyfile=config.caddyfile,
                php_socket_pattern=config.php_socket_pattern,
            ),
            nginx=NginxProvider(
                templates=engine,
                sites_available=config.nginx_sites_available,
                sites_enabled=config.nginx_sites_enabled,
                ssl_dir=config.ssl_dir,
                prefix=config.fragment_prefix,
                nginx_bin=config.nginx_bin,
                openssl_bin=config.openssl_bin,
                php_socket_pattern=config.php_socket_pattern,
            ),
        )

    def for_backend(self, backend: Backend) -> CaddyProvider | NginxProvider:
        """Return the provider for *backend*."""
        if backend is Backend.CADDY:
            return self.caddy
        if backend is Backend.NGINX:
            return self.nginx
        raise ValueError(f"Unknown backend: {backend!r}")

    def render(self, site: Site, backend: Backend) -> str:
        """Return the fragment text for *site* under *backend*."""
        return self.for_backend(backend).render(site)

    def fragment_paths(self, site: Site, backend: Backend) -> list[Path]:
        """Return every file *backend* keeps for *site*."""
        return self.for_backend(backend).fragment_paths(site)


def render_fragment(
    site: Site,
    backend: Backend,
    *,
    engine: TemplateEngine | None = None,
) -> str:
    """Render *site* for *backend* with the default layout and packaged templates."""
    providers = WebServerProviders.from_config(WebServerConfig(), engine)
    return providers.render(site, backend)


__all__ = ["WebServerProviders", "render_fragment"]
