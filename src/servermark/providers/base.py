"""Helpers shared by the Caddy and Nginx fragment providers."""
from __future__ import annotations

from ..errors import UnsupportedSiteError
from ..models import Site, SiteType

DEFAULT_PHP_SOCKET_PATTERN = "/var/run/php/php{version}-fpm.sock"


def php_socket_path(php_version: str, pattern: str = DEFAULT_PHP_SOCKET_PATTERN) -> str:
    """Return the PHP-FPM unix socket serving *php_version*."""
    return pattern.format(version=php_version)


def ensure_renderable(site: Site) -> None:
    """Raise :class:`UnsupportedSiteError` for sites no template can serve."""
    if site.site_type is SiteType.PROXY:
        # Reverse-proxy sites need a proxy directive, not a PHP document root.
        raise UnsupportedSiteError(
            site.name,
            "proxy sites are not supported by the fragment templates; "
            "configure the reverse proxy for "
            f"{site.proxy_target or 'its upstream'} manually.",
        )
    if not site.php_version:
        raise UnsupportedSiteError(site.name, "no PHP version recorded.")


__all__ = ["DEFAULT_PHP_SOCKET_PATTERN", "ensure_renderable", "php_socket_path"]
