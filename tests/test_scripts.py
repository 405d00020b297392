"""Tests for reconciliation script assembly."""
from __future__ import annotations

from pathlib import Path

import pytest

from servermark.config import HostsConfig, WebServerConfig
from servermark.errors import UnsupportedSiteError, ValidationError
from servermark.models import Backend, Site, SiteType
from servermark.providers import SystemdProvider, WebServerProviders
from servermark.scripts import Operation, ScriptBuilder
from servermark.templates import TemplateEngine

CADDY_DIR = Path("/etc/caddy/sites.d")
NGINX_AVAILABLE = Path("/etc/nginx/sites-available")
BLOG_HOSTS_ADD = (
    "grep -qE '^127\\.0\\.0\\.1[[:space:]]+blog\\.test$' /etc/hosts "
    "|| printf '%s\\n' '127.0.0.1 blog.test' >> /etc/hosts"
)
BLOG_HOSTS_REMOVE = "sed -i -E '/^127\\.0\\.0\\.1[[:space:]]+blog\\.test$/d' /etc/hosts"


def _site(name: str, **changes: object) -> Site:
    site = Site(
        id=f"site-{name}",
        name=name,
        path=f"/home/dev/{name}",
        domain=f"{name}.test",
        php_version="8.3",
    )
    return site.with_changes(**changes)


@pytest.fixture
def builder() -> ScriptBuilder:
    """Return a builder using the default layout."""
    return ScriptBuilder(
        WebServerProviders.from_config(WebServerConfig()),
        SystemdProvider(),
        HostsConfig(),
    )


def test_operation_parse_accepts_dashes() -> None:
    """CLI spellings map onto operations; unknown names are rejected."""
    assert Operation.parse("sync-all") is Operation.SYNC_ALL
    assert Operation.parse(" Switch_Server ") is Operation.SWITCH_SERVER
    assert Operation.REMOVE_SITE.needs_target is True
    assert Operation.SYNC_ALL.needs_target is False
    with pytest.raises(ValidationError, match="Unknown operation"):
        Operation.parse("restart")


def test_script_header_and_footer(builder: ScriptBuilder) -> None:
    """Scripts abort on the first failing command and end explicitly."""
    script = builder.build(Operation.SYNC_ALL, [], Backend.CADDY)

    lines = script.text.splitlines()
    assert lines[:4] == [
        "#!/bin/bash",
        "# servermark: sync_all (caddy)",
        "set -euo pipefail",
        "umask 022",
    ]
    assert lines[-1] == "exit 0"
    assert str(script) == script.text


def test_preamble_prepares_directories_and_hostnames(builder: ScriptBuilder) -> None:
    """Directories, the Caddyfile import and container hostnames come first."""
    text = builder.build(Operation.SYNC_ALL, [], Backend.CADDY).text

    assert (
        "install -d -m 0755 -o root -g root /etc/caddy/sites.d /etc/nginx/sites-available "
        "/etc/nginx/sites-enabled /etc/servermark/ssl"
    ) in text
    assert (
        "grep -qxF 'import /etc/caddy/sites.d/*.conf' /etc/caddy/Caddyfile "
        "|| printf '%s\\n' 'import /etc/caddy/sites.d/*.conf' >> /etc/caddy/Caddyfile"
    ) in text
    assert "for host in mysql mariadb postgres redis " in text
    assert "grep -qw -- \"$host\" /etc/hosts || printf '%s %s\\n' 127.0.0.1 \"$host\"" in text


def test_nginx_preamble_skips_caddyfile(builder: ScriptBuilder) -> None:
    """The Caddyfile is only touched when Caddy is active."""
    text = builder.build(Operation.SYNC_ALL, [], Backend.NGINX).text

    assert "Caddyfile" not in text


def test_no_container_hostnames_means_no_loop() -> None:
    """An empty hostname list drops the loop entirely."""
    builder = ScriptBuilder(
        WebServerProviders.from_config(WebServerConfig()),
        SystemdProvider(),
        HostsConfig(container_hostnames=()),
    )

    assert "for host in" not in builder.build(Operation.SYNC_ALL, [], Backend.CADDY).text


def test_sync_all_caddy_rewrites_every_fragment(builder: ScriptBuilder) -> None:
    """A full sync clears old fragments and writes one per site."""
    sites = [_site("blog"), _site("shop")]

    script = builder.build(Operation.SYNC_ALL, sites, Backend.CADDY)

    assert script.removals == ("/etc/caddy/sites.d/*.conf",)
    assert script.written_paths(CADDY_DIR) == [
        CADDY_DIR / "blog.conf",
        CADDY_DIR / "shop.conf",
    ]
    text = script.text
    assert text.index("rm -f -- /etc/caddy/sites.d/*.conf") < text.index("blog.conf")
    assert "cat > /etc/caddy/sites.d/blog.conf <<'SITEEOF'\nhttp://blog.test {\n" in text
    assert "chmod 0644 /etc/caddy/sites.d/blog.conf" in text
    assert BLOG_HOSTS_ADD in text
    assert text.rstrip().endswith(
        "# reload caddy\nsystemctl reload caddy || systemctl restart caddy\n\nexit 0"
    )


def test_sync_all_nginx_links_and_validates(builder: ScriptBuilder) -> None:
    """Nginx fragments are symlinked into sites-enabled and validated before reload."""
    script = builder.build(Operation.SYNC_ALL, [_site("blog")], Backend.NGINX)

    text = script.text
    assert script.removals == (
        "/etc/nginx/sites-enabled/servermark-*",
        "/etc/nginx/sites-available/servermark-*",
    )
    assert script.written_paths(NGINX_AVAILABLE) == [NGINX_AVAILABLE / "servermark-blog"]
    assert (
        "ln -sfn /etc/nginx/sites-available/servermark-blog "
        "/etc/nginx/sites-enabled/servermark-blog"
    ) in text
    assert text.index("nginx -t") < text.index("systemctl reload nginx")


def test_retired_domains_are_removed_from_hosts(builder: ScriptBuilder) -> None:
    """Sites whose domain changed lose their old hosts entry."""
    old = _site("blog")
    new = old.with_changes(domain="blog.local")

    text = builder.build(Operation.SYNC_ALL, [new], Backend.CADDY, retired=[old]).text

    assert BLOG_HOSTS_REMOVE in text
    assert "'127.0.0.1 blog.local'" in text


def test_add_site_publishes_only_the_target(builder: ScriptBuilder) -> None:
    """Single-site operations leave other fragments alone."""
    blog, shop = _site("blog"), _site("shop")

    script = builder.build(Operation.ADD_SITE, [blog, shop], Backend.CADDY, target=shop)

    assert script.written_paths() == [CADDY_DIR / "shop.conf"]
    assert script.removals == ()
    assert "rm -f" not in script.text


def test_single_site_operations_require_target(builder: ScriptBuilder) -> None:
    """Omitting the target is a validation error."""
    with pytest.raises(ValidationError, match="requires a target"):
        builder.build(Operation.UPDATE_SITE, [_site("blog")], Backend.CADDY)


def test_secured_nginx_site_installs_tls_material_once(builder: ScriptBuilder) -> None:
    """openssl runs only when the certificate or key is missing, under a strict umask."""
    blog = _site("blog", secured=True)

    text = builder.build(Operation.UPDATE_SITE, [blog], Backend.NGINX, target=blog).text

    guard = (
        "if [ ! -f /etc/servermark/ssl/blog.test.crt ] "
        "|| [ ! -f /etc/servermark/ssl/blog.test.key ]; then"
    )
    block = text[text.index(guard) :]
    block = block[: block.index("\nfi\n")]
    openssl = (
        "openssl req -x509 -nodes -newkey rsa:2048 -days 365 -subj /CN=blog.test "
        "-addext subjectAltName=DNS:blog.test -keyout /etc/servermark/ssl/blog.test.key "
        "-out /etc/servermark/ssl/blog.test.crt"
    )
    assert block.index("umask 077") < block.index(openssl) < block.index("umask 022")
    assert block.index(openssl) < block.index("chmod 0644 /etc/servermark/ssl/blog.test.crt")
    assert "PRIVATE KEY" not in text
    assert "listen 443 ssl;" in text


def test_tls_material_is_not_regenerated_between_builds(builder: ScriptBuilder) -> None:
    """Two builds for the same secured site produce the same script."""
    blog = _site("blog", secured=True)

    first = builder.build(Operation.SYNC_ALL, [blog], Backend.NGINX).text
    second = builder.build(Operation.SYNC_ALL, [blog], Backend.NGINX).text

    assert first == second


def test_secured_caddy_site_needs_no_certificate_files(builder: ScriptBuilder) -> None:
    """Caddy issues its own certificates through ``tls internal``."""
    blog = _site("blog", secured=True)

    text = builder.build(Operation.UPDATE_SITE, [blog], Backend.CADDY, target=blog).text

    assert "tls internal" in text
    assert "/etc/servermark/ssl/blog.test" not in text


def test_remove_site_clears_both_backends(builder: ScriptBuilder) -> None:
    """Removal deletes every fragment the site could have and its hosts entry."""
    blog, shop = _site("blog"), _site("shop")

    script = builder.build(Operation.REMOVE_SITE, [shop], Backend.CADDY, target=blog)

    assert script.removals == (
        "/etc/caddy/sites.d/blog.conf",
        "/etc/nginx/sites-enabled/servermark-blog",
        "/etc/nginx/sites-available/servermark-blog",
    )
    assert script.written_paths() == []
    assert BLOG_HOSTS_REMOVE in script.text
    assert "systemctl reload caddy || systemctl restart caddy" in script.text


def test_switch_server_moves_every_site(builder: ScriptBuilder) -> None:
    """Switching stops the old backend and writes all sites for the new one."""
    sites = [_site("blog"), _site("shop"), _site("api")]

    script = builder.build(Operation.SWITCH_SERVER, sites, Backend.NGINX)

    text = script.text
    assert "/etc/caddy/sites.d/*.conf" in script.removals
    assert script.written_paths(CADDY_DIR) == []
    assert len(script.written_paths(NGINX_AVAILABLE)) == 3
    stop = text.index("systemctl stop caddy || true")
    assert stop < text.index("systemctl disable caddy || true")
    assert stop < text.index("servermark-blog")
    assert text.index("nginx -t") < text.index("systemctl enable nginx")
    assert text.index("systemctl enable nginx") < text.index("systemctl start nginx")
    assert "systemctl reload" not in text


def test_proxy_site_aborts_the_build(builder: ScriptBuilder) -> None:
    """A site that cannot be rendered stops the script from being produced."""
    sites = [_site("blog"), _site("api", site_type=SiteType.PROXY)]

    with pytest.raises(UnsupportedSiteError, match="api"):
        builder.build(Operation.SYNC_ALL, sites, Backend.CADDY)


def test_heredoc_delimiter_avoids_collisions(tmp_path: Path) -> None:
    """A fragment containing the delimiter gets a longer one."""
    override = tmp_path / "templates" / "caddy"
    override.mkdir(parents=True)
    (override / "site.j2").write_text("SITEEOF\n{{ domain }}\n", encoding="utf-8")
    engine = TemplateEngine.with_overrides(tmp_path / "templates")
    builder = ScriptBuilder(
        WebServerProviders.from_config(WebServerConfig(), engine),
        SystemdProvider(),
        HostsConfig(),
    )
    blog = _site("blog")

    text = builder.build(Operation.ADD_SITE, [blog], Backend.CADDY, target=blog).text

    assert "<<'SITEEOF_'\nSITEEOF\nblog.test\nSITEEOF_\n" in text


def test_paths_with_spaces_are_quoted() -> None:
    """Configured directories are shell-quoted."""
    builder = ScriptBuilder(
        WebServerProviders.from_config(WebServerConfig(caddy_sites_dir=Path("/srv/my sites"))),
        SystemdProvider(),
        HostsConfig(),
    )
    blog = _site("blog")

    text = builder.build(Operation.ADD_SITE, [blog], Backend.CADDY, target=blog).text

    assert "cat > '/srv/my sites/blog.conf' <<'SITEEOF'" in text


def test_wipe_globs_quote_the_directory() -> None:
    """Fragment globs keep the wildcard outside the quoted directory."""
    builder = ScriptBuilder(
        WebServerProviders.from_config(
            WebServerConfig(
                caddy_sites_dir=Path("/srv/my sites"),
                nginx_sites_available=Path("/srv/nginx avail"),
            )
        ),
        SystemdProvider(),
        HostsConfig(),
    )

    caddy = builder.build(Operation.SYNC_ALL, [_site("blog")], Backend.CADDY)
    nginx = builder.build(Operation.SYNC_ALL, [_site("blog")], Backend.NGINX)

    assert caddy.removals == ("'/srv/my sites'/*.conf",)
    assert "rm -f -- '/srv/my sites'/*.conf" in caddy.text
    assert "'/srv/nginx avail'/servermark-*" in nginx.removals
