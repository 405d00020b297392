"""Registry store tests."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from servermark.errors import PersistenceError
from servermark.models import Backend, BackendSelection, Site, SitesDocument, SiteType
from servermark.state import BACKEND_DOCUMENT, SITES_DOCUMENT, SitesStore, StateRegistry


def _site(name: str = "blog", *, path: str = "/home/dev/blog") -> Site:
    return Site(
        id=f"site-{name}",
        name=name,
        path=path,
        domain=f"{name}.test",
        php_version="8.3",
    )


def test_read_missing_files_returns_default(tmp_path: Path) -> None:
    """Missing files return the provided default structure."""
    registry = StateRegistry(tmp_path)

    assert registry.read("sites.json", default={"sites": []}) == {"sites": []}
    assert registry.read_mapping("sites.json") is None


def test_write_and_read_roundtrip(tmp_path: Path) -> None:
    """Writing a JSON document and reading it back succeeds."""
    registry = StateRegistry(tmp_path / "state")
    payload = {"sites": [{"id": "site-1"}], "tld": "test"}

    registry.write("sites.json", payload)

    path = tmp_path / "state" / "sites.json"
    assert path.exists()
    assert (path.stat().st_mode & 0o777) == 0o644
    assert json.loads(path.read_text(encoding="utf-8")) == payload
    assert registry.read("sites.json") == payload
    # No temporary files are left behind.
    assert sorted(p.name for p in path.parent.iterdir()) == ["sites.json"]


def test_yaml_documents_use_yaml(tmp_path: Path) -> None:
    """Documents with a YAML suffix are serialised as YAML."""
    registry = StateRegistry(tmp_path)

    registry.write("extra.yml", {"active": "nginx"})

    assert (tmp_path / "extra.yml").read_text(encoding="utf-8") == "active: nginx\n"
    assert registry.read_mapping("extra.yml") == {"active": "nginx"}


def test_malformed_document_raises(tmp_path: Path) -> None:
    """Corrupt JSON is reported instead of silently replaced with defaults."""
    (tmp_path / "sites.json").write_text("{not json", encoding="utf-8")
    registry = StateRegistry(tmp_path)

    with pytest.raises(PersistenceError, match="Failed to parse"):
        registry.read("sites.json")


def test_non_mapping_document_raises(tmp_path: Path) -> None:
    """A list at the top level is rejected by ``read_mapping``."""
    (tmp_path / "sites.json").write_text("[]", encoding="utf-8")

    with pytest.raises(PersistenceError, match="mapping"):
        StateRegistry(tmp_path).read_mapping("sites.json")


def test_sites_store_defaults_when_missing(tmp_path: Path) -> None:
    """A fresh state directory yields the default document and backend."""
    store = SitesStore(StateRegistry(tmp_path))

    document = store.load()

    assert document.sites == ()
    assert document.tld == "test"
    assert document.sites_path == str(Path.home() / "Code")
    assert store.load_backend() == BackendSelection(active=Backend.CADDY)


def test_sites_store_roundtrip(tmp_path: Path) -> None:
    """Saving then loading yields an equal document."""
    store = SitesStore(StateRegistry(tmp_path))
    document = SitesDocument(
        sites=(_site("blog"), _site("shop", path="/home/dev/shop").with_changes(secured=True)),
        tld="test",
        sites_path="/home/dev/Code",
    )

    store.save(document)

    assert store.load() == document
    raw = json.loads((tmp_path / SITES_DOCUMENT).read_text(encoding="utf-8"))
    assert [entry["name"] for entry in raw["sites"]] == ["blog", "shop"]
    assert raw["sites"][1]["secured"] is True


def test_sites_store_reads_original_documents(tmp_path: Path) -> None:
    """Documents written by earlier versions load, including the laravel block."""
    (tmp_path / SITES_DOCUMENT).write_text(
        json.dumps(
            {
                "sites": [
                    {
                        "id": "site-1700000000000",
                        "name": "shop",
                        "path": "/home/dev/shop",
                        "domain": "shop.test",
                        "php_version": "8.2",
                        "secured": False,
                        "site_type": "laravel",
                        "laravel": {
                            "detected": True,
                            "version": None,
                            "constraint": "^11.0",
                            "php_version": "^8.2",
                        },
                    }
                ],
                "tld": "test",
                "sites_path": "/home/dev/Code",
            }
        ),
        encoding="utf-8",
    )

    (site,) = SitesStore(StateRegistry(tmp_path)).load().sites

    assert site.id == "site-1700000000000"
    assert site.site_type is SiteType.LARAVEL
    assert site.proxy_target is None
    assert site.framework is not None
    assert site.framework.constraint == "^11.0"


def test_sites_store_rejects_invalid_entries(tmp_path: Path) -> None:
    """Entries missing required fields are reported as persistence errors."""
    (tmp_path / SITES_DOCUMENT).write_text('{"sites": [{"name": "x"}]}', encoding="utf-8")

    with pytest.raises(PersistenceError, match="Invalid site registry"):
        SitesStore(StateRegistry(tmp_path)).load()


def test_save_backend_preserves_extra_keys(tmp_path: Path) -> None:
    """Fields written by other tools survive a backend switch."""
    (tmp_path / BACKEND_DOCUMENT).write_text(
        '{"active": "caddy", "caddy_installed": true, "nginx_installed": true}',
        encoding="utf-8",
    )
    store = SitesStore(StateRegistry(tmp_path))

    store.save_backend(BackendSelection(active=Backend.NGINX))

    raw = json.loads((tmp_path / BACKEND_DOCUMENT).read_text(encoding="utf-8"))
    assert raw == {"active": "nginx", "caddy_installed": True, "nginx_installed": True}
    assert store.load_backend().active is Backend.NGINX


def test_unknown_backend_is_a_persistence_error(tmp_path: Path) -> None:
    """An unsupported backend name in the document is reported."""
    (tmp_path / BACKEND_DOCUMENT).write_text('{"active": "apache"}', encoding="utf-8")

    with pytest.raises(PersistenceError, match="Invalid backend selection"):
        SitesStore(StateRegistry(tmp_path)).load_backend()
