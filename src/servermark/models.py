"""Site registry data model.

Sites and registry documents are frozen dataclasses; every mutation goes
through :func:`dataclasses.replace` so the script builder and template
generator can safely share a snapshot. The ``to_dict``/``from_mapping`` pairs
produce the JSON documents stored under the state directory.
"""
from __future__ import annotations

import re
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

from .errors import SiteNotFound, ValidationError

DEFAULT_TLD = "test"
_WHITESPACE = re.compile(r"\s")
_LABEL_PATTERN = re.compile(r"[a-z0-9][a-z0-9._-]*")
_TLD_PATTERN = re.compile(r"[a-z0-9]+(?:-[a-z0-9]+)*")


class SiteType(str, Enum):
    """Framework family detected for a project directory."""

    LARAVEL = "laravel"
    SYMFONY = "symfony"
    WORDPRESS = "wordpress"
    STATIC = "static"
    PROXY = "proxy"

    @property
    def serves_from_public(self) -> bool:
        """Return True when the document root is the ``public`` subdirectory."""
        return self in (SiteType.LARAVEL, SiteType.SYMFONY)


class Backend(str, Enum):
    """Supported web-server backends."""

    CADDY = "caddy"
    NGINX = "nginx"

    @classmethod
    def parse(cls, value: str | Backend) -> Backend:
        """Return the backend named *value* or raise :class:`ValidationError`."""
        if isinstance(value, Backend):
            return value
        normalized = str(value).strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        allowed = ", ".join(member.value for member in cls)
        raise ValidationError(f"Unknown web server '{value}'. Allowed: {allowed}.")

    @property
    def other(self) -> Backend:
        """Return the backend that is not this one."""
        return Backend.NGINX if self is Backend.CADDY else Backend.CADDY


def site_slug(name: str) -> str:
    """Return the lowercase, whitespace-free form of a site name."""
    return _WHITESPACE.sub("-", name).lower()


def compute_domain(name: str, tld: str) -> str:
    """Return the local domain for a site called *name* under *tld*."""
    return f"{site_slug(name)}.{tld}"


def validate_site_name(name: str) -> str:
    """Validate a site name and return it stripped of outer whitespace."""
    normalized = name.strip()
    if not normalized:
        raise ValidationError("Site name must be a non-empty string.")
    if not _LABEL_PATTERN.fullmatch(site_slug(normalized)):
        raise ValidationError(
            f"Site name '{name}' must produce a domain label of letters, numbers, "
            "dots, dashes or underscores."
        )
    return normalized


def validate_tld(tld: str) -> str:
    """Validate and normalise a top-level domain suffix."""
    normalized = tld.strip().lstrip(".").lower()
    if not _TLD_PATTERN.fullmatch(normalized):
        raise ValidationError(f"Invalid top-level domain '{tld}'.")
    return normalized


def new_site_id() -> str:
    """Return a fresh opaque site identifier."""
    return f"site-{uuid.uuid4().hex}"


@dataclass(frozen=True)
class FrameworkInfo:
    """Framework metadata detected from the dependency manager."""

    detected: bool = True
    version: str | None = None
    constraint: str | None = None
    php_version: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "detected": self.detected,
            "version": self.version,
            "constraint": self.constraint,
            "php_version": self.php_version,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> FrameworkInfo:
        """Build framework metadata from a registry mapping."""
        return cls(
            detected=bool(data.get("detected", True)),
            version=_optional_str(data.get("version")),
            constraint=_optional_str(data.get("constraint")),
            php_version=_optional_str(data.get("php_version")),
        )


@dataclass(frozen=True)
class Site:
    """A registered local project."""

    id: str
    name: str
    path: str
    domain: str
    php_version: str
    secured: bool = False
    site_type: SiteType = SiteType.STATIC
    proxy_target: str | None = None
    framework: FrameworkInfo | None = None

    @property
    def slug(self) -> str:
        """Return the file-name friendly form of the site name."""
        return site_slug(self.name)

    @property
    def scheme(self) -> str:
        """Return ``https`` for secured sites, ``http`` otherwise."""
        return "https" if self.secured else "http"

    @property
    def url(self) -> str:
        """Return the site's base URL."""
        return f"{self.scheme}://{self.domain}"

    @property
    def document_root(self) -> str:
        """Return the directory the web server serves files from."""
        if self.site_type.serves_from_public:
            return str(Path(self.path) / "public")
        return self.path

    def with_changes(self, **changes: object) -> Site:
        """Return a copy of the site with *changes* applied."""
        return replace(self, **changes)  # type: ignore[arg-type]

    def to_dict(self) -> dict[str, object]:
        """Return the registry representation of the site."""
        return {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "domain": self.domain,
            "php_version": self.php_version,
            "secured": self.secured,
            "site_type": self.site_type.value,
            "proxy_target": self.proxy_target,
            "laravel": self.framework.to_dict() if self.framework is not None else None,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> Site:
        """Build a site from a registry mapping, raising ``ValueError`` when malformed."""
        missing = [key for key in ("id", "name", "path", "domain") if not data.get(key)]
        if missing:
            raise ValueError(f"Site entry missing {', '.join(missing)}.")
        site_type_raw = str(data.get("site_type", SiteType.STATIC.value)).strip().lower()
        try:
            site_type = SiteType(site_type_raw)
        except ValueError as exc:
            raise ValueError(f"Unknown site type '{site_type_raw}'.") from exc
        framework_raw = data.get("laravel")
        framework = (
            FrameworkInfo.from_mapping(framework_raw)
            if isinstance(framework_raw, Mapping)
            else None
        )
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            path=str(data["path"]),
            domain=str(data["domain"]),
            php_version=str(data.get("php_version") or ""),
            secured=bool(data.get("secured", False)),
            site_type=site_type,
            proxy_target=_optional_str(data.get("proxy_target")),
            framework=framework,
        )


@dataclass(frozen=True)
class SitesDocument:
    """Full registry contents: sites plus global settings."""

    sites: tuple[Site, ...] = ()
    tld: str = DEFAULT_TLD
    sites_path: str = field(default_factory=lambda: str(Path.home() / "Code"))

    def find(self, site_id: str) -> Site:
        """Return the site with *site_id* or raise :class:`SiteNotFound`."""
        for site in self.sites:
            if site.id == site_id:
                return site
        raise SiteNotFound(site_id)

    def find_by_name(self, name: str) -> Site | None:
        """Return the site called *name* if registered."""
        return next((site for site in self.sites if site.name == name), None)

    def with_site(self, site: Site) -> SitesDocument:
        """Return a document with *site* appended, or replacing the same id."""
        if not any(existing.id == site.id for existing in self.sites):
            return replace(self, sites=(*self.sites, site))
        return replace(
            self,
            sites=tuple(site if existing.id == site.id else existing for existing in self.sites),
        )

    def without_site(self, site_id: str) -> SitesDocument:
        """Return a document without the site identified by *site_id*."""
        self.find(site_id)
        return replace(self, sites=tuple(site for site in self.sites if site.id != site_id))

    def to_dict(self) -> dict[str, object]:
        """Return the registry document as stored on disk."""
        return {
            "sites": [site.to_dict() for site in self.sites],
            "tld": self.tld,
            "sites_path": self.sites_path,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> SitesDocument:
        """Build the document from its on-disk mapping."""
        raw_sites = data.get("sites", [])
        if not isinstance(raw_sites, Sequence) or isinstance(raw_sites, (str, bytes)):
            raise ValueError("'sites' must be a list.")
        sites: list[Site] = []
        for index, entry in enumerate(raw_sites):
            if not isinstance(entry, Mapping):
                raise ValueError(f"sites[{index}] must be a mapping.")
            sites.append(Site.from_mapping(entry))
        default = cls()
        return cls(
            sites=tuple(sites),
            tld=str(data.get("tld") or default.tld),
            sites_path=str(data.get("sites_path") or default.sites_path),
        )


@dataclass(frozen=True)
class BackendSelection:
    """Which backend currently serves the registered sites."""

    active: Backend = Backend.CADDY

    def to_dict(self) -> dict[str, object]:
        """Return the document as stored on disk."""
        return {"active": self.active.value}

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> BackendSelection:
        """Build the selection from its on-disk mapping."""
        raw = data.get("active", Backend.CADDY.value)
        try:
            return cls(active=Backend.parse(str(raw)))
        except ValidationError as exc:
            raise ValueError(str(exc)) from exc


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


__all__ = [
    "Backend",
    "BackendSelection",
    "DEFAULT_TLD",
    "FrameworkInfo",
    "Site",
    "SiteType",
    "SitesDocument",
    "compute_domain",
    "new_site_id",
    "site_slug",
    "validate_site_name",
    "validate_tld",
]
