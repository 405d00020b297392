"""Typed access to the site registry and backend selection documents."""
from __future__ import annotations

from dataclasses import dataclass

from ..models import BackendSelection, SitesDocument
from .registry import StateRegistry, StateRegistryError

SITES_DOCUMENT = "sites.json"
BACKEND_DOCUMENT = "webserver.json"


@dataclass(frozen=True)
class SitesStore:
    """Load and persist :class:`SitesDocument` and :class:`BackendSelection`."""

    registry: StateRegistry

    def load(self) -> SitesDocument:
        """Return the registry, or a default document when none exists yet."""
        data = self.registry.read_mapping(SITES_DOCUMENT)
        if data is None:
            return SitesDocument()
        try:
            return SitesDocument.from_mapping(data)
        except ValueError as exc:
            path = self.registry.path_for(SITES_DOCUMENT)
            raise StateRegistryError(f"Invalid site registry {path}: {exc}") from exc

    def save(self, document: SitesDocument) -> None:
        """Persist *document* atomically."""
        self.registry.write(SITES_DOCUMENT, document.to_dict())

    def load_backend(self) -> BackendSelection:
        """Return the active backend selection (Caddy when unset)."""
        data = self.registry.read_mapping(BACKEND_DOCUMENT)
        if data is None:
            return BackendSelection()
        try:
            return BackendSelection.from_mapping(data)
        except ValueError as exc:
            path = self.registry.path_for(BACKEND_DOCUMENT)
            raise StateRegistryError(f"Invalid backend selection {path}: {exc}") from exc

    def save_backend(self, selection: BackendSelection) -> None:
        """Persist *selection*, keeping any extra keys already in the document."""
        existing = self.registry.read_mapping(BACKEND_DOCUMENT) or {}
        payload = dict(existing)
        payload.update(selection.to_dict())
        self.registry.write(BACKEND_DOCUMENT, payload)


__all__ = ["BACKEND_DOCUMENT", "SITES_DOCUMENT", "SitesStore"]
