"""State helpers for the servermark registry documents."""
from __future__ import annotations

from .registry import StateRegistry, StateRegistryError
from .sites import BACKEND_DOCUMENT, SITES_DOCUMENT, SitesStore

__all__ = [
    "BACKEND_DOCUMENT",
    "SITES_DOCUMENT",
    "SitesStore",
    "StateRegistry",
    "StateRegistryError",
]
