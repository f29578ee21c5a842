"""State management helpers."""
from __future__ import annotations

from .models import SERVICE_WHITELIST, DatabaseParams, Site, SiteRecordError, SiteType
from .registry import SiteRegistry, StateRegistryError

__all__ = [
    "SERVICE_WHITELIST",
    "DatabaseParams",
    "Site",
    "SiteRecordError",
    "SiteRegistry",
    "SiteType",
    "StateRegistryError",
]
