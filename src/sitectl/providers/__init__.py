"""Drivers for the external systems a site is built from."""
from __future__ import annotations

from .acme import CertbotClient
from .compose import ComposeProvider
from .database import DatabaseProvider
from .provisioner import SiteProvisioner

__all__ = ["CertbotClient", "ComposeProvider", "DatabaseProvider", "SiteProvisioner"]
