"""Route modules - imported lazily by the app factory."""
from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter

logger = logging.getLogger(__name__)

# Module paths that provide a ``router`` attribute.
_ROUTER_MODULES = [
    "audit_export.api.routers.health",
    "audit_export.api.routers.exports",
    "audit_export.api.routers.queue",
    "audit_export.api.routers.config_mgmt",
    "audit_export.api.routers.logs",
]


def all_routers() -> List[APIRouter]:
    """Import and return every router module's ``router``."""
    import importlib

    return [importlib.import_module(mod_path).router for mod_path in _ROUTER_MODULES]
