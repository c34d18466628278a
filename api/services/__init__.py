"""Service layer: business logic wrapped by the routers."""
from .export_service import ExportService

__all__ = ["ExportService"]
