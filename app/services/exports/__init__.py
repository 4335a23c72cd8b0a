"""Data export: collection, rendering, background runner and service."""

from app.services.exports.runner import ExportRunner
from app.services.exports.service import ExportService

__all__ = [
    "ExportRunner",
    "ExportService",
]
