"""Bulk import services (parse, classify, import, template export)."""

from registration_ingestion.services.reconciliation_service import ReconciliationEngine
from registration_ingestion.services.template_export import BulkTemplateExporter

__all__ = [
    "BulkTemplateExporter",
    "ReconciliationEngine",
]
