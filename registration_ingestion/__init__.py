"""
registration_ingestion -- Bulk spreadsheet import for registration requests.

Reads uploaded xlsx/csv files, validates and reconciles each row against
the ERP, and turns the valid rows into at most two multi-item drafts
(one NEW batch, one ALTERATION batch).  Also generates the downloadable
bulk template for a registration template.

Architecture:
    registration_ingestion/ is a top-level package.  Nothing in kernel/
    or engines/ imports from ingestion.
"""
