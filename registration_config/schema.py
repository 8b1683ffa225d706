"""
Registration configuration schema.

Frozen dataclasses the YAML set is parsed into.  The kernel never sees
these types; ``registration_config.template_provider`` and
``registration_config.bridges`` translate them into kernel inputs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

# ---------------------------------------------------------------------------
# Runtime settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ErpSettings:
    """Connection to the ERP REST API."""

    base_url: str
    oauth_url: str
    username: str
    password: str = field(repr=False, default="")
    endpoints: dict[str, str] = field(default_factory=dict)  # table -> path
    search_limit: int = 10
    request_timeout_seconds: float = 30.0


@dataclass(frozen=True)
class RegistrationSettings:
    database_url: str
    erp: ErpSettings
    lookup_workers: int = 4
    lookup_timeout_seconds: float = 10.0
    sync_timeout_seconds: float = 30.0
    max_bulk_rows: int = 1000


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldDef:
    name: str
    label: str
    field_type: str = "string"  # string | number | date | boolean
    required: bool = False
    max_length: int | None = None
    min_value: Decimal | None = None
    max_value: Decimal | None = None
    pattern: str | None = None
    options: tuple[str, ...] = ()
    example: str | None = None


@dataclass(frozen=True)
class TemplateDef:
    template_id: str
    name: str
    table_name: str
    fields: tuple[FieldDef, ...] = ()
    key_fields: tuple[str, ...] = ()
    allow_bulk_import: bool = True


# ---------------------------------------------------------------------------
# Approval groups
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ApprovalGroupDef:
    group_id: str
    name: str
    members: tuple[str, ...] = ()
    description: str | None = None


# ---------------------------------------------------------------------------
# Whole set
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RegistrationConfig:
    """One loaded configuration set."""

    config_id: str
    version: int
    settings: RegistrationSettings
    templates: tuple[TemplateDef, ...] = ()
    approval_groups: tuple[ApprovalGroupDef, ...] = ()
    checksum: str = ""

    def template(self, template_id: str) -> TemplateDef | None:
        for t in self.templates:
            if t.template_id == template_id:
                return t
        return None
