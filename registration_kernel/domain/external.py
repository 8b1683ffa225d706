"""
External collaborator interfaces (``registration_kernel.domain.external``).

Responsibility
--------------
Protocols for everything the kernel consumes but does not own: the ERP
record store, the form-template metadata provider, and the identity
provider used to expand approver groups.  Also the value objects those
interfaces exchange.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects and Protocols.  ZERO I/O.
Concrete implementations live in ``registration_services`` (REST ERP
client), ``registration_config`` (YAML templates), and
``registration_kernel.services`` (DB-backed group directory).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol, runtime_checkable


# =========================================================================
# ERP records
# =========================================================================


@dataclass(frozen=True)
class ExternalRecord:
    """A record as returned by the ERP: its identifier plus field values."""

    identifier: str
    values: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ExternalRecordStore(Protocol):
    """Search/read/write access to the ERP's tables."""

    def search(
        self, table_name: str, filters: dict[str, Any],
    ) -> list[ExternalRecord]:
        """Return every record whose fields equal all ``filters``."""
        ...

    def get_by_identifier(
        self, table_name: str, identifier: str,
    ) -> ExternalRecord | None:
        """Return the record with this identifier, or None."""
        ...

    def create(self, table_name: str, data: dict[str, Any]) -> str:
        """Create a record; return its new identifier."""
        ...

    def update(self, table_name: str, identifier: str, data: dict[str, Any]) -> None:
        """Overwrite the given fields of an existing record."""
        ...


# =========================================================================
# Template metadata
# =========================================================================


class FieldType(str, Enum):
    """Declared type of a template field."""

    STRING = "string"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"


@dataclass(frozen=True)
class FieldRules:
    """Validation rules attached to one template field."""

    max_length: int | None = None
    min_value: Decimal | None = None
    max_value: Decimal | None = None
    pattern: str | None = None
    options: tuple[str, ...] = ()


@dataclass(frozen=True)
class TemplateField:
    """A single field of a registration template."""

    name: str
    label: str
    field_type: FieldType = FieldType.STRING
    required: bool = False
    rules: FieldRules = field(default_factory=FieldRules)
    example: str | None = None


@dataclass(frozen=True)
class TemplateDefinition:
    """Registration template metadata.

    ``key_fields`` are ordered; together they form the natural key used
    to match spreadsheet rows against ERP records.
    """

    template_id: str
    name: str
    table_name: str
    fields: tuple[TemplateField, ...] = ()
    key_fields: tuple[str, ...] = ()
    allow_bulk_import: bool = True

    def field(self, name: str) -> TemplateField | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(f.name for f in self.fields)


@runtime_checkable
class TemplateProvider(Protocol):
    """Read-only access to template metadata."""

    def get_template(self, template_id: str) -> TemplateDefinition:
        """Return the template.

        Raises:
            TemplateNotFoundError: if no such template exists.
        """
        ...


# =========================================================================
# Identities
# =========================================================================


@runtime_checkable
class IdentityProvider(Protocol):
    """Resolves approver groups into member identities."""

    def members_of(self, group_id: str) -> frozenset[str]:
        """Return the current members of ``group_id`` (empty if unknown)."""
        ...
