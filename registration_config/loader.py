"""
Configuration Loader (``registration_config.loader``).

Responsibility
--------------
Loads a YAML configuration set and parses it into typed
``registration_config.schema`` dataclasses.  The single public entry
point for runtime config is ``registration_config.get_active_config()``.

Invariants enforced
-------------------
* All parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; no silent defaults for required fields.
* Every parsed object is a frozen dataclass from ``schema.py``.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the raw
  set for configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Out-of-range values, unknown field types, key fields that are not
  template fields, duplicate ids  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
import os
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml

from registration_config.schema import (
    ApprovalGroupDef,
    ErpSettings,
    FieldDef,
    RegistrationConfig,
    RegistrationSettings,
    TemplateDef,
)

FIELD_TYPES = frozenset({"string", "number", "date", "boolean"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _positive(name: str, value: Any, cast: type) -> Any:
    converted = cast(value)
    if converted <= 0:
        raise ValueError(f"{name} must be > 0, got {value!r}")
    return converted


def _decimal_or_none(value: Any) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value))


def parse_erp(data: dict[str, Any]) -> ErpSettings:
    """Parse ERP connection settings.

    ``password_env`` names an environment variable holding the password;
    it wins over an inline ``password``.
    """
    password = data.get("password", "")
    if data.get("password_env"):
        password = os.environ.get(data["password_env"], password)
    return ErpSettings(
        base_url=data["base_url"].rstrip("/"),
        oauth_url=data.get("oauth_url", data["base_url"]).rstrip("/"),
        username=data["username"],
        password=password,
        endpoints={str(k): str(v) for k, v in (data.get("endpoints") or {}).items()},
        search_limit=_positive("erp.search_limit", data.get("search_limit", 10), int),
        request_timeout_seconds=_positive(
            "erp.request_timeout_seconds", data.get("request_timeout_seconds", 30), float,
        ),
    )


def parse_settings(data: dict[str, Any]) -> RegistrationSettings:
    """Parse the ``settings`` block."""
    return RegistrationSettings(
        database_url=data["database_url"],
        erp=parse_erp(data["erp"]),
        lookup_workers=_positive("lookup_workers", data.get("lookup_workers", 4), int),
        lookup_timeout_seconds=_positive(
            "lookup_timeout_seconds", data.get("lookup_timeout_seconds", 10), float,
        ),
        sync_timeout_seconds=_positive(
            "sync_timeout_seconds", data.get("sync_timeout_seconds", 30), float,
        ),
        max_bulk_rows=_positive("max_bulk_rows", data.get("max_bulk_rows", 1000), int),
    )


def parse_field(data: dict[str, Any]) -> FieldDef:
    field_type = data.get("type", "string")
    if field_type not in FIELD_TYPES:
        raise ValueError(
            f"Field {data.get('name')!r}: unknown type {field_type!r} "
            f"(expected one of {sorted(FIELD_TYPES)})"
        )
    example = data.get("example")
    return FieldDef(
        name=data["name"],
        label=data.get("label", data["name"]),
        field_type=field_type,
        required=bool(data.get("required", False)),
        max_length=data.get("max_length"),
        min_value=_decimal_or_none(data.get("min_value")),
        max_value=_decimal_or_none(data.get("max_value")),
        pattern=data.get("pattern"),
        options=tuple(str(o) for o in data.get("options", ())),
        example=str(example) if example is not None else None,
    )


def parse_template(data: dict[str, Any]) -> TemplateDef:
    """Parse a template; key fields must name template fields."""
    fields = tuple(parse_field(f) for f in data.get("fields", ()))
    names = [f.name for f in fields]
    if len(set(names)) != len(names):
        raise ValueError(f"Template {data.get('template_id')!r}: duplicate field names")
    key_fields = tuple(data.get("key_fields", ()))
    unknown = [k for k in key_fields if k not in names]
    if unknown:
        raise ValueError(
            f"Template {data.get('template_id')!r}: key fields {unknown} "
            f"are not template fields"
        )
    return TemplateDef(
        template_id=data["template_id"],
        name=data.get("name", data["template_id"]),
        table_name=data["table_name"],
        fields=fields,
        key_fields=key_fields,
        allow_bulk_import=bool(data.get("allow_bulk_import", True)),
    )


def parse_approval_group(data: dict[str, Any]) -> ApprovalGroupDef:
    return ApprovalGroupDef(
        group_id=data["group_id"],
        name=data.get("name", data["group_id"]),
        members=tuple(str(m) for m in data.get("members", ())),
        description=data.get("description"),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def parse_config(data: dict[str, Any]) -> RegistrationConfig:
    """Parse a whole configuration set from its raw dict."""
    templates = tuple(parse_template(t) for t in data.get("templates", ()))
    template_ids = [t.template_id for t in templates]
    if len(set(template_ids)) != len(template_ids):
        raise ValueError("Duplicate template_id in configuration")

    groups = tuple(parse_approval_group(g) for g in data.get("approval_groups", ()))
    group_ids = [g.group_id for g in groups]
    if len(set(group_ids)) != len(group_ids):
        raise ValueError("Duplicate group_id in configuration")

    return RegistrationConfig(
        config_id=data["config_id"],
        version=int(data.get("version", 1)),
        settings=parse_settings(data["settings"]),
        templates=templates,
        approval_groups=groups,
        checksum=compute_checksum(data),
    )


def load_config(path: Path) -> RegistrationConfig:
    """Load and parse one YAML configuration set."""
    return parse_config(load_yaml_file(path))
