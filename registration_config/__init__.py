"""
registration_config -- single public entrypoint for registration configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads configuration
    files or environment variables directly.

Architecture position:
    Configuration -- YAML-driven.  Sits above ``registration_kernel``;
    the kernel MUST NEVER import from ``registration_config``.  The
    template provider and bridges translate configuration into kernel
    inputs.

Invariants enforced:
    - Single entrypoint: all runtime config flows through ``get_active_config()``.
    - Deterministic identity: the same YAML always yields the same checksum.

Failure modes:
    - ``FileNotFoundError`` -- the configuration file does not exist.
    - ``KeyError`` -- a required key is missing.
    - ``ValueError`` -- a value is out of range or inconsistent.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``REGISTRATION_CONFIG_TRACE`` log entry with config_id, version,
    checksum, and template/group counts.
"""

from __future__ import annotations

import logging
from pathlib import Path

from registration_config.loader import load_config
from registration_config.schema import (
    ApprovalGroupDef,
    ErpSettings,
    FieldDef,
    RegistrationConfig,
    RegistrationSettings,
    TemplateDef,
)
from registration_config.template_provider import ConfiguredTemplateProvider

_logger = logging.getLogger("registration_kernel.config")

# Bundled default configuration set
_DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(config_path: Path | None = None) -> RegistrationConfig:
    """The ONLY public configuration entrypoint.

    Args:
        config_path: Override path to a YAML configuration set.
            Defaults to registration_config/sets/default.yaml.

    Raises:
        FileNotFoundError: If the configuration file does not exist.
        KeyError: If a required key is missing.
        ValueError: If configuration validation fails.
    """
    path = config_path or _DEFAULT_CONFIG_PATH
    config = load_config(path)

    _logger.info(
        "REGISTRATION_CONFIG_TRACE",
        extra={
            "trace_type": "REGISTRATION_CONFIG_TRACE",
            "config_set_id": config.config_id,
            "config_set_version": config.version,
            "checksum": config.checksum,
            "template_count": len(config.templates),
            "approval_group_count": len(config.approval_groups),
        },
    )
    return config


__all__ = [
    "ApprovalGroupDef",
    "ConfiguredTemplateProvider",
    "ErpSettings",
    "FieldDef",
    "RegistrationConfig",
    "RegistrationSettings",
    "TemplateDef",
    "get_active_config",
]
