"""
registration_services -- Package init and public API.

Responsibility:
    Outer coordination over the registration kernel: the command runner
    that gives every operation its lock and transaction scope, and the
    REST client that implements the kernel's ERP record store.

Architecture position:
    Services -- stateful orchestration over kernel + ingestion.

    Dependency direction (enforced by tests/architecture/test_layer_boundaries.py):
        registration_services/  -> registration_kernel/    (allowed)
        registration_services/  -> registration_ingestion/ (allowed)
        registration_services/  -> registration_config/    (allowed)
        registration_kernel/    -> registration_services/  (FORBIDDEN)
        registration_engines/   -> registration_services/  (FORBIDDEN)

Invariants enforced:
    - Layer isolation: the kernel and the engines never import from this
      package.
    - DI transparency: service wiring lives in RegistrationCommands only.

Failure modes:
    - ImportError at startup if httpx is not installed.
"""

from registration_kernel.logging_config import get_logger

logger = get_logger("services")

from registration_services.erp_client import RestRecordStore
from registration_services.registration_commands import RegistrationCommands

__all__ = [
    "RegistrationCommands",
    "RestRecordStore",
]
