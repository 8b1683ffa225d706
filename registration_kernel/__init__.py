"""
Registration Kernel

The core of the registration approval system:
- Immutable workflow snapshots frozen at submission
- Multi-level approval state machine with send-back
- Append-only field change history and audit trail
- Sync lifecycle against an external ERP with safe retry
"""

__version__ = "0.1.0"
