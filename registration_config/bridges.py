"""
Bridges from configuration to kernel services.

The kernel never imports ``registration_config``; these helpers push
configured data into kernel services instead.
"""

from __future__ import annotations

import logging

from registration_config.schema import RegistrationConfig
from registration_kernel.services.approval_group_service import ApprovalGroupDirectory

_logger = logging.getLogger("registration_kernel.config")


def install_approval_groups(
    directory: ApprovalGroupDirectory,
    config: RegistrationConfig,
) -> int:
    """Create configured groups missing from the directory and add missing members.

    Existing members not in the configuration are left alone.  Returns the
    number of groups created.
    """
    created = 0
    for group in config.approval_groups:
        if directory.exists(group.group_id):
            for user_id in group.members:
                directory.add_member(group.group_id, user_id)
            continue
        directory.create_group(
            group.group_id, group.name, group.members, group.description,
        )
        created += 1
    _logger.info(
        "approval_groups_installed",
        extra={
            "config_id": config.config_id,
            "group_count": len(config.approval_groups),
            "created_count": created,
        },
    )
    return created
