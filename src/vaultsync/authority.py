from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from vaultsync.protocols import RoleOracle

log = structlog.get_logger()


async def check_authority(roles: RoleOracle | None) -> bool:
    """Ask the role oracle whether this session is authoritative.

    An absent or failing oracle counts as "not authoritative".
    """
    if roles is None:
        return False
    try:
        return bool(await roles.is_authoritative())
    except Exception:
        log.warning("role_oracle_error", exc_info=True)
        return False
