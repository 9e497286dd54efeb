# mlm_system/utils/permissions.py
"""
Admin checks for privileged engine operations.
"""
from typing import Optional
from sqlalchemy.orm import Session
import logging

from models.member import Member
from mlm_system.errors import Unauthorized

logger = logging.getLogger(__name__)


def require_admin(session: Session, admin_id: Optional[int]) -> Member:
    """
    Load the admin member or raise.

    Raises:
        Unauthorized: Unknown member or member without admin flag
    """
    admin = session.get(Member, admin_id) if admin_id is not None else None
    if admin is None or not admin.isAdmin:
        logger.warning(f"Unauthorized admin operation attempted by {admin_id}")
        raise Unauthorized(f"Member {admin_id} is not an admin")
    return admin
