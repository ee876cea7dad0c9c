"""
Access control ledger: per-owner ``grantee -> enabled`` capabilities.

Every owner-scoped check elsewhere in the vault reduces to
:func:`is_authorized`. Grants are self-service: only the owner can flip
their own entries, and an entry is never deleted.
"""
import logging
from datetime import datetime
from typing import List

from sqlalchemy.orm import Session

from errors import not_authorized
from events import AccessUpdated
from models import AccessGrant

logger = logging.getLogger(__name__)


def grant(db: Session, *, caller: str, owner: str, grantee: str, enabled: bool) -> AccessUpdated:
    """
    Set ``(owner, grantee) -> enabled``. Writing the same value twice leaves the
    ledger unchanged but still yields a notification, so repeats stay auditable.
    """
    if caller != owner:
        logger.warning("%s tried to change grants owned by %s", caller, owner)
        raise not_authorized(caller, owner=owner)

    row = db.query(AccessGrant).filter_by(owner=owner, grantee=grantee).first()
    if row:
        row.enabled = enabled
        row.updated_at = datetime.utcnow()
    else:
        db.add(AccessGrant(owner=owner, grantee=grantee, enabled=enabled))
    db.flush()
    return AccessUpdated(owner=owner, grantee=grantee, enabled=enabled)


def is_granted(db: Session, owner: str, grantee: str) -> bool:
    row = db.query(AccessGrant).filter_by(owner=owner, grantee=grantee).first()
    return bool(row and row.enabled)


def is_authorized(db: Session, owner: str, caller: str) -> bool:
    return caller == owner or is_granted(db, owner, caller)


def grants_for(db: Session, owner: str) -> List[AccessGrant]:
    return db.query(AccessGrant).filter_by(owner=owner).order_by(AccessGrant.grantee).all()
