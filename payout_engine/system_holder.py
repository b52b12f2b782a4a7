"""System holder registry.

The underwriter is the one account that owns unsold shares and receives their
income. It is found by a well-known email and created on first need. The
unique constraint on users.email arbitrates concurrent first use: the loser's
insert fails inside a SAVEPOINT and it re-reads the winner's row.
"""

import logging
import os
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .database import atomic
from .models import User
from .schemas import UserRole

UNDERWRITER_EMAIL = os.getenv("UNDERWRITER_EMAIL", "under_writer@system.inventwealth.com")
UNDERWRITER_NAME = os.getenv("UNDERWRITER_NAME", "System Underwriter")

logger = logging.getLogger(__name__)


def _find_underwriter(db: Session) -> User | None:
    return db.scalar(select(User).where(User.email == UNDERWRITER_EMAIL))


def get_or_create_underwriter(db: Session) -> User:
    """Return the system holder, creating it if it does not exist yet.

    Joins the caller's transaction when there is one.
    """
    with atomic(db):
        underwriter = _find_underwriter(db)
        if underwriter is not None:
            return underwriter

        try:
            with db.begin_nested():
                underwriter = User(
                    email=UNDERWRITER_EMAIL,
                    name=UNDERWRITER_NAME,
                    role=UserRole.ADMIN,
                    is_system=True,
                )
                db.add(underwriter)
                db.flush()
        except IntegrityError:
            # Lost the race for the unique email
            logger.info("System underwriter created concurrently, re-reading")
            underwriter = _find_underwriter(db)
            if underwriter is None:
                raise
        else:
            logger.info(f"Created system underwriter {underwriter.id}")

        return underwriter


def is_underwriter(user: User | None) -> bool:
    return user is not None and user.email == UNDERWRITER_EMAIL


def underwriter_id(db: Session) -> uuid.UUID | None:
    """Id of the system holder without creating it."""
    underwriter = _find_underwriter(db)
    return underwriter.id if underwriter else None
