"""Share ledger view: sold and unsold shares, computed from source investments.

Never cached on Property. Investments change state independently of
distributions, so every caller recomputes.
"""

import uuid
from collections import OrderedDict

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .models import Investment, Property
from .schemas import Holding, InvestmentStatus
from .errors import PropertyNotFound


def sold_shares(db: Session, property_id: uuid.UUID) -> int:
    """Sum of shares across CONFIRMED investments."""
    total = db.scalar(
        select(func.coalesce(func.sum(Investment.shares), 0)).where(
            Investment.property_id == property_id,
            Investment.status == InvestmentStatus.CONFIRMED,
        )
    )
    return int(total or 0)


def unsold_shares(db: Session, property_id: uuid.UUID) -> int:
    """total_shares - sold_shares. May be negative; callers decide how to surface that."""
    prop = db.get(Property, property_id)
    if prop is None:
        raise PropertyNotFound(property_id)
    return prop.total_shares - sold_shares(db, property_id)


def confirmed_holdings(db: Session, property_id: uuid.UUID) -> list[Holding]:
    """Confirmed shares per user, in order of each user's first investment.

    Several investments by the same user collapse into one holding.
    """
    rows = db.execute(
        select(Investment.user_id, Investment.shares)
        .where(
            Investment.property_id == property_id,
            Investment.status == InvestmentStatus.CONFIRMED,
        )
        .order_by(Investment.created_at, Investment.id)
    ).all()

    by_user: OrderedDict[uuid.UUID, int] = OrderedDict()
    for user_id, shares in rows:
        by_user[user_id] = by_user.get(user_id, 0) + shares
    return [Holding(user_id=user_id, shares=shares) for user_id, shares in by_user.items()]
