"""Reconciliation of underwriter payouts against the current share ledger.

When investments are confirmed after a distribution was drafted, the
underwriter's shares_at_record no longer matches the unsold share count. This
corrects it. Amounts are corrected only on DRAFT distributions; once a human
has approved or declared a distribution its amounts are frozen and only the
share annotation and notes change. Investor payouts are never touched.
"""

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from .allocator import prorate, underwriter_note
from .bookkeeping import AuditTrail
from .database import atomic
from .models import Payout
from .schemas import DistributionStatus, ReconciledPayout, ReconciliationResult
from .shares import sold_shares
from .system_holder import underwriter_id

logger = logging.getLogger(__name__)


def fix_underwriter_payouts(
    db: Session,
    distribution_id: uuid.UUID | None = None,
    actor_id: str = "system:fix_underwriter_payouts",
    audit: AuditTrail | None = None,
) -> ReconciliationResult:
    """Recompute shares_at_record (and DRAFT amounts) for underwriter payouts.

    Limited to one distribution when distribution_id is given.
    """
    audit = audit or AuditTrail()
    result = ReconciliationResult()

    with atomic(db):
        uw_id = underwriter_id(db)
        if uw_id is None:
            logger.info("No underwriter account yet; nothing to reconcile")
            return result

        query = select(Payout).where(Payout.user_id == uw_id)
        if distribution_id is not None:
            query = query.where(Payout.distribution_id == distribution_id)

        sold_cache: dict[uuid.UUID, int] = {}

        for payout in db.scalars(query.order_by(Payout.created_at)).all():
            distribution = payout.distribution
            prop = distribution.property

            if prop.id not in sold_cache:
                sold_cache[prop.id] = sold_shares(db, prop.id)
            available = prop.total_shares - sold_cache[prop.id]

            if available < 0:
                message = (
                    f"Payout {payout.id}: property {prop.id} is oversold "
                    f"({sold_cache[prop.id]} of {prop.total_shares} shares)"
                )
                logger.warning(message)
                result.skipped.append(message)
                continue

            if payout.shares_at_record == available:
                continue

            old_shares = payout.shares_at_record
            old_amount = payout.amount
            new_amount = old_amount

            payout.shares_at_record = available
            payout.notes = underwriter_note(available, prop.total_shares)
            if distribution.status == DistributionStatus.DRAFT:
                new_amount = prorate(
                    distribution.rental_statement.net_distributable, available, prop.total_shares
                )
                payout.amount = new_amount

            audit.append(
                db,
                actor_id=actor_id,
                action="UNDER_WRITER_PAYOUTS_FIXED",
                table_name="payouts",
                record_id=payout.id,
                old_value={"shares_at_record": old_shares, "amount": old_amount},
                new_value={"shares_at_record": available, "amount": new_amount},
            )
            result.payouts.append(
                ReconciledPayout(
                    id=payout.id,
                    distribution_id=distribution.id,
                    old_shares=old_shares,
                    new_shares=available,
                    old_amount=old_amount,
                    new_amount=new_amount,
                    distribution_status=distribution.status,
                )
            )

        result.fixed = len(result.payouts)

    logger.info(f"Reconciled {result.fixed} underwriter payouts ({len(result.skipped)} skipped)")
    return result
