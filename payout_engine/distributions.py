"""Distribution lifecycle: draft creation, approval workflow, declaration, deletion.

State machine:

    (none) --create--> DRAFT --submit--> PENDING_APPROVAL --approve--> APPROVED --declare--> DECLARED
                         ^                      |
                         +-------reject---------+

DECLARED reads as PAID once every payout is PAID (derived, never written).
Only DRAFT distributions may be recalculated. Every transition is one unit of
work that also writes its audit entry; transitions are not idempotent, so a
repeated call fails instead of succeeding twice.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .allocator import allocate, to_money
from .bookkeeping import AuditTrail, LedgerWriter
from .database import atomic
from .errors import (
    DistributionNotFound,
    DistributionPaidError,
    DuplicateDistributionError,
    InvalidStateTransition,
    PropertyNotFound,
    RentalStatementNotFound,
    StatementPropertyMismatch,
)
from .models import Distribution, Payout, Property, RentalStatement
from .schemas import (
    AllocationResult,
    DistributionStatus,
    DistributionSummary,
    DraftDistributionResult,
    MonthlyPayoutGroup,
    PayoutStatus,
    PayoutSummary,
    PropertyPayoutGroup,
    ValidationReport,
)
from .shares import confirmed_holdings
from .system_holder import get_or_create_underwriter

logger = logging.getLogger(__name__)

TABLE = "distributions"


class DistributionService:
    """Owns the Distribution aggregate and the rule of when payouts may change."""

    def __init__(self, audit: AuditTrail | None = None, ledger: LedgerWriter | None = None):
        self.audit = audit or AuditTrail()
        self.ledger = ledger or LedgerWriter()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, db: Session, distribution_id: uuid.UUID) -> Distribution:
        distribution = db.get(Distribution, distribution_id)
        if distribution is None:
            raise DistributionNotFound(distribution_id)
        return distribution

    def summary(self, db: Session, distribution_id: uuid.UUID) -> DistributionSummary:
        return DistributionSummary.model_validate(self.get(db, distribution_id))

    # -------------------------------------------------------------------------
    # Investor history
    # -------------------------------------------------------------------------

    def _user_payout_rows(self, db: Session, user_id: uuid.UUID):
        query = (
            select(Payout, Property, RentalStatement.period_start)
            .join(Property, Payout.property_id == Property.id)
            .join(RentalStatement, Payout.rental_statement_id == RentalStatement.id)
            .where(Payout.user_id == user_id)
            .order_by(Payout.created_at.desc())
        )
        return db.execute(query).all()

    def user_payouts(self, db: Session, user_id: uuid.UUID) -> list[PayoutSummary]:
        """Every payout a user has received, newest first. Unknown users get []."""
        return [PayoutSummary.model_validate(row.Payout) for row in self._user_payout_rows(db, user_id)]

    def user_payouts_by_property(self, db: Session, user_id: uuid.UUID) -> list[PropertyPayoutGroup]:
        groups: dict[uuid.UUID, PropertyPayoutGroup] = {}
        for payout, prop, _ in self._user_payout_rows(db, user_id):
            group = groups.get(prop.id)
            if group is None:
                group = groups[prop.id] = PropertyPayoutGroup(
                    property_id=prop.id,
                    property_name=prop.name,
                    total_shares=prop.total_shares,
                    total_amount=Decimal("0.00"),
                )
            group.payouts.append(PayoutSummary.model_validate(payout))
            group.total_amount += payout.amount
        return list(groups.values())

    def user_payouts_by_month(self, db: Session, user_id: uuid.UUID) -> list[MonthlyPayoutGroup]:
        """Payouts grouped by the month their rental statement starts in, latest month first."""
        groups: dict[str, MonthlyPayoutGroup] = {}
        for payout, _, period_start in self._user_payout_rows(db, user_id):
            month = period_start.strftime("%Y-%m")
            group = groups.setdefault(month, MonthlyPayoutGroup(month=month, total_amount=Decimal("0.00")))
            group.payouts.append(PayoutSummary.model_validate(payout))
            group.total_amount += payout.amount
        return sorted(groups.values(), key=lambda g: g.month, reverse=True)

    # -------------------------------------------------------------------------
    # Allocation
    # -------------------------------------------------------------------------

    def _allocate_for(self, db: Session, prop: Property, net_distributable: Decimal) -> AllocationResult:
        holdings = confirmed_holdings(db, prop.id)
        sold = sum(h.shares for h in holdings)
        return allocate(
            net_distributable,
            prop.total_shares,
            holdings,
            prop.total_shares - sold,
            property_id=prop.id,
        )

    def _write_payouts(
        self, db: Session, distribution: Distribution, allocation: AllocationResult
    ) -> list[Payout]:
        payouts = [
            Payout(
                user_id=line.user_id,
                property_id=distribution.property_id,
                distribution_id=distribution.id,
                rental_statement_id=distribution.rental_statement_id,
                shares_at_record=line.shares,
                amount=line.amount,
                status=PayoutStatus.PENDING,
            )
            for line in allocation.investor_lines
        ]

        line = allocation.underwriter_line
        if line is not None:
            underwriter = get_or_create_underwriter(db)
            payouts.append(
                Payout(
                    user_id=underwriter.id,
                    property_id=distribution.property_id,
                    distribution_id=distribution.id,
                    rental_statement_id=distribution.rental_statement_id,
                    shares_at_record=line.shares,
                    amount=line.amount,
                    status=PayoutStatus.PENDING,
                    notes=line.notes,
                )
            )

        db.add_all(payouts)
        db.flush()
        return payouts

    @staticmethod
    def _draft_result(distribution: Distribution, allocation: AllocationResult, count: int):
        return DraftDistributionResult(
            distribution_id=distribution.id,
            payouts_created=count,
            total_shares=allocation.total_shares,
            sold_shares=allocation.sold_shares,
            unsold_shares=allocation.unsold_shares,
            net_distributable=allocation.net_distributable,
            investor_distributable=allocation.investor_distributable,
            underwriter_distributable=allocation.underwriter_distributable,
        )

    # -------------------------------------------------------------------------
    # Creation and recalculation
    # -------------------------------------------------------------------------

    def _create_draft(
        self, db: Session, property_id: uuid.UUID, rental_statement_id: uuid.UUID
    ) -> tuple[Distribution, AllocationResult, list[Payout]]:
        statement = db.get(RentalStatement, rental_statement_id)
        if statement is None:
            raise RentalStatementNotFound(rental_statement_id)
        if statement.property_id != property_id:
            raise StatementPropertyMismatch(rental_statement_id, property_id)

        existing = db.scalar(
            select(Distribution.id).where(Distribution.rental_statement_id == rental_statement_id)
        )
        if existing is not None:
            raise DuplicateDistributionError(rental_statement_id)

        prop = db.get(Property, property_id)
        if prop is None:
            raise PropertyNotFound(property_id)

        allocation = self._allocate_for(db, prop, statement.net_distributable)

        distribution = Distribution(
            property_id=property_id,
            rental_statement_id=rental_statement_id,
            total_distributed=allocation.net_distributable,
            status=DistributionStatus.DRAFT,
        )
        db.add(distribution)
        try:
            db.flush()
        except IntegrityError as exc:
            # Another request inserted the distribution after our check
            raise DuplicateDistributionError(rental_statement_id) from exc

        payouts = self._write_payouts(db, distribution, allocation)
        return distribution, allocation, payouts

    def create_draft(
        self,
        db: Session,
        property_id: uuid.UUID,
        rental_statement_id: uuid.UUID,
        actor_id: str = "system",
    ) -> DraftDistributionResult:
        """Allocate a rental statement into a DRAFT distribution with its payouts."""
        with atomic(db):
            distribution, allocation, payouts = self._create_draft(
                db, property_id, rental_statement_id
            )
            self.audit.append(
                db,
                actor_id=actor_id,
                action="DRAFT_DISTRIBUTION_CREATED",
                table_name=TABLE,
                record_id=distribution.id,
                new_value={
                    "property_id": property_id,
                    "rental_statement_id": rental_statement_id,
                    "total_distributed": distribution.total_distributed,
                    "payouts_created": len(payouts),
                },
            )
            result = self._draft_result(distribution, allocation, len(payouts))

        logger.info(
            f"Created draft distribution {result.distribution_id} with "
            f"{result.payouts_created} payouts totalling {result.net_distributable}"
        )
        return result

    def recalculate(
        self,
        db: Session,
        distribution_id: uuid.UUID,
        new_net_distributable: Decimal | None = None,
        actor_id: str = "system",
    ) -> DraftDistributionResult:
        """Replace every payout of a DRAFT distribution with a fresh allocation.

        Defaults to the statement's current net distributable. Refused once
        any payout is PAID.
        """
        with atomic(db):
            distribution = self.get(db, distribution_id)
            if distribution.status != DistributionStatus.DRAFT:
                raise InvalidStateTransition(
                    "distribution", distribution.status, DistributionStatus.DRAFT,
                    "Can only recalculate payouts for DRAFT distributions",
                )
            # Paid payouts and their wallet credits are never replaced
            paid = distribution.paid_payouts
            if paid:
                raise DistributionPaidError(distribution_id, len(paid), "recalculate")

            if new_net_distributable is None:
                new_net_distributable = distribution.rental_statement.net_distributable
            old_total = distribution.total_distributed
            old_count = len(distribution.payouts)

            allocation = self._allocate_for(db, distribution.property, new_net_distributable)

            distribution.payouts.clear()
            # Deletes must reach the database before re-inserting the same users
            db.flush()

            distribution.total_distributed = allocation.net_distributable
            payouts = self._write_payouts(db, distribution, allocation)
            db.refresh(distribution, ["payouts"])

            self.audit.append(
                db,
                actor_id=actor_id,
                action="DISTRIBUTION_RECALCULATED",
                table_name=TABLE,
                record_id=distribution.id,
                old_value={"total_distributed": old_total, "payouts": old_count},
                new_value={"total_distributed": distribution.total_distributed, "payouts": len(payouts)},
            )
            result = self._draft_result(distribution, allocation, len(payouts))

        logger.info(f"Recalculated distribution {distribution_id}: {old_total} -> {result.net_distributable}")
        return result

    # -------------------------------------------------------------------------
    # Approval workflow
    # -------------------------------------------------------------------------

    def _transition(
        self,
        db: Session,
        distribution_id: uuid.UUID,
        source: DistributionStatus,
        target: DistributionStatus,
        action: str,
        actor_id: str,
        reason: str | None = None,
        **fields,
    ) -> Distribution:
        with atomic(db):
            distribution = self.get(db, distribution_id)
            if distribution.status != source:
                raise InvalidStateTransition("distribution", distribution.status, target)

            distribution.status = target
            for name, value in fields.items():
                setattr(distribution, name, value)

            self.audit.append(
                db,
                actor_id=actor_id,
                action=action,
                table_name=TABLE,
                record_id=distribution.id,
                old_value={"status": source.value},
                new_value={"status": target.value, **fields},
                reason=reason,
            )

        logger.info(f"Distribution {distribution_id}: {source.value} -> {target.value}")
        return distribution

    def submit_for_approval(
        self, db: Session, distribution_id: uuid.UUID, actor_id: str = "system"
    ) -> Distribution:
        return self._transition(
            db, distribution_id,
            DistributionStatus.DRAFT, DistributionStatus.PENDING_APPROVAL,
            "DISTRIBUTION_SUBMITTED_FOR_APPROVAL", actor_id,
        )

    def approve(
        self, db: Session, distribution_id: uuid.UUID, approved_by: str, notes: str | None = None
    ) -> Distribution:
        return self._transition(
            db, distribution_id,
            DistributionStatus.PENDING_APPROVAL, DistributionStatus.APPROVED,
            "DISTRIBUTION_APPROVED", approved_by, notes,
            approved_by=approved_by,
            approved_at=datetime.utcnow(),
            notes=notes,
        )

    def reject(
        self,
        db: Session,
        distribution_id: uuid.UUID,
        notes: str | None = None,
        actor_id: str = "system",
    ) -> Distribution:
        return self._transition(
            db, distribution_id,
            DistributionStatus.PENDING_APPROVAL, DistributionStatus.DRAFT,
            "DISTRIBUTION_REJECTED", actor_id, notes,
            notes=notes,
        )

    # -------------------------------------------------------------------------
    # Declaration
    # -------------------------------------------------------------------------

    def _declare(self, db: Session, distribution: Distribution) -> int:
        distribution.status = DistributionStatus.DECLARED
        distribution.declared_at = datetime.utcnow()
        for payout in distribution.payouts:
            self.ledger.record_payout(db, payout)
        db.flush()
        return len(distribution.payouts)

    def declare(
        self, db: Session, distribution_id: uuid.UUID, actor_id: str = "system"
    ) -> Distribution:
        """APPROVED -> DECLARED, writing one ledger transaction per payout."""
        with atomic(db):
            distribution = self.get(db, distribution_id)
            if distribution.status != DistributionStatus.APPROVED:
                raise InvalidStateTransition(
                    "distribution", distribution.status, DistributionStatus.DECLARED,
                    "Distribution must be approved before declaration",
                )
            count = self._declare(db, distribution)
            self.audit.append(
                db,
                actor_id=actor_id,
                action="DISTRIBUTION_DECLARED",
                table_name=TABLE,
                record_id=distribution.id,
                old_value={"status": DistributionStatus.APPROVED.value},
                new_value={
                    "status": DistributionStatus.DECLARED.value,
                    "total_distributed": distribution.total_distributed,
                    "transactions_created": count,
                },
            )

        logger.info(f"Declared distribution {distribution_id} ({count} ledger transactions)")
        return distribution

    def declare_from_statement(
        self,
        db: Session,
        property_id: uuid.UUID,
        rental_statement_id: uuid.UUID,
        actor_id: str = "system",
    ) -> DraftDistributionResult:
        """Create and declare in one step, bypassing the approval gate."""
        with atomic(db):
            distribution, allocation, payouts = self._create_draft(
                db, property_id, rental_statement_id
            )
            db.refresh(distribution, ["payouts"])
            count = self._declare(db, distribution)
            self.audit.append(
                db,
                actor_id=actor_id,
                action="DISTRIBUTION_DECLARED",
                table_name=TABLE,
                record_id=distribution.id,
                new_value={
                    "status": DistributionStatus.DECLARED.value,
                    "property_id": property_id,
                    "rental_statement_id": rental_statement_id,
                    "total_distributed": distribution.total_distributed,
                    "payouts_created": count,
                    "direct": True,
                },
            )
            result = self._draft_result(distribution, allocation, len(payouts))

        logger.info(f"Declared distribution {result.distribution_id} directly from statement")
        return result

    # -------------------------------------------------------------------------
    # Deletion
    # -------------------------------------------------------------------------

    def delete(
        self,
        db: Session,
        distribution_id: uuid.UUID,
        deleted_by: str,
        reason: str | None = None,
    ) -> None:
        """Hard delete with payouts and ledger transactions, unless anything is paid."""
        with atomic(db):
            distribution = self.get(db, distribution_id)

            if distribution.effective_status == DistributionStatus.PAID:
                raise DistributionPaidError(distribution_id)
            paid = distribution.paid_payouts
            if paid:
                raise DistributionPaidError(distribution_id, len(paid))

            payout_ids = [p.id for p in distribution.payouts]
            removed = self.ledger.delete_for_payouts(db, payout_ids)
            total = distribution.total_distributed
            status = distribution.status

            db.delete(distribution)
            db.flush()

            self.audit.append(
                db,
                actor_id=deleted_by,
                action="DISTRIBUTION_DELETED",
                table_name=TABLE,
                record_id=distribution_id,
                old_value={"status": status.value, "total_distributed": total},
                new_value={"payouts_deleted": len(payout_ids), "transactions_deleted": removed},
                reason=reason,
            )

        logger.info(f"Deleted distribution {distribution_id} ({len(payout_ids)} payouts, {removed} transactions)")

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self, db: Session, distribution_id: uuid.UUID) -> ValidationReport:
        """Checks to run before declaring."""
        distribution = db.get(Distribution, distribution_id)
        if distribution is None:
            return ValidationReport(is_valid=False, errors=["Distribution not found"])

        errors: list[str] = []
        warnings: list[str] = []
        statement = distribution.rental_statement

        if not distribution.payouts:
            errors.append("No investors found for this property")

        net = to_money(statement.net_distributable)
        if net <= 0:
            errors.append("Net distributable amount must be positive")

        total_payouts = to_money(distribution.payouts_total)
        if abs(total_payouts - net) > Decimal("0.01"):
            warnings.append(
                f"Total payouts ({total_payouts}) doesn't match net distributable ({net})"
            )
        if distribution.total_distributed != total_payouts:
            warnings.append(
                f"Total payouts ({total_payouts}) doesn't match total distributed "
                f"({distribution.total_distributed})"
            )

        if statement.period_start >= statement.period_end:
            errors.append("Rental statement period is invalid (start date must be before end date)")

        if distribution.status != DistributionStatus.APPROVED:
            errors.append(
                f"Distribution must be APPROVED before declaration. "
                f"Current status: {distribution.status.value}"
            )

        return ValidationReport(is_valid=not errors, errors=errors, warnings=warnings)
