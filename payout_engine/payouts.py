"""Payout lifecycle: approval, payment recording and bulk edits.

Payout state machine (approval is optional):

    PENDING --> PENDING_APPROVAL --> APPROVED --> PAID
       |                                ^          ^
       +--------------------------------+----------+

PAID is terminal. A payout that becomes newly PAID with the WALLET method
credits the wallet inside the same unit of work as the status change, so a
credit can never be orphaned from, or duplicated against, the payout state.

Single-payout operations raise on failure. Batch operations return a
BatchResult and never raise for one bad item.
"""

import csv
import io
import logging
import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation

from sqlalchemy import select
from sqlalchemy.orm import Session

from .bookkeeping import AuditTrail, WalletCredit, WalletService
from .database import atomic
from .errors import (
    CsvImportError,
    DistributionEngineError,
    DistributionNotFound,
    InvalidStateTransition,
    MissingBankAccountError,
    PayoutNotFound,
)
from .models import Distribution, Payout
from .schemas import (
    BatchFailure,
    BatchResult,
    BulkPayoutUpdate,
    CsvImportResult,
    DistributionStatus,
    PaymentMethod,
    PayoutStatus,
    PayoutUpdate,
    ValidationReport,
)

logger = logging.getLogger(__name__)

TABLE = "payouts"

CSV_COLUMNS = ["payout_id", "user_email", "shares_at_record", "amount", "status", "paid_at"]


def _parse_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(value)
    except (TypeError, ValueError):
        return None


class PayoutService:
    """Per-payout state machine, independent of the parent distribution's."""

    def __init__(self, audit: AuditTrail | None = None, wallet: WalletCredit | None = None):
        self.audit = audit or AuditTrail()
        self.wallet = wallet or WalletService()

    def get(self, db: Session, payout_id: uuid.UUID) -> Payout:
        payout = db.get(Payout, payout_id)
        if payout is None:
            raise PayoutNotFound(payout_id)
        return payout

    # -------------------------------------------------------------------------
    # Approval
    # -------------------------------------------------------------------------

    def approve(
        self,
        db: Session,
        payout_id: uuid.UUID,
        actor_id: str,
        notes: str | None = None,
    ) -> Payout:
        with atomic(db):
            payout = self.get(db, payout_id)
            if payout.status == PayoutStatus.PAID:
                raise InvalidStateTransition(
                    "payout", payout.status, PayoutStatus.APPROVED, "Payout has already been paid"
                )
            if payout.status == PayoutStatus.APPROVED:
                raise InvalidStateTransition(
                    "payout", payout.status, PayoutStatus.APPROVED, "Payout has already been approved"
                )

            old_status = payout.status
            payout.status = PayoutStatus.APPROVED
            payout.notes = notes or payout.notes

            self.audit.append(
                db,
                actor_id=actor_id,
                action="PAYOUT_APPROVED",
                table_name=TABLE,
                record_id=payout.id,
                old_value={"status": old_status.value},
                new_value={"status": PayoutStatus.APPROVED.value},
                reason=notes,
            )
        return payout

    def approve_many(
        self,
        db: Session,
        payout_ids: list[uuid.UUID],
        actor_id: str,
        notes: str | None = None,
    ) -> BatchResult:
        """Approve each payout in its own unit of work."""
        result = BatchResult()
        for payout_id in payout_ids:
            try:
                self.approve(db, payout_id, actor_id, notes)
            except DistributionEngineError as exc:
                logger.warning(f"Could not approve payout {payout_id}: {exc}")
                result.failed.append(BatchFailure(id=payout_id, error=str(exc)))
            else:
                result.succeeded.append(payout_id)
        return result

    def submit_for_approval(
        self,
        db: Session,
        payout_ids: list[uuid.UUID],
        actor_id: str,
        notes: str | None = None,
    ) -> BatchResult:
        """Move the PENDING subset to PENDING_APPROVAL; everything else is skipped."""
        result = BatchResult()
        with atomic(db):
            payouts = {
                p.id: p
                for p in db.scalars(select(Payout).where(Payout.id.in_(payout_ids)))
            }
            for payout_id in payout_ids:
                payout = payouts.get(payout_id)
                if payout is None:
                    result.failed.append(BatchFailure(id=payout_id, error="Payout not found"))
                    continue
                if payout.status != PayoutStatus.PENDING:
                    result.skipped.append(payout_id)
                    continue

                payout.status = PayoutStatus.PENDING_APPROVAL
                self.audit.append(
                    db,
                    actor_id=actor_id,
                    action="PAYOUT_SUBMITTED_FOR_APPROVAL",
                    table_name=TABLE,
                    record_id=payout.id,
                    old_value={"status": PayoutStatus.PENDING.value},
                    new_value={"status": PayoutStatus.PENDING_APPROVAL.value},
                    reason=notes,
                )
                result.succeeded.append(payout_id)

        logger.info(
            f"Submitted {result.succeeded_count} payouts for approval "
            f"({len(result.skipped)} skipped, {result.failed_count} missing)"
        )
        return result

    # -------------------------------------------------------------------------
    # Single update
    # -------------------------------------------------------------------------

    def update(
        self,
        db: Session,
        payout_id: uuid.UUID,
        changes: PayoutUpdate,
        actor_id: str,
        adjustment_reason: str | None = None,
    ) -> Payout:
        """Apply an admin edit. Fails as a whole on any guard violation.

        Setting paid_at marks the payout PAID. Marking PAID with anything but
        the WALLET method requires a bank account.
        """
        fields = changes.model_dump(exclude_unset=True)
        if fields.get("status", PayoutStatus.PENDING) is None:
            del fields["status"]

        with atomic(db):
            payout = self.get(db, payout_id)
            was_paid = payout.is_paid
            old_value = payout.snapshot()

            if fields.get("paid_at") is not None:
                fields["status"] = PayoutStatus.PAID

            marking_paid = fields.get("status") == PayoutStatus.PAID
            target_status = fields.get("status", payout.status)

            if payout.status == PayoutStatus.PAID and target_status != PayoutStatus.PAID:
                raise InvalidStateTransition("payout", payout.status, target_status)
            if payout.status == PayoutStatus.PAID and "paid_at" in fields and fields["paid_at"] is None:
                raise InvalidStateTransition(
                    "payout", payout.status, target_status, "Cannot clear paid_at on a paid payout"
                )

            if marking_paid:
                if fields.get("paid_at") is None and payout.paid_at is None:
                    fields["paid_at"] = datetime.utcnow()
                method = fields.get("payment_method", payout.payment_method)
                bank_account = fields.get("bank_account", payout.bank_account)
                if method != PaymentMethod.WALLET and not bank_account:
                    raise MissingBankAccountError(payout_id)

            changed = {
                name: value for name, value in fields.items()
                if getattr(payout, name) != value
            }
            for name, value in changed.items():
                setattr(payout, name, value)
            db.flush()

            if payout.is_paid and not was_paid and payout.payment_method == PaymentMethod.WALLET:
                self.wallet.credit_wallet(db, payout.user_id, payout.amount, payout.id)

            if changed:
                self.audit.append(
                    db,
                    actor_id=actor_id,
                    action="PAYOUT_UPDATED",
                    table_name=TABLE,
                    record_id=payout.id,
                    old_value=old_value,
                    new_value=payout.snapshot(),
                    reason=adjustment_reason,
                )

        if changed:
            logger.info(f"Updated payout {payout_id}: {', '.join(sorted(changed))}")
        return payout

    # -------------------------------------------------------------------------
    # Bulk status
    # -------------------------------------------------------------------------

    def bulk_update(self, db: Session, request: BulkPayoutUpdate, actor_id: str) -> BatchResult:
        """Set one status across many payouts in a single pass.

        Does not credit wallets; wallet payments go through update().
        """
        result = BatchResult()
        with atomic(db):
            payouts = {
                p.id: p
                for p in db.scalars(select(Payout).where(Payout.id.in_(request.payout_ids)))
            }
            for payout_id in request.payout_ids:
                payout = payouts.get(payout_id)
                if payout is None:
                    result.failed.append(BatchFailure(id=payout_id, error="Payout not found"))
                    continue
                if payout.status == PayoutStatus.PAID and request.status != PayoutStatus.PAID:
                    result.failed.append(
                        BatchFailure(id=payout_id, error="Payout has already been paid")
                    )
                    continue

                old_status = payout.status
                payout.status = request.status
                if request.status == PayoutStatus.PAID:
                    payout.paid_at = request.paid_at or payout.paid_at or datetime.utcnow()

                self.audit.append(
                    db,
                    actor_id=actor_id,
                    action="PAYOUT_BULK_UPDATED",
                    table_name=TABLE,
                    record_id=payout.id,
                    old_value={"status": old_status.value},
                    new_value={"status": request.status.value},
                )
                result.succeeded.append(payout_id)

        logger.info(f"Bulk set {result.succeeded_count} payouts to {request.status.value}")
        return result

    # -------------------------------------------------------------------------
    # CSV
    # -------------------------------------------------------------------------

    def export_csv(self, db: Session, distribution_id: uuid.UUID) -> str:
        """CSV of a distribution's payouts, in the shape import_csv reads back."""
        distribution = db.get(Distribution, distribution_id)
        if distribution is None:
            raise DistributionNotFound(distribution_id)

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_COLUMNS)
        for payout in distribution.payouts:
            writer.writerow([
                payout.id,
                payout.user.email,
                payout.shares_at_record,
                payout.amount,
                payout.status.value,
                payout.paid_at.isoformat() if payout.paid_at else "",
            ])
        return buffer.getvalue()

    def import_csv(
        self,
        db: Session,
        distribution_id: uuid.UUID,
        csv_data: str,
        actor_id: str,
    ) -> CsvImportResult:
        """Apply status/amount/paid_at edits keyed by payout_id.

        Bad rows are reported and skipped. A paid_at value forces PAID
        whatever the status column says. Raises CsvImportError when no row
        could be applied.
        """
        rows = list(csv.reader(io.StringIO(csv_data.strip())))
        if len(rows) < 2:
            raise CsvImportError("CSV must have at least a header row and one data row")

        header = [h.strip().lower() for h in rows[0]]
        if "payout_id" not in header or "status" not in header:
            raise CsvImportError("CSV must include payout_id and status columns")
        id_index = header.index("payout_id")
        status_index = header.index("status")
        amount_index = header.index("amount") if "amount" in header else None
        paid_at_index = header.index("paid_at") if "paid_at" in header else None

        def cell(row: list[str], index: int | None) -> str:
            if index is None or index >= len(row):
                return ""
            return row[index].strip()

        result = CsvImportResult()
        errors = result.errors

        with atomic(db):
            payouts = {
                p.id: p
                for p in db.scalars(select(Payout).where(Payout.distribution_id == distribution_id))
            }

            for line_number, row in enumerate(rows[1:], start=2):
                if not any(c.strip() for c in row):
                    continue

                raw_id = cell(row, id_index)
                if not raw_id:
                    errors.append(f"Row {line_number}: Missing payout_id")
                    continue
                payout = payouts.get(_parse_uuid(raw_id))
                if payout is None:
                    errors.append(f"Row {line_number}: Payout {raw_id} not found in this distribution")
                    continue

                update: dict = {}

                raw_status = cell(row, status_index)
                if raw_status:
                    try:
                        update["status"] = PayoutStatus(raw_status.upper())
                    except ValueError:
                        errors.append(f'Row {line_number}: Invalid status "{raw_status}"')
                        continue

                raw_amount = cell(row, amount_index)
                if raw_amount:
                    try:
                        amount = Decimal(raw_amount)
                    except InvalidOperation:
                        amount = None
                    if amount is None or not amount.is_finite() or amount < 0:
                        errors.append(f'Row {line_number}: Invalid amount "{raw_amount}"')
                        continue
                    update["amount"] = amount

                raw_paid_at = cell(row, paid_at_index)
                if raw_paid_at:
                    try:
                        update["paid_at"] = datetime.fromisoformat(raw_paid_at)
                    except ValueError:
                        errors.append(f'Row {line_number}: Invalid paid_at date "{raw_paid_at}"')
                        continue
                    update["status"] = PayoutStatus.PAID

                if not update:
                    continue

                if payout.status == PayoutStatus.PAID and update.get("status", payout.status) != PayoutStatus.PAID:
                    errors.append(f"Row {line_number}: Payout {raw_id} has already been paid")
                    continue

                old_value = {
                    "status": payout.status.value,
                    "amount": payout.amount,
                    "paid_at": payout.paid_at,
                }
                for name, value in update.items():
                    setattr(payout, name, value)

                self.audit.append(
                    db,
                    actor_id=actor_id,
                    action="PAYOUT_UPDATED_VIA_CSV",
                    table_name=TABLE,
                    record_id=payout.id,
                    old_value=old_value,
                    new_value={
                        "status": payout.status.value,
                        "amount": payout.amount,
                        "paid_at": payout.paid_at,
                    },
                    reason="Bulk update via CSV import",
                )
                result.updated_count += 1

            if result.updated_count == 0:
                raise CsvImportError("Failed to import payouts", errors)

        logger.info(
            f"CSV import into distribution {distribution_id}: "
            f"{result.updated_count} updated, {len(errors)} errors"
        )
        return result

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self, db: Session, payout_id: uuid.UUID) -> ValidationReport:
        """Checks to run before marking a payout paid."""
        payout = db.get(Payout, payout_id)
        if payout is None:
            return ValidationReport(is_valid=False, errors=["Payout not found"])

        errors: list[str] = []
        if payout.distribution.effective_status not in (
            DistributionStatus.DECLARED,
            DistributionStatus.PAID,
        ):
            errors.append("Distribution must be declared before marking payouts as paid")
        if payout.amount <= 0:
            errors.append("Payout amount must be positive")

        return ValidationReport(is_valid=not errors, errors=errors)
