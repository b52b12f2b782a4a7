"""Collaborators the engine writes through: audit trail, ledger and wallet.

Each writer takes the caller's session so its rows join the caller's unit of
work. Nothing here commits.
"""

import json
import logging
import os
import uuid
from collections.abc import Iterable
from decimal import Decimal
from typing import Any, Protocol

from sqlalchemy import delete
from sqlalchemy.orm import Session

from .models import AuditLog, Transaction, payout_ledger_reference, wallet_credit_reference
from .schemas import TransactionType

LEDGER_CURRENCY = os.getenv("LEDGER_CURRENCY", "NGN")

logger = logging.getLogger(__name__)


def _to_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str, sort_keys=True)


class AuditTrail:
    """Appends AuditLog rows."""

    def append(
        self,
        db: Session,
        *,
        actor_id: str,
        action: str,
        table_name: str,
        record_id: uuid.UUID,
        old_value: dict | None = None,
        new_value: dict | None = None,
        reason: str | None = None,
    ) -> AuditLog:
        entry = AuditLog(
            table_name=table_name,
            record_id=record_id,
            action=action,
            old_value=_to_json(old_value),
            new_value=_to_json(new_value),
            actor_id=str(actor_id),
            reason=reason,
        )
        db.add(entry)
        return entry


class LedgerWriter:
    """Writes and removes the PAYOUT transactions materialized at declaration."""

    def __init__(self, currency: str = LEDGER_CURRENCY):
        self.currency = currency

    def create_transaction(
        self,
        db: Session,
        *,
        user_id: uuid.UUID,
        amount: Decimal,
        reference: str,
        type: TransactionType = TransactionType.PAYOUT,
    ) -> Transaction:
        txn = Transaction(
            user_id=user_id,
            type=type,
            amount=amount,
            currency=self.currency,
            reference=reference,
        )
        db.add(txn)
        return txn

    def record_payout(self, db: Session, payout) -> Transaction:
        return self.create_transaction(
            db,
            user_id=payout.user_id,
            amount=payout.amount,
            reference=payout_ledger_reference(payout.id),
        )

    def delete_for_payouts(self, db: Session, payout_ids: Iterable[uuid.UUID]) -> int:
        """Remove declaration transactions; matched by the same reference scheme that wrote them."""
        references = [payout_ledger_reference(pid) for pid in payout_ids]
        if not references:
            return 0
        result = db.execute(
            delete(Transaction)
            .where(Transaction.reference.in_(references))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0


class WalletCredit(Protocol):
    """Credits a user's wallet inside the caller's unit of work.

    Raising aborts the enclosing payout update.
    """

    def credit_wallet(
        self, db: Session, user_id: uuid.UUID, amount: Decimal, payout_id: uuid.UUID
    ) -> None: ...


class WalletService:
    """Wallet balances are the sum of PAYOUT minus INVESTMENT transactions;
    crediting is one more PAYOUT transaction."""

    def __init__(self, ledger: LedgerWriter | None = None):
        self.ledger = ledger or LedgerWriter()

    def credit_wallet(
        self, db: Session, user_id: uuid.UUID, amount: Decimal, payout_id: uuid.UUID
    ) -> None:
        self.ledger.create_transaction(
            db,
            user_id=user_id,
            amount=amount,
            reference=wallet_credit_reference(payout_id),
        )
        logger.info(f"Credited wallet of user {user_id} with {amount} for payout {payout_id}")
