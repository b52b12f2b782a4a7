import json
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from payout_engine.distributions import DistributionService
from payout_engine.errors import (
    DistributionNotFound,
    DistributionPaidError,
    DuplicateDistributionError,
    InvalidStateTransition,
    NoSharesPurchasedError,
    OversoldPropertyError,
    StatementPropertyMismatch,
)
from payout_engine.models import (
    AuditLog,
    Distribution,
    Investment,
    Payout,
    Property,
    RentalStatement,
    Transaction,
    User,
    payout_ledger_reference,
    wallet_credit_reference,
)
from payout_engine.payouts import PayoutService
from payout_engine.schemas import (
    DistributionStatus,
    InvestmentStatus,
    PaymentMethod,
    PayoutStatus,
    PayoutUpdate,
    TransactionType,
)
from payout_engine.system_holder import UNDERWRITER_EMAIL, underwriter_id

from conftest import add_investment, add_statement, add_user, count


@pytest.fixture
def service():
    return DistributionService()


@pytest.fixture
def draft(db, seed, service):
    return service.create_draft(db, seed.property_id, seed.statement_id, "admin-1")


def payouts_by_user(db, distribution_id):
    rows = db.scalars(select(Payout).where(Payout.distribution_id == distribution_id))
    return {p.user_id: p for p in rows}


def declared(db, service, distribution_id):
    service.submit_for_approval(db, distribution_id, "admin-1")
    service.approve(db, distribution_id, "admin-2", "Looks right")
    return service.declare(db, distribution_id, "admin-2")


# =============================================================================
# Draft creation
# =============================================================================


def test_draft_splits_statement_between_investors_and_underwriter(db, seed, draft):
    assert draft.payouts_created == 3
    assert draft.sold_shares == 500
    assert draft.unsold_shares == 500
    assert draft.investor_distributable == Decimal("50000.00")
    assert draft.underwriter_distributable == Decimal("50000.00")

    payouts = payouts_by_user(db, draft.distribution_id)
    uw_id = underwriter_id(db)
    assert payouts[seed.alice_id].amount == Decimal("30000.00")
    assert payouts[seed.bob_id].amount == Decimal("20000.00")
    assert payouts[uw_id].amount == Decimal("50000.00")
    assert payouts[uw_id].shares_at_record == 500
    assert payouts[uw_id].notes == "System payout for 500 unsold shares (50.00% of total shares)"
    assert seed.carol_id not in payouts
    assert all(p.status == PayoutStatus.PENDING for p in payouts.values())

    distribution = db.get(Distribution, draft.distribution_id)
    assert distribution.status == DistributionStatus.DRAFT
    assert distribution.total_distributed == Decimal("100000.00")
    assert distribution.payouts_total == distribution.total_distributed


def test_draft_creation_is_audited(db, draft):
    entry = db.scalar(select(AuditLog).where(AuditLog.record_id == draft.distribution_id))
    assert entry.action == "DRAFT_DISTRIBUTION_CREATED"
    assert entry.actor_id == "admin-1"
    assert json.loads(entry.new_value)["payouts_created"] == 3


def test_second_draft_for_same_statement_fails(db, seed, service, draft):
    with pytest.raises(DuplicateDistributionError):
        service.create_draft(db, seed.property_id, seed.statement_id)

    assert count(db, Distribution) == 1
    assert count(db, Payout) == 3


def test_database_enforces_one_distribution_per_statement(db, seed, draft):
    db.add(Distribution(
        property_id=seed.property_id,
        rental_statement_id=seed.statement_id,
        total_distributed=Decimal("1.00"),
    ))
    with pytest.raises(IntegrityError):
        db.flush()
    db.rollback()


def test_concurrent_insert_is_reported_as_duplicate(db, seed, service, draft, monkeypatch):
    # The pre-check misses a row another request committed in between
    real_scalar = db.scalar
    calls = []

    def scalar(statement, *args, **kwargs):
        calls.append(statement)
        if len(calls) == 1:
            return None
        return real_scalar(statement, *args, **kwargs)

    monkeypatch.setattr(db, "scalar", scalar)

    with pytest.raises(DuplicateDistributionError):
        service.create_draft(db, seed.property_id, seed.statement_id)

    monkeypatch.undo()
    assert count(db, Distribution) == 1
    assert count(db, Payout) == 3


def test_statement_must_belong_to_property(db, seed, service):
    other = Property(name="Ikoyi Heights", total_shares=10)
    db.add(other)
    db.commit()

    with pytest.raises(StatementPropertyMismatch):
        service.create_draft(db, other.id, seed.statement_id)
    assert count(db, Distribution) == 0


def test_property_without_sales_creates_nothing(db, service):
    prop = Property(name="Empty Block", total_shares=100)
    db.add(prop)
    db.flush()
    statement = add_statement(db, prop, "5000.00")
    prop_id, statement_id = prop.id, statement.id
    db.commit()

    with pytest.raises(NoSharesPurchasedError):
        service.create_draft(db, prop_id, statement_id)

    assert count(db, Distribution) == 0
    assert count(db, Payout) == 0
    assert count(db, User, User.email == UNDERWRITER_EMAIL) == 0


def test_oversold_property_fails(db, seed, service):
    carol = db.get(User, seed.carol_id)
    prop = db.get(Property, seed.property_id)
    add_investment(db, carol, prop, 600)
    db.commit()

    with pytest.raises(OversoldPropertyError):
        service.create_draft(db, seed.property_id, seed.statement_id)
    assert count(db, Distribution) == 0


def test_fully_sold_property_has_no_underwriter_payout(db, seed, service):
    carol = db.get(User, seed.carol_id)
    prop = db.get(Property, seed.property_id)
    add_investment(db, carol, prop, 500)
    db.commit()

    result = service.create_draft(db, seed.property_id, seed.statement_id)

    assert result.payouts_created == 3
    assert result.underwriter_distributable == Decimal("0")
    assert underwriter_id(db) is None


# =============================================================================
# Recalculation
# =============================================================================


def test_recalculate_with_new_net_keeps_sum_invariant(db, seed, service, draft):
    result = service.recalculate(db, draft.distribution_id, Decimal("1000.01"), "admin-1")

    distribution = db.get(Distribution, draft.distribution_id)
    assert distribution.total_distributed == Decimal("1000.01")
    assert distribution.payouts_total == Decimal("1000.01")
    assert result.payouts_created == 3
    assert count(db, Payout) == 3


def test_recalculate_picks_up_newly_confirmed_investments(db, seed, service, draft):
    investment = db.get(Investment, seed.carol_investment_id)
    investment.status = InvestmentStatus.CONFIRMED
    db.commit()

    result = service.recalculate(db, draft.distribution_id)

    payouts = payouts_by_user(db, draft.distribution_id)
    assert result.payouts_created == 4
    assert payouts[seed.carol_id].amount == Decimal("10000.00")
    assert payouts[underwriter_id(db)].shares_at_record == 400


def test_recalculate_requires_draft(db, service, draft):
    service.submit_for_approval(db, draft.distribution_id)
    before = {p.id: p.amount for p in payouts_by_user(db, draft.distribution_id).values()}

    with pytest.raises(InvalidStateTransition):
        service.recalculate(db, draft.distribution_id, Decimal("5"))

    after = {p.id: p.amount for p in payouts_by_user(db, draft.distribution_id).values()}
    assert before == after


def test_recalculate_refused_once_a_payout_is_paid(db, seed, service, draft):
    alice = payouts_by_user(db, draft.distribution_id)[seed.alice_id]
    PayoutService().update(
        db, alice.id, PayoutUpdate(status=PayoutStatus.PAID, payment_method=PaymentMethod.WALLET), "admin-1"
    )
    credit = Transaction.reference == wallet_credit_reference(alice.id)
    assert count(db, Transaction, credit) == 1

    with pytest.raises(DistributionPaidError, match="Cannot recalculate: 1 payout"):
        service.recalculate(db, draft.distribution_id, Decimal("5000.00"), "admin-1")

    assert count(db, Transaction, credit) == 1
    assert db.get(Payout, alice.id).status == PayoutStatus.PAID
    assert db.get(Payout, alice.id).amount == Decimal("30000.00")
    assert count(db, Payout) == 3
    assert db.get(Distribution, draft.distribution_id).total_distributed == Decimal("100000.00")


# =============================================================================
# Approval workflow and declaration
# =============================================================================


def test_full_workflow_writes_ledger_transactions(db, seed, service, draft):
    distribution = declared(db, service, draft.distribution_id)

    assert distribution.status == DistributionStatus.DECLARED
    assert distribution.declared_at is not None
    assert distribution.approved_by == "admin-2"
    assert distribution.notes == "Looks right"

    payouts = payouts_by_user(db, draft.distribution_id)
    references = set(db.scalars(select(Transaction.reference)))
    assert references == {payout_ledger_reference(p.id) for p in payouts.values()}
    alice_ref = payout_ledger_reference(payouts[seed.alice_id].id)
    assert alice_ref.startswith("PAY-") and len(alice_ref) == 12

    actions = db.scalars(
        select(AuditLog.action).where(AuditLog.record_id == draft.distribution_id)
    ).all()
    assert sorted(actions) == sorted([
        "DRAFT_DISTRIBUTION_CREATED",
        "DISTRIBUTION_SUBMITTED_FOR_APPROVAL",
        "DISTRIBUTION_APPROVED",
        "DISTRIBUTION_DECLARED",
    ])


def test_declare_before_approval_changes_nothing(db, service, draft):
    with pytest.raises(InvalidStateTransition, match="must be approved"):
        service.declare(db, draft.distribution_id)

    assert db.get(Distribution, draft.distribution_id).status == DistributionStatus.DRAFT
    assert count(db, Transaction) == 0


def test_transitions_are_not_idempotent(db, service, draft):
    declared(db, service, draft.distribution_id)

    with pytest.raises(InvalidStateTransition):
        service.declare(db, draft.distribution_id)
    with pytest.raises(InvalidStateTransition):
        service.approve(db, draft.distribution_id, "admin-3")
    assert count(db, Transaction) == 3


def test_reject_returns_to_draft(db, service, draft):
    service.submit_for_approval(db, draft.distribution_id)
    distribution = service.reject(db, draft.distribution_id, "Wrong period", "admin-2")

    assert distribution.status == DistributionStatus.DRAFT
    assert distribution.notes == "Wrong period"
    service.submit_for_approval(db, draft.distribution_id)


def test_cannot_reject_a_draft(db, service, draft):
    with pytest.raises(InvalidStateTransition):
        service.reject(db, draft.distribution_id)


def test_unknown_distribution(db, service):
    with pytest.raises(DistributionNotFound):
        service.submit_for_approval(db, uuid.uuid4())


def test_declare_from_statement_skips_approval(db, seed, service):
    result = service.declare_from_statement(db, seed.property_id, seed.statement_id, "admin-1")

    distribution = db.get(Distribution, result.distribution_id)
    assert distribution.status == DistributionStatus.DECLARED
    assert count(db, Transaction) == result.payouts_created == 3


def test_effective_status_is_paid_once_every_payout_is_paid(db, service, draft):
    distribution = declared(db, service, draft.distribution_id)
    assert distribution.effective_status == DistributionStatus.DECLARED

    for payout in distribution.payouts:
        payout.status = PayoutStatus.PAID
    db.commit()

    distribution = db.get(Distribution, draft.distribution_id)
    assert distribution.effective_status == DistributionStatus.PAID
    assert distribution.status == DistributionStatus.DECLARED
    assert service.summary(db, draft.distribution_id).effective_status == DistributionStatus.PAID


# =============================================================================
# Deletion
# =============================================================================


def test_delete_draft_removes_payouts(db, service, draft):
    service.delete(db, draft.distribution_id, "admin-1", "Duplicate upload")

    assert db.get(Distribution, draft.distribution_id) is None
    assert count(db, Payout) == 0
    entry = db.scalar(select(AuditLog).where(AuditLog.action == "DISTRIBUTION_DELETED"))
    assert entry.record_id == draft.distribution_id
    assert entry.reason == "Duplicate upload"
    assert json.loads(entry.new_value)["payouts_deleted"] == 3


def test_delete_declared_removes_ledger_transactions(db, seed, service, draft):
    unrelated = add_user(db, "dave@example.com")
    db.add(Transaction(
        user_id=unrelated.id, type=TransactionType.PAYOUT, amount=Decimal("1.00"),
        currency="NGN", reference="PAY-OTHER001",
    ))
    db.commit()
    declared(db, service, draft.distribution_id)

    service.delete(db, draft.distribution_id, "admin-1")

    assert list(db.scalars(select(Transaction.reference))) == ["PAY-OTHER001"]
    entry = db.scalar(select(AuditLog).where(AuditLog.action == "DISTRIBUTION_DELETED"))
    assert json.loads(entry.new_value)["transactions_deleted"] == 3

    # The statement can be distributed again
    service.create_draft(db, seed.property_id, seed.statement_id)


def test_delete_blocked_by_a_paid_payout(db, service, draft):
    distribution = declared(db, service, draft.distribution_id)
    distribution.payouts[0].status = PayoutStatus.PAID
    db.commit()

    with pytest.raises(DistributionPaidError, match="1 payout"):
        service.delete(db, draft.distribution_id, "admin-1")

    assert db.get(Distribution, draft.distribution_id) is not None
    assert count(db, Payout) == 3
    assert count(db, Transaction) == 3


def test_delete_blocked_when_fully_paid(db, service, draft):
    distribution = declared(db, service, draft.distribution_id)
    for payout in distribution.payouts:
        payout.status = PayoutStatus.PAID
    db.commit()

    with pytest.raises(DistributionPaidError, match="fully paid"):
        service.delete(db, draft.distribution_id, "admin-1")


# =============================================================================
# Validation
# =============================================================================


def test_validation_of_draft_reports_status(db, service, draft):
    report = service.validate(db, draft.distribution_id)

    assert not report.is_valid
    assert report.errors == [
        "Distribution must be APPROVED before declaration. Current status: DRAFT"
    ]
    assert report.warnings == []


def test_validation_of_approved_distribution_passes(db, service, draft):
    service.submit_for_approval(db, draft.distribution_id)
    service.approve(db, draft.distribution_id, "admin-2")

    assert service.validate(db, draft.distribution_id).is_valid


def test_validation_warns_on_total_mismatch(db, service, draft):
    statement = db.get(Distribution, draft.distribution_id).rental_statement
    statement.net_distributable = Decimal("90000.00")
    db.commit()

    report = service.validate(db, draft.distribution_id)
    assert any("doesn't match net distributable" in w for w in report.warnings)


def test_validation_of_missing_distribution(db, service):
    report = service.validate(db, uuid.uuid4())
    assert report.errors == ["Distribution not found"]


def test_negative_statement_is_allocated_but_flagged(db, seed, service):
    prop = db.get(Property, seed.property_id)
    statement = add_statement(db, prop, "-1000.00")
    statement_id = statement.id
    db.commit()

    result = service.create_draft(db, seed.property_id, statement_id)

    payouts = payouts_by_user(db, result.distribution_id)
    assert payouts[seed.alice_id].amount == Decimal("-300.00")
    assert sum(p.amount for p in payouts.values()) == Decimal("-1000.00")
    report = service.validate(db, result.distribution_id)
    assert "Net distributable amount must be positive" in report.errors
    assert db.get(RentalStatement, statement_id).distribution.id == result.distribution_id
