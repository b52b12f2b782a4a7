import uuid
from datetime import date
from decimal import Decimal

import pytest

from payout_engine.distributions import DistributionService
from payout_engine.models import Property, User
from payout_engine.system_holder import underwriter_id

from conftest import add_investment, add_statement


@pytest.fixture
def service():
    return DistributionService()


@pytest.fixture
def history(db, seed, service):
    """Alice earns from Lekki Court in January and March and from Yaba Lofts in February."""
    lekki = db.get(Property, seed.property_id)
    yaba = Property(name="Yaba Lofts", total_shares=100)
    db.add(yaba)
    db.flush()
    add_investment(db, db.get(User, seed.alice_id), yaba, 10)
    february = add_statement(db, yaba, "1000.00", date(2026, 2, 1), date(2026, 2, 28))
    march = add_statement(db, lekki, "2000.00", date(2026, 3, 1), date(2026, 3, 31))
    ids = {"lekki": lekki.id, "yaba": yaba.id}
    statements = [(lekki.id, seed.statement_id), (yaba.id, february.id), (lekki.id, march.id)]
    db.commit()

    for property_id, statement_id in statements:
        service.create_draft(db, property_id, statement_id)
    return ids


def test_user_payouts_lists_every_payout(db, seed, service, history):
    payouts = service.user_payouts(db, seed.alice_id)

    assert sorted(p.amount for p in payouts) == [Decimal("100.00"), Decimal("600.00"), Decimal("30000.00")]
    assert all(p.user_id == seed.alice_id for p in payouts)
    assert {p.property_id for p in payouts} == {history["lekki"], history["yaba"]}


def test_user_payouts_by_property(db, seed, service, history):
    groups = {g.property_id: g for g in service.user_payouts_by_property(db, seed.alice_id)}

    assert groups.keys() == {history["lekki"], history["yaba"]}
    lekki = groups[history["lekki"]]
    assert lekki.property_name == "Lekki Court"
    assert lekki.total_shares == 1000
    assert lekki.total_amount == Decimal("30600.00")
    assert len(lekki.payouts) == 2
    assert groups[history["yaba"]].total_amount == Decimal("100.00")


def test_user_payouts_by_month_latest_first(db, seed, service, history):
    groups = service.user_payouts_by_month(db, seed.alice_id)

    assert [(g.month, g.total_amount) for g in groups] == [
        ("2026-03", Decimal("600.00")),
        ("2026-02", Decimal("100.00")),
        ("2026-01", Decimal("30000.00")),
    ]


def test_underwriter_history_spans_both_properties(db, service, history):
    groups = service.user_payouts_by_property(db, underwriter_id(db))

    totals = {g.property_id: g.total_amount for g in groups}
    assert totals == {history["lekki"]: Decimal("51000.00"), history["yaba"]: Decimal("900.00")}


def test_user_without_payouts_has_empty_history(db, seed, service, history):
    assert service.user_payouts(db, seed.carol_id) == []
    assert service.user_payouts_by_property(db, uuid.uuid4()) == []
    assert service.user_payouts_by_month(db, uuid.uuid4()) == []
