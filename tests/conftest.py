"""Shared fixtures: an in-memory database seeded with one property.

The seeded property has 1000 shares. Alice holds 300 and Bob 200 (both
CONFIRMED); Carol's 100-share investment is still PENDING. Its January rental
statement has a net distributable of 100000.00.
"""

from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from payout_engine.database import init_db, make_engine
from payout_engine.models import Investment, Property, RentalStatement, User
from payout_engine.schemas import InvestmentStatus


@pytest.fixture
def engine():
    engine = make_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False)()
    yield session
    session.close()


def add_user(db, email: str) -> User:
    user = User(email=email, name=email.split("@")[0].title())
    db.add(user)
    db.flush()
    return user


def add_investment(db, user, prop, shares: int, status=InvestmentStatus.CONFIRMED) -> Investment:
    investment = Investment(user_id=user.id, property_id=prop.id, shares=shares, status=status)
    db.add(investment)
    db.flush()
    return investment


def add_statement(db, prop, net: str, start=date(2026, 1, 1), end=date(2026, 1, 31)) -> RentalStatement:
    statement = RentalStatement(
        property_id=prop.id,
        period_start=start,
        period_end=end,
        gross_revenue=Decimal(net),
        net_distributable=Decimal(net),
    )
    db.add(statement)
    db.flush()
    return statement


def count(db, model, *criteria) -> int:
    return db.scalar(select(func.count()).select_from(model).where(*criteria))


@pytest.fixture
def seed(db):
    """Plain ids for the seeded rows; the session is left with no open transaction."""
    prop = Property(name="Lekki Court", total_shares=1000)
    db.add(prop)
    db.flush()

    alice = add_user(db, "alice@example.com")
    bob = add_user(db, "bob@example.com")
    carol = add_user(db, "carol@example.com")
    add_investment(db, alice, prop, 300)
    add_investment(db, bob, prop, 200)
    carol_investment = add_investment(db, carol, prop, 100, status=InvestmentStatus.PENDING)
    statement = add_statement(db, prop, "100000.00")

    ids = SimpleNamespace(
        property_id=prop.id,
        alice_id=alice.id,
        bob_id=bob.id,
        carol_id=carol.id,
        carol_investment_id=carol_investment.id,
        statement_id=statement.id,
    )
    db.commit()
    return ids
