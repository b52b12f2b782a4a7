"""SQLAlchemy models for fractional-share income distribution.

Data Architecture Overview:
- Distribution is the AGGREGATE ROOT: one per rental statement, owning its Payouts
- Payout is one beneficiary's line item; the system holder (underwriter) gets
  the line for unsold shares
- Property, User, Investment and RentalStatement are referenced, never mutated
- All state changes tracked via the AuditLog trail

Key Concepts:
- shares_at_record: point-in-time snapshot used for a payout's calculation
- total_distributed: the statement's net distributable at creation/recalculation
- Distribution PAID status is derived on read (see Distribution.effective_status)

Ledger references:
- Declaration writes Transaction(reference="PAY-<first 8 of payout id>")
- Wallet credit writes Transaction(reference="PAYOUT-<payout id>")
"""

import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base
from .schemas import (
    DistributionStatus,
    InvestmentStatus,
    PaymentMethod,
    PayoutStatus,
    TransactionType,
    UserRole,
)

MONEY = Numeric(15, 2)


def payout_ledger_reference(payout_id: uuid.UUID | str) -> str:
    """Reference of the ledger Transaction materialized for a payout at declaration.

    Declaration writes it and deletion matches on it, so both go through here.
    """
    return f"PAY-{str(payout_id)[:8].upper()}"


def wallet_credit_reference(payout_id: uuid.UUID | str) -> str:
    return f"PAYOUT-{payout_id}"


# =============================================================================
# REFERENCED ENTITIES (owned outside the engine)
# =============================================================================


class User(Base):
    """An account that can receive payouts.

    Investors are ordinary users. The system holder (underwriter) is a single
    user with is_system=True, found by its well-known email.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True,
        doc="Login email; also the lookup key for the system holder"
    )
    name: Mapped[str | None] = mapped_column(String(200))
    role: Mapped[UserRole] = mapped_column(SQLEnum(UserRole), default=UserRole.INVESTOR)
    is_system: Mapped[bool] = mapped_column(
        Boolean, default=False,
        doc="True only for the system holder; excluded from investor semantics"
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    investments: Mapped[list["Investment"]] = relationship("Investment", back_populates="user")
    payouts: Mapped[list["Payout"]] = relationship("Payout", back_populates="user")

    def __repr__(self) -> str:
        return f"<User {self.email}>"


class Property(Base):
    """An income-producing property split into a fixed number of shares."""

    __tablename__ = "properties"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    total_shares: Mapped[int] = mapped_column(
        Integer, nullable=False,
        doc="Total share count. Immutable once investments exist."
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    investments: Mapped[list["Investment"]] = relationship("Investment", back_populates="property")
    rental_statements: Mapped[list["RentalStatement"]] = relationship(
        "RentalStatement", back_populates="property"
    )

    def __repr__(self) -> str:
        return f"<Property {self.name}: {self.total_shares} shares>"


class Investment(Base):
    """A user's purchase of shares in a property."""

    __tablename__ = "investments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    property_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("properties.id"), nullable=False, index=True
    )
    shares: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[InvestmentStatus] = mapped_column(
        SQLEnum(InvestmentStatus), default=InvestmentStatus.PENDING, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    user: Mapped["User"] = relationship("User", back_populates="investments")
    property: Mapped["Property"] = relationship("Property", back_populates="investments")

    def __repr__(self) -> str:
        return f"<Investment {self.user_id} {self.shares} @ {self.property_id} ({self.status.value})>"


class RentalStatement(Base):
    """Computed income for one property and one period.

    net_distributable = gross_revenue - operating_costs - management_fee + income_adjustment
    """

    __tablename__ = "rental_statements"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    property_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("properties.id"), nullable=False, index=True
    )
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    gross_revenue: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"))
    operating_costs: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"))
    management_fee: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"))
    income_adjustment: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"))
    net_distributable: Mapped[Decimal] = mapped_column(
        MONEY, nullable=False,
        doc="Signed; adjustments may make it negative"
    )
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    property: Mapped["Property"] = relationship("Property", back_populates="rental_statements")
    distribution: Mapped["Distribution | None"] = relationship(
        "Distribution", back_populates="rental_statement", uselist=False
    )

    def __repr__(self) -> str:
        return f"<RentalStatement {self.property_id} {self.period_start}..{self.period_end}>"


# =============================================================================
# DISTRIBUTION AGGREGATE
# =============================================================================


class Distribution(Base):
    """One income-sharing event for a property, tied 1:1 to a rental statement.

    Invariant: sum(payout.amount) == total_distributed, except inside a
    reconciliation unit of work.

    The stored status never holds PAID. A declared distribution whose payouts
    are all PAID reports PAID through effective_status.
    """

    __tablename__ = "distributions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    property_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("properties.id"), nullable=False, index=True
    )
    rental_statement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("rental_statements.id"), unique=True, nullable=False,
        doc="At most one distribution per statement, enforced by the database"
    )
    total_distributed: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    status: Mapped[DistributionStatus] = mapped_column(
        SQLEnum(DistributionStatus), default=DistributionStatus.DRAFT, nullable=False, index=True
    )
    declared_at: Mapped[datetime | None] = mapped_column(DateTime)
    approved_by: Mapped[str | None] = mapped_column(String(100))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime)
    notes: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    def __repr__(self) -> str:
        return f"<Distribution {self.id} {self.status.value} {self.total_distributed}>"

    @property
    def paid_payouts(self) -> list["Payout"]:
        return [p for p in self.payouts if p.status == PayoutStatus.PAID]

    @property
    def payouts_total(self) -> Decimal:
        return sum((p.amount for p in self.payouts), Decimal("0.00"))

    @property
    def effective_status(self) -> DistributionStatus:
        """Stored status, promoted to PAID once every payout of a declared distribution is paid."""
        if (
            self.status == DistributionStatus.DECLARED
            and self.payouts
            and len(self.paid_payouts) == len(self.payouts)
        ):
            return DistributionStatus.PAID
        return self.status

    # Relationships come last: `property` shadows the builtin decorator from here on
    property: Mapped["Property"] = relationship("Property")
    rental_statement: Mapped["RentalStatement"] = relationship(
        "RentalStatement", back_populates="distribution"
    )
    payouts: Mapped[list["Payout"]] = relationship(
        "Payout",
        back_populates="distribution",
        cascade="all, delete-orphan",
        order_by="Payout.created_at",
    )


class Payout(Base):
    """One beneficiary's line item within a distribution.

    shares_at_record is frozen at creation. Only the reconciliation utility
    may correct it, and only on the underwriter's payout.
    """

    __tablename__ = "payouts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    property_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("properties.id"), nullable=False, index=True
    )
    distribution_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("distributions.id"), nullable=False, index=True
    )
    rental_statement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("rental_statements.id"), nullable=False
    )
    shares_at_record: Mapped[int] = mapped_column(
        Integer, nullable=False,
        doc="Share count used for this calculation; a snapshot, not a live reference"
    )
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    status: Mapped[PayoutStatus] = mapped_column(
        SQLEnum(PayoutStatus), default=PayoutStatus.PENDING, nullable=False, index=True
    )

    # Payment metadata (recorded, never executed here)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime)
    payment_method: Mapped[PaymentMethod | None] = mapped_column(SQLEnum(PaymentMethod))
    payment_reference: Mapped[str | None] = mapped_column(String(200))
    bank_account: Mapped[str | None] = mapped_column(String(200))
    notes: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    distribution: Mapped["Distribution"] = relationship("Distribution", back_populates="payouts")
    user: Mapped["User"] = relationship("User", back_populates="payouts")

    __table_args__ = (
        UniqueConstraint("distribution_id", "user_id", name="uq_payouts_distribution_user"),
    )

    def __repr__(self) -> str:
        return f"<Payout {self.id} {self.user_id} {self.amount} ({self.status.value})>"

    @property
    def ledger_reference(self) -> str:
        return payout_ledger_reference(self.id)

    @property
    def is_paid(self) -> bool:
        return self.status == PayoutStatus.PAID and self.paid_at is not None

    def snapshot(self) -> dict:
        """Audit-friendly view of the mutable fields."""
        return {
            "status": self.status.value if self.status else None,
            "amount": str(self.amount) if self.amount is not None else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "payment_method": self.payment_method.value if self.payment_method else None,
            "payment_reference": self.payment_reference,
            "bank_account": self.bank_account,
            "notes": self.notes,
        }


# =============================================================================
# BOOKKEEPING AND AUDIT
# =============================================================================


class Transaction(Base):
    """Ledger entry written for downstream bookkeeping (declaration, wallet credit)."""

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    type: Mapped[TransactionType] = mapped_column(SQLEnum(TransactionType), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    reference: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<Transaction {self.type.value} {self.reference} {self.amount} {self.currency}>"


class AuditLog(Base):
    """Audit trail for every state-changing operation.

    Each entry records:
    - What changed (table, record, action, old/new values as JSON)
    - Who made the change (actor id)
    - Why (reason)
    - When

    Entries are written inside the same unit of work as the change they
    describe, so a rolled-back operation leaves no audit entry behind.
    """

    __tablename__ = "audit_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # What changed
    table_name: Mapped[str] = mapped_column(
        String(50), nullable=False, index=True,
        doc="Table of the affected record: distributions, payouts"
    )
    record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, nullable=False, index=True,
        doc="ID of the affected record (kept after deletion)"
    )
    action: Mapped[str] = mapped_column(
        String(50), nullable=False, index=True,
        doc="DISTRIBUTION_APPROVED, PAYOUT_UPDATED, ..."
    )
    old_value: Mapped[str | None] = mapped_column(Text, doc="Previous values (JSON)")
    new_value: Mapped[str | None] = mapped_column(Text, doc="New values or metadata (JSON)")

    # Who/why
    actor_id: Mapped[str] = mapped_column(
        String(100), nullable=False,
        doc="Who made the change: an admin user id or 'system:<job>'"
    )
    reason: Mapped[str | None] = mapped_column(Text)

    # When
    changed_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False, index=True
    )

    __table_args__ = (
        Index("ix_audit_log_table_record", "table_name", "record_id"),
    )

    def __repr__(self) -> str:
        return f"<AuditLog {self.action} {self.table_name}.{self.record_id}>"
