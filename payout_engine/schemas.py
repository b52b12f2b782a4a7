"""Pydantic schemas and canonical enums for the distribution engine.

Schema Engineering Philosophy:
- Enums are the single source of truth for every status the engine writes
- Request models validate caller input before any row is touched
- Result models are what services hand back; they never leak ORM objects

Two result shapes exist on purpose:
- Atomic operations return a single result model or raise a domain error
- Batch operations return BatchResult and report per-item outcomes
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# ENUMS: Canonical value sets with descriptions
# =============================================================================


class DistributionStatus(str, Enum):
    """Lifecycle of one income-sharing event.

    DRAFT → PENDING_APPROVAL → APPROVED → DECLARED → (PAID)
    PENDING_APPROVAL → DRAFT on rejection.
    """

    DRAFT = "DRAFT"
    """Created by the allocator. Payouts may still be recalculated."""

    PENDING_APPROVAL = "PENDING_APPROVAL"
    """Submitted for review. No recalculation."""

    APPROVED = "APPROVED"
    """Approved by an admin. Amounts are frozen from here on."""

    DECLARED = "DECLARED"
    """Income recognised; ledger transactions exist for every payout."""

    PAID = "PAID"
    """Derived on read: DECLARED and every payout is PAID. Never stored."""


class PayoutStatus(str, Enum):
    """Lifecycle of one beneficiary's line item.

    Approval is an optional gate: PENDING → PAID and APPROVED → PAID are both
    allowed. PAID is terminal.
    """

    PENDING = "PENDING"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    PAID = "PAID"


class PaymentMethod(str, Enum):
    """How a payout was settled. Only WALLET triggers a wallet credit."""

    WALLET = "WALLET"
    BANK_TRANSFER = "BANK_TRANSFER"
    CHECK = "CHECK"
    WIRE_TRANSFER = "WIRE_TRANSFER"
    MOBILE_MONEY = "MOBILE_MONEY"
    CASH = "CASH"
    OTHER = "OTHER"


class TransactionType(str, Enum):
    """Ledger entry type for downstream bookkeeping."""

    PAYOUT = "PAYOUT"
    INVESTMENT = "INVESTMENT"


class InvestmentStatus(str, Enum):
    """Only CONFIRMED investments participate in allocation."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


class UserRole(str, Enum):
    INVESTOR = "INVESTOR"
    ADMIN = "ADMIN"


# =============================================================================
# ALLOCATION
# =============================================================================


class Holding(BaseModel):
    """One beneficiary's confirmed share count in a property."""

    user_id: UUID
    shares: int = Field(ge=0)


class AllocationLine(BaseModel):
    """One computed payout line item, not yet persisted."""

    user_id: UUID | None = Field(
        default=None,
        description="Investor id; None for the underwriter line until the system holder is resolved"
    )
    shares: int = Field(description="Share count used for this line (shares_at_record)")
    amount: Decimal = Field(description="Amount in currency units, quantized to the minor unit")
    is_underwriter: bool = False
    notes: str | None = None


class AllocationResult(BaseModel):
    """Output of the allocator. Amounts of all lines sum to net_distributable."""

    net_distributable: Decimal
    total_shares: int
    sold_shares: int
    unsold_shares: int
    investor_lines: list[AllocationLine] = Field(default_factory=list)
    underwriter_line: AllocationLine | None = None

    @property
    def lines(self) -> list[AllocationLine]:
        if self.underwriter_line is None:
            return list(self.investor_lines)
        return [*self.investor_lines, self.underwriter_line]

    @property
    def allocated_total(self) -> Decimal:
        return sum((line.amount for line in self.lines), Decimal("0.00"))

    @property
    def investor_distributable(self) -> Decimal:
        return sum((line.amount for line in self.investor_lines), Decimal("0.00"))

    @property
    def underwriter_distributable(self) -> Decimal:
        if self.underwriter_line is None:
            return Decimal("0.00")
        return self.underwriter_line.amount


# =============================================================================
# DISTRIBUTION RESULTS
# =============================================================================


class PayoutSummary(BaseModel):
    """Read model of a persisted payout."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    distribution_id: UUID
    property_id: UUID
    rental_statement_id: UUID
    shares_at_record: int
    amount: Decimal
    status: PayoutStatus
    paid_at: datetime | None = None
    payment_method: PaymentMethod | None = None
    payment_reference: str | None = None
    bank_account: str | None = None
    notes: str | None = None


class DistributionSummary(BaseModel):
    """Read model of a distribution, with its effective (derived) status."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    property_id: UUID
    rental_statement_id: UUID
    total_distributed: Decimal
    status: DistributionStatus
    effective_status: DistributionStatus
    declared_at: datetime | None = None
    approved_by: str | None = None
    approved_at: datetime | None = None
    notes: str | None = None
    payouts: list[PayoutSummary] = Field(default_factory=list)


class DraftDistributionResult(BaseModel):
    """What draft creation and recalculation hand back."""

    distribution_id: UUID
    payouts_created: int
    total_shares: int
    sold_shares: int
    unsold_shares: int
    net_distributable: Decimal
    investor_distributable: Decimal
    underwriter_distributable: Decimal


class ValidationReport(BaseModel):
    """Pre-flight checks; errors block, warnings inform."""

    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class PropertyPayoutGroup(BaseModel):
    """One investor's payouts from a single property, newest first."""

    property_id: UUID
    property_name: str
    total_shares: int
    total_amount: Decimal
    payouts: list[PayoutSummary] = Field(default_factory=list)


class MonthlyPayoutGroup(BaseModel):
    """One investor's payouts for statements starting in the same month (YYYY-MM)."""

    month: str
    total_amount: Decimal
    payouts: list[PayoutSummary] = Field(default_factory=list)


# =============================================================================
# PAYOUT REQUESTS AND RESULTS
# =============================================================================


class PayoutUpdate(BaseModel):
    """Fields an admin may change on one payout.

    Unset fields are left alone; fields explicitly set to None are cleared.
    Use model_dump(exclude_unset=True) to read the intended change set.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    status: PayoutStatus | None = None
    amount: Decimal | None = Field(default=None, ge=0)
    paid_at: datetime | None = None
    payment_method: PaymentMethod | None = None
    payment_reference: str | None = None
    bank_account: str | None = None
    notes: str | None = None


class BulkPayoutUpdate(BaseModel):
    payout_ids: list[UUID] = Field(min_length=1)
    status: PayoutStatus
    paid_at: datetime | None = None


class BatchFailure(BaseModel):
    id: UUID
    error: str


class BatchResult(BaseModel):
    """Outcome of a best-effort batch. Items succeed or fail independently."""

    succeeded: list[UUID] = Field(default_factory=list)
    failed: list[BatchFailure] = Field(default_factory=list)
    skipped: list[UUID] = Field(
        default_factory=list,
        description="Items not eligible for the operation, left untouched without error"
    )

    @property
    def succeeded_count(self) -> int:
        return len(self.succeeded)

    @property
    def failed_count(self) -> int:
        return len(self.failed)


class CsvImportResult(BaseModel):
    """Outcome of a CSV-driven bulk update."""

    updated_count: int = 0
    errors: list[str] = Field(default_factory=list)


# =============================================================================
# RECONCILIATION
# =============================================================================


class ReconciledPayout(BaseModel):
    """One underwriter payout whose shares_at_record was corrected."""

    id: UUID
    distribution_id: UUID
    old_shares: int
    new_shares: int
    old_amount: Decimal
    new_amount: Decimal
    distribution_status: DistributionStatus

    @property
    def amount_changed(self) -> bool:
        return self.old_amount != self.new_amount


class ReconciliationResult(BaseModel):
    fixed: int = 0
    payouts: list[ReconciledPayout] = Field(default_factory=list)
    skipped: list[str] = Field(
        default_factory=list,
        description="Human-readable notes for payouts left alone (e.g. oversold property)"
    )


# =============================================================================
# HTTP REQUEST BODIES
# =============================================================================


class CreateDraftRequest(BaseModel):
    property_id: UUID
    rental_statement_id: UUID


class ApprovalRequest(BaseModel):
    notes: str | None = None


class RecalculateRequest(BaseModel):
    net_distributable: Decimal | None = Field(
        default=None,
        description="New net distributable; defaults to the rental statement's current figure"
    )


class DeleteDistributionRequest(BaseModel):
    reason: str | None = None


class PayoutIdsRequest(BaseModel):
    payout_ids: list[UUID] = Field(min_length=1)
    notes: str | None = None


class PayoutUpdateRequest(PayoutUpdate):
    adjustment_reason: str | None = None


class CsvImportRequest(BaseModel):
    csv_data: str = Field(min_length=1)

    @field_validator("csv_data")
    @classmethod
    def strip_bom(cls, v: str) -> str:
        return v.lstrip("\ufeff")


class FixUnderwriterRequest(BaseModel):
    distribution_id: UUID | None = None


class ActionResponse(BaseModel):
    success: bool = True
    message: str | None = None
