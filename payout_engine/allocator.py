"""Allocator: split a net distributable amount across share holdings.

Pure computation. No session, no persistence.

Each holder's exact share is (shares / total_shares) * net. Exact shares are
floored to the currency minor unit, then the leftover minor units go one at a
time to the lines with the largest truncated fractions (largest-remainder
method), so the lines always sum to net to the cent.

Negative net amounts are allocated by magnitude and re-signed.
"""

from collections.abc import Sequence
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal

from .errors import InvalidShareStructureError, NoSharesPurchasedError, OversoldPropertyError
from .schemas import AllocationLine, AllocationResult, Holding

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Coerce to Decimal and quantize to the minor unit."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def underwriter_note(unsold: int, total_shares: int) -> str:
    percentage = (Decimal(unsold) * 100 / Decimal(total_shares)).quantize(CENT, rounding=ROUND_HALF_UP)
    return f"System payout for {unsold} unsold shares ({percentage}% of total shares)"


def prorate(amount: Decimal, shares: int, total_shares: int) -> Decimal:
    """One line's share of amount, rounded half-up to the cent."""
    return to_money(Decimal(amount) * Decimal(shares) / Decimal(total_shares))


def _largest_remainder(magnitude: Decimal, weights: Sequence[int], total_shares: int) -> list[Decimal]:
    exact = [magnitude * Decimal(w) / Decimal(total_shares) for w in weights]
    floors = [e.quantize(CENT, rounding=ROUND_DOWN) for e in exact]

    target = (magnitude * Decimal(sum(weights)) / Decimal(total_shares)).quantize(
        CENT, rounding=ROUND_HALF_UP
    )
    leftover_cents = int((target - sum(floors, Decimal("0"))) / CENT)

    # Biggest fraction first; ties go to the bigger holding, then to input order
    order = sorted(
        range(len(weights)),
        key=lambda i: (-(exact[i] - floors[i]), -weights[i], i),
    )
    for i in order[:leftover_cents]:
        floors[i] += CENT
    return floors


def allocate(
    net_distributable,
    total_shares: int,
    holdings: Sequence[Holding],
    unsold_shares: int,
    property_id=None,
) -> AllocationResult:
    """Compute investor lines and the optional underwriter line.

    Raises NoSharesPurchasedError when no investor holds any share: a
    distribution with zero real investors is an upstream precondition failure,
    not an all-underwriter payout.
    """
    if total_shares <= 0:
        raise InvalidShareStructureError(total_shares)

    net = to_money(net_distributable)
    sold = sum(h.shares for h in holdings)

    if sold == 0:
        raise NoSharesPurchasedError(property_id)
    if unsold_shares < 0:
        raise OversoldPropertyError(property_id, total_shares, sold)
    if sold + unsold_shares != total_shares:
        raise ValueError(
            f"Sold ({sold}) and unsold ({unsold_shares}) shares do not add up to {total_shares}"
        )

    active = [h for h in holdings if h.shares > 0]
    weights = [h.shares for h in active]
    if unsold_shares > 0:
        weights.append(unsold_shares)

    sign = Decimal(-1) if net < 0 else Decimal(1)
    amounts = [sign * a for a in _largest_remainder(abs(net), weights, total_shares)]

    investor_lines = [
        AllocationLine(user_id=h.user_id, shares=h.shares, amount=amount)
        for h, amount in zip(active, amounts)
    ]

    underwriter_line = None
    if unsold_shares > 0 and amounts[-1] != 0:
        underwriter_line = AllocationLine(
            shares=unsold_shares,
            amount=amounts[-1],
            is_underwriter=True,
            notes=underwriter_note(unsold_shares, total_shares),
        )

    return AllocationResult(
        net_distributable=net,
        total_shares=total_shares,
        sold_shares=sold,
        unsold_shares=unsold_shares,
        investor_lines=investor_lines,
        underwriter_line=underwriter_line,
    )
