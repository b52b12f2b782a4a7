"""Domain errors raised by the distribution engine.

Precondition violations always abort the whole operation. Validation failures
abort the operation when it is atomic and are collected per row when it is
row-oriented (CSV import, batch submit).
"""


class DistributionEngineError(Exception):
    """Base class for every failure the engine reports to callers."""


class NotFoundError(DistributionEngineError):
    """A referenced record does not exist."""


class PreconditionError(DistributionEngineError):
    """The requested operation is not allowed in the current state."""


class PayoutValidationError(DistributionEngineError):
    """Supplied payout data is invalid."""


# Not found

class PropertyNotFound(NotFoundError):
    def __init__(self, property_id):
        super().__init__("Property not found")
        self.property_id = property_id


class RentalStatementNotFound(NotFoundError):
    def __init__(self, rental_statement_id):
        super().__init__("Rental statement not found")
        self.rental_statement_id = rental_statement_id


class DistributionNotFound(NotFoundError):
    def __init__(self, distribution_id):
        super().__init__("Distribution not found")
        self.distribution_id = distribution_id


class PayoutNotFound(NotFoundError):
    def __init__(self, payout_id):
        super().__init__("Payout not found")
        self.payout_id = payout_id


# Preconditions

class DuplicateDistributionError(PreconditionError):
    def __init__(self, rental_statement_id):
        super().__init__("A distribution already exists for this rental statement")
        self.rental_statement_id = rental_statement_id


class NoSharesPurchasedError(PreconditionError):
    def __init__(self, property_id):
        super().__init__("No shares have been purchased for this property")
        self.property_id = property_id


class OversoldPropertyError(PreconditionError):
    """Confirmed investments hold more shares than the property has."""

    def __init__(self, property_id, total_shares: int, sold_shares: int):
        super().__init__(
            f"Confirmed investments hold {sold_shares} shares but the property "
            f"only has {total_shares}"
        )
        self.property_id = property_id
        self.total_shares = total_shares
        self.sold_shares = sold_shares


class InvalidShareStructureError(PreconditionError):
    def __init__(self, total_shares: int):
        super().__init__(f"Total shares must be positive, got {total_shares}")
        self.total_shares = total_shares


class StatementPropertyMismatch(PreconditionError):
    def __init__(self, rental_statement_id, property_id):
        super().__init__("Rental statement does not belong to this property")
        self.rental_statement_id = rental_statement_id
        self.property_id = property_id


class InvalidStateTransition(PreconditionError):
    """A status change that the state machine does not allow."""

    def __init__(self, entity: str, current, target, message: str | None = None):
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        super().__init__(
            message or f"Cannot move {entity} from {current_value} to {target_value}"
        )
        self.entity = entity
        self.current = current
        self.target = target


class DistributionPaidError(PreconditionError):
    """Paid payouts lock a distribution against deletion and recalculation."""

    def __init__(self, distribution_id, paid_count: int = 0, action: str = "delete"):
        if paid_count:
            message = f"Cannot {action}: {paid_count} payout(s) already paid"
        else:
            message = f"Cannot {action} a distribution that has been fully paid"
        super().__init__(message)
        self.distribution_id = distribution_id
        self.paid_count = paid_count


# Validation

class MissingBankAccountError(PayoutValidationError):
    def __init__(self, payout_id):
        super().__init__("Bank account details are required for non-wallet payment methods")
        self.payout_id = payout_id


class CsvImportError(PayoutValidationError):
    """No CSV row could be applied; carries every per-row error."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []
