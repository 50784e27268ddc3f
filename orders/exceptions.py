"""
Errors raised while computing, reading or repairing order totals.

An order whose stored totals disagree with its items is *not* an error; see
``orders.reconciliation.Inconsistent``.
"""


class ReconciliationError(Exception):
    """Base class for failures that stop one order from being reconciled."""


class MalformedOrderError(ReconciliationError, ValueError):
    """
    An order's line items or delivery fee violate the money invariants.

    Attributes:
        line_index: Position of the offending line item, or None when the
            delivery fee is at fault
        field: Name of the offending field
        value: The rejected value
    """

    def __init__(self, message, line_index=None, field=None, value=None):
        super().__init__(message)
        self.line_index = line_index
        self.field = field
        self.value = value


class TotalsOverflowError(ReconciliationError, ArithmeticError):
    """Computed totals cannot be represented in the stored money columns."""


class StorageUnavailable(ReconciliationError):
    """The order store could not be read from or written to."""


class OrderNotFound(ReconciliationError, LookupError):
    """No order exists with the requested id."""


class StaleOrderError(ReconciliationError):
    """The order changed between read and write; the repair must be retried."""
