"""
Order total reconciliation.

``compute_totals`` is the single place where an order's money is computed:

    subtotal = sum(unit_price * quantity for each line item)
    total    = subtotal + delivery_fee

``reconcile`` compares an order's stored totals with that computation and
reports drift without writing anything. ``repair`` is the separate, explicit
step that writes the canonical totals back through an order store, and
``audit`` reconciles a batch of orders, isolating per-order failures.

This module has no Django dependency; stores are passed in by the caller.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from decimal import (
    ROUND_HALF_UP,
    Context,
    Decimal,
    DecimalException,
    Inexact,
    InvalidOperation,
    Overflow,
    localcontext,
)
from typing import Any, Iterable, List, Optional, Sequence, Tuple, Union

from .exceptions import MalformedOrderError, ReconciliationError, TotalsOverflowError

logger = logging.getLogger(__name__)

MINOR_UNIT = Decimal("0.01")

# Stored totals may differ from the canonical ones by up to this much and
# still count as consistent. Rows written before totals were computed with
# Decimal carry float rounding noise.
DEFAULT_TOLERANCE = Decimal("0.01")

# Largest value a DecimalField(max_digits=12, decimal_places=2) column holds
MAX_AMOUNT = Decimal("9999999999.99")

# Summation must be exact; any rounding here means the inputs are unusable
_SUM_CONTEXT = Context(prec=34, rounding=ROUND_HALF_UP, traps=[InvalidOperation, Overflow, Inexact])
_ROUND_CONTEXT = Context(prec=34, rounding=ROUND_HALF_UP, traps=[InvalidOperation, Overflow])


@dataclass(frozen=True)
class LineItem:
    """A priced line of an order, detached from any storage."""

    product_id: Any
    unit_price: Decimal
    quantity: int


@dataclass(frozen=True)
class OrderSnapshot:
    """
    Everything needed to reconcile one order, as read from an order store.

    ``version`` is the optimistic lock token handed back on write.
    """

    id: Any
    order_number: str
    items: Tuple[LineItem, ...]
    delivery_fee: Decimal
    subtotal: Decimal
    total: Decimal
    version: int = 0
    status: str = ""


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    total: Decimal


@dataclass(frozen=True)
class Consistent:
    """Stored totals match the canonical ones within tolerance."""

    order_id: Any
    order_number: str
    subtotal: Decimal
    total: Decimal

    consistent = True


@dataclass(frozen=True)
class Inconsistent:
    """
    Stored totals drifted from the canonical ones.

    ``delta`` is ``stored_total - canonical_total``: positive when the
    customer was over-charged.
    """

    order_id: Any
    order_number: str
    stored_subtotal: Decimal
    stored_total: Decimal
    canonical_subtotal: Decimal
    canonical_total: Decimal
    delta: Decimal

    consistent = False

    @property
    def subtotal_delta(self) -> Decimal:
        return self.stored_subtotal - self.canonical_subtotal


ReconciliationResult = Union[Consistent, Inconsistent]


@dataclass(frozen=True)
class RepairResult:
    order_id: Any
    order_number: str
    before: ReconciliationResult
    applied: bool


@dataclass(frozen=True)
class AuditFailure:
    order_id: Any
    error: ReconciliationError

    @property
    def reason(self) -> str:
        return f"{type(self.error).__name__}: {self.error}"


@dataclass
class AuditReport:
    consistent: List[Consistent] = field(default_factory=list)
    inconsistent: List[Inconsistent] = field(default_factory=list)
    failures: List[AuditFailure] = field(default_factory=list)

    @property
    def checked(self) -> int:
        return len(self.consistent) + len(self.inconsistent) + len(self.failures)

    @property
    def has_failures(self) -> bool:
        return bool(self.failures)


def _to_decimal(value, field_name, line_index=None) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise MalformedOrderError(
            f"{field_name} must be a number, got {value!r}", line_index, field_name, value
        )
    try:
        if isinstance(value, Decimal):
            amount = value
        elif isinstance(value, int):
            amount = Decimal(value)
        elif isinstance(value, (float, str)):
            # str() keeps the shortest repr of a float instead of its binary expansion
            amount = Decimal(str(value))
        else:
            raise TypeError(type(value).__name__)
    except (InvalidOperation, TypeError):
        raise MalformedOrderError(
            f"{field_name} must be a number, got {value!r}", line_index, field_name, value
        ) from None

    if not amount.is_finite():
        raise MalformedOrderError(
            f"{field_name} must be finite, got {value!r}", line_index, field_name, value
        )
    return amount


def _validate_line(index, item) -> Tuple[Decimal, int]:
    unit_price = _to_decimal(getattr(item, "unit_price", None), "unit_price", index)
    if unit_price < 0:
        raise MalformedOrderError(
            f"Line item {index}: unit_price {unit_price} is negative", index, "unit_price", unit_price
        )

    quantity = getattr(item, "quantity", None)
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise MalformedOrderError(
            f"Line item {index}: quantity must be an integer, got {quantity!r}", index, "quantity", quantity
        )
    if quantity <= 0:
        raise MalformedOrderError(
            f"Line item {index}: quantity {quantity} must be at least 1", index, "quantity", quantity
        )
    return unit_price, quantity


def compute_totals(items: Sequence[Any], delivery_fee) -> Totals:
    """
    Compute the canonical subtotal and total of an order.

    Args:
        items: Ordered line items, each exposing ``unit_price`` and ``quantity``
            (``LineItem`` or the ``OrderItem`` model both work)
        delivery_fee: Non-negative delivery fee in whole minor units, so that
            ``total == subtotal + delivery_fee`` holds exactly

    Returns:
        Totals: both values rounded half-up to the currency minor unit, once,
        after summation

    Raises:
        MalformedOrderError: A line has a negative price or a quantity below 1,
            or the delivery fee is negative or finer than the minor unit
        TotalsOverflowError: The totals cannot be computed exactly or do not
            fit the stored money columns
    """
    fee = _to_decimal(delivery_fee, "delivery_fee")
    if fee < 0:
        raise MalformedOrderError(f"delivery_fee {fee} is negative", None, "delivery_fee", fee)
    if fee > MAX_AMOUNT:
        raise TotalsOverflowError(f"delivery_fee {fee} exceeds the maximum storable amount {MAX_AMOUNT}")
    if fee != fee.quantize(MINOR_UNIT, context=_ROUND_CONTEXT):
        raise MalformedOrderError(
            f"delivery_fee {fee} is finer than the currency minor unit {MINOR_UNIT}", None, "delivery_fee", fee
        )

    lines = [_validate_line(index, item) for index, item in enumerate(items)]

    try:
        with localcontext(_SUM_CONTEXT):
            raw_subtotal = Decimal(0)
            for unit_price, quantity in lines:
                raw_subtotal += unit_price * quantity
            raw_total = raw_subtotal + fee

        subtotal = raw_subtotal.quantize(MINOR_UNIT, context=_ROUND_CONTEXT)
        total = (subtotal + fee).quantize(MINOR_UNIT, context=_ROUND_CONTEXT)
    except DecimalException as e:
        raise TotalsOverflowError(f"Order totals cannot be computed exactly: {e!r}") from e

    if raw_total > MAX_AMOUNT or total > MAX_AMOUNT:
        raise TotalsOverflowError(f"Order total {total} exceeds the maximum storable amount {MAX_AMOUNT}")

    return Totals(subtotal=subtotal, total=total)


def reconcile(order: OrderSnapshot, tolerance=None) -> ReconciliationResult:
    """
    Compare an order's stored totals with the canonical computation.

    Either stored value differing from its canonical counterpart by more than
    ``tolerance`` (default 0.01) makes the order ``Inconsistent``. Nothing is
    written.
    """
    tolerance = DEFAULT_TOLERANCE if tolerance is None else _to_decimal(tolerance, "tolerance")
    canonical = compute_totals(order.items, order.delivery_fee)
    stored_subtotal = _to_decimal(order.subtotal, "subtotal")
    stored_total = _to_decimal(order.total, "total")

    subtotal_drift = abs(stored_subtotal - canonical.subtotal)
    total_drift = abs(stored_total - canonical.total)

    if subtotal_drift <= tolerance and total_drift <= tolerance:
        return Consistent(
            order_id=order.id,
            order_number=order.order_number,
            subtotal=canonical.subtotal,
            total=canonical.total,
        )

    return Inconsistent(
        order_id=order.id,
        order_number=order.order_number,
        stored_subtotal=stored_subtotal,
        stored_total=stored_total,
        canonical_subtotal=canonical.subtotal,
        canonical_total=canonical.total,
        delta=stored_total - canonical.total,
    )


def repair(store, order_id, tolerance=None) -> RepairResult:
    """
    Overwrite an inconsistent order's stored totals with the canonical ones.

    The write carries the version that was read, so a concurrent change to the
    same order makes the store raise ``StaleOrderError`` instead of losing an
    update. Consistent orders are left untouched.
    """
    snapshot = store.read_order(order_id)
    before = reconcile(snapshot, tolerance)

    if before.consistent:
        return RepairResult(order_id=snapshot.id, order_number=snapshot.order_number, before=before, applied=False)

    store.write_order_totals(
        snapshot.id,
        before.canonical_subtotal,
        before.canonical_total,
        expected_version=snapshot.version,
    )
    logger.info(
        f"Repaired totals for order {snapshot.order_number}: "
        f"total {before.stored_total} -> {before.canonical_total}, "
        f"subtotal {before.stored_subtotal} -> {before.canonical_subtotal}"
    )
    return RepairResult(order_id=snapshot.id, order_number=snapshot.order_number, before=before, applied=True)


def _reconcile_one(store, order_id, tolerance):
    try:
        return reconcile(store.read_order(order_id), tolerance)
    except ReconciliationError as e:
        logger.warning(f"Skipping order {order_id} during audit: {e}")
        return AuditFailure(order_id=order_id, error=e)


def audit(store, order_ids: Optional[Iterable[Any]] = None, tolerance=None, workers: int = 1) -> AuditReport:
    """
    Reconcile many orders and collect the outcomes.

    A storage failure, malformed order or overflow on one order is recorded in
    ``failures`` and does not stop the batch. Orders are independent, so
    ``workers > 1`` reconciles them on a thread pool.
    """
    ids = list(store.order_ids() if order_ids is None else order_ids)

    if workers > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            outcomes = list(pool.map(lambda order_id: _reconcile_one(store, order_id, tolerance), ids))
    else:
        outcomes = [_reconcile_one(store, order_id, tolerance) for order_id in ids]

    report = AuditReport()
    for outcome in outcomes:
        if isinstance(outcome, AuditFailure):
            report.failures.append(outcome)
        elif outcome.consistent:
            report.consistent.append(outcome)
        else:
            report.inconsistent.append(outcome)

    logger.info(
        f"Audited {report.checked} orders: {len(report.inconsistent)} inconsistent, "
        f"{len(report.failures)} failed"
    )
    return report
