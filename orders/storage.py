"""
Order storage used by the reconciler.

The reconciler only needs to read an order with its line items and to write
back two totals. ``OrderStore`` is that contract; ``DjangoOrderStore`` fulfils
it with the ORM. Callers construct a store and pass it in explicitly.
"""
import logging
from decimal import Decimal
from typing import Any, Iterable, Protocol

from django.db import DatabaseError, transaction
from django.db.models import F

from .exceptions import OrderNotFound, StaleOrderError, StorageUnavailable
from .models import Order
from .reconciliation import LineItem, OrderSnapshot

logger = logging.getLogger(__name__)


class OrderStore(Protocol):
    def read_order(self, order_id: Any) -> OrderSnapshot:
        ...

    def write_order_totals(
        self, order_id: Any, subtotal: Decimal, total: Decimal, expected_version: int
    ) -> None:
        ...

    def order_ids(self) -> Iterable[Any]:
        ...


def snapshot_from_order(order: Order) -> OrderSnapshot:
    """Detach a model instance (with its items) into an ``OrderSnapshot``."""
    return OrderSnapshot(
        id=order.pk,
        order_number=order.order_number,
        items=tuple(
            LineItem(product_id=item.product_id, unit_price=item.unit_price, quantity=item.quantity)
            for item in order.items.all()
        ),
        delivery_fee=order.delivery_fee,
        subtotal=order.subtotal,
        total=order.total,
        version=order.version,
        status=order.call_center_status,
    )


class DjangoOrderStore:
    """
    ``OrderStore`` backed by the ``Order`` and ``OrderItem`` tables.

    Writes are compare-and-set on ``Order.version``.
    """

    def __init__(self, queryset=None):
        self.queryset = queryset if queryset is not None else Order.objects.all()

    def read_order(self, order_id) -> OrderSnapshot:
        try:
            order = self.queryset.prefetch_related("items").get(pk=order_id)
            return snapshot_from_order(order)
        except Order.DoesNotExist:
            raise OrderNotFound(f"Order {order_id} does not exist") from None
        except DatabaseError as e:
            logger.error(f"Failed to read order {order_id}: {e}")
            raise StorageUnavailable(f"Could not read order {order_id}: {e}") from e

    def write_order_totals(self, order_id, subtotal, total, expected_version) -> None:
        try:
            with transaction.atomic():
                updated = Order.objects.filter(pk=order_id, version=expected_version).update(
                    subtotal=subtotal,
                    total=total,
                    version=F("version") + 1,
                )
                if not updated and not Order.objects.filter(pk=order_id).exists():
                    raise OrderNotFound(f"Order {order_id} does not exist")
        except DatabaseError as e:
            logger.error(f"Failed to write totals for order {order_id}: {e}")
            raise StorageUnavailable(f"Could not write totals for order {order_id}: {e}") from e

        if not updated:
            logger.warning(f"Order {order_id} changed since version {expected_version}; totals not written")
            raise StaleOrderError(
                f"Order {order_id} was modified after version {expected_version} was read"
            )

    def order_ids(self):
        try:
            return list(self.queryset.order_by("pk").values_list("pk", flat=True))
        except DatabaseError as e:
            logger.error(f"Failed to list orders: {e}")
            raise StorageUnavailable(f"Could not list orders: {e}") from e
