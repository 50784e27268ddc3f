from decimal import Decimal

import pytest
from rest_framework.test import APIClient

from orders.models import City, Order, OrderItem, Product
from orders.reconciliation import compute_totals


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def staff_client(admin_user):
    client = APIClient()
    client.force_authenticate(user=admin_user)
    return client


@pytest.fixture
def algiers(db):
    return City.objects.create(name="Alger", name_ar="الجزائر", code="16", delivery_fee=Decimal("400.00"))


@pytest.fixture
def kaftan(db):
    return Product.objects.create(name="Kaftan Royal", slug="kaftan-royal", price=Decimal("2500.00"), stock=10)


@pytest.fixture
def scarf(db):
    return Product.objects.create(name="Silk Scarf", slug="silk-scarf", price=Decimal("1200.00"), stock=25)


@pytest.fixture
def make_order(algiers):
    """
    Create an order from ``(product, unit_price, quantity)`` lines.

    Stored totals default to the canonical ones; pass ``subtotal``/``total``
    to simulate drift.
    """
    counter = iter(range(1, 10000))

    def _make(lines, delivery_fee="400.00", subtotal=None, total=None, **fields):
        items = [
            OrderItem(product=product, unit_price=Decimal(price), quantity=quantity)
            for product, price, quantity in lines
        ]
        canonical = compute_totals(items, Decimal(delivery_fee))
        defaults = {
            "order_number": f"ORD-202410-{next(counter):04d}",
            "customer_name": "Amina Benali",
            "customer_phone": "0661234567",
            "city": algiers,
            "delivery_address": "Rue Didouche Mourad 12, Alger",
        }
        defaults.update(fields)
        order = Order.objects.create(
            delivery_fee=Decimal(delivery_fee),
            subtotal=canonical.subtotal if subtotal is None else Decimal(subtotal),
            total=canonical.total if total is None else Decimal(total),
            **defaults,
        )
        for item in items:
            item.order = order
        OrderItem.objects.bulk_create(items)
        return order

    return _make
