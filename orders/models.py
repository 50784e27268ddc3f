import random

from django.core.validators import MinValueValidator
from django.db import models, transaction
from django.db.models import F
from django.utils import timezone

from .reconciliation import compute_totals


def generate_order_number(now=None):
    """Return a human readable order number such as ``ORD-202410-0042``."""
    now = now or timezone.now()
    return f"ORD-{now:%Y%m}-{random.randint(0, 9999):04d}"


class City(models.Model):
    """
    A wilaya the store delivers to, with its home delivery fee.
    """

    name = models.CharField(max_length=100)
    name_ar = models.CharField(max_length=100, blank=True)
    code = models.CharField(max_length=5, unique=True, help_text="Wilaya code, e.g. 16 for Algiers")
    delivery_fee = models.DecimalField(
        max_digits=12, decimal_places=2, default=0, validators=[MinValueValidator(0)]
    )
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["code"]
        verbose_name = "City"
        verbose_name_plural = "Cities"

    def __str__(self):
        return f"{self.code} - {self.name}"


class Product(models.Model):
    """
    A catalog product. Its price is copied onto line items at checkout.
    """

    name = models.CharField(max_length=255)
    slug = models.SlugField(max_length=255, unique=True)
    price = models.DecimalField(max_digits=12, decimal_places=2, validators=[MinValueValidator(0)])
    stock = models.PositiveIntegerField(default=0)
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return self.name


class Order(models.Model):
    """
    A storefront order.

    ``subtotal`` and ``total`` cache ``compute_totals(items, delivery_fee)``.
    ``version`` is bumped on every change to items, delivery fee or totals so
    concurrent repairs can detect a stale read.
    """

    class CallCenterStatus(models.TextChoices):
        NEW = "NEW", "New"
        CONFIRMED = "CONFIRMED", "Confirmed"
        PENDING = "PENDING", "Pending"
        CANCELED = "CANCELED", "Canceled"
        DOUBLE_ORDER = "DOUBLE_ORDER", "Double order"
        DELAYED = "DELAYED", "Delayed"

    class DeliveryStatus(models.TextChoices):
        NOT_READY = "NOT_READY", "Not ready"
        READY = "READY", "Ready"
        IN_TRANSIT = "IN_TRANSIT", "In transit"
        DONE = "DONE", "Done"

    class DeliveryType(models.TextChoices):
        HOME_DELIVERY = "HOME_DELIVERY", "Home delivery"
        PICKUP = "PICKUP", "Pickup at desk"

    order_number = models.CharField(max_length=32, unique=True, db_index=True)
    customer_name = models.CharField(max_length=255)
    customer_phone = models.CharField(max_length=20)
    customer_email = models.EmailField(blank=True)
    city = models.ForeignKey(City, on_delete=models.PROTECT, related_name="orders")
    delivery_type = models.CharField(
        max_length=20, choices=DeliveryType.choices, default=DeliveryType.HOME_DELIVERY
    )
    delivery_address = models.TextField(blank=True)
    notes = models.TextField(blank=True)

    delivery_fee = models.DecimalField(
        max_digits=12, decimal_places=2, default=0, validators=[MinValueValidator(0)]
    )
    subtotal = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    total = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    version = models.PositiveIntegerField(default=0)

    call_center_status = models.CharField(
        max_length=20, choices=CallCenterStatus.choices, default=CallCenterStatus.NEW, db_index=True
    )
    delivery_status = models.CharField(
        max_length=20, choices=DeliveryStatus.choices, default=DeliveryStatus.NOT_READY
    )
    tracking_number = models.CharField(max_length=64, blank=True)
    yalidine_shipment_id = models.CharField(max_length=64, blank=True)

    # Placeholder shipment id held while a parcel is being created
    SHIPMENT_PENDING = "pending"

    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Order"
        verbose_name_plural = "Orders"

    def __str__(self):
        return f"Order {self.order_number} - {self.customer_name}"

    def recalculate_totals(self):
        """
        Recompute the cached totals from the current items and delivery fee
        and persist them, bumping ``version``.

        Called after an administrative edit of line items or the fee.
        """
        with transaction.atomic():
            items = list(self.items.all())
            totals = compute_totals(items, self.delivery_fee)
            Order.objects.filter(pk=self.pk).update(
                subtotal=totals.subtotal,
                total=totals.total,
                delivery_fee=self.delivery_fee,
                version=F("version") + 1,
            )
        self.refresh_from_db(fields=["subtotal", "total", "version"])
        return totals


class OrderItem(models.Model):
    """
    A line of an order. ``unit_price`` is the product price at checkout time.
    """

    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="items")
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="order_items")
    quantity = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    unit_price = models.DecimalField(max_digits=12, decimal_places=2, validators=[MinValueValidator(0)])

    class Meta:
        ordering = ["id"]
        verbose_name = "Order Item"
        verbose_name_plural = "Order Items"

    def __str__(self):
        return f"{self.quantity}x {self.product} @ {self.unit_price}"

    @property
    def line_total(self):
        """Price for this line item, before rounding of the order subtotal."""
        if self.quantity is not None and self.unit_price is not None:
            return self.quantity * self.unit_price
        return None
