from django.db import IntegrityError, transaction
from rest_framework import serializers

from .exceptions import ReconciliationError
from .models import City, Order, OrderItem, Product, generate_order_number
from .reconciliation import compute_totals

ORDER_NUMBER_ATTEMPTS = 5


class CheckoutItemSerializer(serializers.Serializer):
    """
    A line of a checkout request. Prices come from the catalog, never the client.
    """

    product = serializers.PrimaryKeyRelatedField(queryset=Product.objects.filter(is_active=True))
    quantity = serializers.IntegerField(min_value=1)


class CheckoutSerializer(serializers.Serializer):
    """
    Serializer for the storefront checkout payload.
    """

    customer_name = serializers.CharField(max_length=255)
    customer_phone = serializers.CharField(max_length=20)
    customer_email = serializers.EmailField(required=False, allow_blank=True)
    city = serializers.SlugRelatedField(slug_field="code", queryset=City.objects.filter(is_active=True))
    delivery_type = serializers.ChoiceField(choices=Order.DeliveryType.choices)
    delivery_address = serializers.CharField(required=False, allow_blank=True)
    notes = serializers.CharField(required=False, allow_blank=True)
    items = CheckoutItemSerializer(many=True)

    def validate_items(self, value):
        """Validate that at least one item exists."""
        if not value:
            raise serializers.ValidationError("At least one item is required")
        return value

    def validate(self, attrs):
        if attrs["delivery_type"] == Order.DeliveryType.HOME_DELIVERY and not attrs.get("delivery_address"):
            raise serializers.ValidationError({"delivery_address": "Required for home delivery"})
        return attrs

    def create(self, validated_data):
        """
        Create the Order and its items with prices and totals fixed at checkout.

        Home delivery pays the city's fee; pickup at a desk is free.
        """
        items_data = validated_data.pop("items")
        city = validated_data["city"]

        delivery_fee = city.delivery_fee if validated_data["delivery_type"] == Order.DeliveryType.HOME_DELIVERY else 0
        lines = [
            OrderItem(product=item["product"], quantity=item["quantity"], unit_price=item["product"].price)
            for item in items_data
        ]
        try:
            totals = compute_totals(lines, delivery_fee)
        except ReconciliationError as e:
            raise serializers.ValidationError({"items": str(e)})

        for attempt in range(ORDER_NUMBER_ATTEMPTS):
            try:
                with transaction.atomic():
                    order = Order.objects.create(
                        order_number=generate_order_number(),
                        delivery_fee=delivery_fee,
                        subtotal=totals.subtotal,
                        total=totals.total,
                        **validated_data,
                    )
                    for line in lines:
                        line.order = order
                    OrderItem.objects.bulk_create(lines)
                return order
            except IntegrityError:
                # order_number collision, draw another
                if attempt == ORDER_NUMBER_ATTEMPTS - 1:
                    raise


class OrderItemSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)
    line_total = serializers.DecimalField(max_digits=14, decimal_places=2, read_only=True)

    class Meta:
        model = OrderItem
        fields = ["product", "product_name", "quantity", "unit_price", "line_total"]


class OrderDetailSerializer(serializers.ModelSerializer):
    """
    Serializer for Order model with nested items (for reading).
    """

    city = serializers.CharField(source="city.code", read_only=True)
    items = OrderItemSerializer(many=True, read_only=True)

    class Meta:
        model = Order
        fields = [
            "id",
            "order_number",
            "customer_name",
            "customer_phone",
            "customer_email",
            "city",
            "delivery_type",
            "delivery_address",
            "notes",
            "items",
            "subtotal",
            "delivery_fee",
            "total",
            "call_center_status",
            "delivery_status",
            "tracking_number",
            "created_at",
        ]


class OrderTrackingSerializer(serializers.ModelSerializer):
    """
    Public view of an order: no contact details.
    """

    class Meta:
        model = Order
        fields = [
            "order_number",
            "call_center_status",
            "delivery_status",
            "tracking_number",
            "total",
            "created_at",
        ]


class OrderStatusSerializer(serializers.ModelSerializer):
    class Meta:
        model = Order
        fields = ["call_center_status", "delivery_status"]

    def validate(self, attrs):
        if not attrs:
            raise serializers.ValidationError("Provide call_center_status or delivery_status")
        return attrs

    def update(self, instance, validated_data):
        """
        Write only the status columns. A full save would put back the totals
        and version loaded with ``instance`` and undo a concurrent repair.
        """
        for attr, value in validated_data.items():
            setattr(instance, attr, value)
        instance.save(update_fields=[*validated_data, "updated_at"])
        return instance


class ShipmentRequestSerializer(serializers.Serializer):
    commune_name = serializers.CharField(required=False)
    weight = serializers.FloatField(min_value=0, default=1)
    stopdesk_id = serializers.IntegerField(min_value=1, required=False)
    do_insurance = serializers.BooleanField(default=False)


def reconciliation_to_dict(result):
    """Render a ``Consistent`` or ``Inconsistent`` result as JSON-ready data."""
    if result.consistent:
        return {
            "order_id": result.order_id,
            "order_number": result.order_number,
            "consistent": True,
            "subtotal": str(result.subtotal),
            "total": str(result.total),
        }
    return {
        "order_id": result.order_id,
        "order_number": result.order_number,
        "consistent": False,
        "stored_subtotal": str(result.stored_subtotal),
        "stored_total": str(result.stored_total),
        "canonical_subtotal": str(result.canonical_subtotal),
        "canonical_total": str(result.canonical_total),
        "delta": str(result.delta),
    }


class ProductSerializer(serializers.ModelSerializer):
    class Meta:
        model = Product
        fields = ["id", "name", "slug", "price", "stock"]


class FeeRequestSerializer(serializers.Serializer):
    from_wilaya_id = serializers.IntegerField(min_value=1)
    to_wilaya_id = serializers.IntegerField(min_value=1)


class ParcelFilterSerializer(serializers.Serializer):
    """Query filters accepted when listing parcels at the carrier."""

    status = serializers.CharField(required=False)
    tracking = serializers.CharField(required=False)
    to_wilaya_name = serializers.CharField(required=False)
    customer_phone = serializers.CharField(required=False)
    date_from = serializers.DateField(required=False)
    date_to = serializers.DateField(required=False)
    page = serializers.IntegerField(min_value=1, required=False)
    page_size = serializers.IntegerField(min_value=1, max_value=1000, required=False)
