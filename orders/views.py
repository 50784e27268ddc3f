import logging
from collections import Counter

from django.conf import settings
from django.shortcuts import get_object_or_404
from rest_framework import permissions, status, viewsets
from rest_framework.response import Response

from .exceptions import (
    MalformedOrderError,
    OrderNotFound,
    ReconciliationError,
    StaleOrderError,
    StorageUnavailable,
    TotalsOverflowError,
)
from .models import Order, Product
from .publishers import publish_order_created, publish_totals_repaired
from .reconciliation import audit as audit_orders, reconcile, repair
from .serializers import (
    CheckoutSerializer,
    FeeRequestSerializer,
    OrderDetailSerializer,
    OrderStatusSerializer,
    OrderTrackingSerializer,
    ParcelFilterSerializer,
    ProductSerializer,
    ShipmentRequestSerializer,
    reconciliation_to_dict,
)
from .shipping.yalidine import InvalidParcel, YalidineClient, YalidineError, YalidineNotConfigured
from .storage import DjangoOrderStore

logger = logging.getLogger(__name__)


def _error_response(error):
    """Map a reconciliation failure to an HTTP response."""
    if isinstance(error, OrderNotFound):
        return Response({"error": str(error)}, status=status.HTTP_404_NOT_FOUND)
    if isinstance(error, MalformedOrderError):
        return Response(
            {"error": str(error), "line_index": error.line_index, "field": error.field},
            status=status.HTTP_422_UNPROCESSABLE_ENTITY,
        )
    if isinstance(error, TotalsOverflowError):
        return Response({"error": str(error)}, status=status.HTTP_422_UNPROCESSABLE_ENTITY)
    if isinstance(error, StaleOrderError):
        return Response({"error": str(error)}, status=status.HTTP_409_CONFLICT)
    if isinstance(error, StorageUnavailable):
        return Response({"error": "Order storage unavailable"}, status=status.HTTP_503_SERVICE_UNAVAILABLE)
    return Response({"error": str(error)}, status=status.HTTP_400_BAD_REQUEST)


class OrderViewSet(viewsets.ViewSet):
    """
    Storefront checkout and tracking, plus the admin endpoints that
    reconcile, repair and ship orders.

    Checkout payload:
    {
        "customer_name": "Amina Benali",
        "customer_phone": "0661234567",
        "city": "16",
        "delivery_type": "HOME_DELIVERY",
        "delivery_address": "Rue Didouche Mourad 12, Alger",
        "items": [{"product": 3, "quantity": 2}]
    }
    """

    public_actions = ("create", "track")

    def get_permissions(self):
        if self.action in self.public_actions:
            return [permissions.AllowAny()]
        return [permissions.IsAdminUser()]

    def get_store(self):
        return DjangoOrderStore()

    @property
    def tolerance(self):
        return settings.ORDER_TOTALS_TOLERANCE

    def create(self, request):
        serializer = CheckoutSerializer(data=request.data)

        if not serializer.is_valid():
            logger.warning(f"Invalid checkout payload: {serializer.errors}")
            return Response({"errors": serializer.errors}, status=status.HTTP_400_BAD_REQUEST)

        order = serializer.save()
        logger.info(f"Order created: {order.order_number} total={order.total}")

        try:
            publish_order_created(order)
        except Exception as e:
            # Order is already saved; the event is best effort
            logger.error(f"Failed to publish order.created event: {e}", exc_info=True)

        return Response(OrderDetailSerializer(order).data, status=status.HTTP_201_CREATED)

    def track(self, request, order_number=None):
        order = get_object_or_404(Order, order_number=order_number)
        return Response(OrderTrackingSerializer(order).data)

    def retrieve(self, request, pk=None):
        order = get_object_or_404(Order.objects.select_related("city").prefetch_related("items__product"), pk=pk)
        return Response(OrderDetailSerializer(order).data)

    def reconciliation(self, request, pk=None):
        try:
            result = reconcile(self.get_store().read_order(pk), self.tolerance)
        except ReconciliationError as e:
            logger.warning(f"Cannot reconcile order {pk}: {e}")
            return _error_response(e)
        return Response(reconciliation_to_dict(result))

    def repair_totals(self, request, pk=None):
        try:
            result = repair(self.get_store(), pk, self.tolerance)
        except ReconciliationError as e:
            logger.warning(f"Cannot repair order {pk}: {e}")
            return _error_response(e)

        if result.applied:
            logger.info(f"Order {result.order_number} totals repaired by {request.user}")
            try:
                publish_totals_repaired(result)
            except Exception as e:
                logger.error(f"Failed to publish order.totals_repaired event: {e}", exc_info=True)

        return Response(
            {
                "order_number": result.order_number,
                "applied": result.applied,
                "before": reconciliation_to_dict(result.before),
            }
        )

    def audit(self, request):
        store = self.get_store()
        try:
            report = audit_orders(store, tolerance=self.tolerance)
        except StorageUnavailable as e:
            logger.error(f"Order audit aborted: {e}")
            return _error_response(e)

        return Response(
            {
                "checked": report.checked,
                "consistent": len(report.consistent),
                "inconsistent": [reconciliation_to_dict(result) for result in report.inconsistent],
                "failures": [
                    {"order_id": failure.order_id, "error": failure.reason} for failure in report.failures
                ],
            }
        )

    def update_status(self, request, pk=None):
        order = get_object_or_404(Order, pk=pk)
        serializer = OrderStatusSerializer(order, data=request.data, partial=True)

        if not serializer.is_valid():
            return Response({"errors": serializer.errors}, status=status.HTTP_400_BAD_REQUEST)

        serializer.save()
        logger.info(
            f"Order {order.order_number} status: call_center={order.call_center_status} "
            f"delivery={order.delivery_status}"
        )
        return Response(OrderTrackingSerializer(order).data)

    def shipment(self, request, pk=None):
        order = get_object_or_404(Order.objects.select_related("city"), pk=pk)

        if order.call_center_status != Order.CallCenterStatus.CONFIRMED:
            return Response(
                {"error": "Only confirmed orders can be shipped"}, status=status.HTTP_409_CONFLICT
            )

        options = ShipmentRequestSerializer(data=request.data)
        if not options.is_valid():
            return Response({"errors": options.errors}, status=status.HTTP_400_BAD_REQUEST)

        # Claim the order so that only one request creates a parcel for it
        claimed = Order.objects.filter(pk=order.pk, tracking_number="", yalidine_shipment_id="").update(
            yalidine_shipment_id=Order.SHIPMENT_PENDING
        )
        if not claimed:
            order.refresh_from_db(fields=["tracking_number", "yalidine_shipment_id"])
            logger.warning(f"Order {order.order_number} already shipped or being shipped")
            return Response(
                {"error": "Order already shipped", "tracking": order.tracking_number},
                status=status.HTTP_409_CONFLICT,
            )

        client = YalidineClient()
        result = None
        try:
            result = client.create_shipment(order, **options.validated_data)
        except InvalidParcel as e:
            return Response({"error": str(e)}, status=status.HTTP_400_BAD_REQUEST)
        except YalidineNotConfigured as e:
            return Response({"error": str(e)}, status=status.HTTP_503_SERVICE_UNAVAILABLE)
        except YalidineError as e:
            return Response({"error": str(e)}, status=status.HTTP_502_BAD_GATEWAY)
        except ReconciliationError as e:
            return _error_response(e)
        finally:
            if result is None:
                self._release_shipment_claim(order)

        Order.objects.filter(pk=order.pk).update(
            tracking_number=result.get("tracking", ""),
            yalidine_shipment_id=str(result.get("import_id") or ""),
            delivery_status=Order.DeliveryStatus.READY,
        )

        return Response(
            {
                "tracking": result.get("tracking"),
                "order_number": order.order_number,
                "label": result.get("label"),
                "import_id": result.get("import_id"),
            },
            status=status.HTTP_201_CREATED,
        )

    def _release_shipment_claim(self, order):
        Order.objects.filter(pk=order.pk, yalidine_shipment_id=Order.SHIPMENT_PENDING).update(
            yalidine_shipment_id=""
        )


class ProductViewSet(viewsets.ReadOnlyModelViewSet):
    """
    Storefront catalog: active products by id, or by slug for product pages.
    """

    queryset = Product.objects.filter(is_active=True)
    serializer_class = ProductSerializer
    permission_classes = [permissions.AllowAny]

    def by_slug(self, request, slug=None):
        product = get_object_or_404(self.get_queryset(), slug=slug)
        return Response(self.get_serializer(product).data)


class ShippingViewSet(viewsets.ViewSet):
    """
    Admin passthrough to the Yalidine API: reference data, fee quotes and
    parcels created for our orders.
    """

    permission_classes = [permissions.IsAdminUser]

    def get_client(self):
        return YalidineClient()

    def _carrier(self, method, *args, **kwargs):
        try:
            return Response(method(*args, **kwargs))
        except YalidineNotConfigured as e:
            return Response({"error": str(e)}, status=status.HTTP_503_SERVICE_UNAVAILABLE)
        except YalidineError as e:
            return Response({"error": str(e)}, status=status.HTTP_502_BAD_GATEWAY)

    def _wilaya_id(self, request):
        wilaya_id = request.query_params.get("wilaya_id")
        return int(wilaya_id) if wilaya_id and wilaya_id.isdigit() else None

    def wilayas(self, request):
        return self._carrier(self.get_client().get_wilayas)

    def communes(self, request):
        return self._carrier(self.get_client().get_communes, self._wilaya_id(request))

    def centers(self, request):
        return self._carrier(self.get_client().get_centers, self._wilaya_id(request))

    def calculate_fees(self, request):
        serializer = FeeRequestSerializer(data=request.data)
        if not serializer.is_valid():
            return Response({"errors": serializer.errors}, status=status.HTTP_400_BAD_REQUEST)
        return self._carrier(self.get_client().calculate_fees, **serializer.validated_data)

    def parcels(self, request):
        filters = ParcelFilterSerializer(data=request.query_params)
        if not filters.is_valid():
            return Response({"errors": filters.errors}, status=status.HTTP_400_BAD_REQUEST)
        return self._carrier(self.get_client().get_parcels, **filters.validated_data)

    def parcel_stats(self, request):
        """Count the carrier's parcels by their last status."""
        try:
            parcels = self.get_client().get_parcels().get("data") or []
        except YalidineNotConfigured as e:
            return Response({"error": str(e)}, status=status.HTTP_503_SERVICE_UNAVAILABLE)
        except YalidineError as e:
            return Response({"error": str(e)}, status=status.HTTP_502_BAD_GATEWAY)

        by_status = Counter(parcel.get("last_status") or "Unknown" for parcel in parcels)
        return Response({"total": len(parcels), "by_status": dict(by_status)})

    def parcel(self, request, tracking=None):
        return self._carrier(self.get_client().get_parcel, tracking)

    def parcel_history(self, request, tracking=None):
        return self._carrier(self.get_client().get_parcel_history, tracking)

    def cancel_parcel(self, request, tracking=None):
        """Delete a parcel at the carrier and detach it from its order."""
        response = self._carrier(self.get_client().delete_parcel, tracking)
        if response.status_code == status.HTTP_200_OK:
            detached = Order.objects.filter(tracking_number=tracking).update(
                tracking_number="",
                yalidine_shipment_id="",
                delivery_status=Order.DeliveryStatus.NOT_READY,
            )
            logger.info(f"Parcel {tracking} deleted by {request.user}; {detached} orders detached")
        return response
