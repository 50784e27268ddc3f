from decimal import Decimal
from unittest import mock

import pytest
from django.urls import reverse

from orders.models import Order
from orders.shipping.yalidine import YalidineError, YalidineNotConfigured

pytestmark = pytest.mark.django_db


@pytest.fixture(autouse=True)
def no_pubsub():
    with mock.patch("orders.views.publish_order_created") as created, mock.patch(
        "orders.views.publish_totals_repaired"
    ) as repaired:
        yield {"created": created, "repaired": repaired}


def checkout_payload(algiers, *lines, **overrides):
    payload = {
        "customer_name": "Yasmina Hamidi",
        "customer_phone": "0551234567",
        "city": algiers.code,
        "delivery_type": "HOME_DELIVERY",
        "delivery_address": "Avenue des Martyrs 8, Hussein Dey",
        "items": [{"product": product.pk, "quantity": quantity} for product, quantity in lines],
    }
    payload.update(overrides)
    return payload


class TestCheckout:
    def test_creates_order_with_computed_totals(self, api_client, algiers, kaftan, scarf, no_pubsub):
        response = api_client.post(
            reverse("orders:checkout"), checkout_payload(algiers, (kaftan, 2), (scarf, 1)), format="json"
        )

        assert response.status_code == 201
        assert response.data["subtotal"] == "6200.00"
        assert response.data["delivery_fee"] == "400.00"
        assert response.data["total"] == "6600.00"
        assert response.data["order_number"].startswith("ORD-")

        order = Order.objects.get(order_number=response.data["order_number"])
        assert [item.unit_price for item in order.items.all()] == [Decimal("2500.00"), Decimal("1200.00")]
        no_pubsub["created"].assert_called_once_with(order)

    def test_pickup_has_no_delivery_fee(self, api_client, algiers, kaftan):
        payload = checkout_payload(algiers, (kaftan, 1), delivery_type="PICKUP", delivery_address="")

        response = api_client.post(reverse("orders:checkout"), payload, format="json")

        assert response.status_code == 201
        assert response.data["total"] == "2500.00"

    def test_prices_are_snapshotted(self, api_client, algiers, kaftan):
        response = api_client.post(reverse("orders:checkout"), checkout_payload(algiers, (kaftan, 1)), format="json")
        kaftan.price = Decimal("3100.00")
        kaftan.save()

        order = Order.objects.get(order_number=response.data["order_number"])
        assert order.items.get().unit_price == Decimal("2500.00")

    def test_requires_items(self, api_client, algiers):
        response = api_client.post(reverse("orders:checkout"), checkout_payload(algiers), format="json")

        assert response.status_code == 400
        assert "items" in response.data["errors"]
        assert not Order.objects.exists()

    def test_rejects_zero_quantity(self, api_client, algiers, kaftan):
        response = api_client.post(reverse("orders:checkout"), checkout_payload(algiers, (kaftan, 0)), format="json")

        assert response.status_code == 400

    def test_home_delivery_needs_an_address(self, api_client, algiers, kaftan):
        payload = checkout_payload(algiers, (kaftan, 1), delivery_address="")

        response = api_client.post(reverse("orders:checkout"), payload, format="json")

        assert response.status_code == 400
        assert "delivery_address" in response.data["errors"]

    def test_publish_failure_does_not_fail_checkout(self, api_client, algiers, kaftan, no_pubsub):
        no_pubsub["created"].side_effect = RuntimeError("pubsub down")

        response = api_client.post(reverse("orders:checkout"), checkout_payload(algiers, (kaftan, 1)), format="json")

        assert response.status_code == 201
        assert Order.objects.count() == 1


def test_track_order_hides_contact_details(api_client, make_order, kaftan):
    order = make_order([(kaftan, "2500", 1)])

    response = api_client.get(reverse("orders:track", args=[order.order_number]))

    assert response.status_code == 200
    assert response.data["order_number"] == order.order_number
    assert "customer_phone" not in response.data


def test_track_unknown_order(api_client, db):
    response = api_client.get(reverse("orders:track", args=["ORD-000000-0000"]))

    assert response.status_code == 404


class TestAdminEndpoints:
    def test_require_staff(self, api_client, make_order, kaftan):
        order = make_order([(kaftan, "2500", 1)])

        response = api_client.get(reverse("orders:reconciliation", args=[order.pk]))

        assert response.status_code in (401, 403)

    def test_detail(self, staff_client, make_order, kaftan):
        order = make_order([(kaftan, "2500", 2)])

        response = staff_client.get(reverse("orders:detail", args=[order.pk]))

        assert response.status_code == 200
        assert response.data["items"][0]["line_total"] == "5000.00"

    def test_reconciliation_consistent(self, staff_client, make_order, kaftan):
        order = make_order([(kaftan, "2500", 2)])

        response = staff_client.get(reverse("orders:reconciliation", args=[order.pk]))

        assert response.status_code == 200
        assert response.data["consistent"] is True
        assert response.data["total"] == "5400.00"

    def test_reconciliation_inconsistent(self, staff_client, make_order, kaftan):
        order = make_order([(kaftan, "2500", 2)], total="5000.00")

        response = staff_client.get(reverse("orders:reconciliation", args=[order.pk]))

        assert response.data["consistent"] is False
        assert response.data["delta"] == "-400.00"

    def test_reconciliation_unknown_order(self, staff_client, db):
        response = staff_client.get(reverse("orders:reconciliation", args=[999]))

        assert response.status_code == 404

    def test_repair_totals(self, staff_client, make_order, kaftan, no_pubsub):
        order = make_order([(kaftan, "2500", 2)], total="5000.00")

        response = staff_client.post(reverse("orders:repair_totals", args=[order.pk]))

        assert response.status_code == 200
        assert response.data["applied"] is True
        order.refresh_from_db()
        assert order.total == Decimal("5400.00")
        no_pubsub["repaired"].assert_called_once()

        again = staff_client.post(reverse("orders:repair_totals", args=[order.pk]))
        assert again.data["applied"] is False

    def test_audit(self, staff_client, make_order, kaftan):
        make_order([(kaftan, "2500", 1)])
        drifted = make_order([(kaftan, "2500", 1)], total="2500.00")

        response = staff_client.get(reverse("orders:audit"))

        assert response.data["checked"] == 2
        assert response.data["consistent"] == 1
        assert [row["order_number"] for row in response.data["inconsistent"]] == [drifted.order_number]
        assert response.data["failures"] == []

    def test_update_status(self, staff_client, make_order, kaftan):
        order = make_order([(kaftan, "2500", 1)])

        response = staff_client.patch(
            reverse("orders:status", args=[order.pk]), {"call_center_status": "CONFIRMED"}, format="json"
        )

        assert response.status_code == 200
        order.refresh_from_db()
        assert order.call_center_status == Order.CallCenterStatus.CONFIRMED

    def test_update_status_rejects_unknown_value(self, staff_client, make_order, kaftan):
        order = make_order([(kaftan, "2500", 1)])

        response = staff_client.patch(
            reverse("orders:status", args=[order.pk]), {"delivery_status": "LOST"}, format="json"
        )

        assert response.status_code == 400


class TestShipment:
    def test_only_confirmed_orders_ship(self, staff_client, make_order, kaftan):
        order = make_order([(kaftan, "2500", 1)])

        response = staff_client.post(reverse("orders:shipment", args=[order.pk]), {}, format="json")

        assert response.status_code == 409

    def test_creates_parcel(self, staff_client, make_order, kaftan):
        order = make_order([(kaftan, "2500", 1)], call_center_status=Order.CallCenterStatus.CONFIRMED)
        result = {"success": True, "tracking": "yal-123ABC", "label": "https://label", "import_id": 77}

        with mock.patch("orders.views.YalidineClient") as client_cls:
            client_cls.return_value.create_shipment.return_value = result
            response = staff_client.post(reverse("orders:shipment", args=[order.pk]), {}, format="json")

        assert response.status_code == 201
        order.refresh_from_db()
        assert order.tracking_number == "yal-123ABC"
        assert order.yalidine_shipment_id == "77"
        assert order.delivery_status == Order.DeliveryStatus.READY

    def test_carrier_failure(self, staff_client, make_order, kaftan):
        order = make_order([(kaftan, "2500", 1)], call_center_status=Order.CallCenterStatus.CONFIRMED)

        with mock.patch("orders.views.YalidineClient") as client_cls:
            client_cls.return_value.create_shipment.side_effect = YalidineError("boom")
            response = staff_client.post(reverse("orders:shipment", args=[order.pk]), {}, format="json")

        assert response.status_code == 502
        order.refresh_from_db()
        assert order.tracking_number == ""
        assert order.yalidine_shipment_id == ""

    def test_carrier_not_configured(self, staff_client, make_order, kaftan, settings):
        settings.YALIDINE_API_ID = ""
        settings.YALIDINE_API_TOKEN = ""
        order = make_order([(kaftan, "2500", 1)], call_center_status=Order.CallCenterStatus.CONFIRMED)

        response = staff_client.post(reverse("orders:shipment", args=[order.pk]), {}, format="json")

        assert response.status_code == 503

    def test_already_shipped_order_is_rejected(self, staff_client, make_order, kaftan):
        order = make_order(
            [(kaftan, "2500", 1)], call_center_status=Order.CallCenterStatus.CONFIRMED, tracking_number="yal-OLD"
        )

        with mock.patch("orders.views.YalidineClient") as client_cls:
            response = staff_client.post(reverse("orders:shipment", args=[order.pk]), {}, format="json")

        assert response.status_code == 409
        assert response.data["tracking"] == "yal-OLD"
        client_cls.return_value.create_shipment.assert_not_called()

    def test_second_request_during_parcel_creation_is_rejected(self, staff_client, make_order, kaftan):
        order = make_order([(kaftan, "2500", 1)], call_center_status=Order.CallCenterStatus.CONFIRMED)
        url = reverse("orders:shipment", args=[order.pk])
        overlapping = {}

        def create_shipment(*args, **kwargs):
            # Another admin submits while the carrier call is in flight
            overlapping["response"] = staff_client.post(url, {}, format="json")
            return {"success": True, "tracking": "yal-FIRST", "import_id": 1}

        with mock.patch("orders.views.YalidineClient") as client_cls:
            client_cls.return_value.create_shipment.side_effect = create_shipment
            response = staff_client.post(url, {}, format="json")

        assert response.status_code == 201
        assert overlapping["response"].status_code == 409
        assert client_cls.return_value.create_shipment.call_count == 1
        order.refresh_from_db()
        assert order.tracking_number == "yal-FIRST"

    def test_failed_attempt_can_be_retried(self, staff_client, make_order, kaftan):
        order = make_order([(kaftan, "2500", 1)], call_center_status=Order.CallCenterStatus.CONFIRMED)
        url = reverse("orders:shipment", args=[order.pk])

        with mock.patch("orders.views.YalidineClient") as client_cls:
            client_cls.return_value.create_shipment.side_effect = [
                YalidineError("timeout"),
                {"success": True, "tracking": "yal-RETRY", "import_id": 2},
            ]
            assert staff_client.post(url, {}, format="json").status_code == 502
            assert staff_client.post(url, {}, format="json").status_code == 201

        order.refresh_from_db()
        assert order.tracking_number == "yal-RETRY"


class TestShippingEndpoints:
    @pytest.fixture
    def carrier(self):
        with mock.patch("orders.views.YalidineClient") as client_cls:
            yield client_cls.return_value

    def test_require_staff(self, api_client, carrier):
        assert api_client.get(reverse("orders:wilayas")).status_code in (401, 403)
        carrier.get_wilayas.assert_not_called()

    def test_wilayas(self, staff_client, carrier):
        carrier.get_wilayas.return_value = {"data": [{"id": 16, "name": "Alger"}]}

        response = staff_client.get(reverse("orders:wilayas"))

        assert response.status_code == 200
        assert response.data == {"data": [{"id": 16, "name": "Alger"}]}

    def test_communes_of_a_wilaya(self, staff_client, carrier):
        carrier.get_communes.return_value = {"data": []}

        staff_client.get(reverse("orders:communes"), {"wilaya_id": "16"})

        carrier.get_communes.assert_called_once_with(16)

    def test_centers_without_filter(self, staff_client, carrier):
        carrier.get_centers.return_value = {"data": []}

        staff_client.get(reverse("orders:centers"))

        carrier.get_centers.assert_called_once_with(None)

    def test_calculate_fees(self, staff_client, carrier):
        carrier.calculate_fees.return_value = {"zone": 1, "cod_percentage": 1}

        response = staff_client.post(
            reverse("orders:calculate_fees"), {"from_wilaya_id": 16, "to_wilaya_id": 5}, format="json"
        )

        assert response.status_code == 200
        carrier.calculate_fees.assert_called_once_with(from_wilaya_id=16, to_wilaya_id=5)

    def test_calculate_fees_validates_input(self, staff_client, carrier):
        response = staff_client.post(reverse("orders:calculate_fees"), {"from_wilaya_id": 16}, format="json")

        assert response.status_code == 400
        carrier.calculate_fees.assert_not_called()

    def test_carrier_errors(self, staff_client, carrier):
        carrier.get_parcel.side_effect = YalidineError("boom")
        carrier.get_parcel_history.side_effect = YalidineNotConfigured("no credentials")

        assert staff_client.get(reverse("orders:parcel", args=["yal-1"])).status_code == 502
        assert staff_client.get(reverse("orders:parcel_history", args=["yal-1"])).status_code == 503

    def test_parcel_list_passes_filters(self, staff_client, carrier):
        carrier.get_parcels.return_value = {"data": [], "total_data": 0}

        response = staff_client.get(reverse("orders:parcels"), {"status": "Livré", "page": "2"})

        assert response.status_code == 200
        carrier.get_parcels.assert_called_once_with(status="Livré", page=2)

    def test_parcel_stats(self, staff_client, carrier):
        carrier.get_parcels.return_value = {
            "data": [{"last_status": "Livré"}, {"last_status": "Livré"}, {"last_status": "Centre"}]
        }

        response = staff_client.get(reverse("orders:parcel_stats"))

        assert response.data == {"total": 3, "by_status": {"Livré": 2, "Centre": 1}}

    def test_cancel_parcel_detaches_order(self, staff_client, carrier, make_order, kaftan):
        order = make_order(
            [(kaftan, "2500", 1)],
            tracking_number="yal-9XZ",
            yalidine_shipment_id="5",
            delivery_status=Order.DeliveryStatus.READY,
        )
        carrier.delete_parcel.return_value = {"deleted": True}

        response = staff_client.delete(reverse("orders:parcel", args=["yal-9XZ"]))

        assert response.status_code == 200
        carrier.delete_parcel.assert_called_once_with("yal-9XZ")
        order.refresh_from_db()
        assert (order.tracking_number, order.yalidine_shipment_id) == ("", "")
        assert order.delivery_status == Order.DeliveryStatus.NOT_READY

    def test_failed_cancel_keeps_tracking(self, staff_client, carrier, make_order, kaftan):
        order = make_order([(kaftan, "2500", 1)], tracking_number="yal-9XZ")
        carrier.delete_parcel.side_effect = YalidineError("already delivered")

        assert staff_client.delete(reverse("orders:parcel", args=["yal-9XZ"])).status_code == 502
        order.refresh_from_db()
        assert order.tracking_number == "yal-9XZ"


class TestCatalog:
    def test_lists_active_products(self, api_client, kaftan, scarf):
        scarf.is_active = False
        scarf.save()

        response = api_client.get(reverse("orders:products"))

        assert response.status_code == 200
        assert [product["slug"] for product in response.data] == ["kaftan-royal"]
        assert response.data[0]["price"] == "2500.00"

    def test_product_by_id(self, api_client, kaftan):
        response = api_client.get(reverse("orders:product", args=[kaftan.pk]))

        assert response.status_code == 200
        assert response.data["name"] == "Kaftan Royal"

    def test_product_by_slug(self, api_client, scarf):
        response = api_client.get(reverse("orders:product_by_slug", args=["silk-scarf"]))

        assert response.status_code == 200
        assert response.data["id"] == scarf.pk

    def test_inactive_or_unknown_products_are_not_found(self, api_client, kaftan):
        kaftan.is_active = False
        kaftan.save()

        assert api_client.get(reverse("orders:product", args=[kaftan.pk])).status_code == 404
        assert api_client.get(reverse("orders:product_by_slug", args=["kaftan-royal"])).status_code == 404
        assert api_client.get(reverse("orders:product_by_slug", args=["nope"])).status_code == 404
