from django.urls import path
from . import views

app_name = "orders"

urlpatterns = [
    path("orders/", views.OrderViewSet.as_view({"post": "create"}), name="checkout"),
    path("orders/audit/", views.OrderViewSet.as_view({"get": "audit"}), name="audit"),
    path(
        "orders/track/<str:order_number>/",
        views.OrderViewSet.as_view({"get": "track"}),
        name="track",
    ),
    path("orders/<int:pk>/", views.OrderViewSet.as_view({"get": "retrieve"}), name="detail"),
    path(
        "orders/<int:pk>/reconciliation/",
        views.OrderViewSet.as_view({"get": "reconciliation"}),
        name="reconciliation",
    ),
    path(
        "orders/<int:pk>/repair-totals/",
        views.OrderViewSet.as_view({"post": "repair_totals"}),
        name="repair_totals",
    ),
    path(
        "orders/<int:pk>/status/",
        views.OrderViewSet.as_view({"patch": "update_status"}),
        name="status",
    ),
    path(
        "orders/<int:pk>/shipment/",
        views.OrderViewSet.as_view({"post": "shipment"}),
        name="shipment",
    ),
    path("products/", views.ProductViewSet.as_view({"get": "list"}), name="products"),
    path("products/<int:pk>/", views.ProductViewSet.as_view({"get": "retrieve"}), name="product"),
    path(
        "products/slug/<slug:slug>/",
        views.ProductViewSet.as_view({"get": "by_slug"}),
        name="product_by_slug",
    ),
    path("shipping/wilayas/", views.ShippingViewSet.as_view({"get": "wilayas"}), name="wilayas"),
    path("shipping/communes/", views.ShippingViewSet.as_view({"get": "communes"}), name="communes"),
    path("shipping/centers/", views.ShippingViewSet.as_view({"get": "centers"}), name="centers"),
    path(
        "shipping/calculate-fees/",
        views.ShippingViewSet.as_view({"post": "calculate_fees"}),
        name="calculate_fees",
    ),
    path("shipping/parcels/", views.ShippingViewSet.as_view({"get": "parcels"}), name="parcels"),
    path("shipping/parcels/stats/", views.ShippingViewSet.as_view({"get": "parcel_stats"}), name="parcel_stats"),
    path(
        "shipping/parcels/<str:tracking>/",
        views.ShippingViewSet.as_view({"get": "parcel", "delete": "cancel_parcel"}),
        name="parcel",
    ),
    path(
        "shipping/parcels/<str:tracking>/history/",
        views.ShippingViewSet.as_view({"get": "parcel_history"}),
        name="parcel_history",
    ),
]
