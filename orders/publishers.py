"""
Google Pub/Sub publisher for order events.

Events are JSON objects with an ``event`` name; money is sent as strings so
consumers never see a float.
"""
import json
import logging

from django.conf import settings

from .pubsub_utils import ensure_topic_exists, get_publisher

logger = logging.getLogger(__name__)

ORDER_CREATED = "order.created"
ORDER_TOTALS_REPAIRED = "order.totals_repaired"


def _publish(event_data):
    """
    Publish one event and wait for the broker to accept it.

    Returns:
        str | None: Message ID, or None when publishing is disabled

    Raises:
        Exception: If publishing fails
    """
    if not getattr(settings, "PUBSUB_ENABLED", False):
        logger.debug(f"Pub/Sub disabled, not publishing {event_data['event']} for {event_data['order_number']}")
        return None

    topic_path = ensure_topic_exists()
    message_data = json.dumps(event_data).encode("utf-8")

    future = get_publisher().publish(topic_path, message_data, event=event_data["event"])
    message_id = future.result(timeout=2.0)

    logger.info(
        f"Published {event_data['event']} to Pub/Sub. Message ID: {message_id}, "
        f"Order: {event_data['order_number']}"
    )
    return message_id


def publish_order_created(order):
    """
    Publish an order.created event after checkout commits.

    Args:
        order: Order instance to publish
    """
    return _publish(
        {
            "event": ORDER_CREATED,
            "order_number": order.order_number,
            "customer_name": order.customer_name,
            "city": order.city.code,
            "delivery_type": order.delivery_type,
            "subtotal": str(order.subtotal),
            "delivery_fee": str(order.delivery_fee),
            "total": str(order.total),
            "created_at": order.created_at.isoformat(),
        }
    )


def publish_totals_repaired(result):
    """
    Publish an order.totals_repaired event for an applied repair.

    Args:
        result: ``RepairResult`` returned by ``orders.reconciliation.repair``
    """
    before = result.before
    return _publish(
        {
            "event": ORDER_TOTALS_REPAIRED,
            "order_number": result.order_number,
            "previous_subtotal": str(before.stored_subtotal),
            "previous_total": str(before.stored_total),
            "subtotal": str(before.canonical_subtotal),
            "total": str(before.canonical_total),
            "delta": str(before.delta),
        }
    )
