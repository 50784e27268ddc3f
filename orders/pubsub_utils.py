"""
Google Pub/Sub helpers for the order events topic.
"""
import logging
from functools import lru_cache

from django.conf import settings
from google.api_core.exceptions import AlreadyExists
from google.cloud import pubsub_v1

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_publisher():
    """Return the process publisher client, created on first use."""
    return pubsub_v1.PublisherClient()


def get_topic_path():
    """Get the full path of the order events topic."""
    return get_publisher().topic_path(settings.PUBSUB_PROJECT_ID, settings.PUBSUB_TOPIC_ORDER_EVENTS)


def ensure_topic_exists():
    """
    Ensure the order events topic exists, create it if it doesn't.

    Returns:
        str: Topic path
    """
    topic_path = get_topic_path()

    try:
        get_publisher().create_topic(request={"name": topic_path})
        logger.info(f"Created Pub/Sub topic: {topic_path}")
    except AlreadyExists:
        logger.debug(f"Pub/Sub topic already exists: {topic_path}")
    except Exception as e:
        logger.error(f"Error creating topic {topic_path}: {e}")
        raise

    return topic_path
