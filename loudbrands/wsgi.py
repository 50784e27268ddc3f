"""
WSGI entry point for the LOUD BRANDS backend.

Exposes ``application`` for the WSGI server. Tracing is configured before Django
loads so the Django and psycopg2 instrumentors wrap the first request.
"""

import logging
import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "loudbrands.settings")

logger = logging.getLogger(__name__)

try:
    from loudbrands.otel import setup_otel

    setup_otel()
except Exception as e:
    logger.warning(f"Failed to initialize OpenTelemetry: {e}")

application = get_wsgi_application()
