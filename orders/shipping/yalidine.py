import logging
import re
from decimal import ROUND_HALF_UP

import requests
from django.conf import settings
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from orders.reconciliation import compute_totals

logger = logging.getLogger(__name__)

# Mobile 05/06/07 followed by 8 digits, or a 9 digit landline
PHONE_PATTERN = re.compile(r"^(0[5-7]\d{8}|0[1-9]\d{7})$")


class YalidineError(Exception):
    """The carrier rejected a request or could not be reached."""


class YalidineNotConfigured(YalidineError):
    pass


class InvalidParcel(YalidineError):
    """The order cannot be turned into a valid parcel."""


def is_valid_phone(phone: str) -> bool:
    return bool(PHONE_PATTERN.match(re.sub(r"[\s.-]", "", phone or "")))


class YalidineClient:
    def __init__(self, api_id: str = None, api_token: str = None, base_url: str = None):
        self.api_id = api_id or settings.YALIDINE_API_ID
        self.api_token = api_token or settings.YALIDINE_API_TOKEN
        self.base_url = (base_url or settings.YALIDINE_API_URL).rstrip('/')
        self.timeout = settings.YALIDINE_TIMEOUT

        self.session = requests.Session()
        self.session.headers.update({
            'Content-Type': 'application/json',
            'X-API-ID': self.api_id or '',
            'X-API-TOKEN': self.api_token or '',
        })
        # The carrier API drops connections intermittently; retry reads only
        retry = Retry(total=3, backoff_factor=1, status_forcelist=(502, 503, 504), allowed_methods=('GET',))
        self.session.mount('https://', HTTPAdapter(max_retries=retry))

    def is_configured(self) -> bool:
        return bool(self.api_id and self.api_token)

    def _request(self, method: str, endpoint: str, **kwargs):
        if not self.is_configured():
            raise YalidineNotConfigured('Yalidine API credentials are not configured')
        try:
            response = self.session.request(
                method,
                f'{self.base_url}{endpoint}',
                timeout=self.timeout,
                **kwargs
            )
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            logger.error(f'Yalidine {method} {endpoint} failed: {e}')
            raise YalidineError(f'Error requesting Yalidine API: {e}') from e

    # Reference data
    def get_wilayas(self) -> dict:
        return self._request('GET', '/wilayas/')

    def get_communes(self, wilaya_id: int = None) -> dict:
        params = {'wilaya_id': wilaya_id} if wilaya_id else {}
        return self._request('GET', '/communes/', params=params)

    def get_centers(self, wilaya_id: int = None) -> dict:
        """Stop desks where customers can collect pickup orders."""
        params = {'wilaya_id': wilaya_id} if wilaya_id else {}
        return self._request('GET', '/centers/', params=params)

    def calculate_fees(self, from_wilaya_id: int, to_wilaya_id: int) -> dict:
        params = {'from_wilaya_id': from_wilaya_id, 'to_wilaya_id': to_wilaya_id}
        return self._request('GET', '/fees/', params=params)

    # Parcels
    def create_parcels(self, parcels: list) -> dict:
        """Create parcels. The response is keyed by each parcel's ``order_id``."""
        return self._request('POST', '/parcels/', json=parcels)

    def get_parcels(self, **filters) -> dict:
        """List parcels; ``filters`` (status, tracking, date_from...) are passed as query params."""
        params = {key: value for key, value in filters.items() if value not in (None, '')}
        return self._request('GET', '/parcels/', params=params)

    def get_parcel(self, tracking: str) -> dict:
        return self._request('GET', f'/parcels/{tracking}')

    def get_parcel_history(self, tracking: str) -> dict:
        return self._request('GET', f'/histories/{tracking}')

    def delete_parcel(self, tracking: str) -> dict:
        return self._request('DELETE', f'/parcels/{tracking}')

    def create_shipment(self, order, **parcel_options) -> dict:
        """
        Create a parcel for ``order`` and return the carrier's result for it.

        Raises:
            YalidineError: The phone number is invalid or the carrier did not
                report success for this order
        """
        if not is_valid_phone(order.customer_phone):
            raise InvalidParcel(f'Invalid phone number format: {order.customer_phone}')

        parcel = build_parcel(order, **parcel_options)
        result = self.create_parcels([parcel]).get(parcel['order_id'])

        if not result or not result.get('success'):
            message = (result or {}).get('message', 'Unknown error')
            logger.error(f'Shipment creation failed for {order.order_number}: {message}')
            raise YalidineError(f'Failed to create shipment: {message}')

        logger.info(f"Created Yalidine parcel {result.get('tracking')} for order {order.order_number}")
        return result


def build_parcel(order, commune_name: str = None, weight=1, length=30, width=20, height=10,
                 stopdesk_id: int = None, do_insurance: bool = False) -> dict:
    """
    Map an order to a Yalidine parcel.

    The cash-on-delivery price is the order's recomputed total, not the
    stored one, so a drifted cache never reaches the courier.
    """
    items = list(order.items.select_related('product'))
    totals = compute_totals(items, order.delivery_fee)
    price = int(totals.total.to_integral_value(rounding=ROUND_HALF_UP))

    firstname, _, familyname = order.customer_name.strip().partition(' ')
    is_stopdesk = order.delivery_type == 'PICKUP'

    parcel = {
        'order_id': order.order_number,
        'from_wilaya_name': settings.YALIDINE_FROM_WILAYA,
        'firstname': firstname,
        'familyname': familyname or firstname,
        'contact_phone': order.customer_phone,
        'address': order.delivery_address or order.city.name,
        'to_wilaya_name': order.city.name,
        'to_commune_name': commune_name or order.city.name,
        'product_list': ', '.join(f'{item.product.name} ({item.quantity}x)' for item in items),
        'price': price,
        'do_insurance': do_insurance,
        'declared_value': price,
        'weight': weight,
        'length': length,
        'width': width,
        'height': height,
        'freeshipping': False,
        'is_stopdesk': is_stopdesk,
        'has_exchange': False,
    }
    if is_stopdesk and stopdesk_id:
        parcel['stopdesk_id'] = stopdesk_id
    return parcel
