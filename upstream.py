"""
HTTP clients for the collaborating services (cart, product catalog, payment).

Every call is a single blocking request with a timeout. There is no retry:
a timeout, a network error or an unexpected status is an UpstreamUnavailable
and aborts whatever operation issued the call.
"""

import time
from typing import List, Optional

import requests
from pydantic import BaseModel, ConfigDict, ValidationError as ModelValidationError
from pydantic.alias_generators import to_camel

from service_config import (CART_PAGE_SIZE, CART_SERVICE, PAYMENT_SERVICE, PRODUCT_SERVICE,
                            UPSTREAM_TIMEOUT_SECONDS)
from service_errors import InsufficientStock, NotFound, UpstreamUnavailable
from service_logging import log_exception, log_json


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra='ignore')


class CartItem(WireModel):
    product_id: str
    price: float
    quantity: int
    product_name: Optional[str] = None


class ProductSnapshot(WireModel):
    product_id: str
    price: float
    vendor_id: str
    quantity_in_stock: int = 0


class PaymentSnapshot(WireModel):
    id: Optional[str] = None
    status: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    payment_intent_id: Optional[str] = None


class UpstreamClient:
    service_name = 'upstream'

    def __init__(self, base_url: str, timeout: float = UPSTREAM_TIMEOUT_SECONDS,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, authorization: Optional[str] = None,
                 trace_id: Optional[str] = None, passthrough=(), **kwargs) -> requests.Response:
        """Issue one request; statuses listed in ``passthrough`` are returned to the caller."""
        url = f"{self.base_url}{path}"
        headers = kwargs.pop('headers', {})
        if authorization:
            headers['Authorization'] = authorization

        started = time.time()
        try:
            response = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            log_exception("ERROR", f"{self.service_name} request timed out",
                          exc=e, trace_id=trace_id, downstream_service=self.service_name,
                          http_method=method, url=url, timeout_s=self.timeout,
                          error_code="UPSTREAM_TIMEOUT")
            raise UpstreamUnavailable(f"{self.service_name} did not respond in time")
        except requests.exceptions.RequestException as e:
            log_exception("ERROR", f"{self.service_name} request failed",
                          exc=e, trace_id=trace_id, downstream_service=self.service_name,
                          http_method=method, url=url, error_code="UPSTREAM_UNREACHABLE")
            raise UpstreamUnavailable(f"{self.service_name} is unavailable")

        log_json("INFO", "Downstream call completed",
                 trace_id=trace_id, downstream_service=self.service_name,
                 http_method=method, http_status=response.status_code,
                 response_time_ms=int((time.time() - started) * 1000))

        if response.status_code in passthrough or 200 <= response.status_code < 300:
            return response

        log_json("WARN", f"{self.service_name} returned an error status",
                 trace_id=trace_id, downstream_service=self.service_name,
                 http_method=method, url=url, http_status=response.status_code)
        raise UpstreamUnavailable(f"{self.service_name} returned HTTP {response.status_code}")

    def _json(self, response: requests.Response) -> dict:
        try:
            data = response.json()
        except ValueError:
            raise UpstreamUnavailable(f"{self.service_name} returned a malformed body")
        if not isinstance(data, dict):
            raise UpstreamUnavailable(f"{self.service_name} returned a malformed body")
        return data

    def health(self) -> str:
        try:
            response = self.session.get(f"{self.base_url}/health", timeout=2)
        except requests.exceptions.RequestException:
            return "unreachable"
        return "healthy" if response.status_code == 200 else "unhealthy"


class CartClient(UpstreamClient):
    service_name = 'cart-service'

    def __init__(self, base_url: str = CART_SERVICE, page_size: int = CART_PAGE_SIZE, **kwargs):
        super().__init__(base_url, **kwargs)
        self.page_size = page_size

    def get_items(self, authorization: Optional[str], trace_id: Optional[str] = None) -> List[CartItem]:
        """Read every line item of the caller's cart, following pagination."""
        items = []
        page = 1
        while True:
            response = self._request('GET', '/api/cart', authorization=authorization, trace_id=trace_id,
                                     params={'page': page, 'limit': self.page_size})
            data = self._json(response)
            batch = data.get('items') or []
            try:
                items.extend(CartItem.model_validate(raw) for raw in batch)
            except ModelValidationError:
                raise UpstreamUnavailable("cart-service returned a malformed cart item")

            total = data.get('totalItems')
            if not batch or total is None or len(items) >= total:
                return items
            page += 1

    def clear(self, authorization: Optional[str], trace_id: Optional[str] = None):
        self._request('DELETE', '/api/cart/clear', authorization=authorization, trace_id=trace_id)


class ProductClient(UpstreamClient):
    service_name = 'product-service'

    def __init__(self, base_url: str = PRODUCT_SERVICE, **kwargs):
        super().__init__(base_url, **kwargs)

    def get_product(self, product_id: str, trace_id: Optional[str] = None) -> ProductSnapshot:
        response = self._request('GET', f'/api/product/{product_id}', trace_id=trace_id, passthrough=(404,))
        if response.status_code == 404:
            raise NotFound(f"Product {product_id} not found")

        data = self._json(response)
        data.setdefault('productId', data.get('_id') or data.get('id') or product_id)
        try:
            return ProductSnapshot.model_validate(data)
        except ModelValidationError:
            raise UpstreamUnavailable(f"product-service returned a malformed product {product_id}")

    def decrement_stock(self, product_id: str, quantity: int, authorization: Optional[str] = None,
                        trace_id: Optional[str] = None):
        response = self._request('PATCH', f'/api/product/{product_id}/decrement-stock',
                                 authorization=authorization, trace_id=trace_id,
                                 json={'quantity': quantity}, passthrough=(400, 404))
        if response.status_code == 404:
            raise NotFound(f"Product {product_id} not found")
        if response.status_code == 400:
            raise InsufficientStock(f"Insufficient stock for product {product_id}")

    def restock(self, product_id: str, quantity: int, authorization: Optional[str] = None,
                trace_id: Optional[str] = None):
        self._request('PATCH', f'/api/product/{product_id}/increment-stock',
                      authorization=authorization, trace_id=trace_id, json={'quantity': quantity})


class PaymentClient(UpstreamClient):
    service_name = 'payment-service'

    def __init__(self, base_url: str = PAYMENT_SERVICE, **kwargs):
        super().__init__(base_url, **kwargs)

    def get_payment(self, payment_id: str, authorization: Optional[str],
                    trace_id: Optional[str] = None) -> Optional[PaymentSnapshot]:
        """Return the payment, or None when the payment service does not know it."""
        response = self._request('GET', f'/api/payments/{payment_id}', authorization=authorization,
                                 trace_id=trace_id, passthrough=(400, 404))
        if response.status_code in (400, 404):
            return None

        payment = self._json(response).get('payment')
        if not payment:
            return None
        try:
            return PaymentSnapshot.model_validate(payment)
        except ModelValidationError:
            raise UpstreamUnavailable("payment-service returned a malformed payment")
