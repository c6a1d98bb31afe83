from unittest.mock import MagicMock

import pytest
import requests

from service_errors import InsufficientStock, NotFound, UpstreamUnavailable
from upstream import CartClient, PaymentClient, ProductClient


def response(status_code=200, body=None):
    mock = MagicMock(spec=requests.Response)
    mock.status_code = status_code
    mock.json.return_value = body if body is not None else {}
    return mock


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


def test_timeout_is_upstream_unavailable(session):
    session.request.side_effect = requests.exceptions.Timeout("read timed out")
    client = ProductClient("http://product", session=session)

    with pytest.raises(UpstreamUnavailable):
        client.get_product("p-1")


def test_connection_error_is_upstream_unavailable(session):
    session.request.side_effect = requests.exceptions.ConnectionError("refused")
    with pytest.raises(UpstreamUnavailable):
        CartClient("http://cart", session=session).get_items("Bearer t")


def test_server_error_is_upstream_unavailable(session):
    session.request.return_value = response(500)
    with pytest.raises(UpstreamUnavailable):
        CartClient("http://cart", session=session).clear("Bearer t")


def test_product_read(session):
    session.request.return_value = response(body={"_id": "p-1", "price": 9.99, "vendorId": "v-1",
                                                  "quantityInStock": 4, "name": "Mug"})
    product = ProductClient("http://product/", timeout=1.5, session=session).get_product("p-1")

    assert (product.product_id, product.price, product.vendor_id, product.quantity_in_stock) == ("p-1", 9.99, "v-1", 4)
    session.request.assert_called_once_with("GET", "http://product/api/product/p-1", headers={}, timeout=1.5)


def test_product_missing(session):
    session.request.return_value = response(404)
    with pytest.raises(NotFound):
        ProductClient("http://product", session=session).get_product("p-1")


def test_malformed_product(session):
    session.request.return_value = response(body={"_id": "p-1", "price": "free"})
    with pytest.raises(UpstreamUnavailable):
        ProductClient("http://product", session=session).get_product("p-1")


def test_decrement_insufficient_stock(session):
    session.request.return_value = response(400, {"error": "Insufficient stock"})
    with pytest.raises(InsufficientStock):
        ProductClient("http://product", session=session).decrement_stock("p-1", 3)


def test_cart_follows_pages_and_forwards_token(session):
    session.request.side_effect = [
        response(body={"page": 1, "totalItems": 3, "items": [
            {"productId": "p-1", "price": 1.0, "quantity": 1},
            {"productId": "p-2", "price": 2.0, "quantity": 1},
        ]}),
        response(body={"page": 2, "totalItems": 3, "items": [
            {"productId": "p-3", "price": 3.0, "quantity": 2},
        ]}),
    ]
    items = CartClient("http://cart", page_size=2, session=session).get_items("Bearer t")

    assert [item.product_id for item in items] == ["p-1", "p-2", "p-3"]
    assert session.request.call_count == 2
    _, kwargs = session.request.call_args
    assert kwargs["headers"] == {"Authorization": "Bearer t"}
    assert kwargs["params"] == {"page": 2, "limit": 2}


def test_payment_lookup(session):
    session.request.return_value = response(body={"payment": {"id": "pay-1", "status": "succeeded", "amount": 500}})
    payment = PaymentClient("http://payment", session=session).get_payment("pay-1", "Bearer t")
    assert payment.status == "succeeded"


def test_unknown_payment_is_none(session):
    session.request.return_value = response(404)
    assert PaymentClient("http://payment", session=session).get_payment("pay-1", "Bearer t") is None
