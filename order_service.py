"""
ORDER SERVICE
=============

Turns a consumer's cart plus a successful payment into one order per vendor,
then serves those orders and moves them through their fulfilment lifecycle.

Downstream services:
- Cart Service (4400)
- Product Service (4300)
- Payment Service (4500)

Port: 4600

    uvicorn order_service:app --port 4600
"""

import time
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Body, Depends, FastAPI, Query
from pydantic import Field

from checkout import CheckoutOrchestrator, CheckoutRequest
from order_ledger import LedgerModel, Order, OrderLedger, TrackingEvent
from order_status import OrderStatus, check_advance, check_cancel
from service_auth import ADMIN, CONSUMER, VENDOR, Identity, get_identity, is_owner_or_admin, require_role
from service_config import SERVICE_VERSION
from service_errors import Forbidden, NotFound, register_error_handlers
from service_logging import ServiceNameMiddleware, log_json
from storage import check_db_connection, create_database_engine, create_session_factory, init_db
from upstream import CartClient, PaymentClient, ProductClient

app = FastAPI(title="Order Service")
app.add_middleware(ServiceNameMiddleware, service_name="order-service")
register_error_handlers(app)

STARTED_AT = time.time()

engine = create_database_engine()
init_db(engine)

order_ledger = OrderLedger(create_session_factory(engine))
cart_client = CartClient()
product_client = ProductClient()
payment_client = PaymentClient()


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_ledger() -> OrderLedger:
    return order_ledger


def get_orchestrator(ledger: OrderLedger = Depends(get_ledger)) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(ledger, cart_client, product_client, payment_client)


# =============================================================================
# API MODELS
# =============================================================================

class StatusUpdateRequest(LedgerModel):
    order_status: OrderStatus
    carrier: Optional[str] = None
    tracking_number: Optional[str] = None
    note: Optional[str] = None


class CancelRequest(LedgerModel):
    reason: Optional[str] = Field(default=None, max_length=500)


def order_links(order: Order) -> dict:
    """Serialize an order with hypermedia links for it and its items."""
    data = order.model_dump(by_alias=True, mode='json')
    data['orderId'] = order.id
    for item in data['orderItems']:
        item['_links'] = {'product': f"api/product/{item['productId']}"}
    data['_links'] = {
        'self': f"api/order/{order.id}",
        'payment': f"api/payment/{order.payment_id}",
        'tracking': f"api/order/{order.id}/tracking",
    }
    return data


def can_view(identity: Identity, order: Order) -> bool:
    if identity.is_admin:
        return True
    if identity.role == CONSUMER:
        return order.consumer_id == identity.user_id
    if identity.role == VENDOR:
        return order.vendor_id == identity.user_id
    return False


def load_order(ledger: OrderLedger, order_id: str) -> Order:
    order = ledger.get(order_id)
    if order is None:
        raise NotFound('Order not found')
    return order


def visible_children(identity: Identity, orders: List[Order]) -> List[Order]:
    visible = [order for order in orders if can_view(identity, order)]
    if orders and not visible:
        raise Forbidden('Forbidden')
    return visible


# =============================================================================
# ENDPOINTS
# =============================================================================

@app.get("/")
def root():
    return {
        "service": "order-service",
        "version": SERVICE_VERSION,
        "description": "Vendor-split order creation and fulfilment tracking",
    }


@app.get("/health")
def health(ledger: OrderLedger = Depends(get_ledger)):
    downstream_services = {
        client.service_name: client.health()
        for client in (cart_client, product_client, payment_client)
    }
    return {
        "service": "orders",
        "status": "up",
        "uptime_seconds": round(time.time() - STARTED_AT, 2),
        "checked_at": datetime.now(timezone.utc).isoformat(),
        "database": "up" if check_db_connection(engine) else "down",
        "orders": ledger.count(),
        "downstream_services": downstream_services,
    }


@app.post("/api/orders", status_code=201)
def create_order(request: CheckoutRequest,
                 identity: Identity = Depends(require_role(CONSUMER)),
                 orchestrator: CheckoutOrchestrator = Depends(get_orchestrator)):
    result = orchestrator.checkout(identity, request)
    return {
        "message": "Orders created",
        "parentOrderId": result.parent_order_id,
        "childOrderIds": result.child_order_ids,
    }


@app.get("/api/orders")
def list_orders(page: int = Query(1, ge=1),
                limit: int = Query(20, ge=1, le=100),
                order_status: Optional[OrderStatus] = Query(None, alias='orderStatus'),
                date_from: Optional[datetime] = Query(None, alias='dateFrom'),
                date_to: Optional[datetime] = Query(None, alias='dateTo'),
                identity: Identity = Depends(require_role(VENDOR, ADMIN)),
                ledger: OrderLedger = Depends(get_ledger)):
    vendor_id = None if identity.is_admin else identity.user_id
    total, orders = ledger.find(vendor_id=vendor_id, order_status=order_status,
                                date_from=date_from, date_to=date_to, page=page, limit=limit)
    return {"page": page, "limit": limit, "total": total, "orders": [order_links(o) for o in orders]}


@app.get("/api/orders/user/{user_id}")
def list_orders_by_user(user_id: str,
                        page: int = Query(1, ge=1),
                        limit: int = Query(20, ge=1, le=100),
                        identity: Identity = Depends(get_identity),
                        ledger: OrderLedger = Depends(get_ledger)):
    if not is_owner_or_admin(identity, user_id):
        raise Forbidden('Forbidden')
    total, orders = ledger.find(consumer_id=user_id, page=page, limit=limit)
    return {"page": page, "limit": limit, "total": total, "orders": [order_links(o) for o in orders]}


@app.get("/api/orders/parent/{parent_order_id}")
def get_orders_by_parent(parent_order_id: str,
                         identity: Identity = Depends(get_identity),
                         ledger: OrderLedger = Depends(get_ledger)):
    children = visible_children(identity, ledger.find_by_parent(parent_order_id))
    if not children:
        raise NotFound('No child orders found for this parentOrderId')
    return {"parentOrderId": parent_order_id, "childOrders": [order_links(o) for o in children]}


@app.get("/api/orders/{order_id}")
def get_order(order_id: str,
              identity: Identity = Depends(get_identity),
              ledger: OrderLedger = Depends(get_ledger)):
    order = ledger.get(order_id)
    if order is None:
        # The id may be a checkout's parent correlation id
        children = visible_children(identity, ledger.find_by_parent(order_id))
        if not children:
            raise NotFound('Order not found')
        return {"parentOrderId": order_id, "childOrders": [order_links(o) for o in children]}

    if not can_view(identity, order):
        raise Forbidden('Forbidden')
    return order_links(order)


@app.put("/api/orders/{order_id}/status")
def update_order_status(order_id: str,
                        request: StatusUpdateRequest,
                        identity: Identity = Depends(require_role(VENDOR)),
                        ledger: OrderLedger = Depends(get_ledger)):
    load_order(ledger, order_id)

    def guard(current: Order):
        check_advance(identity, current.vendor_id, current.order_status, request.order_status)

    event = TrackingEvent(status=request.order_status, carrier=request.carrier,
                          tracking_number=request.tracking_number, note=request.note)
    updated = ledger.append_tracking(order_id, event, guard=guard)
    if updated is None:
        raise NotFound('Order not found')

    log_json("INFO", "Order status updated",
             order_id=order_id, order_status=updated.order_status.value, actor_role=identity.role)
    return {"message": "Status updated", "newStatus": updated.order_status.value}


@app.post("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str,
                 request: Optional[CancelRequest] = Body(default=None),
                 identity: Identity = Depends(get_identity),
                 ledger: OrderLedger = Depends(get_ledger)):
    load_order(ledger, order_id)

    def guard(current: Order):
        check_cancel(identity, current.consumer_id, current.order_status)

    event = TrackingEvent(status=OrderStatus.CANCELLED, note=request.reason if request else None)
    updated = ledger.append_tracking(order_id, event, guard=guard)
    if updated is None:
        raise NotFound('Order not found')

    log_json("INFO", "Order cancelled", order_id=order_id, actor_role=identity.role)
    return {"message": "Order cancelled", "orderId": order_id, "orderStatus": updated.order_status.value}


@app.get("/api/orders/{order_id}/tracking")
def get_order_tracking(order_id: str,
                       identity: Identity = Depends(get_identity),
                       ledger: OrderLedger = Depends(get_ledger)):
    order = load_order(ledger, order_id)
    if not can_view(identity, order):
        raise Forbidden('Forbidden')
    return {
        "orderId": order_id,
        "orderStatus": order.order_status.value,
        "tracking": [event.model_dump(by_alias=True, mode='json') for event in order.tracking],
    }
