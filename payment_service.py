"""
PAYMENT SERVICE
===============

Settles a consumer's cart: revalidates prices and stock, reserves stock,
checks the declared total and charges a saved card through Stripe. Also
serves payment reads, refunds and the caller's saved payment methods.

Downstream services:
- Cart Service (4400)
- Product Service (4300)
- Stripe

Port: 4500

    uvicorn payment_service:app --port 4500
"""

import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Query
from pydantic import Field

from payment_gateway import PaymentModel, SavedPaymentMethod, StripeGateway
from service_auth import Identity, get_identity
from service_config import SERVICE_VERSION
from service_errors import register_error_handlers
from service_logging import ServiceNameMiddleware
from settlement import CreatePaymentRequest, Payment, PaymentMethodService, PaymentStore, SettlementValidator
from storage import check_db_connection, create_database_engine, create_session_factory, init_db
from upstream import CartClient, ProductClient

app = FastAPI(title="Payment Service")
app.add_middleware(ServiceNameMiddleware, service_name="payment-service")
register_error_handlers(app)

STARTED_AT = time.time()

engine = create_database_engine()
init_db(engine)

payment_store = PaymentStore(create_session_factory(engine))
payment_gateway = StripeGateway(payment_store)
cart_client = CartClient()
product_client = ProductClient()


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_settlement() -> SettlementValidator:
    return SettlementValidator(payment_store, cart_client, product_client, payment_gateway)


def get_payment_methods() -> PaymentMethodService:
    return PaymentMethodService(payment_gateway)


# =============================================================================
# API MODELS
# =============================================================================

class SavePaymentMethodRequest(PaymentModel):
    payment_method_token: str = Field(min_length=1)
    billing_details: Optional[dict] = None


def payment_links(payment: Payment) -> dict:
    data = payment.model_dump(by_alias=True, mode='json')
    data['_links'] = {
        'self': f"api/payment/{payment.id}",
        'order': f"api/order/{payment.order_id}",
    }
    if payment.receipt_url:
        data['_links']['receipt'] = payment.receipt_url
    return data


def method_summary(method: SavedPaymentMethod) -> dict:
    return {
        "id": method.id,
        "brand": method.brand,
        "last4": method.last4,
        "expMonth": method.exp_month,
        "expYear": method.exp_year,
        "isDefault": method.is_default,
    }


# =============================================================================
# ENDPOINTS
# =============================================================================

@app.get("/health")
def health():
    return {
        "service": "payments",
        "status": "up",
        "version": SERVICE_VERSION,
        "uptime_seconds": round(time.time() - STARTED_AT, 2),
        "checked_at": datetime.now(timezone.utc).isoformat(),
        "database": "up" if check_db_connection(engine) else "down",
        "downstream_services": {
            client.service_name: client.health() for client in (cart_client, product_client)
        },
    }


@app.post("/api/payments/setup-intent", status_code=201)
def create_setup_intent(identity: Identity = Depends(get_identity),
                        methods: PaymentMethodService = Depends(get_payment_methods)):
    return {"clientSecret": methods.create_setup_intent(identity)}


@app.get("/api/payments/payment-methods")
def list_payment_methods(identity: Identity = Depends(get_identity),
                         methods: PaymentMethodService = Depends(get_payment_methods)):
    return {"paymentMethods": [method_summary(m) for m in methods.list_methods(identity)]}


@app.delete("/api/payments/payment-methods/{payment_method_id}")
def detach_payment_method(payment_method_id: str,
                          identity: Identity = Depends(get_identity),
                          methods: PaymentMethodService = Depends(get_payment_methods)):
    methods.detach(identity, payment_method_id)
    return {"detached": True, "paymentMethodId": payment_method_id}


@app.post("/api/payments/consumer/payment-methods", status_code=201)
def save_payment_method(request: SavePaymentMethodRequest,
                        identity: Identity = Depends(get_identity),
                        methods: PaymentMethodService = Depends(get_payment_methods)):
    saved = methods.save(identity, request.payment_method_token, billing_details=request.billing_details)
    return {
        "message": "Payment method saved successfully.",
        "paymentMethod": {
            "paymentMethodId": saved.id,
            "brand": saved.brand,
            "last4": saved.last4,
            "expMonth": saved.exp_month,
            "expYear": saved.exp_year,
            "default": False,
        },
    }


@app.put("/api/payments/consumer/payment-methods/{payment_method_id}/default")
def set_default_payment_method(payment_method_id: str,
                               identity: Identity = Depends(get_identity),
                               methods: PaymentMethodService = Depends(get_payment_methods)):
    methods.set_default(identity, payment_method_id)
    return {"message": "Default payment method updated."}


@app.post("/api/payments", status_code=201)
def create_payment(request: CreatePaymentRequest,
                   identity: Identity = Depends(get_identity),
                   settlement: SettlementValidator = Depends(get_settlement)):
    payment = settlement.create_payment(identity, request)
    return {"payment": payment_links(payment)}


@app.get("/api/payments")
def list_payments(page: int = Query(1, ge=1),
                  limit: int = Query(10, ge=1, le=100),
                  identity: Identity = Depends(get_identity),
                  settlement: SettlementValidator = Depends(get_settlement)):
    total, payments = settlement.store.list_for_user(identity.user_id, page=page, limit=limit)
    return {"page": page, "total": total, "payments": [payment_links(p) for p in payments]}


@app.get("/api/payments/{payment_id}")
def get_payment(payment_id: str,
                identity: Identity = Depends(get_identity),
                settlement: SettlementValidator = Depends(get_settlement)):
    return {"payment": payment_links(settlement.get_payment(identity, payment_id))}


@app.post("/api/payments/{payment_id}/refund")
def refund_payment(payment_id: str,
                   identity: Identity = Depends(get_identity),
                   settlement: SettlementValidator = Depends(get_settlement)):
    payment = settlement.refund(identity, payment_id)
    return {"message": "Payment refunded/canceled", "paymentId": payment_id, "newStatus": payment.status.value}
