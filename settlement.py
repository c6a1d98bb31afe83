"""
Settlement: revalidate the cart, reserve stock and authorize the charge.

All checks (price, stock, declared amount) run before any stock is touched.
Stock is then reserved item by item; if a reservation or the charge fails,
every unit already reserved is put back before the error surfaces.
"""

import uuid
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from pydantic import Field
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from money import compute_totals, to_minor_units, to_money
from payment_gateway import GatewayError, PaymentModel, PaymentRecordStatus, SavedPaymentMethod, StripeGateway
from service_auth import Identity, is_owner_or_admin
from service_config import TAX_RATE
from service_errors import (AmountMismatch, EmptyCart, InsufficientStock, NotFound, PaymentDeclined,
                            PriceMismatch, ServiceError, StateConflict, UpstreamUnavailable)
from service_logging import log_exception, log_json
from storage import GatewayCustomerRow, PaymentRow, as_utc, session_scope, utcnow
from upstream import CartClient, CartItem, ProductClient


# =============================================================================
# MODELS
# =============================================================================

class CreatePaymentRequest(PaymentModel):
    amount: float = Field(ge=0.01)
    currency: str = Field(min_length=3, max_length=3)
    payment_method_id: str = Field(min_length=1)
    order_id: Optional[str] = Field(default=None, min_length=1)


class Payment(PaymentModel):
    id: str
    user_id: str
    order_id: str
    payment_intent_id: str
    payment_method_id: str
    # Smallest currency unit
    amount: int = Field(ge=1)
    currency: str
    status: PaymentRecordStatus = PaymentRecordStatus.PROCESSING
    receipt_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime


def to_payment(row: PaymentRow) -> Payment:
    return Payment(
        id=row.id,
        user_id=row.user_id,
        order_id=row.order_id,
        payment_intent_id=row.payment_intent_id,
        payment_method_id=row.payment_method_id,
        amount=row.amount,
        currency=row.currency,
        status=row.status,
        receipt_url=row.receipt_url,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


# =============================================================================
# PAYMENT STORE
# =============================================================================

class PaymentStore:
    """Payment records and the user -> gateway customer map."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def insert(self, payment: Payment) -> Payment:
        with session_scope(self.session_factory) as session:
            row = PaymentRow(**payment.model_dump(mode='python'))
            row.status = payment.status.value
            session.add(row)
            try:
                session.flush()
            except IntegrityError as e:
                raise StateConflict('Payment intent already recorded',
                                    payment_intent_id=payment.payment_intent_id) from e
            return to_payment(row)

    def get(self, payment_id: str) -> Optional[Payment]:
        with session_scope(self.session_factory) as session:
            row = session.query(PaymentRow).filter(PaymentRow.id == payment_id).one_or_none()
            return to_payment(row) if row else None

    def set_status(self, payment_id: str, status: PaymentRecordStatus) -> Payment:
        with session_scope(self.session_factory) as session:
            row = session.query(PaymentRow).filter(PaymentRow.id == payment_id).with_for_update().one()
            row.status = status.value
            row.updated_at = utcnow()
            session.flush()
            return to_payment(row)

    def list_for_user(self, user_id: str, page: int = 1, limit: int = 10) -> Tuple[int, List[Payment]]:
        with session_scope(self.session_factory) as session:
            query = session.query(PaymentRow).filter(PaymentRow.user_id == user_id)
            total = query.with_entities(func.count(PaymentRow.seq)).scalar()
            rows = (query.order_by(PaymentRow.created_at.desc(), PaymentRow.seq.desc())
                    .offset((page - 1) * limit)
                    .limit(limit)
                    .all())
            return total, [to_payment(row) for row in rows]

    def get_customer_id(self, user_id: str) -> Optional[str]:
        with session_scope(self.session_factory) as session:
            row = session.get(GatewayCustomerRow, user_id)
            return row.customer_id if row else None

    def save_customer_id(self, user_id: str, customer_id: str) -> str:
        """Store the mapping; if another worker stored one first, theirs wins."""
        try:
            with session_scope(self.session_factory) as session:
                session.add(GatewayCustomerRow(user_id=user_id, customer_id=customer_id))
            return customer_id
        except IntegrityError:
            existing = self.get_customer_id(user_id)
            if existing is None:
                raise
            log_json("WARN", "Gateway customer already mapped, discarding new customer",
                     user_id=user_id, customer_id=customer_id, kept_customer_id=existing)
            return existing


# =============================================================================
# SETTLEMENT VALIDATOR
# =============================================================================

class SettlementValidator:

    def __init__(self, store: PaymentStore, carts: CartClient, products: ProductClient,
                 gateway: StripeGateway, tax_rate: float = TAX_RATE):
        self.store = store
        self.carts = carts
        self.products = products
        self.gateway = gateway
        self.tax_rate = tax_rate

    def create_payment(self, identity: Identity, request: CreatePaymentRequest) -> Payment:
        order_id = request.order_id or uuid.uuid4().hex
        trace_id = f"settlement-{order_id}"

        log_json("INFO", "Starting settlement",
                 trace_id=trace_id, user_id=identity.user_id, amount=request.amount,
                 currency=request.currency, flow_stage="START")

        try:
            cart_items = self.carts.get_items(identity.authorization, trace_id=trace_id)
        except UpstreamUnavailable:
            raise UpstreamUnavailable('Failed to fetch cart from cart service')
        if not cart_items:
            raise EmptyCart('Cart is empty')

        subtotal = self._validate_items(cart_items, trace_id)
        tax, total = compute_totals(subtotal, self.tax_rate)
        if to_money(request.amount) != total:
            raise AmountMismatch(f'Total amount mismatch (expected: {total}, got: {request.amount})',
                                 trace_id=trace_id, subtotal=str(subtotal), tax=str(tax))

        reserved = self._reserve_stock(cart_items, identity, trace_id)

        try:
            customer_id = self.gateway.customer_for(identity.user_id, identity.email)
            charge = self.gateway.create_intent(
                amount=to_minor_units(total),
                currency=request.currency.lower(),
                customer_id=customer_id,
                payment_method_id=request.payment_method_id,
                metadata={'orderId': order_id, 'userId': identity.user_id},
                trace_id=trace_id,
            )
        except GatewayError as e:
            log_exception("ERROR", "Payment gateway failed", exc=e, trace_id=trace_id, severity="critical")
            self._release_stock(reserved, identity, trace_id)
            raise UpstreamUnavailable('Payment gateway unavailable')

        now = utcnow()
        payment = self.store.insert(Payment(
            id=uuid.uuid4().hex,
            user_id=identity.user_id,
            order_id=order_id,
            payment_intent_id=charge.intent_id,
            payment_method_id=request.payment_method_id,
            amount=to_minor_units(total),
            currency=request.currency.upper(),
            status=charge.status,
            receipt_url=charge.receipt_url,
            created_at=now,
            updated_at=now,
        ))

        if charge.status in (PaymentRecordStatus.FAILED, PaymentRecordStatus.CANCELED):
            self._release_stock(reserved, identity, trace_id)
            raise PaymentDeclined('Payment was declined', trace_id=trace_id, payment_status=charge.status.value)

        log_json("INFO", "Settlement completed",
                 trace_id=trace_id, payment_status=payment.status.value,
                 amount_minor=payment.amount, flow_stage="COMPLETE")
        return payment

    def _validate_items(self, cart_items: List[CartItem], trace_id: str) -> Decimal:
        subtotal = Decimal('0')
        for item in cart_items:
            try:
                product = self.products.get_product(item.product_id, trace_id=trace_id)
            except UpstreamUnavailable:
                raise UpstreamUnavailable(f'Failed to fetch product {item.product_id} from product service')

            if to_money(item.price) != to_money(product.price):
                raise PriceMismatch(f'Price mismatch for product {item.product_id}',
                                    trace_id=trace_id, cart_price=item.price, catalog_price=product.price)
            if item.quantity > product.quantity_in_stock:
                raise InsufficientStock(f'Insufficient stock for product {item.product_id}',
                                        trace_id=trace_id, requested=item.quantity,
                                        available=product.quantity_in_stock)
            subtotal += to_money(item.price) * item.quantity
        return subtotal

    def _reserve_stock(self, cart_items: List[CartItem], identity: Identity, trace_id: str) -> List[CartItem]:
        reserved = []
        for item in cart_items:
            try:
                self.products.decrement_stock(item.product_id, item.quantity,
                                              authorization=identity.authorization, trace_id=trace_id)
            except ServiceError as e:
                log_json("WARN", "Stock reservation failed, releasing reserved items",
                         trace_id=trace_id, product_id=item.product_id,
                         reserved_count=len(reserved), reason=e.message)
                self._release_stock(reserved, identity, trace_id)
                if isinstance(e, (InsufficientStock, NotFound)):
                    raise
                raise UpstreamUnavailable(f'Failed to decrement stock for product {item.product_id}')
            reserved.append(item)
        return reserved

    def _release_stock(self, reserved: List[CartItem], identity: Identity, trace_id: str):
        for item in reserved:
            try:
                self.products.restock(item.product_id, item.quantity,
                                      authorization=identity.authorization, trace_id=trace_id)
            except ServiceError as e:
                # Logged for manual reconciliation
                log_exception("ERROR", "Stock compensation failed",
                              exc=e, trace_id=trace_id, product_id=item.product_id,
                              quantity=item.quantity, error_code="STOCK_COMPENSATION_FAILED",
                              severity="critical")

    def refund(self, identity: Identity, payment_id: str) -> Payment:
        payment = self.get_payment(identity, payment_id)

        try:
            if payment.status == PaymentRecordStatus.SUCCEEDED:
                self.gateway.refund(payment.payment_intent_id)
                new_status = PaymentRecordStatus.REFUNDED
            elif payment.status == PaymentRecordStatus.PROCESSING:
                self.gateway.cancel(payment.payment_intent_id)
                new_status = PaymentRecordStatus.CANCELED
            else:
                raise StateConflict('Only succeeded or processing payments can be refunded/canceled',
                                    payment_status=payment.status.value)
        except GatewayError as e:
            log_exception("ERROR", "Error refunding payment", exc=e, payment_id=payment_id)
            raise UpstreamUnavailable('Failed to refund/cancel payment')

        log_json("INFO", "Payment refunded/canceled", payment_id=payment_id, payment_status=new_status.value)
        return self.store.set_status(payment_id, new_status)

    def get_payment(self, identity: Identity, payment_id: str) -> Payment:
        payment = self.store.get(payment_id)
        if payment is None:
            raise NotFound('Payment not found')
        if not is_owner_or_admin(identity, payment.user_id):
            # Foreign payments read as missing
            raise NotFound('Payment not found')
        return payment


# =============================================================================
# SAVED PAYMENT METHODS
# =============================================================================

class PaymentMethodService:
    """Saved cards of the caller's gateway customer."""

    def __init__(self, gateway: StripeGateway):
        self.gateway = gateway

    def create_setup_intent(self, identity: Identity) -> str:
        with self._gateway_call("create setup intent", identity):
            return self.gateway.create_setup_intent(self._customer(identity))

    def list_methods(self, identity: Identity) -> List[SavedPaymentMethod]:
        with self._gateway_call("list payment methods", identity):
            return self.gateway.list_payment_methods(self._customer(identity))

    def save(self, identity: Identity, payment_method_token: str, billing_details: dict = None) -> SavedPaymentMethod:
        with self._gateway_call("save payment method", identity):
            saved = self.gateway.attach_payment_method(self._customer(identity), payment_method_token,
                                                       billing_details=billing_details)
        log_json("INFO", "Payment method saved", user_id=identity.user_id, payment_method_id=saved.id)
        return saved

    def detach(self, identity: Identity, payment_method_id: str):
        with self._gateway_call("detach payment method", identity):
            self.gateway.detach_payment_method(self._customer(identity), payment_method_id)
        log_json("INFO", "Payment method detached", user_id=identity.user_id, payment_method_id=payment_method_id)

    def set_default(self, identity: Identity, payment_method_id: str):
        with self._gateway_call("set default payment method", identity):
            self.gateway.set_default_payment_method(self._customer(identity), payment_method_id)
        log_json("INFO", "Default payment method updated",
                 user_id=identity.user_id, payment_method_id=payment_method_id)

    def _customer(self, identity: Identity) -> str:
        return self.gateway.customer_for(identity.user_id, identity.email)

    @contextmanager
    def _gateway_call(self, action: str, identity: Identity):
        try:
            yield
        except GatewayError:
            raise UpstreamUnavailable(f'Failed to {action}', user_id=identity.user_id)
