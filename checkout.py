"""
Checkout orchestration: a successful payment plus the consumer's cart become
one persisted order per vendor.

The flow runs in two phases. The validation phase only reads from the
collaborators and builds order drafts. The commit phase writes all drafts to
the ledger in one call. A failure anywhere in validation therefore leaves no
order behind, even though the collaborators are called one at a time.
"""

import threading
import weakref
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import Field

from money import compute_totals, to_minor_units, to_money
from order_ledger import LedgerModel, Order, OrderDraft, OrderItem, OrderLedger, ShippingAddress, items_subtotal
from order_status import PaymentStatus
from service_auth import CONSUMER, Identity, has_role
from service_config import TAX_RATE
from service_errors import (AmountMismatch, EmptyCart, Forbidden, PaymentInvalid, PriceMismatch, StateConflict,
                            UpstreamUnavailable)
from service_logging import log_json
from upstream import CartClient, PaymentClient, PaymentSnapshot, ProductClient


class CheckoutRequest(LedgerModel):
    payment_id: str = Field(min_length=1)
    # Client-asserted correlation id shared by every child order
    order_id: str = Field(min_length=1)
    consumer_id: Optional[str] = None
    shipping_address: ShippingAddress


@dataclass
class CheckoutResult:
    parent_order_id: str
    orders: List[Order] = field(default_factory=list)

    @property
    def child_order_ids(self) -> List[str]:
        return [order.id for order in self.orders]


# Checkouts for the same consumer are serialized within this process.
# An entry lives only while some checkout holds its lock.
consumer_locks = weakref.WeakValueDictionary()  # consumer_id -> threading.Lock()
lock_manager_lock = threading.Lock()


def get_consumer_lock(consumer_id: str) -> threading.Lock:
    with lock_manager_lock:
        lock = consumer_locks.get(consumer_id)
        if lock is None:
            lock = threading.Lock()
            consumer_locks[consumer_id] = lock
        return lock


def partition_by_vendor(validated: List[tuple]) -> Dict[str, List[OrderItem]]:
    """Group (vendor_id, item) pairs by vendor, keeping cart order inside each group."""
    partitions = {}
    for vendor_id, item in validated:
        partitions.setdefault(vendor_id, []).append(item)
    return partitions


class CheckoutOrchestrator:

    def __init__(self, ledger: OrderLedger, carts: CartClient, products: ProductClient, payments: PaymentClient,
                 tax_rate: float = TAX_RATE):
        self.ledger = ledger
        self.carts = carts
        self.products = products
        self.payments = payments
        self.tax_rate = tax_rate

    def checkout(self, identity: Identity, request: CheckoutRequest) -> CheckoutResult:
        consumer_id = self._resolve_consumer(identity, request)
        parent_order_id = request.order_id
        trace_id = f"checkout-{parent_order_id}"

        log_json("INFO", "Starting checkout flow",
                 trace_id=trace_id, parent_order_id=parent_order_id,
                 consumer_id=consumer_id, payment_id=request.payment_id, flow_stage="START")

        with get_consumer_lock(consumer_id):
            if self.ledger.find_by_parent(parent_order_id):
                raise StateConflict('Orders already exist for this checkout', parent_order_id=parent_order_id)
            if self.ledger.find_by_payment(request.payment_id):
                raise StateConflict('Payment has already been used for another checkout',
                                    payment_id=request.payment_id, parent_order_id=parent_order_id)

            drafts = self._validate(identity, request, consumer_id, trace_id)

            log_json("INFO", "Step 5: Persisting vendor orders",
                     trace_id=trace_id, vendor_count=len(drafts), flow_stage="COMMIT")
            orders = self.ledger.insert_many(drafts, trace_id=trace_id)

        self._clear_cart(identity, trace_id)

        log_json("INFO", "Checkout completed",
                 trace_id=trace_id, parent_order_id=parent_order_id,
                 child_order_ids=[o.id for o in orders], flow_stage="COMPLETE")
        return CheckoutResult(parent_order_id=parent_order_id, orders=orders)

    def _resolve_consumer(self, identity: Identity, request: CheckoutRequest) -> str:
        if not has_role(identity, [CONSUMER]):
            raise Forbidden('Insufficient permissions', role=identity.role)
        # Cart and payment are read with the caller's token; orders always belong to the caller
        if request.consumer_id is not None and request.consumer_id != identity.user_id:
            raise Forbidden("Checkout can only be placed for the caller's own cart",
                            caller=identity.user_id, consumer_id=request.consumer_id)
        return identity.user_id

    def _validate(self, identity: Identity, request: CheckoutRequest, consumer_id: str,
                  trace_id: str) -> List[OrderDraft]:
        """Read-only phase: every check that can fail runs before anything is written."""
        log_json("INFO", "Step 1: Verifying payment",
                 trace_id=trace_id, downstream_service="payment-service", flow_stage="PAYMENT_VERIFICATION")
        try:
            payment = self.payments.get_payment(request.payment_id, identity.authorization, trace_id=trace_id)
        except UpstreamUnavailable:
            raise UpstreamUnavailable('Failed to verify payment with payment service')
        if payment is None or payment.status != PaymentStatus.SUCCEEDED.value:
            raise PaymentInvalid('Payment not successful or not found',
                                 payment_id=request.payment_id,
                                 payment_status=payment.status if payment else None)

        log_json("INFO", "Step 2: Fetching cart",
                 trace_id=trace_id, downstream_service="cart-service", flow_stage="CART_FETCH")
        try:
            cart_items = self.carts.get_items(identity.authorization, trace_id=trace_id)
        except UpstreamUnavailable:
            raise UpstreamUnavailable('Failed to fetch cart from cart service')
        if not cart_items:
            raise EmptyCart('Cart is empty')

        log_json("INFO", "Step 3: Revalidating prices",
                 trace_id=trace_id, downstream_service="product-service",
                 item_count=len(cart_items), flow_stage="PRICE_VALIDATION")
        validated = []
        for cart_item in cart_items:
            try:
                product = self.products.get_product(cart_item.product_id, trace_id=trace_id)
            except UpstreamUnavailable:
                raise UpstreamUnavailable(f'Failed to fetch product {cart_item.product_id} from product service')

            if Decimal(str(cart_item.price)) != Decimal(str(product.price)):
                raise PriceMismatch(f'Price mismatch for product {cart_item.product_id}',
                                    trace_id=trace_id, cart_price=cart_item.price, catalog_price=product.price)

            validated.append((product.vendor_id, OrderItem(
                product_id=cart_item.product_id,
                quantity=cart_item.quantity,
                price=cart_item.price,
            )))

        self._check_payment_amount(payment, validated, trace_id)

        partitions = partition_by_vendor(validated)
        log_json("INFO", "Step 4: Items partitioned by vendor",
                 trace_id=trace_id, vendor_ids=list(partitions), flow_stage="VENDOR_SPLIT")

        return [
            OrderDraft(
                consumer_id=consumer_id,
                vendor_id=vendor_id,
                parent_order_id=request.order_id,
                payment_id=request.payment_id,
                payment_status=PaymentStatus.SUCCEEDED,
                subtotal_amount=items_subtotal(items),
                order_items=items,
                shipping_address=request.shipping_address,
            )
            for vendor_id, items in partitions.items()
        ]

    def _check_payment_amount(self, payment: PaymentSnapshot, validated: List[tuple], trace_id: str):
        """The settled amount must cover exactly the cart being converted."""
        if payment.amount is None:
            return
        subtotal = sum((to_money(item.price) * item.quantity for _, item in validated), Decimal('0'))
        _, total = compute_totals(subtotal, self.tax_rate)
        if to_minor_units(total) != payment.amount:
            raise AmountMismatch('Payment amount does not match the cart total',
                                 trace_id=trace_id, payment_amount=payment.amount,
                                 cart_total=to_minor_units(total))

    def _clear_cart(self, identity: Identity, trace_id: str):
        # Orders are durable at this point; a stale cart is tolerated
        try:
            self.carts.clear(identity.authorization, trace_id=trace_id)
        except UpstreamUnavailable as e:
            log_json("WARN", "Failed to clear cart after order creation",
                     trace_id=trace_id, downstream_service="cart-service",
                     reason=e.message, flow_stage="CART_CLEAR")
