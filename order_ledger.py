"""
Order Ledger: persistence for vendor orders and their tracking history.

Orders enter the ledger only through ``insert_many`` (one call per checkout)
and change only through ``append_tracking``. Rows are never deleted.

A checkout claims its parent correlation id and its payment in the
``checkouts`` table inside the same transaction that inserts the child
orders, so neither can be reused, even by another worker process.
"""

import threading
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from order_status import OrderStatus, PaymentStatus
from service_errors import StateConflict, ValidationError
from service_logging import log_json
from storage import CheckoutRow, OrderRow, as_utc, session_scope, utcnow


class LedgerModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OrderItem(LedgerModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(ge=1)
    price: float = Field(ge=0)


class ShippingAddress(LedgerModel):
    line1: str = Field(min_length=1)
    line2: Optional[str] = None
    city: str = Field(min_length=1)
    province: Optional[str] = None
    postal_code: str = Field(min_length=1)
    country: str = Field(min_length=2, max_length=2)


class TrackingEvent(LedgerModel):
    status: OrderStatus
    timestamp: datetime = Field(default_factory=utcnow)
    carrier: Optional[str] = None
    tracking_number: Optional[str] = None
    note: Optional[str] = None


class OrderDraft(LedgerModel):
    """A validated, not yet persisted child order."""
    consumer_id: str
    vendor_id: str
    parent_order_id: str
    payment_id: str
    payment_status: PaymentStatus = PaymentStatus.SUCCEEDED
    subtotal_amount: float
    order_items: List[OrderItem]
    shipping_address: ShippingAddress


class Order(OrderDraft):
    id: str
    order_status: OrderStatus = OrderStatus.PENDING
    tracking: List[TrackingEvent]
    created_at: datetime
    updated_at: datetime


def items_subtotal(items: Iterable[OrderItem]) -> float:
    """Exact sum of price x quantity, computed in decimal to avoid float drift."""
    total = sum((Decimal(str(item.price)) * item.quantity for item in items), Decimal('0'))
    return float(total)


def to_order(row: OrderRow) -> Order:
    return Order(
        id=row.id,
        consumer_id=row.consumer_id,
        vendor_id=row.vendor_id,
        parent_order_id=row.parent_order_id,
        payment_id=row.payment_id,
        payment_status=row.payment_status,
        order_status=row.order_status,
        subtotal_amount=float(row.subtotal_amount),
        order_items=row.order_items,
        shipping_address=row.shipping_address,
        tracking=row.tracking,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Naive bounds are taken as UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class OrderLedger:
    """
    Order store backed by the relational database.

    Writes issued from this process are serialized by ``_lock``; row locks
    and unique constraints order them against other processes.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory
        self._lock = threading.Lock()

    def insert_many(self, drafts: List[OrderDraft], trace_id: str = None) -> List[Order]:
        """Persist every draft of one checkout, or none of them."""
        if not drafts:
            raise ValidationError('No orders to persist')

        for draft in drafts:
            if not draft.order_items:
                raise ValidationError(f'Order for vendor {draft.vendor_id} has no items')
            if Decimal(str(draft.subtotal_amount)) != Decimal(str(items_subtotal(draft.order_items))):
                raise ValidationError(f'Subtotal does not match items for vendor {draft.vendor_id}')

        parent_ids = {draft.parent_order_id for draft in drafts}
        payment_ids = {draft.payment_id for draft in drafts}
        if len(parent_ids) != 1 or len(payment_ids) != 1:
            raise ValidationError('A checkout commits orders for exactly one parent id and one payment')
        parent_order_id, payment_id = parent_ids.pop(), payment_ids.pop()

        now = utcnow()
        rows = [
            OrderRow(
                id=uuid.uuid4().hex,
                consumer_id=draft.consumer_id,
                vendor_id=draft.vendor_id,
                parent_order_id=draft.parent_order_id,
                payment_id=draft.payment_id,
                payment_status=draft.payment_status.value,
                order_status=OrderStatus.PENDING.value,
                subtotal_amount=Decimal(str(draft.subtotal_amount)),
                order_items=[item.model_dump(mode='json') for item in draft.order_items],
                shipping_address=draft.shipping_address.model_dump(mode='json'),
                tracking=[TrackingEvent(status=OrderStatus.PENDING, timestamp=now).model_dump(mode='json')],
                created_at=now,
                updated_at=now,
            )
            for draft in drafts
        ]

        with self._lock, session_scope(self.session_factory) as session:
            claimed = session.query(CheckoutRow).filter(or_(
                CheckoutRow.parent_order_id == parent_order_id,
                CheckoutRow.payment_id == payment_id,
            )).first()
            if claimed is not None:
                raise self._conflict(claimed, parent_order_id, payment_id)

            session.add(CheckoutRow(parent_order_id=parent_order_id, payment_id=payment_id,
                                    consumer_id=drafts[0].consumer_id, created_at=now))
            session.add_all(rows)
            try:
                session.flush()
            except IntegrityError as e:
                raise StateConflict('Orders already exist for this checkout or payment',
                                    parent_order_id=parent_order_id, payment_id=payment_id) from e
            orders = [to_order(row) for row in rows]

        log_json("INFO", "Orders persisted",
                 trace_id=trace_id, order_ids=[order.id for order in orders],
                 parent_order_id=parent_order_id, payment_id=payment_id, order_count=len(orders))
        return orders

    @staticmethod
    def _conflict(claimed: CheckoutRow, parent_order_id: str, payment_id: str) -> StateConflict:
        if claimed.parent_order_id == parent_order_id:
            return StateConflict('Orders already exist for this checkout', parent_order_id=parent_order_id)
        return StateConflict('Payment has already been used for another checkout',
                             payment_id=payment_id, claimed_by=claimed.parent_order_id)

    def append_tracking(self, order_id: str, event: TrackingEvent,
                        guard: Callable[[Order], None] = None) -> Optional[Order]:
        """
        Append ``event`` and make its status the order's status. No deduplication.

        ``guard`` runs against the locked current row and aborts the append
        by raising.
        """
        with self._lock, session_scope(self.session_factory) as session:
            row = session.query(OrderRow).filter(OrderRow.id == order_id).with_for_update().one_or_none()
            if row is None:
                return None
            if guard is not None:
                guard(to_order(row))
            row.tracking = list(row.tracking) + [event.model_dump(mode='json')]
            row.order_status = event.status.value
            row.updated_at = utcnow()
            session.flush()
            updated = to_order(row)

        log_json("INFO", "Tracking event appended",
                 order_id=order_id, order_status=event.status.value, tracking_length=len(updated.tracking))
        return updated

    def get(self, order_id: str) -> Optional[Order]:
        with session_scope(self.session_factory) as session:
            row = session.query(OrderRow).filter(OrderRow.id == order_id).one_or_none()
            return to_order(row) if row else None

    def find_by_parent(self, parent_order_id: str) -> List[Order]:
        with session_scope(self.session_factory) as session:
            rows = (session.query(OrderRow)
                    .filter(OrderRow.parent_order_id == parent_order_id)
                    .order_by(OrderRow.seq)
                    .all())
            return [to_order(row) for row in rows]

    def find_by_payment(self, payment_id: str) -> List[Order]:
        with session_scope(self.session_factory) as session:
            rows = (session.query(OrderRow)
                    .filter(OrderRow.payment_id == payment_id)
                    .order_by(OrderRow.seq)
                    .all())
            return [to_order(row) for row in rows]

    def find(self, consumer_id: str = None, vendor_id: str = None, order_status: OrderStatus = None,
             date_from: datetime = None, date_to: datetime = None,
             page: int = 1, limit: int = 20) -> Tuple[int, List[Order]]:
        """Filtered, newest-first page of orders plus the total match count."""
        date_from, date_to = to_utc(date_from), to_utc(date_to)

        with session_scope(self.session_factory) as session:
            query = session.query(OrderRow)
            if consumer_id is not None:
                query = query.filter(OrderRow.consumer_id == consumer_id)
            if vendor_id is not None:
                query = query.filter(OrderRow.vendor_id == vendor_id)
            if order_status is not None:
                query = query.filter(OrderRow.order_status == OrderStatus(order_status).value)
            if date_from is not None:
                query = query.filter(OrderRow.created_at >= date_from)
            if date_to is not None:
                query = query.filter(OrderRow.created_at <= date_to)

            total = query.count()
            rows = (query.order_by(OrderRow.created_at.desc(), OrderRow.seq.desc())
                    .offset((page - 1) * limit)
                    .limit(limit)
                    .all())
            return total, [to_order(row) for row in rows]

    def count(self) -> int:
        with session_scope(self.session_factory) as session:
            return session.query(func.count(OrderRow.seq)).scalar()
