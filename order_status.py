"""
Order status state machine.

    pending -> processing -> shipped -> out_for_delivery -> delivered
    pending | processing -> cancelled

Vendors (and admins) advance an order along the chain and may skip ahead;
nothing ever moves backward and a cancelled order never reopens.
"""

from enum import Enum

from service_auth import CONSUMER, VENDOR, Identity, has_role
from service_errors import Forbidden, StateConflict


class OrderStatus(str, Enum):
    PENDING = 'pending'
    PROCESSING = 'processing'
    SHIPPED = 'shipped'
    OUT_FOR_DELIVERY = 'out_for_delivery'
    DELIVERED = 'delivered'
    CANCELLED = 'cancelled'


class PaymentStatus(str, Enum):
    PENDING = 'pending'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'


FULFILLMENT_CHAIN = [
    OrderStatus.PENDING,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
]

# Targets accepted by a status update; cancellation has its own operation
ADVANCE_TARGETS = frozenset(FULFILLMENT_CHAIN[1:])
CANCELLABLE = frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING})


def _rank(status: OrderStatus) -> int:
    return FULFILLMENT_CHAIN.index(status)


def can_advance(current: OrderStatus, target: OrderStatus) -> bool:
    # Same-status updates are allowed and append another tracking event
    if target not in ADVANCE_TARGETS or current == OrderStatus.CANCELLED:
        return False
    return _rank(target) >= _rank(current)


def can_cancel(current: OrderStatus) -> bool:
    return current in CANCELLABLE


def check_advance(identity: Identity, vendor_id: str, current: OrderStatus, target: OrderStatus):
    """Raise unless ``identity`` may move an order from ``current`` to ``target``."""
    if not has_role(identity, [VENDOR]) or (not identity.is_admin and identity.user_id != vendor_id):
        raise Forbidden('Forbidden')
    if target not in ADVANCE_TARGETS:
        raise StateConflict('Invalid status transition', target=target.value)
    if not can_advance(current, target):
        raise StateConflict(f'Cannot move order from {current.value} to {target.value}',
                            current=current.value, target=target.value)


def check_cancel(identity: Identity, consumer_id: str, current: OrderStatus):
    if not has_role(identity, [CONSUMER]) or (not identity.is_admin and identity.user_id != consumer_id):
        raise Forbidden('Forbidden')
    if not can_cancel(current):
        raise StateConflict('Order cannot be cancelled at this stage', current=current.value)
