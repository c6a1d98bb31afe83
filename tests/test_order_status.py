import pytest

from fakes import identity
from order_ledger import OrderDraft, OrderItem, TrackingEvent
from order_status import OrderStatus, can_advance, can_cancel, check_advance, check_cancel
from service_errors import Forbidden, StateConflict

S = OrderStatus


@pytest.fixture
def order(ledger, address):
    draft = OrderDraft(consumer_id="consumer-1", vendor_id="vendor-a", parent_order_id="parent-1",
                       payment_id="pay-ok", subtotal_amount=20.0,
                       order_items=[OrderItem(product_id="p-a1", quantity=2, price=10.0)],
                       shipping_address=address)
    return ledger.insert_many([draft])[0]


class TestTransitions:

    @pytest.mark.parametrize("current,target", [
        (S.PENDING, S.PROCESSING),
        (S.PENDING, S.SHIPPED),
        (S.PROCESSING, S.DELIVERED),
        (S.SHIPPED, S.OUT_FOR_DELIVERY),
        (S.SHIPPED, S.SHIPPED),
        (S.DELIVERED, S.DELIVERED),
    ])
    def test_forward_moves_allowed(self, current, target):
        assert can_advance(current, target)

    @pytest.mark.parametrize("current,target", [
        (S.SHIPPED, S.PROCESSING),
        (S.DELIVERED, S.SHIPPED),
        (S.CANCELLED, S.PROCESSING),
        (S.PROCESSING, S.PENDING),
        (S.PENDING, S.CANCELLED),
    ])
    def test_backward_or_reopening_moves_rejected(self, current, target):
        assert not can_advance(current, target)

    def test_cancellable_states(self):
        assert [s for s in S if can_cancel(s)] == [S.PENDING, S.PROCESSING]


class TestAuthorization:

    def test_owning_vendor_may_advance(self):
        check_advance(identity("vendor-a", "vendor"), "vendor-a", S.PENDING, S.PROCESSING)

    def test_admin_may_advance_any_order(self):
        check_advance(identity("admin-1", "admin"), "vendor-a", S.PENDING, S.SHIPPED)

    @pytest.mark.parametrize("user_id,role", [("vendor-b", "vendor"), ("consumer-1", "consumer")])
    def test_others_may_not_advance(self, user_id, role):
        with pytest.raises(Forbidden):
            check_advance(identity(user_id, role), "vendor-a", S.PENDING, S.PROCESSING)

    def test_backward_move_conflicts(self):
        with pytest.raises(StateConflict):
            check_advance(identity("vendor-a", "vendor"), "vendor-a", S.SHIPPED, S.PROCESSING)

    def test_cancel_is_not_a_status_update(self):
        with pytest.raises(StateConflict):
            check_advance(identity("vendor-a", "vendor"), "vendor-a", S.PENDING, S.CANCELLED)

    def test_owning_consumer_may_cancel(self):
        check_cancel(identity("consumer-1", "consumer"), "consumer-1", S.PROCESSING)

    @pytest.mark.parametrize("user_id,role", [("consumer-2", "consumer"), ("vendor-a", "vendor")])
    def test_others_may_not_cancel(self, user_id, role):
        with pytest.raises(Forbidden):
            check_cancel(identity(user_id, role), "consumer-1", S.PENDING)

    @pytest.mark.parametrize("current", [S.SHIPPED, S.OUT_FOR_DELIVERY, S.DELIVERED, S.CANCELLED])
    def test_cancel_after_shipment_conflicts(self, current):
        with pytest.raises(StateConflict):
            check_cancel(identity("admin-1", "admin"), "consumer-1", current)


class TestTracking:

    def test_append_sets_status_and_extends_history(self, ledger, order):
        updated = ledger.append_tracking(order.id, TrackingEvent(status=S.SHIPPED, carrier="UPS",
                                                                 tracking_number="1Z999"))

        assert updated.order_status == S.SHIPPED
        assert [e.status for e in updated.tracking] == [S.PENDING, S.SHIPPED]
        assert updated.tracking[-1].carrier == "UPS"
        assert updated.tracking[-1].tracking_number == "1Z999"

    def test_repeated_status_is_not_deduplicated(self, ledger, order):
        ledger.append_tracking(order.id, TrackingEvent(status=S.PROCESSING))
        updated = ledger.append_tracking(order.id, TrackingEvent(status=S.PROCESSING))

        assert [e.status for e in updated.tracking] == [S.PENDING, S.PROCESSING, S.PROCESSING]
        assert updated.tracking[-1].status == updated.order_status

    def test_guard_failure_leaves_order_untouched(self, ledger, order):
        ledger.append_tracking(order.id, TrackingEvent(status=S.SHIPPED))

        def guard(current):
            check_cancel(identity("consumer-1", "consumer"), current.consumer_id, current.order_status)

        with pytest.raises(StateConflict):
            ledger.append_tracking(order.id, TrackingEvent(status=S.CANCELLED), guard=guard)

        stored = ledger.get(order.id)
        assert stored.order_status == S.SHIPPED
        assert len(stored.tracking) == 2

    def test_cancel_from_pending(self, ledger, order):
        def guard(current):
            check_cancel(identity("consumer-1", "consumer"), current.consumer_id, current.order_status)

        updated = ledger.append_tracking(order.id, TrackingEvent(status=S.CANCELLED, note="changed my mind"),
                                         guard=guard)

        assert updated.order_status == S.CANCELLED
        assert updated.tracking[-1].note == "changed my mind"

    def test_unknown_order(self, ledger):
        assert ledger.append_tracking("missing", TrackingEvent(status=S.SHIPPED)) is None

    def test_returned_orders_are_copies(self, ledger, order):
        order.tracking.append(TrackingEvent(status=S.DELIVERED))
        assert len(ledger.get(order.id).tracking) == 1
