"""Tests for order history and the cancellation gate."""

from datetime import datetime, timedelta

import pytest
from bson import ObjectId

from errors import AlreadyCancelledError, NotFoundError, StateConflictError
from orders import CancellationGate, OrderBook
from schemas import CancelledBy


@pytest.fixture
def place_order(dispatcher, carts, make_product, billing):
    """Check out one unit of a fresh product by cash on delivery; returns (order_id, product_id)."""

    def _place(user, qty=1, name="Air Zoom"):
        pid = make_product(name=name, sizes={9: 5})
        carts.add(str(user["_id"]), pid, 9, qty)
        return dispatcher.checkout(user, "cod", billing_address=billing).order_id, pid

    return _place


def set_status(db, order_id, status):
    db["order"].update_one({"_id": ObjectId(order_id)}, {"$set": {"delivery_status": status}})


class TestCancellationGate:
    def test_cancel_pending(self, db, user, place_order):
        order_id, _ = place_order(user)

        order = CancellationGate(db).cancel(order_id, str(user["_id"]), "Ordered the wrong size")

        assert order["delivery_status"] == "cancelled"
        assert order["cancellation"]["is_cancelled"] is True
        assert order["cancellation"]["cancelled_by"] == "user"
        assert order["cancellation"]["cancellation_reason"] == "Ordered the wrong size"
        assert isinstance(order["cancellation"]["cancelled_at"], datetime)

    def test_cancel_processing(self, db, user, place_order):
        order_id, _ = place_order(user)
        set_status(db, order_id, "processing")
        assert CancellationGate(db).cancel(order_id, str(user["_id"]))["delivery_status"] == "cancelled"

    def test_default_reason(self, db, user, place_order):
        order_id, _ = place_order(user)
        order = CancellationGate(db).cancel(order_id, str(user["_id"]))
        assert order["cancellation"]["cancellation_reason"] == "Cancelled by user"

    def test_admin_actor(self, db, user, place_order):
        order_id, _ = place_order(user)
        order = CancellationGate(db).cancel(order_id, str(user["_id"]), cancelled_by=CancelledBy.ADMIN)
        assert order["cancellation"]["cancelled_by"] == "admin"

    def test_cancel_twice(self, db, user, place_order):
        order_id, _ = place_order(user)
        gate = CancellationGate(db)
        gate.cancel(order_id, str(user["_id"]))

        with pytest.raises(AlreadyCancelledError):
            gate.cancel(order_id, str(user["_id"]))

    @pytest.mark.parametrize("status", ["shipped", "delivered"])
    def test_terminal_states(self, db, user, place_order, status):
        order_id, _ = place_order(user)
        set_status(db, order_id, status)

        with pytest.raises(StateConflictError) as exc_info:
            CancellationGate(db).cancel(order_id, str(user["_id"]))
        assert not isinstance(exc_info.value, AlreadyCancelledError)
        order = db["order"].find_one({"_id": ObjectId(order_id)})
        assert order["delivery_status"] == status
        assert order["cancellation"]["is_cancelled"] is False

    def test_someone_elses_order(self, db, user, make_user, place_order):
        order_id, _ = place_order(user)
        stranger = make_user(name="Ravi", email="ravi@example.com")

        with pytest.raises(NotFoundError):
            CancellationGate(db).cancel(order_id, str(stranger["_id"]))
        assert db["order"].find_one({"_id": ObjectId(order_id)})["delivery_status"] == "pending"

    @pytest.mark.parametrize("order_id", ["garbage", str(ObjectId())])
    def test_unknown_order(self, db, user, order_id):
        with pytest.raises(NotFoundError):
            CancellationGate(db).cancel(order_id, str(user["_id"]))

    def test_no_restock_by_default(self, db, user, place_order, stock):
        order_id, pid = place_order(user, qty=2)
        CancellationGate(db, restock=False).cancel(order_id, str(user["_id"]))
        assert stock(pid, 9) == 3

    def test_restock_when_enabled(self, db, user, place_order, stock):
        order_id, pid = place_order(user, qty=2)
        CancellationGate(db, restock=True).cancel(order_id, str(user["_id"]))
        assert stock(pid, 9) == 5


class TestOrderHistory:
    def test_newest_first_with_display_fields(self, db, user, place_order):
        older, _ = place_order(user, name="Court Classic")
        newer, _ = place_order(user, name="Trail Runner")
        db["order"].update_one({"_id": ObjectId(older)},
                               {"$set": {"created_at": datetime.utcnow() - timedelta(days=2)}})

        orders = OrderBook(db).list_for_user(str(user["_id"]))

        assert [str(o["_id"]) for o in orders] == [newer, older]
        item = orders[0]["items"][0]
        assert item["name"] == "Trail Runner"
        assert item["brand"] == "Nike"
        assert item["image"].endswith("trail-runner.png")
        assert item["slug"] == "trail-runner"
        assert item["qty"] == 1
        assert item["size"] == 9
        assert orders[0]["delivery_status"] == "pending"

    def test_only_own_orders(self, db, user, make_user, place_order):
        place_order(user)
        other = make_user(name="Ravi", email="ravi@example.com")
        assert OrderBook(db).list_for_user(str(other["_id"])) == []

    def test_deleted_product_falls_back_to_snapshot(self, db, user, place_order):
        _, pid = place_order(user, name="Court Classic")
        db["product"].delete_one({"_id": ObjectId(pid)})

        item = OrderBook(db).list_for_user(str(user["_id"]))[0]["items"][0]
        assert item["name"] == "Nike Court Classic"
        assert item["brand"] == "N/A"


class TestRestockAfterShortfall:
    def _hosted_order_with_shortfall(self, db, dispatcher, carts, user, make_product, gateway):
        """Two units paid for on the hosted page while only one was left in stock."""
        pid = make_product(sizes={9: 5})
        carts.add(str(user["_id"]), pid, 9, 2)
        dispatcher.checkout(user, "hosted")
        db["product"].update_one({"_id": ObjectId(pid)}, {"$set": {"size_quantity": [{"size": 9, "quantity": 1}]}})
        event = {
            "id": "evt_shortfall",
            "type": "checkout.session.completed",
            "data": {"object": {"amount_subtotal": 400000, "amount_total": 400000, "payment_status": "paid",
                                "metadata": gateway.sessions[-1]["metadata"]}},
        }
        return dispatcher.confirm_hosted(event), pid

    def test_committed_quantity_recorded_per_line(self, db, dispatcher, carts, user, make_product, gateway):
        order_id, _ = self._hosted_order_with_shortfall(db, dispatcher, carts, user, make_product, gateway)

        line = db["order"].find_one({"_id": ObjectId(order_id)})["products"][0]
        assert line["quantity"] == 2
        assert line["committed_qty"] == 1

    def test_restock_releases_only_what_was_taken(self, db, dispatcher, carts, user, make_product, gateway, stock):
        order_id, pid = self._hosted_order_with_shortfall(db, dispatcher, carts, user, make_product, gateway)
        assert stock(pid, 9) is None

        CancellationGate(db, restock=True).cancel(order_id, str(user["_id"]))

        assert stock(pid, 9) == 1

    def test_restock_skips_line_that_took_nothing(self, db, dispatcher, carts, user, make_product, gateway, stock):
        pid = make_product(sizes={9: 5})
        carts.add(str(user["_id"]), pid, 9, 1)
        dispatcher.checkout(user, "hosted")
        db["product"].update_one({"_id": ObjectId(pid)}, {"$set": {"size_quantity": []}})
        order_id = dispatcher.confirm_hosted({
            "id": "evt_sold_out",
            "type": "checkout.session.completed",
            "data": {"object": {"amount_subtotal": 200000, "amount_total": 200000, "payment_status": "paid",
                                "metadata": gateway.sessions[-1]["metadata"]}},
        })

        CancellationGate(db, restock=True).cancel(order_id, str(user["_id"]))

        assert stock(pid, 9) is None
