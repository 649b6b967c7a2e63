"""Tests for order creation, payment confirmation and status changes."""

from datetime import datetime, timedelta

import mongomock
import pytest
from pymongo.errors import PyMongoError

import orders
from carts import add_item, find_cart
from errors import (
    CartChangedError,
    ConflictError,
    EmptyCartError,
    InsufficientStockError,
    InvalidStatusTransitionError,
    OrderNotFoundError,
    ProductUnavailableError,
)
from orders import (
    confirm_payment,
    count_orders_awaiting_shipment,
    create_order_from_cart,
    list_orders,
    reconcile_stock_reductions,
    serialize_order,
    update_order_status,
)
from tests.conftest import insert_user, put_in_cart, set_config


class TestCreateOrder:
    def test_creates_pending_order_and_empties_cart(self, db, customer, make_product):
        set_config(db, tax_percent=8, shipping_fee=500, free_shipping_threshold=10000)
        product = make_product(price=2500)
        put_in_cart(db, customer, product, 2)

        order = create_order_from_cart(db, customer)

        assert order["status"] == "PENDING"
        assert order["subtotal"] == 5000
        assert order["tax_amount"] == 400
        assert order["shipping_amount"] == 500
        assert order["total"] == 5500
        assert order["items"] == [
            {
                "product_id": str(product["_id"]),
                "title": "Widget",
                "quantity": 2,
                "price": 2500,
            }
        ]
        assert len(order["order_number"]) == 9
        assert order["order_number"].isdigit()
        assert find_cart(db, str(customer["_id"]))["items"] == []
        assert db.orders.count_documents({}) == 1

    def test_order_numbers_are_sequential(self, db, customer, make_product):
        product = make_product()
        put_in_cart(db, customer, product)
        first = create_order_from_cart(db, customer)
        put_in_cart(db, customer, product)
        second = create_order_from_cart(db, customer)

        assert int(second["order_number"]) == int(first["order_number"]) + 1

    def test_prices_are_frozen_at_creation(self, db, customer, make_product):
        product = make_product(price=2500)
        put_in_cart(db, customer, product)
        order = create_order_from_cart(db, customer)

        db.products.update_one({"_id": product["_id"]}, {"$set": {"price": 9999}})
        set_config(db, tax_percent=50, shipping_fee=1000, free_shipping_threshold=100000)

        stored = db.orders.find_one({"_id": order["_id"]})
        assert stored["items"][0]["price"] == 2500
        assert stored["total"] == 2500

    def test_empty_cart_is_rejected(self, db, customer):
        with pytest.raises(EmptyCartError):
            create_order_from_cart(db, customer)

        assert db.orders.count_documents({}) == 0

    def test_second_create_finds_empty_cart(self, db, customer, make_product):
        put_in_cart(db, customer, make_product())
        create_order_from_cart(db, customer)

        with pytest.raises(EmptyCartError):
            create_order_from_cart(db, customer)

        assert db.orders.count_documents({}) == 1

    def test_inactive_product_is_rejected(self, db, customer, make_product):
        product = make_product()
        put_in_cart(db, customer, product)
        db.products.update_one({"_id": product["_id"]}, {"$set": {"is_active": False}})

        with pytest.raises(ProductUnavailableError) as excinfo:
            create_order_from_cart(db, customer)

        assert excinfo.value.product_id == str(product["_id"])
        assert db.orders.count_documents({}) == 0

    def test_insufficient_stock_leaves_cart_untouched(self, db, customer, make_product):
        product = make_product(stock=1)
        put_in_cart(db, customer, product, 2)
        before = find_cart(db, str(customer["_id"]))

        with pytest.raises(InsufficientStockError) as excinfo:
            create_order_from_cart(db, customer)

        assert excinfo.value.available == 1
        assert excinfo.value.requested == 2
        assert excinfo.value.to_dict()["productId"] == str(product["_id"])
        assert db.orders.count_documents({}) == 0
        after = find_cart(db, str(customer["_id"]))
        assert after["items"] == before["items"]
        assert after["version"] == before["version"]

    def test_failed_order_write_restores_cart(self, db, customer, make_product, monkeypatch):
        product = make_product()
        put_in_cart(db, customer, product, 3)
        original_insert = mongomock.collection.Collection.insert_one

        def failing_insert(self, document, *args, **kwargs):
            if self.name == "orders":
                raise PyMongoError("write failed")
            return original_insert(self, document, *args, **kwargs)

        monkeypatch.setattr(mongomock.collection.Collection, "insert_one", failing_insert)

        with pytest.raises(PyMongoError):
            create_order_from_cart(db, customer)

        assert db.orders.count_documents({}) == 0
        assert find_cart(db, str(customer["_id"]))["items"] == [
            {"product_id": str(product["_id"]), "quantity": 3}
        ]

    def test_failed_order_write_keeps_items_added_meanwhile(
        self, db, customer, make_product, monkeypatch
    ):
        ordered = make_product(title="Ordered")
        added = make_product(title="Added")
        put_in_cart(db, customer, ordered, 3)
        original_insert = mongomock.collection.Collection.insert_one

        def edit_then_fail(self, document, *args, **kwargs):
            if self.name == "orders":
                add_item(db, str(customer["_id"]), str(added["_id"]), 1)
                raise PyMongoError("write failed")
            return original_insert(self, document, *args, **kwargs)

        monkeypatch.setattr(mongomock.collection.Collection, "insert_one", edit_then_fail)

        with pytest.raises(PyMongoError):
            create_order_from_cart(db, customer)

        assert db.orders.count_documents({}) == 0
        items = find_cart(db, str(customer["_id"]))["items"]
        assert {item["product_id"]: item["quantity"] for item in items} == {
            str(ordered["_id"]): 3,
            str(added["_id"]): 1,
        }

    def test_cart_changed_during_checkout(self, db, customer, make_product, monkeypatch):
        product = make_product()
        put_in_cart(db, customer, product, 1)
        real_priced_cart_lines = orders.priced_cart_lines

        def priced_then_edited(db_, cart):
            lines = real_priced_cart_lines(db_, cart)
            add_item(db_, str(customer["_id"]), str(product["_id"]), 1)
            return lines

        monkeypatch.setattr(orders, "priced_cart_lines", priced_then_edited)

        with pytest.raises(CartChangedError):
            create_order_from_cart(db, customer)

        assert db.orders.count_documents({}) == 0
        assert find_cart(db, str(customer["_id"]))["items"][0]["quantity"] == 2


class TestConfirmPayment:
    def test_marks_paid_and_reduces_stock_once(self, db, customer, make_product):
        product = make_product(stock=5)
        put_in_cart(db, customer, product, 2)
        order = create_order_from_cart(db, customer)

        paid, applied = confirm_payment(db, str(order["_id"]))
        replay, replay_applied = confirm_payment(db, str(order["_id"]))

        assert applied is True
        assert paid["status"] == "PAID"
        assert paid["paid_at"] is not None
        assert replay_applied is False
        assert replay["status"] == "PAID"
        assert db.products.find_one({"_id": product["_id"]})["stock"] == 3

    def test_records_stock_reduction(self, db, customer, make_product):
        put_in_cart(db, customer, make_product())
        order = create_order_from_cart(db, customer)

        paid, _ = confirm_payment(db, order["_id"])

        assert paid["stock_reduced"] is True
        assert paid["stock_reduced_at"] is not None

    def test_sold_out_product_is_deactivated(self, db, customer, make_product):
        product = make_product(stock=2)
        put_in_cart(db, customer, product, 2)
        order = create_order_from_cart(db, customer)

        confirm_payment(db, order["_id"])

        stored = db.products.find_one({"_id": product["_id"]})
        assert stored["stock"] == 0
        assert stored["is_active"] is False

    def test_replay_after_shipping_is_ignored(self, db, customer, make_product):
        put_in_cart(db, customer, make_product())
        order = create_order_from_cart(db, customer)
        confirm_payment(db, order["_id"])
        update_order_status(db, order["_id"], "SHIPPED")

        shipped, applied = confirm_payment(db, order["_id"])

        assert applied is False
        assert shipped["status"] == "SHIPPED"

    def test_canceled_order_cannot_be_paid(self, db, customer, make_product):
        product = make_product(stock=5)
        put_in_cart(db, customer, product)
        order = create_order_from_cart(db, customer)
        update_order_status(db, order["_id"], "CANCELED")

        with pytest.raises(InvalidStatusTransitionError):
            confirm_payment(db, order["_id"])

        assert db.products.find_one({"_id": product["_id"]})["stock"] == 5

    def test_unknown_order(self, db):
        with pytest.raises(OrderNotFoundError):
            confirm_payment(db, "000000000000000000000000")
        with pytest.raises(OrderNotFoundError):
            confirm_payment(db, "not-an-id")


class TestReconcileStock:
    @pytest.fixture
    def interrupted_order(self, db, customer, make_product, monkeypatch):
        """A paid order whose stock reduction crashed before running."""
        product = make_product(stock=5)
        put_in_cart(db, customer, product, 2)
        order = create_order_from_cart(db, customer)

        def crash(db_, order_document):
            raise PyMongoError("connection lost")

        monkeypatch.setattr(orders, "reduce_stock_for_order", crash)
        with pytest.raises(PyMongoError):
            confirm_payment(db, order["_id"])
        monkeypatch.undo()

        db.orders.update_one(
            {"_id": order["_id"]},
            {"$set": {"paid_at": datetime.utcnow() - timedelta(hours=1)}},
        )
        return order, product

    def test_interrupted_order_is_flagged(self, db, interrupted_order):
        order, product = interrupted_order

        stored = db.orders.find_one({"_id": order["_id"]})
        assert stored["status"] == "PAID"
        assert stored["stock_reduced"] is False
        assert db.products.find_one({"_id": product["_id"]})["stock"] == 5
        assert confirm_payment(db, order["_id"])[1] is False

    def test_reconcile_reduces_stock_once(self, db, interrupted_order):
        order, product = interrupted_order

        assert reconcile_stock_reductions(db) == 1
        assert reconcile_stock_reductions(db) == 0

        assert db.products.find_one({"_id": product["_id"]})["stock"] == 3
        assert db.orders.find_one({"_id": order["_id"]})["stock_reduced"] is True

    def test_recent_payments_are_left_alone(self, db, interrupted_order):
        order, product = interrupted_order
        db.orders.update_one({"_id": order["_id"]}, {"$set": {"paid_at": datetime.utcnow()}})

        assert reconcile_stock_reductions(db) == 0
        assert db.products.find_one({"_id": product["_id"]})["stock"] == 5

    def test_completed_payments_are_skipped(self, db, customer, make_product):
        product = make_product(stock=5)
        put_in_cart(db, customer, product)
        order = create_order_from_cart(db, customer)
        confirm_payment(db, order["_id"])

        assert reconcile_stock_reductions(db, older_than=timedelta(0)) == 0
        assert db.products.find_one({"_id": product["_id"]})["stock"] == 4


class TestUpdateOrderStatus:
    @pytest.fixture
    def order(self, db, customer, make_product):
        put_in_cart(db, customer, make_product(stock=5), 1)
        return create_order_from_cart(db, customer)

    def test_walks_forward_to_completed(self, db, order):
        for status in ("PAID", "SHIPPED", "COMPLETED"):
            updated = update_order_status(db, order["_id"], status)
            assert updated["status"] == status

        assert updated["shipped_at"] is not None
        assert updated["completed_at"] is not None

    def test_admin_paid_reduces_stock(self, db, order):
        update_order_status(db, order["_id"], "paid")

        product_id = order["items"][0]["product_id"]
        product = db.products.find_one({"_id": orders.parse_object_id(product_id)})
        assert product["stock"] == 4

    def test_same_status_is_noop(self, db, order):
        updated = update_order_status(db, order["_id"], "PENDING")

        assert updated["status"] == "PENDING"

    def test_delivered_alias(self, db, order):
        update_order_status(db, order["_id"], "PAID")
        update_order_status(db, order["_id"], "SHIPPED")

        assert update_order_status(db, order["_id"], "DELIVERED")["status"] == "COMPLETED"

    @pytest.mark.parametrize(
        "path,target",
        [
            (["PAID", "SHIPPED"], "PENDING"),
            (["PAID"], "CANCELED"),
            ([], "SHIPPED"),
            (["CANCELED"], "PAID"),
        ],
    )
    def test_rejects_illegal_transitions(self, db, order, path, target):
        for status in path:
            update_order_status(db, order["_id"], status)

        with pytest.raises(InvalidStatusTransitionError):
            update_order_status(db, order["_id"], target)

    def test_concurrent_change_is_reported(self, db, order, monkeypatch):
        real_find_order = orders.find_order

        def stale_find_order(db_, order_id):
            document = real_find_order(db_, order_id)
            db_.orders.update_one(
                {"_id": document["_id"]}, {"$set": {"status": "CANCELED"}}
            )
            return document

        monkeypatch.setattr(orders, "find_order", stale_find_order)

        with pytest.raises(ConflictError):
            update_order_status(db, order["_id"], "CANCELED")


class TestAdminListing:
    @pytest.fixture
    def seeded(self, db, customer, make_product):
        other = insert_user(db, "buyer@another.org")
        product = make_product(stock=100)
        created = []
        for user in (customer, customer, other):
            put_in_cart(db, user, product)
            created.append(create_order_from_cart(db, user))
        confirm_payment(db, created[0]["_id"])
        update_order_status(db, created[2]["_id"], "CANCELED")
        return created

    def test_status_filter(self, db, seeded):
        documents, total, _, _ = list_orders(db, status_filter="ready_to_ship")

        assert total == 1
        assert documents[0]["_id"] == seeded[0]["_id"]

    def test_cancelled_filter(self, db, seeded):
        documents, total, _, _ = list_orders(db, status_filter="cancelled")

        assert total == 1
        assert documents[0]["user_email"] == "buyer@another.org"

    def test_search_by_email(self, db, seeded):
        _, total, _, _ = list_orders(db, search="SHOPPER@")

        assert total == 2

    def test_search_by_order_number(self, db, seeded):
        documents, total, _, _ = list_orders(db, search=seeded[1]["order_number"])

        assert total == 1
        assert documents[0]["_id"] == seeded[1]["_id"]

    def test_pagination(self, db, seeded):
        documents, total, page, limit = list_orders(db, page=2, limit=2)

        assert (total, page, limit) == (3, 2, 2)
        assert len(documents) == 1

    def test_awaiting_shipment_count(self, db, seeded):
        assert count_orders_awaiting_shipment(db) == 1


class TestSerializeOrder:
    def test_wire_shape(self, db, customer, make_product):
        set_config(db, tax_percent=10, shipping_fee=300, free_shipping_threshold=5000)
        put_in_cart(db, customer, make_product(price=1250), 2)
        order = create_order_from_cart(db, customer)

        serialized = serialize_order(order)

        assert serialized["status"] == "PENDING"
        assert serialized["subtotal"] == 2500
        assert serialized["taxAmount"] == 250
        assert serialized["shippingAmount"] == 300
        assert serialized["total"] == 2800
        assert serialized["items"][0]["lineTotal"] == 2500
        assert serialized["createdAt"].endswith("Z")
        assert serialized["paidAt"] is None
