"""Order creation, payment confirmation and status management."""

import logging
import re
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from pymongo import ReturnDocument

from carts import (
    cart_line_items,
    claim_cart_items,
    find_cart,
    priced_cart_lines,
    restore_cart_items,
)
from errors import (
    CartChangedError,
    ConflictError,
    EmptyCartError,
    InsufficientStockError,
    InvalidStatusTransitionError,
    OrderNotFoundError,
    ProductUnavailableError,
)
from order_lifecycle import (
    SETTLED_STATES,
    OrderStatus,
    ensure_transition,
    parse_status,
)
from payment_config import get_payment_config
from pricing import compute_totals
from products import parse_object_id

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "usd"
ORDER_NUMBER_COUNTER_ID = "order_number"
ORDER_NUMBER_WIDTH = 9
DEFAULT_PAGE_SIZE = 15
MAX_PAGE_SIZE = 100
# Paid orders younger than this may still be reducing stock.
STOCK_RECONCILE_GRACE = timedelta(minutes=5)

ADMIN_STATUS_FILTERS = {
    "pending": OrderStatus.PENDING,
    "ready_to_ship": OrderStatus.PAID,
    "shipped": OrderStatus.SHIPPED,
    "delivered": OrderStatus.COMPLETED,
    "cancelled": OrderStatus.CANCELED,
}


def next_order_number(db) -> str:
    counter = db.counters.find_one_and_update(
        {"_id": ORDER_NUMBER_COUNTER_ID},
        {"$inc": {"value": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return str(counter["value"]).zfill(ORDER_NUMBER_WIDTH)


def validate_cart_lines(lines: List[Dict]) -> None:
    """Check every line is backed by an active product with enough stock."""
    for line in lines:
        product = line.get("product")
        if not product or not product.get("is_active"):
            raise ProductUnavailableError(
                line["product_id"], product.get("title") if product else None
            )
        available = int(product.get("stock", 0) or 0)
        if available < line["quantity"]:
            raise InsufficientStockError(
                line["product_id"],
                product.get("title") or line["product_id"],
                available,
                line["quantity"],
            )


def create_order_from_cart(db, user: Dict, currency: str = DEFAULT_CURRENCY) -> Dict:
    """
    Turn the user's cart into a PENDING order and empty the cart.

    The cart is claimed with a compare-and-set on its version before the
    order is written; if writing the order fails the claimed items are put
    back on top of anything added meanwhile, so the caller ends up with either
    an order and an empty cart or no order and the items still in the cart.

    Raises:
        EmptyCartError: The user has no cart items.
        ProductUnavailableError: A product is missing or inactive.
        InsufficientStockError: A product has less stock than requested.
        CartChangedError: The cart was modified or checked out concurrently.
    """
    user_id = str(user["_id"])
    cart = find_cart(db, user_id)
    if not cart or not cart.get("items"):
        raise EmptyCartError()

    lines = priced_cart_lines(db, cart)
    validate_cart_lines(lines)

    config = get_payment_config(db)
    totals = compute_totals(cart_line_items(lines), config)
    order_number = next_order_number(db)

    claimed_cart = claim_cart_items(db, cart)
    if claimed_cart is None:
        raise CartChangedError()

    now = datetime.utcnow()
    order_document = {
        "order_number": order_number,
        "user_id": user_id,
        "user_email": str(user.get("email") or "").strip().lower(),
        "status": OrderStatus.PENDING.value,
        "items": [
            {
                "product_id": line["product_id"],
                "title": line["product"].get("title", ""),
                "quantity": line["quantity"],
                "price": int(line["product"].get("price", 0)),
            }
            for line in lines
        ],
        "subtotal": totals.subtotal,
        "tax_amount": totals.tax_amount,
        "shipping_amount": totals.shipping_amount,
        "total": totals.total,
        "currency": currency,
        "created_at": now,
        "updated_at": now,
    }
    try:
        result = db.orders.insert_one(order_document)
    except Exception:
        logger.exception("Failed to store order for cart %s, restoring items", cart["_id"])
        restore_cart_items(db, claimed_cart, cart.get("items") or [])
        raise

    order_document["_id"] = result.inserted_id
    logger.info(
        "Created order %s (%s) for user %s, total=%s",
        order_number,
        result.inserted_id,
        user_id,
        totals.total,
    )
    return order_document


def find_order(db, order_id) -> Dict:
    object_id = parse_object_id(order_id)
    order_document = db.orders.find_one({"_id": object_id}) if object_id else None
    if not order_document:
        raise OrderNotFoundError(str(order_id))
    return order_document


def reduce_stock_for_order(db, order_document: Dict) -> None:
    for item in order_document.get("items") or []:
        object_id = parse_object_id(item.get("product_id"))
        if object_id is None:
            continue
        product = db.products.find_one_and_update(
            {"_id": object_id},
            {
                "$inc": {"stock": -int(item.get("quantity", 0))},
                "$set": {"updated_at": datetime.utcnow()},
            },
            return_document=ReturnDocument.AFTER,
        )
        if not product:
            logger.warning(
                "Product %s from order %s no longer exists",
                object_id,
                order_document.get("_id"),
            )
            continue
        remaining = int(product.get("stock", 0) or 0)
        if remaining > 0:
            continue
        if remaining < 0:
            logger.warning(
                "Product %s oversold by %s units (order %s)",
                object_id,
                -remaining,
                order_document.get("_id"),
            )
        db.products.update_one(
            {"_id": object_id},
            {"$set": {"stock": 0, "is_active": False}},
        )


def _apply_stock_reduction(db, order_document: Dict) -> Dict:
    reduce_stock_for_order(db, order_document)
    marked = db.orders.find_one_and_update(
        {"_id": order_document["_id"]},
        {"$set": {"stock_reduced": True, "stock_reduced_at": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return marked or order_document


def find_orders_missing_stock_reduction(db, older_than: timedelta = STOCK_RECONCILE_GRACE) -> List[Dict]:
    """Paid orders whose stock reduction never completed."""
    cutoff = datetime.utcnow() - older_than
    return list(
        db.orders.find(
            {
                "status": {"$in": [status.value for status in SETTLED_STATES]},
                "stock_reduced": False,
                "paid_at": {"$lte": cutoff},
            }
        ).sort("paid_at", 1)
    )


def reconcile_stock_reductions(db, older_than: timedelta = STOCK_RECONCILE_GRACE) -> int:
    """
    Reduce stock for paid orders left with ``stock_reduced`` unset.

    Only orders paid longer than ``older_than`` ago are touched so an in-flight
    confirmation is not reduced twice. Returns the number of orders fixed.
    """
    fixed = 0
    for order_document in find_orders_missing_stock_reduction(db, older_than):
        claimed = db.orders.find_one_and_update(
            {"_id": order_document["_id"], "stock_reduced": False},
            {"$set": {"stock_reduced": True, "stock_reduced_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if not claimed:
            continue
        reduce_stock_for_order(db, claimed)
        logger.warning("Reconciled stock for order %s", claimed["_id"])
        fixed += 1
    return fixed


def confirm_payment(db, order_id) -> Tuple[Dict, bool]:
    """
    Mark an order as PAID after the payment processor confirmed it.

    Only the call that flips PENDING to PAID reduces stock. Replays for an
    order that is already paid (or further along) return the order with
    ``applied`` set to False.

    Returns:
        Tuple of (order document, applied).
    """
    object_id = parse_object_id(order_id)
    if object_id is None:
        raise OrderNotFoundError(str(order_id))

    now = datetime.utcnow()
    updated = db.orders.find_one_and_update(
        {"_id": object_id, "status": OrderStatus.PENDING.value},
        {
            "$set": {
                "status": OrderStatus.PAID.value,
                "paid_at": now,
                "updated_at": now,
                "stock_reduced": False,
            }
        },
        return_document=ReturnDocument.AFTER,
    )
    if updated:
        updated = _apply_stock_reduction(db, updated)
        logger.info("Order %s marked as PAID and stock reduced", object_id)
        return updated, True

    existing = find_order(db, object_id)
    current = parse_status(existing.get("status"))
    if current in SETTLED_STATES:
        logger.info("Order %s already %s, ignoring confirmation", object_id, current.value)
        return existing, False
    raise InvalidStatusTransitionError(current.value, OrderStatus.PAID.value)


def update_order_status(db, order_id, status_value) -> Dict:
    """Apply an admin status change if the transition table allows it."""
    target = parse_status(status_value)
    order_document = find_order(db, order_id)
    current = parse_status(order_document.get("status"))
    if current == target:
        return order_document

    ensure_transition(current, target)
    if target == OrderStatus.PAID:
        paid_order, _ = confirm_payment(db, order_document["_id"])
        return paid_order

    now = datetime.utcnow()
    updated = db.orders.find_one_and_update(
        {"_id": order_document["_id"], "status": current.value},
        {
            "$set": {
                "status": target.value,
                f"{target.value.lower()}_at": now,
                "updated_at": now,
            }
        },
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise ConflictError("Order status changed while it was being updated.")
    logger.info(
        "Order %s status changed from %s to %s",
        order_document["_id"],
        current.value,
        target.value,
    )
    return updated


def attach_checkout_session(db, order_document: Dict, session_id: str) -> None:
    db.orders.update_one(
        {"_id": order_document["_id"]},
        {"$set": {"checkout_session_id": session_id, "updated_at": datetime.utcnow()}},
    )


def list_user_orders(db, user_id: str) -> List[Dict]:
    cursor = db.orders.find({"user_id": user_id}).sort([("created_at", -1), ("_id", -1)])
    return list(cursor)


def normalize_pagination(page, limit) -> Tuple[int, int]:
    try:
        page_value = max(int(page), 1)
    except (TypeError, ValueError):
        page_value = 1
    try:
        limit_value = min(max(int(limit), 1), MAX_PAGE_SIZE)
    except (TypeError, ValueError):
        limit_value = DEFAULT_PAGE_SIZE
    return page_value, limit_value


def build_admin_order_query(status_filter: Optional[str], search: Optional[str]) -> Dict:
    query: Dict[str, object] = {}
    status = ADMIN_STATUS_FILTERS.get(str(status_filter or "").strip().lower())
    if status:
        query["status"] = status.value

    search_term = str(search or "").strip()
    if search_term:
        pattern = re.compile(re.escape(search_term), re.IGNORECASE)
        if search_term.isdigit():
            query["order_number"] = pattern
        else:
            query["user_email"] = pattern
    return query


def list_orders(
    db,
    status_filter: Optional[str] = None,
    search: Optional[str] = None,
    page=1,
    limit=DEFAULT_PAGE_SIZE,
) -> Tuple[List[Dict], int, int, int]:
    """Admin listing. Returns (orders, total, page, limit)."""
    query = build_admin_order_query(status_filter, search)
    page, limit = normalize_pagination(page, limit)
    cursor = (
        db.orders.find(query)
        .sort([("created_at", -1), ("_id", -1)])
        .skip((page - 1) * limit)
        .limit(limit)
    )
    return list(cursor), db.orders.count_documents(query), page, limit


def count_orders_awaiting_shipment(db) -> int:
    return db.orders.count_documents({"status": OrderStatus.PAID.value})


def _isoformat(value) -> Optional[str]:
    if not isinstance(value, datetime):
        return None
    return value.isoformat() if value.tzinfo is not None else f"{value.isoformat()}Z"


def serialize_order(order_document) -> Dict:
    items = []
    for entry in order_document.get("items") or []:
        price = int(entry.get("price", 0) or 0)
        quantity = int(entry.get("quantity", 0) or 0)
        items.append(
            {
                "productId": entry.get("product_id", ""),
                "title": entry.get("title", ""),
                "quantity": quantity,
                "price": price,
                "lineTotal": price * quantity,
            }
        )

    return {
        "id": str(order_document.get("_id")),
        "orderNumber": order_document.get("order_number", ""),
        "userId": order_document.get("user_id", ""),
        "userEmail": order_document.get("user_email", ""),
        "status": order_document.get("status", ""),
        "items": items,
        "subtotal": int(order_document.get("subtotal", 0) or 0),
        "taxAmount": int(order_document.get("tax_amount", 0) or 0),
        "shippingAmount": int(order_document.get("shipping_amount", 0) or 0),
        "total": int(order_document.get("total", 0) or 0),
        "currency": order_document.get("currency", DEFAULT_CURRENCY),
        "createdAt": _isoformat(order_document.get("created_at")),
        "updatedAt": _isoformat(order_document.get("updated_at")),
        "paidAt": _isoformat(order_document.get("paid_at")),
    }
