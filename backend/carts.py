"""Per-user carts.

A cart document carries a ``version`` counter that every write increments.
Writers compare-and-set on the version they read, so two requests editing or
checking out the same cart cannot both win.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from pymongo import ReturnDocument

from errors import (
    CartChangedError,
    CartItemNotFoundError,
    ProductUnavailableError,
    ValidationError,
)
from pricing import LineItem
from products import (
    fetch_product,
    fetch_products_by_ids,
    parse_object_id,
    serialize_product,
)

logger = logging.getLogger(__name__)

MAX_CART_WRITE_ATTEMPTS = 3


def get_or_create_cart(db, user_id: str) -> Dict:
    now = datetime.utcnow()
    return db.carts.find_one_and_update(
        {"user_id": user_id},
        {
            "$setOnInsert": {
                "items": [],
                "version": 0,
                "created_at": now,
                "updated_at": now,
            }
        },
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def find_cart(db, user_id: str) -> Optional[Dict]:
    return db.carts.find_one({"user_id": user_id})


def _compare_and_set_items(db, cart: Dict, items: List[Dict]) -> Optional[Dict]:
    return db.carts.find_one_and_update(
        {"_id": cart["_id"], "version": cart.get("version", 0)},
        {
            "$set": {"items": items, "updated_at": datetime.utcnow()},
            "$inc": {"version": 1},
        },
        return_document=ReturnDocument.AFTER,
    )


def _rewrite_items(db, user_id: str, mutate: Callable[[List[Dict]], List[Dict]]) -> Dict:
    for _ in range(MAX_CART_WRITE_ATTEMPTS):
        cart = get_or_create_cart(db, user_id)
        items = [dict(item) for item in cart.get("items") or []]
        updated = _compare_and_set_items(db, cart, mutate(items))
        if updated:
            return updated
        logger.info("Cart %s changed concurrently, retrying", cart["_id"])
    raise CartChangedError()


def _parse_quantity(value) -> int:
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValidationError("Quantity must be a whole number.", {"field": "quantity"})
    return value


def _find_line(items: List[Dict], product_id: str) -> Optional[Dict]:
    for item in items:
        if item.get("product_id") == product_id:
            return item
    return None


def _product_key(product_id) -> str:
    """Canonical cart key for a product id: the lowercase ObjectId hex."""
    raw = str(product_id or "").strip()
    object_id = parse_object_id(raw)
    return str(object_id) if object_id else raw


def add_item(db, user_id: str, product_id, quantity=1) -> Dict:
    """Add a product to the cart or increase the quantity of its line."""
    product_key = _product_key(product_id)
    if not product_key:
        raise ValidationError("Product ID is required", {"field": "productId"})
    quantity = _parse_quantity(quantity)
    if quantity <= 0:
        raise ValidationError("Quantity must be at least 1.", {"field": "quantity"})

    product = fetch_product(db, product_key)
    if not product or not product.get("is_active"):
        raise ProductUnavailableError(
            product_key, product.get("title") if product else None
        )
    product_key = str(product["_id"])

    def mutate(items: List[Dict]) -> List[Dict]:
        line = _find_line(items, product_key)
        if line:
            line["quantity"] = int(line.get("quantity", 0)) + quantity
        else:
            items.append({"product_id": product_key, "quantity": quantity})
        return items

    return _rewrite_items(db, user_id, mutate)


def set_item_quantity(db, user_id: str, product_id, quantity) -> Dict:
    """Set a line's quantity; zero or less removes the line."""
    product_key = _product_key(product_id)
    if not product_key or quantity is None:
        raise ValidationError("Product ID and quantity are required")
    quantity = _parse_quantity(quantity)

    def mutate(items: List[Dict]) -> List[Dict]:
        line = _find_line(items, product_key)
        if not line:
            raise CartItemNotFoundError(product_key)
        if quantity <= 0:
            return [item for item in items if item is not line]
        line["quantity"] = quantity
        return items

    return _rewrite_items(db, user_id, mutate)


def remove_item(db, user_id: str, product_id) -> Dict:
    product_key = _product_key(product_id)
    if not product_key:
        raise ValidationError("Product ID is required", {"field": "productId"})

    def mutate(items: List[Dict]) -> List[Dict]:
        if not _find_line(items, product_key):
            raise CartItemNotFoundError(product_key)
        return [item for item in items if item.get("product_id") != product_key]

    return _rewrite_items(db, user_id, mutate)


def claim_cart_items(db, cart: Dict) -> Optional[Dict]:
    """Empty the cart if it is still at the version that was read.

    Returns the emptied cart, or ``None`` when another writer got there first.
    """
    return _compare_and_set_items(db, cart, [])


def restore_cart_items(db, claimed_cart: Dict, items: List[Dict]) -> bool:
    """Put back items taken by :func:`claim_cart_items`.

    Lines added to the cart since the claim are kept; claimed quantities are
    added on top of them.
    """

    def mutate(current: List[Dict]) -> List[Dict]:
        for claimed in items:
            line = _find_line(current, claimed.get("product_id"))
            if line:
                line["quantity"] = int(line.get("quantity", 0)) + int(claimed["quantity"])
            else:
                current.append(
                    {"product_id": claimed.get("product_id"), "quantity": claimed["quantity"]}
                )
        return current

    try:
        _rewrite_items(db, claimed_cart["user_id"], mutate)
    except CartChangedError:
        logger.error(
            "Unable to restore items of cart %s: %s", claimed_cart["_id"], items
        )
        return False
    return True


def priced_cart_lines(db, cart: Optional[Dict]) -> List[Dict]:
    """Join cart lines with the current product documents."""
    items = (cart or {}).get("items") or []
    product_map = fetch_products_by_ids(db, [item.get("product_id") for item in items])
    return [
        {
            "product_id": item.get("product_id"),
            "quantity": int(item.get("quantity", 0)),
            "product": product_map.get(item.get("product_id")),
        }
        for item in items
    ]


def cart_line_items(lines: List[Dict]) -> List[LineItem]:
    return [
        LineItem(unit_price=int(line["product"].get("price", 0)), quantity=line["quantity"])
        for line in lines
        if line.get("product")
    ]


def serialize_cart(cart: Dict, lines: List[Dict]) -> Dict:
    serialized_items = []
    for line in lines:
        product = line.get("product")
        unit_price = int(product.get("price", 0)) if product else 0
        serialized_items.append(
            {
                "productId": line["product_id"],
                "quantity": line["quantity"],
                "product": serialize_product(product) if product else None,
                "lineTotal": unit_price * line["quantity"],
            }
        )
    return {
        "id": str(cart.get("_id")),
        "items": serialized_items,
        "itemCount": sum(item["quantity"] for item in serialized_items),
    }
