"""Product lookups and the stock/price boundary used by carts and orders."""

from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument

from errors import ProductNotFoundError, ValidationError

TITLE_MAX_LENGTH = 200
MAX_STORED_INT = 2**63 - 1


def parse_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value or "").strip())
    except (InvalidId, TypeError):
        return None


def fetch_product(db, product_id) -> Optional[Dict]:
    object_id = parse_object_id(product_id)
    if object_id is None:
        return None
    return db.products.find_one({"_id": object_id})


def fetch_products_by_ids(db, product_ids: Iterable) -> Dict[str, Dict]:
    object_ids = [
        object_id
        for object_id in (parse_object_id(value) for value in product_ids)
        if object_id is not None
    ]
    if not object_ids:
        return {}
    return {
        str(document["_id"]): document
        for document in db.products.find({"_id": {"$in": object_ids}})
    }


def list_active_products(db) -> List[Dict]:
    return list(
        db.products.find({"is_active": True, "stock": {"$gt": 0}}).sort("created_at", -1)
    )


def _non_negative_int(payload: Mapping, field: str) -> int:
    value = payload.get(field)
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValidationError(f"{field} must be a whole number.", {"field": field})
    if value < 0:
        raise ValidationError(f"{field} cannot be negative.", {"field": field})
    if value > MAX_STORED_INT:
        raise ValidationError(f"{field} is too large.", {"field": field})
    return value


def validate_product_payload(payload: Optional[Mapping], *, partial: bool = False) -> Dict:
    """Translate a wire payload into product document fields."""
    if not isinstance(payload, Mapping):
        raise ValidationError("Invalid input")

    fields: Dict[str, object] = {}

    if "title" in payload or not partial:
        title = str(payload.get("title") or "").strip()
        if not title:
            raise ValidationError("A product title is required.", {"field": "title"})
        if len(title) > TITLE_MAX_LENGTH:
            raise ValidationError(
                f"Title cannot exceed {TITLE_MAX_LENGTH} characters.", {"field": "title"}
            )
        fields["title"] = title

    if "description" in payload:
        fields["description"] = str(payload.get("description") or "").strip()
    elif not partial:
        fields["description"] = ""

    if "price" in payload or not partial:
        price = _non_negative_int(payload, "price")
        if price == 0:
            raise ValidationError("Price must be greater than zero.", {"field": "price"})
        fields["price"] = price

    if "stock" in payload or not partial:
        fields["stock"] = _non_negative_int(payload, "stock")

    if "isActive" in payload:
        fields["is_active"] = bool(payload.get("isActive"))
    elif not partial:
        fields["is_active"] = True

    if partial and not fields:
        raise ValidationError("Nothing to update.")
    return fields


def create_product(db, payload: Optional[Mapping]) -> Dict:
    fields = validate_product_payload(payload)
    now = datetime.utcnow()
    document = {**fields, "created_at": now, "updated_at": now}
    result = db.products.insert_one(document)
    document["_id"] = result.inserted_id
    return document


def update_product(db, product_id, payload: Optional[Mapping]) -> Dict:
    object_id = parse_object_id(product_id)
    if object_id is None:
        raise ProductNotFoundError(str(product_id))
    fields = validate_product_payload(payload, partial=True)
    updated = db.products.find_one_and_update(
        {"_id": object_id},
        {"$set": {**fields, "updated_at": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise ProductNotFoundError(str(product_id))
    return updated


def serialize_product(product_document) -> Dict:
    created_at = product_document.get("created_at")
    return {
        "id": str(product_document.get("_id")),
        "title": product_document.get("title", ""),
        "description": product_document.get("description", "") or "",
        "price": int(product_document.get("price", 0) or 0),
        "stock": int(product_document.get("stock", 0) or 0),
        "isActive": bool(product_document.get("is_active", False)),
        "createdAt": created_at.isoformat() + "Z"
        if isinstance(created_at, datetime)
        else None,
    }
