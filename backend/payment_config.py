"""Storage for the single admin-editable payment configuration."""

import logging
import math
from datetime import datetime
from typing import Dict, Mapping, Optional

from pymongo import ReturnDocument

from errors import ValidationError
from pricing import PaymentConfig

logger = logging.getLogger(__name__)

PAYMENT_CONFIG_ID = "payment_config"
MAX_TAX_PERCENT = 100
# Largest integer BSON can store.
MAX_STORED_INT = 2**63 - 1

PAYLOAD_FIELDS = {
    "taxPercent": "tax_percent",
    "shippingFee": "shipping_fee",
    "freeShippingThreshold": "free_shipping_threshold",
}


def get_payment_config(db) -> PaymentConfig:
    """Return the current configuration, creating the zero-valued default if absent."""
    now = datetime.utcnow()
    document = db.payment_config.find_one_and_update(
        {"_id": PAYMENT_CONFIG_ID},
        {
            "$setOnInsert": {
                **PaymentConfig().to_document(),
                "created_at": now,
                "updated_at": now,
            }
        },
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return PaymentConfig.from_document(document)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _whole_cents(field: str, value) -> int:
    if isinstance(value, float):
        if not value.is_integer():
            raise ValidationError(
                f"{field} must be a whole number of cents.", {"field": field}
            )
        value = int(value)
    return value


def validate_payment_config_payload(payload: Optional[Mapping]) -> PaymentConfig:
    """
    Validate an update payload in wire shape.

    All three fields are required and must be numeric and non-negative.
    Shipping fee and threshold are whole cents; tax is a percentage between 0
    and 100.
    """
    if not isinstance(payload, Mapping):
        raise ValidationError("Invalid input")

    missing = [field for field in PAYLOAD_FIELDS if payload.get(field) is None]
    if missing:
        raise ValidationError(
            "Provide taxPercent, shippingFee and freeShippingThreshold.",
            {"missing": missing},
        )

    values: Dict[str, object] = {}
    for field, attribute in PAYLOAD_FIELDS.items():
        value = payload[field]
        if not _is_number(value):
            raise ValidationError(f"{field} must be a number.", {"field": field})
        if isinstance(value, float) and not math.isfinite(value):
            raise ValidationError(f"{field} must be a number.", {"field": field})
        if value > MAX_STORED_INT:
            raise ValidationError(f"{field} is too large.", {"field": field})
        if value < 0:
            raise ValidationError(f"{field} cannot be negative.", {"field": field})
        values[attribute] = value

    if values["tax_percent"] > MAX_TAX_PERCENT:
        raise ValidationError(
            f"taxPercent cannot exceed {MAX_TAX_PERCENT}.", {"field": "taxPercent"}
        )

    return PaymentConfig(
        tax_percent=values["tax_percent"],
        shipping_fee=_whole_cents("shippingFee", values["shipping_fee"]),
        free_shipping_threshold=_whole_cents(
            "freeShippingThreshold", values["free_shipping_threshold"]
        ),
    )


def update_payment_config(db, payload: Optional[Mapping]) -> PaymentConfig:
    """Replace all three configuration fields in a single write."""
    config = validate_payment_config_payload(payload)
    now = datetime.utcnow()
    document = db.payment_config.find_one_and_update(
        {"_id": PAYMENT_CONFIG_ID},
        {
            "$set": {**config.to_document(), "updated_at": now},
            "$setOnInsert": {"created_at": now},
        },
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    logger.info(
        "Payment configuration updated: tax=%s%% shipping=%s threshold=%s",
        config.tax_percent,
        config.shipping_fee,
        config.free_shipping_threshold,
    )
    return PaymentConfig.from_document(document)
