"""Payment processor (Stripe Checkout) integration.

Checkout sessions are created over Stripe's REST API. The amounts sent are
derived from the stored order, so what the customer is charged always equals
the order total computed at creation time.
"""

import logging
import re
from typing import Dict, List, Mapping, Optional

import requests

from errors import PaymentProviderError, StoreError

logger = logging.getLogger(__name__)

STRIPE_API_BASE = "https://api.stripe.com"
CHECKOUT_COMPLETED_EVENT = "checkout.session.completed"
PAID_SESSION_STATUSES = {"paid", "no_payment_required"}
SHIPPING_LINE_NAME = "Shipping"
REQUEST_TIMEOUT_SECONDS = 15
CHECKOUT_SESSION_ID_PATTERN = re.compile(r"^cs_[A-Za-z0-9_]+$")


def build_checkout_line_items(order_document: Mapping, currency: Optional[str] = None) -> List[Dict]:
    currency_code = str(currency or order_document.get("currency") or "usd").lower()
    line_items = [
        {
            "name": str(item.get("title") or "Item"),
            "unit_amount": int(item.get("price", 0)),
            "quantity": int(item.get("quantity", 0)),
            "currency": currency_code,
        }
        for item in order_document.get("items") or []
    ]
    shipping_amount = int(order_document.get("shipping_amount", 0) or 0)
    if shipping_amount > 0:
        line_items.append(
            {
                "name": SHIPPING_LINE_NAME,
                "unit_amount": shipping_amount,
                "quantity": 1,
                "currency": currency_code,
            }
        )
    return line_items


def line_items_amount(line_items: List[Dict]) -> int:
    return sum(line["unit_amount"] * line["quantity"] for line in line_items)


def encode_checkout_session_params(
    order_document: Mapping,
    line_items: List[Dict],
    success_url: str,
    cancel_url: str,
) -> Dict[str, object]:
    """Flatten the session request into Stripe's bracketed form fields."""
    order_id = str(order_document.get("_id"))
    params: Dict[str, object] = {
        "mode": "payment",
        "payment_method_types[0]": "card",
        "client_reference_id": order_id,
        "success_url": success_url,
        "cancel_url": cancel_url,
        "metadata[order_id]": order_id,
        "metadata[order_number]": order_document.get("order_number", ""),
    }
    for index, line in enumerate(line_items):
        prefix = f"line_items[{index}]"
        params[f"{prefix}[price_data][currency]"] = line["currency"]
        params[f"{prefix}[price_data][product_data][name]"] = line["name"]
        params[f"{prefix}[price_data][unit_amount]"] = line["unit_amount"]
        params[f"{prefix}[quantity]"] = line["quantity"]
    return params


def create_checkout_session(
    order_document: Mapping,
    success_url: str,
    cancel_url: str,
    secret_key: Optional[str],
    api_base: str = STRIPE_API_BASE,
) -> Dict:
    """Create a Stripe Checkout Session for a pending order and return it."""
    if not secret_key:
        raise PaymentProviderError(
            "Payment configuration is incomplete. Please contact support."
        )

    line_items = build_checkout_line_items(order_document)
    amount = line_items_amount(line_items)
    if amount != int(order_document.get("total", 0) or 0):
        logger.error(
            "Order %s line items sum to %s but total is %s",
            order_document.get("_id"),
            amount,
            order_document.get("total"),
        )
        raise StoreError("Order total does not match its items.")

    params = encode_checkout_session_params(
        order_document, line_items, success_url, cancel_url
    )
    try:
        response = requests.post(
            f"{api_base.rstrip('/')}/v1/checkout/sessions",
            data=params,
            auth=(secret_key, ""),
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
    except requests.RequestException as exc:
        logger.error("Stripe checkout request failed: %s", exc)
        raise PaymentProviderError("Failed to create checkout session")

    if response.status_code != 200:
        logger.error("Stripe checkout failed (%s): %s", response.status_code, response.text)
        raise PaymentProviderError("Failed to create checkout session")

    session = response.json()
    logger.info(
        "Created checkout session %s for order %s (%s cents)",
        session.get("id"),
        order_document.get("_id"),
        amount,
    )
    return session


def retrieve_checkout_session(
    session_id: str,
    secret_key: Optional[str],
    api_base: str = STRIPE_API_BASE,
) -> Dict:
    """Fetch a Checkout Session from Stripe so a webhook payload is never trusted as is."""
    if not secret_key:
        raise PaymentProviderError(
            "Payment configuration is incomplete. Please contact support."
        )

    try:
        response = requests.get(
            f"{api_base.rstrip('/')}/v1/checkout/sessions/{session_id}",
            auth=(secret_key, ""),
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
    except requests.RequestException as exc:
        logger.error("Stripe session lookup for %s failed: %s", session_id, exc)
        raise PaymentProviderError("Verification failed")

    if response.status_code != 200:
        logger.error(
            "Stripe session lookup for %s failed (%s): %s",
            session_id,
            response.status_code,
            response.text,
        )
        raise PaymentProviderError("Verification failed")
    return response.json()


def session_confirms_payment(session: Mapping, order_document: Mapping) -> bool:
    """True when a session fetched from Stripe shows this order as paid in full."""
    if session.get("payment_status") not in PAID_SESSION_STATUSES:
        return False
    if str(session.get("client_reference_id") or "") != str(order_document.get("_id")):
        return False
    amount_total = session.get("amount_total")
    if amount_total is not None and int(amount_total) != int(order_document.get("total", 0) or 0):
        return False
    return True


def extract_checkout_session_id(event: Optional[Mapping]) -> Optional[str]:
    if not isinstance(event, Mapping):
        return None
    session = (event.get("data") or {}).get("object") or {}
    session_id = str(session.get("id") or "").strip()
    if not CHECKOUT_SESSION_ID_PATTERN.match(session_id):
        return None
    return session_id


def extract_paid_order_reference(event: Optional[Mapping]) -> Optional[str]:
    """Return the order id carried by a completed, paid checkout event."""
    if not isinstance(event, Mapping) or event.get("type") != CHECKOUT_COMPLETED_EVENT:
        return None
    session = (event.get("data") or {}).get("object") or {}
    payment_status = session.get("payment_status")
    if payment_status is not None and payment_status not in PAID_SESSION_STATUSES:
        return None
    order_id = str(session.get("client_reference_id") or "").strip()
    return order_id or None
