"""Transactional email sent through Resend."""

import html
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Tuple

import resend

DEFAULT_ORDER_SENDER = "Storefront <orders@example.com>"
ORDER_CONFIRMATION_SUBJECT = "Thank you for your purchase"


def format_amount(cents: int, currency: str) -> str:
    return f"{currency.upper()} {cents / 100:.2f}"


def send_email_via_resend(payload: Dict[str, object], api_key: Optional[str]):
    configured_api_key = (api_key or "").strip()
    if not configured_api_key:
        return False, "Resend API key is not configured."

    previous_api_key = getattr(resend, "api_key", None)
    resend.api_key = configured_api_key
    try:
        response = resend.Emails.send(payload)
    except Exception as exc:
        return False, str(exc)
    finally:
        resend.api_key = previous_api_key

    if not isinstance(response, dict) or not response.get("id"):
        return False, str(response)

    return True, None


def build_order_confirmation_bodies(order_document: Mapping) -> Tuple[str, str]:
    currency = str(order_document.get("currency") or "usd")
    order_number = order_document.get("order_number") or str(order_document.get("_id"))
    created_at = order_document.get("created_at")
    if not isinstance(created_at, datetime):
        created_at = datetime.utcnow()

    lines: List[str] = []
    rows: List[str] = []
    for item in order_document.get("items") or []:
        title = str(item.get("title") or "Item")
        quantity = int(item.get("quantity", 0))
        price = format_amount(int(item.get("price", 0)), currency)
        lines.append(f"{title} x{quantity} ({price})")
        rows.append(
            f"<tr><td>{html.escape(title)}</td><td>{quantity}</td><td>{price}</td></tr>"
        )

    shipping = format_amount(int(order_document.get("shipping_amount", 0) or 0), currency)
    total = format_amount(int(order_document.get("total", 0) or 0), currency)

    text_body = (
        f"Thank you for your purchase! Order {order_number} on "
        f"{created_at.strftime('%Y-%m-%d %H:%M')}.\n"
        f"Items: {', '.join(lines)}.\n"
        f"Shipping: {shipping}.\n"
        f"Total: {total}.\n"
    )
    html_body = (
        f"<h1>Order {html.escape(str(order_number))}</h1>"
        "<table><tr><th>Item</th><th>Qty</th><th>Price</th></tr>"
        f"{''.join(rows)}</table>"
        f"<p>Shipping: {shipping}</p><p><strong>Total: {total}</strong></p>"
    )
    return text_body, html_body


def send_order_confirmation_email(
    order_document: Mapping,
    recipient_email: Optional[str],
    api_key: Optional[str],
    sender: Optional[str] = None,
) -> Tuple[bool, Optional[str]]:
    normalized_email = str(recipient_email or "").strip().lower()
    if not normalized_email:
        return False, "Missing customer email for the order receipt."

    text_body, html_body = build_order_confirmation_bodies(order_document)
    payload: Dict[str, object] = {
        "from": sender or DEFAULT_ORDER_SENDER,
        "to": [normalized_email],
        "subject": ORDER_CONFIRMATION_SUBJECT,
        "html": html_body,
        "text": text_body,
    }
    return send_email_via_resend(payload, api_key)
