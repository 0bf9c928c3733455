from datetime import datetime
from typing import Dict, List, Optional, Tuple

import resend
from flask import current_app, render_template

from .pricing import round_money, safe_float, safe_positive_int
from .timeutils import utcnow

STORE_NAME = "Zyra Store"


def send_email_via_resend(payload: Dict[str, object]) -> Tuple[bool, Optional[str]]:
    if not str(getattr(resend, "api_key", None) or "").strip():
        return False, "Resend API key is not configured."

    try:
        response = resend.Emails.send(payload)
    except Exception as exc:
        return False, str(exc)

    if not isinstance(response, dict) or not response.get("id"):
        return False, str(response)

    return True, None


def _deliver(recipient_email: str, subject: str, html_body: str, text_body: str):
    sender = current_app.config.get("EMAIL_SENDER") or "no-reply@zyrastore.com"
    payload: Dict[str, object] = {
        "from": f"{STORE_NAME} <{sender}>",
        "to": [recipient_email],
        "subject": subject,
        "html": html_body,
        "text": text_body,
    }
    sent, error_details = send_email_via_resend(payload)
    if not sent:
        current_app.logger.warning(
            "Email '%s' to %s was not delivered: %s",
            subject,
            recipient_email,
            error_details or "Unknown delivery error",
        )
    return sent, error_details


def send_verification_email(recipient_email: str, otp: str, expiration_minutes: int):
    html_body = render_template(
        "emails/verify_email.html",
        otp=otp,
        expiration_minutes=expiration_minutes,
        store_name=STORE_NAME,
    )
    text_body = (
        f"Your {STORE_NAME} verification code is {otp}. "
        f"Enter it within {expiration_minutes} minutes to confirm this email."
    )
    return _deliver(recipient_email, f"{STORE_NAME} - Verify your email", html_body, text_body)


def send_password_reset_email(recipient_email: str, otp: str, expiration_minutes: int):
    html_body = render_template(
        "emails/password_reset.html",
        otp=otp,
        expiration_minutes=expiration_minutes,
        store_name=STORE_NAME,
    )
    text_body = (
        f"Use this code {otp} to reset your {STORE_NAME} password within "
        f"{expiration_minutes} minutes."
    )
    return _deliver(recipient_email, f"{STORE_NAME} - Password reset", html_body, text_body)


def normalize_order_email_items(items: List[Dict]) -> List[Dict]:
    normalized_items: List[Dict] = []
    for entry in items or []:
        if not isinstance(entry, dict):
            continue
        name = str(entry.get("name") or "").strip() or "Item"
        quantity = safe_positive_int(entry.get("quantity"), 1) or 1
        price_value = round_money(safe_float(entry.get("price"), 0.0))
        normalized_items.append(
            {
                "name": name,
                "quantity": quantity,
                "price": price_value,
                "line_total": round_money(price_value * quantity),
            }
        )
    return normalized_items


def send_order_confirmation_email(order_document: Dict, recipient_email: str):
    normalized_items = normalize_order_email_items(order_document.get("items"))
    total_value = round_money(order_document.get("total"))
    currency_code = str(order_document.get("currency") or "usd").upper()
    order_number = order_document.get("order_number") or str(order_document.get("_id"))

    created_at_value = order_document.get("created_at")
    if not isinstance(created_at_value, datetime):
        created_at_value = utcnow()

    html_body = render_template(
        "emails/order_confirmation.html",
        order_number=order_number,
        items=normalized_items,
        total=total_value,
        currency=currency_code,
        created_at=created_at_value,
        store_name=STORE_NAME,
    )
    item_lines = ", ".join(
        f"{item['name']} x{item['quantity']} ({currency_code} {item['price']:.2f})"
        for item in normalized_items
    )
    text_body = (
        f"Thank you for your purchase! Order {order_number} on "
        f"{created_at_value.strftime('%Y-%m-%d %H:%M')}.\n"
        f"Items: {item_lines}.\n"
        f"Total: {currency_code} {total_value:.2f}.\n\n"
        f"{STORE_NAME} Team"
    )
    return _deliver(recipient_email, "Thank you for your purchase", html_body, text_body)


def send_order_status_email(order_document: Dict, recipient_email: str):
    status = str(order_document.get("status") or "").upper()
    order_number = order_document.get("order_number") or str(order_document.get("_id"))
    tracking_number = order_document.get("tracking_number") or ""

    html_body = render_template(
        "emails/order_status.html",
        order_number=order_number,
        status=status,
        tracking_number=tracking_number,
        store_name=STORE_NAME,
    )
    text_body = f"Your order {order_number} is now {status.lower()}."
    if tracking_number:
        text_body += f" Tracking number: {tracking_number}."
    return _deliver(
        recipient_email, f"Order {order_number} update: {status.title()}", html_body, text_body
    )
