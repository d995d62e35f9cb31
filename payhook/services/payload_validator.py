"""Payload validator — signature check + field validation for notifications.

Responsible for:
- Delegating signature verification to a pluggable verifier
  (default: stripe.WebhookSignature, HMAC-SHA256 "t=...,v1=..." headers)
- Decoding the JSON body
- Checking required identifiers and coercing amounts/currencies
- Producing a frozen WebhookPayload, or raising MalformedPayload /
  InvalidSignature

Pure: no database access, no side effects.
"""

import json
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

import stripe

from payhook.errors import InvalidSignature, MalformedPayload

logger = logging.getLogger(__name__)

COMPLETED = "completed"


@dataclass(frozen=True)
class WebhookPayload:
    event_id: str
    payment_id: str
    event_type: Optional[str]
    email: Optional[str]
    amount: Optional[Decimal]
    currency: str
    plan_id: Optional[str]
    status: Optional[str]
    raw: str

    @property
    def is_completed(self):
        return self.status == COMPLETED


def stripe_signature_verifier(tolerance=300):
    """Build a verifier backed by stripe.WebhookSignature.verify_header.

    The returned callable raises InvalidSignature on any mismatch, stale
    timestamp or unparseable header.
    """

    def verify(raw_body, signature, secret):
        try:
            stripe.WebhookSignature.verify_header(
                raw_body, signature, secret, tolerance=tolerance
            )
        except stripe.SignatureVerificationError as e:
            raise InvalidSignature(str(e)) from e

    return verify


def _optional_str(data, key):
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise MalformedPayload(f"{key} must be a string")
    value = value.strip()
    return value or None


def _parse_amount(value):
    if value is None or value == "":
        return None
    # bool is an int subclass; "amount": true is not a price
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise MalformedPayload("amount must be a decimal number")
    try:
        # str() first so floats keep their printed value (19.99, not 19.989999...)
        amount = Decimal(str(value))
    except InvalidOperation:
        raise MalformedPayload(f"amount is not a decimal: {value!r}")
    if not amount.is_finite() or amount < 0:
        raise MalformedPayload(f"amount out of range: {value!r}")
    return amount


def parse_payload(raw_body, default_currency="USD"):
    """Decode and field-check a notification body (no signature check).

    Used directly by the failed-event retry sweep, which replays payloads
    that were verified on receipt.
    """
    try:
        data = json.loads(raw_body)
    except (TypeError, ValueError) as e:
        raise MalformedPayload(f"body is not valid JSON: {e}")

    if not isinstance(data, dict):
        raise MalformedPayload("body must be a JSON object")

    event_id = _optional_str(data, "eventId")
    payment_id = _optional_str(data, "paymentId")
    if not event_id:
        raise MalformedPayload("missing eventId")
    if not payment_id:
        raise MalformedPayload("missing paymentId")

    status = _optional_str(data, "status")
    amount = _parse_amount(data.get("amount"))
    if status == COMPLETED and amount is None:
        raise MalformedPayload("amount is required for a completed payment")

    email = _optional_str(data, "email")
    if email:
        email = email.lower()

    currency = (_optional_str(data, "currency") or default_currency).upper()

    return WebhookPayload(
        event_id=event_id,
        payment_id=payment_id,
        event_type=_optional_str(data, "eventType"),
        email=email,
        amount=amount,
        currency=currency,
        plan_id=_optional_str(data, "planId"),
        status=status,
        raw=raw_body,
    )


def validate_payload(raw_body, signature, secret, verifier=None,
                     default_currency="USD"):
    """Verify the signature, then parse the body.

    Args:
        raw_body:  The notification body exactly as received (str).
        signature: Transport-supplied signature token (may be None).
        secret:    Shared secret the provider signs with.
        verifier:  Callable (raw_body, signature, secret) raising
                   InvalidSignature; defaults to the stripe-backed verifier.

    Returns a WebhookPayload.
    Raises InvalidSignature or MalformedPayload.
    """
    if not signature:
        raise InvalidSignature("missing signature")
    if not secret:
        # Misconfiguration: never accept unsigned traffic
        logger.error("WEBHOOK_SECRET is not configured; rejecting notification")
        raise InvalidSignature("no webhook secret configured")

    verify = verifier or stripe_signature_verifier()
    verify(raw_body, signature, secret)

    return parse_payload(raw_body, default_currency=default_currency)
