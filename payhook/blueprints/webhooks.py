"""Webhooks blueprint — /webhooks/payments

Receives payment provider notifications. Raw body is required for
signature verification and is stored verbatim.

Status code policy (the core only classifies):
    accepted / already_processed / already_received  -> 200
    malformed_payload                                -> 400
    invalid_signature                                -> 401
    no_user_identifier / amount_mismatch             -> 200 if ACK_TERMINAL_FAILURES else 422
    transient_failure                                -> 500 (provider retries)
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from payhook.extensions import limiter
from payhook.results import WebhookResult
from payhook.services.webhook_processor import process_webhook

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")

_STATUS_CODES = {
    WebhookResult.ACCEPTED: 200,
    WebhookResult.ALREADY_PROCESSED: 200,
    WebhookResult.ALREADY_RECEIVED: 200,
    WebhookResult.MALFORMED_PAYLOAD: 400,
    WebhookResult.INVALID_SIGNATURE: 401,
    WebhookResult.TRANSIENT_FAILURE: 500,
}


def status_code_for(result, ack_terminal_failures=True):
    """HTTP status for a result classification."""
    if result in (WebhookResult.NO_USER_IDENTIFIER, WebhookResult.AMOUNT_MISMATCH):
        return 200 if ack_terminal_failures else 422
    return _STATUS_CODES[result]


def _rate_limit():
    return current_app.config.get("WEBHOOK_RATE_LIMIT", "600 per minute")


@webhooks_bp.route("/payments", methods=["POST"])
@limiter.limit(_rate_limit)
def payment_webhook():
    """Receive and process a payment notification.

    1. Get raw body (required for signature verification)
    2. Validate signature + fields
    3. Claim + process in one transaction (idempotent via webhook_events
       and payments tables)
    4. Map the classification to a status code
    """
    payload = request.get_data(as_text=True)
    header = current_app.config.get("WEBHOOK_SIGNATURE_HEADER", "Payhook-Signature")
    signature = request.headers.get(header)

    outcome = process_webhook(payload, signature)

    code = status_code_for(
        outcome.result, current_app.config.get("ACK_TERMINAL_FAILURES", True)
    )
    body = {"status": outcome.result.value}
    if outcome.detail:
        body["detail"] = outcome.detail

    if code >= 500:
        logger.error(f"Webhook processing failed: {outcome.detail}")
    return jsonify(body), code
